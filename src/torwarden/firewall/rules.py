# Torwarden
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Torwarden.
#
# Torwarden is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Rule-set model and the pure function that computes it.

Nothing here touches the kernel. ``build_ruleset`` turns ports, the
proxy identity and the overlay settings into an ordered, immutable
RuleSet; the engine is responsible for installing it.

Layout (CHAIN defaults to TORPROXY):

    nat     CHAIN          <- OUTPUT, PREROUTING -i <overlay>
    filter  CHAIN-FILTER   <- OUTPUT, FORWARD -i <overlay>
    ip6     CHAIN6         <- INPUT, OUTPUT, FORWARD
"""

from __future__ import annotations

import ipaddress
import time
from dataclasses import dataclass, field
from typing import Any

IPV4 = "ipv4"
IPV6 = "ipv6"

LOOPBACK_V4 = "127.0.0.0/8"

# Targets counted by verification.
REDIRECT_TARGETS = frozenset({"REDIRECT", "DNAT"})


def filter_chain_name(chain: str) -> str:
    return f"{chain}-FILTER"


def ipv6_chain_name(chain: str) -> str:
    return f"{chain}6"


# Built-in chains that may hold jumps into the managed chains.
JUMP_SOURCES: tuple[tuple[str, str, str], ...] = (
    (IPV4, "nat", "OUTPUT"),
    (IPV4, "nat", "PREROUTING"),
    (IPV4, "filter", "OUTPUT"),
    (IPV4, "filter", "FORWARD"),
    (IPV6, "filter", "INPUT"),
    (IPV6, "filter", "OUTPUT"),
    (IPV6, "filter", "FORWARD"),
)


def managed_chains(chain: str) -> tuple[tuple[str, str, str], ...]:
    """(family, table, chain) for every chain the engine owns."""
    return (
        (IPV4, "nat", chain),
        (IPV4, "filter", filter_chain_name(chain)),
        (IPV6, "filter", ipv6_chain_name(chain)),
    )


def rule_target(spec: tuple[str, ...] | list[str]) -> str:
    """Return the jump target of a rule spec, or '' if it has none."""
    for i, token in enumerate(spec[:-1]):
        if token in ("-j", "--jump"):
            return spec[i + 1]
    return ""


@dataclass(frozen=True)
class ProxyIdentity:
    """How the proxy's own traffic is recognised so it is never redirected.

    At least one of uid (host-network process owner) or address (container
    address on a bridge network) is required.
    """

    uid: int | None = None
    address: str = ""

    def __post_init__(self) -> None:
        if self.uid is None and not self.address:
            raise ValueError("ProxyIdentity needs a uid or an address")
        if self.address:
            ipaddress.ip_address(self.address)


@dataclass(frozen=True)
class Rule:
    """One rule appended to a chain, or one jump inserted into a built-in chain."""

    family: str
    table: str
    chain: str
    spec: tuple[str, ...]

    @property
    def target(self) -> str:
        return rule_target(self.spec)

    def render(self) -> str:
        return f"-A {self.chain} " + " ".join(self.spec)


@dataclass(frozen=True)
class RuleSet:
    """The complete, ordered set of rules for one host."""

    chain: str
    rules: tuple[Rule, ...]
    jumps: tuple[Rule, ...]
    trans_port: int
    dns_port: int
    identity: ProxyIdentity
    created_at: float = field(default_factory=time.time)

    def chain_rules(self, family: str, table: str, chain: str) -> list[tuple[str, ...]]:
        """Specs for one managed chain, in order."""
        return [
            r.spec for r in self.rules if (r.family, r.table, r.chain) == (family, table, chain)
        ]

    def by_table(self) -> dict[tuple[str, str], dict[str, list[tuple[str, ...]]]]:
        """Group managed-chain specs as {(family, table): {chain: [spec, ...]}}."""
        grouped: dict[tuple[str, str], dict[str, list[tuple[str, ...]]]] = {}
        for family, table, chain in managed_chains(self.chain):
            grouped.setdefault((family, table), {})[chain] = self.chain_rules(family, table, chain)
        return grouped

    @property
    def rule_count(self) -> int:
        """REDIRECT/DNAT plus RETURN rules in the nat chain."""
        return sum(
            1
            for spec in self.chain_rules(IPV4, "nat", self.chain)
            if rule_target(spec) in REDIRECT_TARGETS or rule_target(spec) == "RETURN"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain,
            "trans_port": self.trans_port,
            "dns_port": self.dns_port,
            "identity": {"uid": self.identity.uid, "address": self.identity.address},
            "rules": [
                {"family": r.family, "table": r.table, "rule": r.render()} for r in self.rules
            ],
            "jumps": [
                {"family": r.family, "table": r.table, "rule": r.render()} for r in self.jumps
            ],
            "created_at": self.created_at,
        }


def _is_loopback(host: str) -> bool:
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return host == "localhost"


def _to_proxy(host: str, port: int) -> tuple[str, ...]:
    """Target clause sending a flow to the proxy listening on host:port."""
    if _is_loopback(host):
        return ("-j", "REDIRECT", "--to-ports", str(port))
    return ("-j", "DNAT", "--to-destination", f"{host}:{port}")


def expected_jumps(
    chain: str,
    overlay_interface: str = "",
    uid: int | None = None,
) -> tuple[Rule, ...]:
    """Jump rules from the built-in chains into the managed chains.

    The proxy uid is exempted on the OUTPUT jumps; owner matching is
    only valid on locally generated traffic, so it cannot live inside
    chains that are also reached from PREROUTING or FORWARD.
    """
    owner: tuple[str, ...] = ()
    if uid is not None:
        owner = ("-m", "owner", "!", "--uid-owner", str(uid))

    fchain = filter_chain_name(chain)
    v6chain = ipv6_chain_name(chain)
    jumps = [Rule(IPV4, "nat", "OUTPUT", owner + ("-j", chain))]
    if overlay_interface:
        jumps.append(Rule(IPV4, "nat", "PREROUTING", ("-i", overlay_interface, "-j", chain)))
    jumps.append(Rule(IPV4, "filter", "OUTPUT", owner + ("-j", fchain)))
    if overlay_interface:
        jumps.append(Rule(IPV4, "filter", "FORWARD", ("-i", overlay_interface, "-j", fchain)))
    for builtin in ("INPUT", "OUTPUT", "FORWARD"):
        jumps.append(Rule(IPV6, "filter", builtin, ("-j", v6chain)))
    return tuple(jumps)


def build_ruleset(
    trans_port: int,
    dns_port: int,
    proxy_identity: ProxyIdentity,
    chain: str = "TORPROXY",
    proxy_host: str = "127.0.0.1",
    overlay_interface: str = "",
    overlay_cidr: str = "",
    overlay_udp_ports: list[int] | tuple[int, ...] = (),
) -> RuleSet:
    """Compute the full rule set. Pure; raises ValueError on bad input."""
    for name, port in (("trans_port", trans_port), ("dns_port", dns_port)):
        if not 0 < int(port) < 65536:
            raise ValueError(f"{name} out of range: {port}")
    if overlay_cidr:
        ipaddress.ip_network(overlay_cidr, strict=False)

    identity = proxy_identity
    nat: list[tuple[str, ...]] = []
    if identity.address:
        nat.append(("-d", f"{identity.address}/32", "-j", "RETURN"))
    nat.append(("-d", LOOPBACK_V4, "-j", "RETURN"))
    nat.append(("-m", "addrtype", "--dst-type", "LOCAL", "-j", "RETURN"))
    if overlay_cidr:
        nat.append(("-d", overlay_cidr, "-j", "RETURN"))
    nat.append(("-p", "udp", "--dport", "53") + _to_proxy(proxy_host, dns_port))
    nat.append(("-p", "tcp", "--dport", "53") + _to_proxy(proxy_host, dns_port))
    nat.append(("-p", "tcp", "--syn") + _to_proxy(proxy_host, trans_port))

    filt: list[tuple[str, ...]] = [
        ("-o", "lo", "-j", "RETURN"),
        ("-m", "conntrack", "--ctstate", "RELATED,ESTABLISHED", "-j", "RETURN"),
    ]
    if identity.address:
        filt.append(("-d", f"{identity.address}/32", "-j", "RETURN"))
    if not _is_loopback(proxy_host) and proxy_host != identity.address:
        filt.append(("-d", f"{proxy_host}/32", "-j", "RETURN"))
    if overlay_interface:
        filt.append(("-o", overlay_interface, "-j", "RETURN"))
    if overlay_cidr:
        filt.append(("-d", overlay_cidr, "-j", "RETURN"))
    for port in overlay_udp_ports:
        filt.append(("-p", "udp", "--sport", str(int(port)), "-j", "RETURN"))
    filt.append(("-j", "DROP"))

    # No exemptions, not even loopback
    v6: list[tuple[str, ...]] = [("-j", "DROP")]

    fchain = filter_chain_name(chain)
    v6chain = ipv6_chain_name(chain)
    rules = (
        [Rule(IPV4, "nat", chain, spec) for spec in nat]
        + [Rule(IPV4, "filter", fchain, spec) for spec in filt]
        + [Rule(IPV6, "filter", v6chain, spec) for spec in v6]
    )
    return RuleSet(
        chain=chain,
        rules=tuple(rules),
        jumps=expected_jumps(chain, overlay_interface, identity.uid),
        trans_port=int(trans_port),
        dns_port=int(dns_port),
        identity=identity,
    )
