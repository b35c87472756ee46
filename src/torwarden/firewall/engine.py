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
"""Redirection rule engine.

Installs, verifies and removes the managed chains. Every mutation holds
the engine lock so the watchdog's periodic re-assertion and a recovery
re-apply can never interleave.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from torwarden.config import FirewallConfig
from torwarden.firewall.backend import PacketFilter
from torwarden.firewall.rules import (
    IPV4,
    IPV6,
    JUMP_SOURCES,
    REDIRECT_TARGETS,
    ProxyIdentity,
    RuleSet,
    build_ruleset,
    expected_jumps,
    filter_chain_name,
    ipv6_chain_name,
    managed_chains,
    rule_target,
)

logger = logging.getLogger("torwarden.firewall.engine")


@dataclass(frozen=True)
class RuleSetStatus:
    """What verification found in the kernel."""

    chain: str
    redirect_count: int = 0
    return_count: int = 0
    filter_drop: bool = False
    ipv6_drop: bool = False
    min_rules: int = 5
    missing_chains: tuple[str, ...] = ()
    missing_jumps: tuple[str, ...] = ()
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def rule_count(self) -> int:
        """REDIRECT/DNAT plus RETURN rules in the nat chain."""
        return self.redirect_count + self.return_count

    @property
    def is_complete(self) -> bool:
        return (
            not self.errors
            and not self.missing_chains
            and not self.missing_jumps
            and self.redirect_count > 0
            and self.rule_count >= self.min_rules
            and self.filter_drop
            and self.ipv6_drop
        )

    def summary(self) -> str:
        if self.is_complete:
            return f"{self.rule_count} redirection rules active in {self.chain}"
        problems = []
        if self.errors:
            problems.append("errors: " + "; ".join(self.errors))
        if self.missing_chains:
            problems.append("missing chains: " + ", ".join(self.missing_chains))
        if self.missing_jumps:
            problems.append("missing jumps: " + ", ".join(self.missing_jumps))
        if self.rule_count < self.min_rules:
            problems.append(f"only {self.rule_count}/{self.min_rules} redirection rules")
        if not self.filter_drop:
            problems.append("no IPv4 drop rule")
        if not self.ipv6_drop:
            problems.append("no IPv6 drop rule")
        return "; ".join(problems) or "incomplete"

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain,
            "rule_count": self.rule_count,
            "redirect_count": self.redirect_count,
            "return_count": self.return_count,
            "filter_drop": self.filter_drop,
            "ipv6_drop": self.ipv6_drop,
            "min_rules": self.min_rules,
            "missing_chains": list(self.missing_chains),
            "missing_jumps": list(self.missing_jumps),
            "errors": list(self.errors),
            "complete": self.is_complete,
        }


class RedirectionRuleEngine:
    """Owns the managed chains on this host."""

    def __init__(
        self,
        backend: PacketFilter,
        config: FirewallConfig | None = None,
        proxy_host: str = "127.0.0.1",
    ) -> None:
        self._backend = backend
        self._config = config or FirewallConfig()
        self._proxy_host = proxy_host
        self._lock = threading.Lock()
        self._active: RuleSet | None = None

    @property
    def chain(self) -> str:
        return self._config.chain

    @property
    def active(self) -> RuleSet | None:
        """The rule set most recently applied by this engine."""
        return self._active

    # ------------------------------------------------------------------
    # apply
    # ------------------------------------------------------------------

    def apply(self, trans_port: int, dns_port: int, proxy_identity: ProxyIdentity) -> RuleSet:
        """Install the rule set. Idempotent; raises FirewallError on failure.

        IPv6 is locked down first and the nat redirection last, so a
        failure part way leaves the host more closed, not more open.
        """
        ruleset = build_ruleset(
            trans_port,
            dns_port,
            proxy_identity,
            chain=self._config.chain,
            proxy_host=self._proxy_host,
            overlay_interface=self._config.overlay_interface,
            overlay_cidr=self._config.overlay_cidr,
            overlay_udp_ports=self._config.overlay_udp_ports,
        )
        grouped = ruleset.by_table()

        with self._lock:
            for key in ((IPV6, "filter"), (IPV4, "filter"), (IPV4, "nat")):
                family, table = key
                self._backend.replace_chains(family, table, grouped[key])

            inserted = 0
            for jump in ruleset.jumps:
                self._remove_stale_jumps(jump.family, jump.table, jump.chain, jump.target, jump.spec)
                if not self._backend.check_rule(jump.family, jump.table, jump.chain, jump.spec):
                    self._backend.insert_rule(jump.family, jump.table, jump.chain, jump.spec)
                    inserted += 1

            self._active = ruleset

        logger.info(
            "Applied %d rules in %s (%d jumps inserted)",
            len(ruleset.rules),
            ruleset.chain,
            inserted,
            extra={"fields": {"trans_port": trans_port, "dns_port": dns_port}},
        )
        return ruleset

    def _remove_stale_jumps(
        self, family: str, table: str, builtin: str, target: str, wanted: tuple[str, ...]
    ) -> None:
        """Drop jumps to a managed chain whose match differs from the wanted one."""
        rules = self._backend.list_rules(family, table, builtin) or []
        for spec in rules:
            if rule_target(spec) != target or spec == wanted:
                continue
            # Same jump with a different match (e.g. old uid or interface)
            if _match_part(spec) != _match_part(wanted) and _same_ingress(spec, wanted):
                logger.info("Removing stale jump %s -> %s: %s", builtin, target, " ".join(spec))
                self._backend.delete_rule(family, table, builtin, spec)

    # ------------------------------------------------------------------
    # verify
    # ------------------------------------------------------------------

    def verify(self) -> RuleSetStatus:
        """Inspect the kernel and report how complete the rule set is.

        Read-only. Backend failures are reported in the status, not raised.
        """
        chain = self._config.chain
        missing_chains: list[str] = []
        missing_jumps: list[str] = []
        errors: list[str] = []
        redirects = returns = 0
        filter_drop = ipv6_drop = False

        with self._lock:
            try:
                for family, table, name in managed_chains(chain):
                    specs = self._backend.list_rules(family, table, name)
                    if specs is None:
                        missing_chains.append(f"{family}/{table}/{name}")
                        continue
                    targets = [rule_target(s) for s in specs]
                    if name == chain:
                        redirects = sum(1 for t in targets if t in REDIRECT_TARGETS)
                        returns = sum(1 for t in targets if t == "RETURN")
                    elif name == filter_chain_name(chain):
                        filter_drop = "DROP" in targets
                    elif name == ipv6_chain_name(chain):
                        ipv6_drop = "DROP" in targets

                for jump in expected_jumps(chain, self._config.overlay_interface):
                    specs = self._backend.list_rules(jump.family, jump.table, jump.chain) or []
                    if not any(rule_target(s) == jump.target for s in specs):
                        missing_jumps.append(f"{jump.family}/{jump.table}/{jump.chain}")
            except Exception as exc:
                logger.warning("Rule verification failed: %s", exc)
                errors.append(str(exc))

        return RuleSetStatus(
            chain=chain,
            redirect_count=redirects,
            return_count=returns,
            filter_drop=filter_drop,
            ipv6_drop=ipv6_drop,
            min_rules=self._config.min_rules,
            missing_chains=tuple(missing_chains),
            missing_jumps=tuple(missing_jumps),
            errors=tuple(errors),
        )

    # ------------------------------------------------------------------
    # teardown
    # ------------------------------------------------------------------

    def teardown(self) -> int:
        """Remove the managed chains and every jump into them.

        Built-in chains are only touched to delete jumps whose target is
        a managed chain. Returns the number of jumps removed.
        """
        chain = self._config.chain
        targets = {name for _, _, name in managed_chains(chain)}
        removed = 0

        with self._lock:
            for family, table, builtin in JUMP_SOURCES:
                for spec in self._backend.list_rules(family, table, builtin) or []:
                    if rule_target(spec) in targets:
                        self._backend.delete_rule(family, table, builtin, spec)
                        removed += 1
            for family, table, name in managed_chains(chain):
                self._backend.delete_chain(family, table, name)
            self._active = None

        logger.info("Removed %s chains and %d jumps", chain, removed)
        return removed


def _match_part(spec: tuple[str, ...]) -> tuple[str, ...]:
    """Everything before the -j clause."""
    for i, token in enumerate(spec):
        if token in ("-j", "--jump"):
            return spec[:i]
    return spec


def _same_ingress(a: tuple[str, ...], b: tuple[str, ...]) -> bool:
    """True if both specs are both interface-bound or both unbound."""
    return ("-i" in a) == ("-i" in b)
