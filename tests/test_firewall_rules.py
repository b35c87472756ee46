# Torwarden
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for rule-set computation."""

import pytest

from torwarden.firewall.rules import (
    IPV4,
    IPV6,
    ProxyIdentity,
    build_ruleset,
    expected_jumps,
    rule_target,
)


def _build(**kwargs):
    defaults = dict(
        trans_port=9040,
        dns_port=9053,
        proxy_identity=ProxyIdentity(address="172.20.0.10"),
        overlay_interface="tailscale0",
        overlay_cidr="100.64.0.0/10",
        overlay_udp_ports=[41641],
    )
    defaults.update(kwargs)
    return build_ruleset(**defaults)


class TestProxyIdentity:
    def test_requires_uid_or_address(self):
        with pytest.raises(ValueError):
            ProxyIdentity()

    def test_uid_only(self):
        assert ProxyIdentity(uid=107).uid == 107

    def test_rejects_bad_address(self):
        with pytest.raises(ValueError):
            ProxyIdentity(address="not-an-ip")


class TestBuildRuleset:
    def test_nat_chain_redirects_dns_and_tcp(self):
        rs = _build()
        nat = rs.chain_rules(IPV4, "nat", "TORPROXY")
        assert ("-p", "udp", "--dport", "53", "-j", "REDIRECT", "--to-ports", "9053") in nat
        assert ("-p", "tcp", "--dport", "53", "-j", "REDIRECT", "--to-ports", "9053") in nat
        assert ("-p", "tcp", "--syn", "-j", "REDIRECT", "--to-ports", "9040") in nat

    def test_exemptions_come_before_redirects(self):
        nat = _build().chain_rules(IPV4, "nat", "TORPROXY")
        targets = [rule_target(s) for s in nat]
        first_redirect = targets.index("REDIRECT")
        assert all(t == "RETURN" for t in targets[:first_redirect])
        assert ("-d", "172.20.0.10/32", "-j", "RETURN") in nat[:first_redirect]
        assert ("-d", "127.0.0.0/8", "-j", "RETURN") in nat[:first_redirect]
        assert ("-d", "100.64.0.0/10", "-j", "RETURN") in nat[:first_redirect]

    def test_default_rule_count_meets_minimum(self):
        assert _build().rule_count >= 5
        assert _build(proxy_identity=ProxyIdentity(uid=107), overlay_cidr="").rule_count >= 5

    def test_filter_chain_ends_with_drop(self):
        filt = _build().chain_rules(IPV4, "filter", "TORPROXY-FILTER")
        assert filt[-1] == ("-j", "DROP")
        assert ("-o", "tailscale0", "-j", "RETURN") in filt
        assert ("-p", "udp", "--sport", "41641", "-j", "RETURN") in filt

    def test_ipv6_chain_drops_everything(self):
        v6 = _build().chain_rules(IPV6, "filter", "TORPROXY6")
        assert v6 == [("-j", "DROP")]

    def test_dnat_when_proxy_not_on_loopback(self):
        nat = _build(proxy_host="172.20.0.10").chain_rules(IPV4, "nat", "TORPROXY")
        assert ("-p", "tcp", "--syn", "-j", "DNAT", "--to-destination", "172.20.0.10:9040") in nat

    def test_uid_exempted_on_output_jumps(self):
        rs = _build(proxy_identity=ProxyIdentity(uid=107))
        nat_output = [j for j in rs.jumps if (j.table, j.chain) == ("nat", "OUTPUT")][0]
        assert nat_output.spec == ("-m", "owner", "!", "--uid-owner", "107", "-j", "TORPROXY")
        prerouting = [j for j in rs.jumps if j.chain == "PREROUTING"][0]
        assert "--uid-owner" not in prerouting.spec

    def test_custom_chain_name(self):
        rs = _build(chain="EXITNODE")
        assert {r.chain for r in rs.rules} == {"EXITNODE", "EXITNODE-FILTER", "EXITNODE6"}

    @pytest.mark.parametrize("port", [0, 70000])
    def test_rejects_bad_port(self, port):
        with pytest.raises(ValueError):
            _build(trans_port=port)

    def test_rejects_bad_overlay_cidr(self):
        with pytest.raises(ValueError):
            _build(overlay_cidr="100.64.0.0/99")

    def test_ruleset_is_immutable(self):
        rs = _build()
        with pytest.raises(AttributeError):
            rs.chain = "OTHER"

    def test_to_dict_renders_rules(self):
        data = _build().to_dict()
        assert data["chain"] == "TORPROXY"
        assert any(r["rule"].startswith("-A TORPROXY ") for r in data["rules"])


class TestExpectedJumps:
    def test_without_overlay(self):
        jumps = expected_jumps("TORPROXY")
        chains = {(j.family, j.table, j.chain) for j in jumps}
        assert (IPV4, "nat", "PREROUTING") not in chains
        assert (IPV6, "filter", "INPUT") in chains

    def test_with_overlay(self):
        jumps = expected_jumps("TORPROXY", "tailscale0")
        pre = [j for j in jumps if j.chain == "PREROUTING"][0]
        assert pre.spec == ("-i", "tailscale0", "-j", "TORPROXY")
