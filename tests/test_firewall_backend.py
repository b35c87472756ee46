# Torwarden
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the iptables subprocess backend (subprocess is faked)."""

import subprocess

import pytest

from torwarden.errors import FirewallError
from torwarden.firewall.backend import IptablesBackend

LISTING = """-N TORPROXY
-A TORPROXY -d 127.0.0.0/8 -j RETURN
-A TORPROXY -p tcp -m tcp --dport 53 -j REDIRECT --to-ports 9053
-A TORPROXY -m comment --comment "tor redirect" -p tcp -j REDIRECT --to-ports 9040
"""


@pytest.fixture
def calls(monkeypatch):
    """Record subprocess.run calls; respond based on the command string."""
    recorded = []
    responses = {}

    def _fake_run(cmd, **kwargs):
        recorded.append((cmd, kwargs))
        cmd_str = " ".join(cmd)
        for needle, (rc, out, err) in responses.items():
            if needle in cmd_str:
                return subprocess.CompletedProcess(cmd, rc, stdout=out, stderr=err)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", _fake_run)
    return recorded, responses


class TestListRules:
    def test_parses_rule_lines(self, calls):
        recorded, responses = calls
        responses["-S TORPROXY"] = (0, LISTING, "")
        rules = IptablesBackend().list_rules("ipv4", "nat", "TORPROXY")
        assert rules[0] == ("-d", "127.0.0.0/8", "-j", "RETURN")
        assert rules[2][:4] == ("-m", "comment", "--comment", "tor redirect")
        assert len(rules) == 3
        assert recorded[0][0][:5] == ["iptables", "-w", "-t", "nat", "-S"]

    def test_missing_chain_is_none(self, calls):
        _, responses = calls
        responses["-S TORPROXY"] = (1, "", "iptables: No chain/target/match by that name.\n")
        assert IptablesBackend().list_rules("ipv4", "nat", "TORPROXY") is None

    def test_other_error_raises(self, calls):
        _, responses = calls
        responses["-S TORPROXY"] = (4, "", "Permission denied (you must be root)\n")
        with pytest.raises(FirewallError):
            IptablesBackend().list_rules("ipv4", "nat", "TORPROXY")

    def test_ipv6_uses_ip6tables(self, calls):
        recorded, _ = calls
        IptablesBackend().list_rules("ipv6", "filter", "INPUT")
        assert recorded[0][0][0] == "ip6tables"


class TestMutations:
    def test_check_rule_uses_return_code(self, calls):
        _, responses = calls
        responses["-C OUTPUT"] = (1, "", "Bad rule")
        assert IptablesBackend().check_rule("ipv4", "nat", "OUTPUT", ("-j", "TORPROXY")) is False

    def test_insert_rule(self, calls):
        recorded, _ = calls
        IptablesBackend().insert_rule("ipv4", "nat", "OUTPUT", ("-j", "TORPROXY"))
        assert recorded[0][0][-5:] == ["-I", "OUTPUT", "1", "-j", "TORPROXY"]

    def test_replace_chains_uses_restore_noflush(self, calls):
        recorded, _ = calls
        IptablesBackend().replace_chains(
            "ipv4", "nat", {"TORPROXY": [("-d", "127.0.0.0/8", "-j", "RETURN")]}
        )
        cmd, kwargs = recorded[0]
        assert cmd == ["iptables-restore", "-w", "--noflush"]
        payload = kwargs["input"]
        assert payload.splitlines() == [
            "*nat",
            ":TORPROXY - [0:0]",
            "-A TORPROXY -d 127.0.0.0/8 -j RETURN",
            "COMMIT",
        ]

    def test_failed_command_raises_with_stderr(self, calls):
        _, responses = calls
        responses["iptables-restore"] = (2, "", "line 3 failed")
        with pytest.raises(FirewallError) as exc_info:
            IptablesBackend().replace_chains("ipv4", "nat", {"TORPROXY": []})
        assert exc_info.value.stderr == "line 3 failed"

    def test_delete_missing_chain_is_noop(self, calls):
        recorded, responses = calls
        responses["-S TORPROXY"] = (1, "", "No chain/target/match by that name.")
        IptablesBackend().delete_chain("ipv4", "nat", "TORPROXY")
        assert len(recorded) == 1

    def test_delete_chain_flushes_then_removes(self, calls):
        recorded, _ = calls
        IptablesBackend().delete_chain("ipv4", "nat", "TORPROXY")
        assert [c[0][4] for c in recorded] == ["-S", "-F", "-X"]


class TestFailures:
    def test_timeout_raises(self, monkeypatch):
        def _timeout(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

        monkeypatch.setattr(subprocess, "run", _timeout)
        with pytest.raises(FirewallError, match="Timed out"):
            IptablesBackend(timeout=1).insert_rule("ipv4", "nat", "OUTPUT", ("-j", "X"))

    def test_missing_binary_raises(self, monkeypatch):
        def _missing(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(subprocess, "run", _missing)
        with pytest.raises(FirewallError, match="Cannot run"):
            IptablesBackend().check_rule("ipv4", "nat", "OUTPUT", ("-j", "X"))
