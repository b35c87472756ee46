"""Pytest configuration and shared fakes for torwarden tests.

Nothing here touches the real packet filter, Docker engine or network.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure src/torwarden is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from torwarden.config import WatchdogConfig  # noqa: E402
from torwarden.errors import ControlPortError, FirewallError, ProcessManagerError  # noqa: E402
from torwarden.firewall.backend import PacketFilter  # noqa: E402
from torwarden.proxy.process import ProcessManager  # noqa: E402
from torwarden.recovery.alerts import AlertSink  # noqa: E402

BUILTIN_CHAINS = (
    ("ipv4", "nat", "PREROUTING"),
    ("ipv4", "nat", "OUTPUT"),
    ("ipv4", "nat", "POSTROUTING"),
    ("ipv4", "filter", "INPUT"),
    ("ipv4", "filter", "OUTPUT"),
    ("ipv4", "filter", "FORWARD"),
    ("ipv6", "filter", "INPUT"),
    ("ipv6", "filter", "OUTPUT"),
    ("ipv6", "filter", "FORWARD"),
)


# ============================================================================
# Packet filter
# ============================================================================


class FakePacketFilter(PacketFilter):
    """In-memory kernel tables keyed by (family, table, chain)."""

    def __init__(self):
        self.chains: dict[tuple[str, str, str], list[tuple[str, ...]]] = {
            key: [] for key in BUILTIN_CHAINS
        }
        self.fail_replace = False
        self.fail_list = False
        self.replace_calls = 0

    def list_rules(self, family, table, chain):
        if self.fail_list:
            raise FirewallError("iptables: lock held")
        rules = self.chains.get((family, table, chain))
        return None if rules is None else list(rules)

    def check_rule(self, family, table, chain, spec):
        return tuple(spec) in self.chains.get((family, table, chain), [])

    def insert_rule(self, family, table, chain, spec, position=1):
        key = (family, table, chain)
        if key not in self.chains:
            raise FirewallError(f"No chain {chain}")
        self.chains[key].insert(position - 1, tuple(spec))

    def delete_rule(self, family, table, chain, spec):
        rules = self.chains.get((family, table, chain), [])
        if tuple(spec) not in rules:
            raise FirewallError("Bad rule (does a matching rule exist in that chain?)")
        rules.remove(tuple(spec))

    def replace_chains(self, family, table, chains):
        self.replace_calls += 1
        if self.fail_replace:
            raise FirewallError("iptables-restore: line 3 failed")
        for chain, specs in chains.items():
            self.chains[(family, table, chain)] = [tuple(s) for s in specs]

    def delete_chain(self, family, table, chain):
        self.chains.pop((family, table, chain), None)

    def flush(self, family, table, chain):
        self.chains[(family, table, chain)] = []


# ============================================================================
# Proxy collaborators
# ============================================================================


class FakeProcessManager(ProcessManager):
    """Container stand-in. start() brings the proxy up unless start_works is False."""

    def __init__(self, running=True, health=None):
        self.running = running
        self.health_value = health
        self.start_works = True
        self.fail_introspection = False
        self.logs: list[tuple[float, str]] = []
        self.start_calls = 0
        self.stop_calls = 0
        self.attrs: dict = {}

    def start(self, name):
        self.start_calls += 1
        if not self.start_works:
            raise ProcessManagerError("compose up failed")
        self.running = True

    def stop(self, name):
        self.stop_calls += 1
        self.running = False

    def is_running(self, name):
        if self.fail_introspection:
            raise ProcessManagerError("Docker engine unavailable")
        return self.running

    def health(self, name):
        return self.health_value

    def recent_logs(self, name, since=None, tail=None):
        lines = [line for ts, line in self.logs if since is None or ts >= since]
        if tail is not None:
            lines = lines[-tail:]
        return lines

    def inspect(self, name):
        return self.attrs


class FakeControl:
    """Control-port stand-in."""

    def __init__(self, circuits=5, bootstrap=100):
        self.circuits = circuits
        self.bootstrap = bootstrap
        self.fail = False
        self.circuit_queries = 0

    def count_built_circuits(self):
        self.circuit_queries += 1
        if self.fail:
            raise ControlPortError("Connection refused")
        return self.circuits

    def bootstrap_progress(self):
        if self.fail:
            raise ControlPortError("Connection refused")
        return self.bootstrap


class RecordingAlertSink(AlertSink):
    def __init__(self, succeed=True):
        self.events = []
        self.succeed = succeed

    @property
    def sink_name(self):
        return "recording"

    def send(self, event):
        self.events.append(event)
        return self.succeed

    def severities(self):
        return [e.severity for e in self.events]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def packet_filter():
    return FakePacketFilter()


@pytest.fixture
def process_manager():
    return FakeProcessManager()


@pytest.fixture
def control():
    return FakeControl()


@pytest.fixture
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture
def open_ports():
    """Mutable set of reachable ports plus a probe function reading it."""
    ports = {9050, 9053}

    def probe(host, port, timeout):
        return port in ports

    return ports, probe


@pytest.fixture
def config(tmp_path):
    cfg = WatchdogConfig()
    cfg.proxy.address = "172.20.0.10"
    cfg.audit_log_path = str(tmp_path / "audit.jsonl")
    cfg.log_file = str(tmp_path / "watchdog.log")
    cfg.recovery.recovery_polls = 4
    return cfg
