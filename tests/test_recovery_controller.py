# Torwarden
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the recovery state machine."""

import json

import pytest

from torwarden.audit import AuditLogger
from torwarden.errors import InvalidTransitionError
from torwarden.firewall.engine import RedirectionRuleEngine
from torwarden.firewall.rules import ProxyIdentity
from torwarden.health.checker import HealthChecker
from torwarden.health.models import HealthReason, HealthState, HealthStatus
from torwarden.recovery.controller import ControllerState, RecoveryController

IDENTITY = ProxyIdentity(address="172.20.0.10")


class ScriptedChecker:
    """Returns queued statuses, then repeats the last one."""

    def __init__(self, *statuses):
        self.queue = list(statuses) or [HealthStatus.healthy()]
        self.calls = []

    def poll(self, include_circuits=True, log_since=None):
        self.calls.append({"include_circuits": include_circuits, "log_since": log_since})
        if len(self.queue) > 1:
            return self.queue.pop(0)
        return self.queue[0]


def _down():
    return HealthStatus.failed(HealthReason.PROCESS_DOWN, "tor-proxy is not running")


@pytest.fixture
def waits():
    return []


@pytest.fixture
def make_controller(config, packet_filter, process_manager, alert_sink, waits):
    def _make(checker, **kwargs):
        engine = kwargs.pop("engine", None) or RedirectionRuleEngine(packet_filter, config.firewall)
        kwargs.setdefault("audit", AuditLogger(config.audit_log_path))
        return RecoveryController(
            checker,
            engine,
            process_manager,
            IDENTITY,
            config=config,
            alerts=alert_sink,
            wait=lambda seconds: waits.append(seconds) or False,
            **kwargs,
        )

    return _make


def _audit_types(config):
    with open(config.audit_log_path, encoding="utf-8") as f:
        return [json.loads(line)["event_type"] for line in f]


class TestTransitions:
    def test_initial_state(self, make_controller):
        ctl = make_controller(ScriptedChecker())
        assert ctl.state == ControllerState.MONITORING
        assert ctl.counter.value == 0

    def test_invalid_transition(self, make_controller):
        ctl = make_controller(ScriptedChecker())
        with pytest.raises(InvalidTransitionError):
            ctl.transition(ControllerState.EMERGENCY)


class TestFailureCounter:
    def test_counter_increments_by_one_until_threshold(self, make_controller):
        ctl = make_controller(ScriptedChecker(_down()))
        values = []
        for _ in range(2):
            ctl.tick()
            values.append(ctl.counter.value)
        assert values == [1, 2]
        assert ctl.state == ControllerState.MONITORING

        ctl.tick()
        assert ctl.counter.value == 3
        assert ctl.state == ControllerState.RECOVERING

    def test_healthy_poll_resets_counter(self, make_controller, config):
        ctl = make_controller(ScriptedChecker(_down(), _down(), HealthStatus.healthy()))
        ctl.tick()
        ctl.tick()
        ctl.tick()
        assert ctl.counter.value == 0
        assert ctl.state == ControllerState.MONITORING
        assert "health_recovered" in _audit_types(config)

    def test_degraded_counts_as_failure(self, make_controller):
        degraded = HealthStatus(
            state=HealthState.DEGRADED,
            reason=HealthReason.LOW_CIRCUIT_COUNT,
            warnings=(HealthReason.LOW_CIRCUIT_COUNT,),
            circuits=1,
        )
        ctl = make_controller(ScriptedChecker(degraded))
        ctl.tick()
        assert ctl.counter.value == 1
        assert ctl.counter.last_reason == "low-circuit-count"


class TestCadence:
    def test_circuit_check_every_fifth_tick(self, make_controller):
        checker = ScriptedChecker()
        ctl = make_controller(checker)
        for _ in range(6):
            ctl.tick()
        assert [c["include_circuits"] for c in checker.calls] == [True, False, False, False, False, True]

    def test_rule_drift_is_repaired(self, make_controller, packet_filter, config):
        ctl = make_controller(ScriptedChecker())
        ctl.apply_rules()
        packet_filter.flush("ipv4", "nat", "TORPROXY")

        for _ in range(4):
            ctl.tick()
        assert packet_filter.chains[("ipv4", "nat", "TORPROXY")] == []

        ctl.tick()
        assert ctl.last_rule_status.is_complete
        assert ctl.last_rule_status.rule_count >= 5
        assert "rules_repaired" in _audit_types(config)

    def test_repeated_repair_failure_alerts_once_per_streak(
        self, make_controller, packet_filter, alert_sink, config
    ):
        config.recovery.rule_check_every = 1
        packet_filter.fail_replace = True
        ctl = make_controller(ScriptedChecker())
        for _ in range(3):
            ctl.tick()
        assert alert_sink.severities() == ["critical"]
        ctl.tick()
        assert alert_sink.severities() == ["critical"]

    def test_complete_rules_are_left_alone(self, make_controller, packet_filter, config):
        config.recovery.rule_check_every = 1
        ctl = make_controller(ScriptedChecker())
        ctl.apply_rules()
        calls = packet_filter.replace_calls
        ctl.tick()
        assert packet_filter.replace_calls == calls


class TestRecovery:
    def test_scenario_process_down_restart_succeeds(
        self, make_controller, process_manager, control, open_ports, alert_sink, config, waits
    ):
        _, probe = open_ports
        checker = HealthChecker(
            process_manager, config.proxy, config.health, control=control, probe=probe
        )
        ctl = make_controller(checker)
        process_manager.running = False

        for _ in range(3):
            ctl.tick()
        assert ctl.state == ControllerState.RECOVERING

        ctl.tick()
        assert ctl.state == ControllerState.MONITORING
        assert ctl.counter.value == 0
        assert process_manager.stop_calls == 1
        assert process_manager.start_calls == 1
        assert waits[:2] == [config.recovery.grace_period, config.recovery.recovery_poll_interval]
        assert alert_sink.severities() == ["info"]
        assert ctl.attempts[-1].outcome == "success"
        assert ctl.attempts[-1].trigger == "process-down"
        assert "recovery" in _audit_types(config)

    def test_rules_reapplied_after_recovery(self, make_controller, packet_filter):
        ctl = make_controller(ScriptedChecker(_down(), _down(), _down(), HealthStatus.healthy()))
        for _ in range(4):
            ctl.tick()
        assert ctl.state == ControllerState.MONITORING
        assert packet_filter.chains[("ipv4", "nat", "TORPROXY")]

    def test_recovery_polls_bounded(self, make_controller, config):
        checker = ScriptedChecker(_down())
        ctl = make_controller(checker)
        for _ in range(3):
            ctl.tick()
        before = len(checker.calls)
        ctl.tick()
        per_cycle = config.recovery.recovery_polls
        assert len(checker.calls) - before == per_cycle * config.recovery.max_restart_attempts

    def test_recovery_polls_ignore_pre_restart_logs(self, make_controller):
        checker = ScriptedChecker(_down(), _down(), _down(), HealthStatus.healthy())
        ctl = make_controller(checker)
        for _ in range(4):
            ctl.tick()
        assert checker.calls[-1]["log_since"] is not None

    def test_scenario_all_restarts_fail_enters_emergency(
        self, make_controller, process_manager, alert_sink, config, waits
    ):
        process_manager.start_works = False
        ctl = make_controller(ScriptedChecker(_down()))
        for _ in range(3):
            ctl.tick()

        ctl.tick()
        assert ctl.state == ControllerState.EMERGENCY
        assert process_manager.start_calls == config.recovery.max_restart_attempts
        assert alert_sink.severities() == ["critical"]
        assert ctl.attempts[-1].outcome == "failure"

        ctl.tick()
        assert waits[-1] == config.recovery.emergency_cooldown
        assert ctl.state == ControllerState.MONITORING
        assert "emergency" in _audit_types(config)

    def test_counter_kept_after_emergency(self, make_controller, process_manager):
        process_manager.start_works = False
        ctl = make_controller(ScriptedChecker(_down()))
        for _ in range(5):
            ctl.tick()
        assert ctl.state == ControllerState.MONITORING
        ctl.tick()
        assert ctl.state == ControllerState.RECOVERING

    def test_shutdown_during_grace_still_starts_proxy(self, config, packet_filter, process_manager, alert_sink):
        holder = {}

        def _wait(seconds):
            holder["ctl"].stop()
            return True

        ctl = RecoveryController(
            ScriptedChecker(_down()),
            RedirectionRuleEngine(packet_filter, config.firewall),
            process_manager,
            IDENTITY,
            config=config,
            alerts=alert_sink,
            wait=_wait,
        )
        holder["ctl"] = ctl
        ctl.transition(ControllerState.RECOVERING)
        ctl.tick()

        assert process_manager.stop_calls == 1
        assert process_manager.start_calls == 1
        assert ctl.state == ControllerState.MONITORING
        assert ctl.attempts[-1].outcome == "interrupted"
        assert alert_sink.events == []


class TestSustainedOutage:
    def test_flushed_rules_restored_while_proxy_stays_down(
        self, make_controller, packet_filter, process_manager, config
    ):
        process_manager.start_works = False
        ctl = make_controller(ScriptedChecker(_down()))
        ctl.apply_rules()
        packet_filter.flush("ipv4", "nat", "TORPROXY")
        packet_filter.flush("ipv4", "filter", "TORPROXY-FILTER")

        for _ in range(60):
            ctl.tick()

        assert ctl.recoveries_failed > 1
        assert packet_filter.chains[("ipv4", "nat", "TORPROXY")]
        assert packet_filter.chains[("ipv4", "filter", "TORPROXY-FILTER")]
        assert ctl.last_rule_status.is_complete
        assert "rules_repaired" in _audit_types(config)

    def test_due_rule_check_runs_on_the_tick_that_starts_recovery(self, make_controller, packet_filter, config):
        config.recovery.rule_check_every = 3
        ctl = make_controller(ScriptedChecker(_down()))
        ctl.apply_rules()
        packet_filter.flush("ipv4", "nat", "TORPROXY")

        for _ in range(3):
            ctl.tick()

        assert ctl.state == ControllerState.RECOVERING
        assert packet_filter.chains[("ipv4", "nat", "TORPROXY")]

    def test_rules_checked_when_leaving_emergency(self, make_controller, packet_filter, process_manager):
        process_manager.start_works = False
        ctl = make_controller(ScriptedChecker(_down()))
        ctl.apply_rules()
        for _ in range(4):
            ctl.tick()
        assert ctl.state == ControllerState.EMERGENCY

        packet_filter.flush("ipv4", "nat", "TORPROXY")
        ctl.tick()
        assert ctl.state == ControllerState.MONITORING
        assert packet_filter.chains[("ipv4", "nat", "TORPROXY")]


class TestPostRecoveryLogWindow:
    def test_pre_restart_errors_do_not_trigger_second_restart(
        self, make_controller, process_manager, control, open_ports, config
    ):
        _, probe = open_ports
        now = [1130.0]
        clock = lambda: now[0]  # noqa: E731
        for ts in (1000.0, 1060.0, 1120.0):
            process_manager.logs.append((ts, "[warn] Clock skew detected"))
        checker = HealthChecker(
            process_manager, config.proxy, config.health, control=control, probe=probe, clock=clock
        )
        ctl = make_controller(checker, clock=clock)

        for _ in range(3):
            ctl.tick()
            now[0] += 60
        assert ctl.state == ControllerState.RECOVERING

        ctl.tick()
        assert ctl.state == ControllerState.MONITORING
        assert process_manager.stop_calls == 1

        for _ in range(8):
            now[0] += 60
            ctl.tick()
            assert ctl.counter.value == 0

        assert ctl.state == ControllerState.MONITORING
        assert process_manager.stop_calls == 1

    def test_new_errors_after_restart_still_count(
        self, make_controller, process_manager, control, open_ports, config
    ):
        _, probe = open_ports
        now = [1130.0]
        clock = lambda: now[0]  # noqa: E731
        process_manager.logs.append((1120.0, "Clock skew detected"))
        checker = HealthChecker(
            process_manager, config.proxy, config.health, control=control, probe=probe, clock=clock
        )
        ctl = make_controller(checker, clock=clock)
        for _ in range(4):
            ctl.tick()
            now[0] += 60
        assert ctl.state == ControllerState.MONITORING

        process_manager.logs.append((now[0], "Clock skew detected"))
        ctl.tick()
        assert ctl.counter.value == 1
        assert ctl.last_status.reason == HealthReason.CRITICAL_LOG_ERROR


class TestRunLoop:
    def test_run_applies_rules_and_records_lifecycle(self, config, packet_filter, process_manager, alert_sink):
        holder = {}

        def _wait(seconds):
            holder["ctl"].stop()
            return True

        ctl = RecoveryController(
            ScriptedChecker(),
            RedirectionRuleEngine(packet_filter, config.firewall),
            process_manager,
            IDENTITY,
            config=config,
            alerts=alert_sink,
            audit=AuditLogger(config.audit_log_path),
            wait=_wait,
        )
        holder["ctl"] = ctl
        ctl.run()

        assert ctl.ticks == 1
        assert packet_filter.chains[("ipv4", "nat", "TORPROXY")]
        assert _audit_types(config) == ["watchdog_start", "watchdog_stop"]

    def test_teardown_on_exit(self, config, packet_filter, process_manager):
        config.recovery.teardown_on_exit = True
        holder = {}

        def _wait(seconds):
            holder["ctl"].stop()
            return True

        ctl = RecoveryController(
            ScriptedChecker(),
            RedirectionRuleEngine(packet_filter, config.firewall),
            process_manager,
            IDENTITY,
            config=config,
            wait=_wait,
        )
        holder["ctl"] = ctl
        ctl.run()
        assert ("ipv4", "nat", "TORPROXY") not in packet_filter.chains

    def test_metrics_written_each_tick(self, make_controller, tmp_path):
        from torwarden.metrics import MetricsTextfile

        prom = tmp_path / "tor.prom"
        ctl = make_controller(ScriptedChecker(_down()), metrics=MetricsTextfile(prom))
        ctl.tick()
        text = prom.read_text()
        assert "torwarden_failure_count 1" in text
        assert 'torwarden_state{state="monitoring"} 1' in text
