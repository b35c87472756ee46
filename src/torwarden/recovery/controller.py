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
"""Watchdog recovery state machine.

State machine:
    MONITORING -> RECOVERING      (failure counter reached the threshold)
    RECOVERING -> MONITORING      (proxy healthy again, or shutdown requested)
    RECOVERING -> EMERGENCY       (every restart cycle failed)
    EMERGENCY  -> MONITORING      (after the cooldown and a rule check)

There is no terminal state: the watchdog keeps retrying for as long as it
runs. All waits go through a stop event so a shutdown request is honoured
at the next wait, but a step that has stopped the proxy always starts it
again, and rule mutations are never cut short.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from torwarden.audit import AuditEntry, AuditLogger
from torwarden.config import WatchdogConfig
from torwarden.errors import FirewallError, InvalidTransitionError, ProcessManagerError
from torwarden.firewall.engine import RedirectionRuleEngine, RuleSetStatus
from torwarden.firewall.rules import ProxyIdentity, RuleSet
from torwarden.health.checker import HealthChecker
from torwarden.health.models import HealthStatus
from torwarden.metrics import MetricsTextfile
from torwarden.proxy.process import ProcessManager
from torwarden.recovery.alerts import AlertEvent, AlertSink, CompositeAlertSink
from torwarden.recovery.models import FailureCounter, RecoveryAttempt

logger = logging.getLogger("torwarden.recovery.controller")

MAX_ATTEMPT_HISTORY = 50


class ControllerState(str, Enum):
    MONITORING = "monitoring"
    RECOVERING = "recovering"
    EMERGENCY = "emergency"


VALID_TRANSITIONS: dict[ControllerState, set[ControllerState]] = {
    ControllerState.MONITORING: {ControllerState.RECOVERING},
    ControllerState.RECOVERING: {ControllerState.MONITORING, ControllerState.EMERGENCY},
    ControllerState.EMERGENCY: {ControllerState.MONITORING},
}


class RecoveryController:
    """Single sequential control loop for one host."""

    def __init__(
        self,
        checker: HealthChecker,
        engine: RedirectionRuleEngine,
        process_manager: ProcessManager,
        identity: ProxyIdentity,
        config: WatchdogConfig | None = None,
        alerts: AlertSink | None = None,
        audit: AuditLogger | None = None,
        metrics: MetricsTextfile | None = None,
        clock: Callable[[], float] = time.time,
        wait: Callable[[float], bool] | None = None,
    ) -> None:
        self._checker = checker
        self._engine = engine
        self._pm = process_manager
        self._identity = identity
        self._config = config or WatchdogConfig()
        self._alerts = alerts or CompositeAlertSink()
        self._audit = audit
        self._metrics = metrics
        self._clock = clock
        self._stop_event = threading.Event()
        self._wait_fn = wait or self._stop_event.wait

        self.state = ControllerState.MONITORING
        self.counter = FailureCounter()
        self.ticks = 0
        self.last_status: HealthStatus | None = None
        self.last_rule_status: RuleSetStatus | None = None
        self.attempts: list[RecoveryAttempt] = []
        self.recoveries_total = 0
        self.recoveries_failed = 0
        self._repair_failures = 0
        self._last_restart: float | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def transition(self, new_state: ControllerState) -> None:
        """Move to a new state. Raises InvalidTransitionError."""
        valid = VALID_TRANSITIONS.get(self.state, set())
        if new_state not in valid:
            raise InvalidTransitionError(
                f"Cannot transition from {self.state.value} to {new_state.value}. "
                f"Valid: {', '.join(s.value for s in valid) or 'none'}"
            )
        logger.info("State %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request shutdown. The current step finishes first."""
        self._stop_event.set()

    def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if shutdown was requested."""
        if seconds <= 0:
            return self._stop_event.is_set()
        return bool(self._wait_fn(seconds)) or self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Run until stop() is called."""
        cfg = self._config.recovery
        logger.info(
            "Watchdog started",
            extra={"fields": {"interval": cfg.poll_interval, "threshold": cfg.restart_threshold}},
        )
        self._record(AuditEntry.lifecycle("watchdog_start", "Watchdog started"))
        self.apply_rules()

        try:
            while not self._stop_event.is_set():
                before = self.state
                self.tick()
                if before == ControllerState.MONITORING and self.state == ControllerState.MONITORING:
                    self._wait(cfg.poll_interval)
        finally:
            if cfg.teardown_on_exit:
                try:
                    self._engine.teardown()
                except FirewallError as exc:
                    logger.error("Teardown on exit failed: %s", exc)
            self._record(AuditEntry.lifecycle("watchdog_stop", "Watchdog stopped"))
            logger.info("Watchdog stopped")

    def tick(self) -> ControllerState:
        """Execute one step of the state machine and return the resulting state."""
        if self.state == ControllerState.MONITORING:
            self._monitor()
        elif self.state == ControllerState.RECOVERING:
            self._recover()
        elif self.state == ControllerState.EMERGENCY:
            self._emergency()
        self._write_metrics()
        return self.state

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def _monitor(self) -> None:
        cfg = self._config.recovery
        self.ticks += 1
        include_circuits = (self.ticks - 1) % max(1, cfg.circuit_check_every) == 0

        status = self._checker.poll(include_circuits=include_circuits, log_since=self._log_floor())
        self.last_status = status

        if status.is_healthy:
            previous = self.counter.reset()
            if previous:
                logger.info("Proxy healthy again after %d failed poll(s)", previous)
                self._record(AuditEntry.health_recovered(self.state.value, previous))
        else:
            reason = status.reason.value if status.reason else "unknown"
            count = self.counter.increment(reason)
            logger.warning(
                "Proxy %s (%d/%d)",
                status.describe(),
                count,
                cfg.restart_threshold,
                extra={"fields": {"reason": reason}},
            )
            self._record(
                AuditEntry.health_failure(self.state.value, reason, status.detail, count)
            )

        # Rule integrity is checked on schedule whatever the proxy health
        if self.ticks % max(1, cfg.rule_check_every) == 0:
            self.check_rules()

        if not status.is_healthy and self.counter.reached(cfg.restart_threshold):
            self.transition(ControllerState.RECOVERING)

    def _log_floor(self) -> float | None:
        """Last restart time while it is still inside the log window."""
        if self._last_restart is None:
            return None
        if self._clock() - self._last_restart > self._config.health.log_window:
            self._last_restart = None
        return self._last_restart

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def apply_rules(self) -> RuleSet | None:
        """Install the rule set; a failure is logged and reported as None."""
        proxy = self._config.proxy
        try:
            return self._engine.apply(proxy.trans_port, proxy.dns_port, self._identity)
        except FirewallError as exc:
            logger.error("Applying redirection rules failed: %s", exc)
            return None

    def check_rules(self) -> RuleSetStatus:
        """Verify the rule set and re-apply it if it has drifted."""
        status = self._engine.verify()
        self.last_rule_status = status
        if status.is_complete:
            self._repair_failures = 0
            return status

        logger.warning("Redirection rules incomplete: %s -- re-applying", status.summary())
        error = ""
        if self.apply_rules() is not None:
            after = self._engine.verify()
            self.last_rule_status = after
            if after.is_complete:
                self._repair_failures = 0
                logger.info("Redirection rules restored (%d rules)", after.rule_count)
                self._record(AuditEntry.rules_repaired(status.rule_count, after.rule_count))
                return after
            error = f"still incomplete after re-apply: {after.summary()}"
        else:
            error = "re-apply failed"

        self._repair_failures += 1
        self._record(AuditEntry.rules_repair_failed(error, self._repair_failures))
        threshold = max(1, self._config.recovery.rule_repair_alert_after)
        if self._repair_failures % threshold == 0:
            self._alert(
                AlertEvent.critical(
                    f"Redirection rules could not be restored ({self._repair_failures} attempts): {error}",
                    chain=self._engine.chain,
                )
            )
        return self.last_rule_status

    # ------------------------------------------------------------------
    # Recovering
    # ------------------------------------------------------------------

    def _recover(self) -> None:
        cfg = self._config.recovery
        name = self._config.proxy.container_name
        attempt = RecoveryAttempt(trigger=self.counter.last_reason or "unknown", started_at=self._clock())
        interrupted = False

        for cycle in range(1, cfg.max_restart_attempts + 1):
            if cycle > 1 and self._stop_event.is_set():
                interrupted = True
                break
            attempt.cycles = cycle
            logger.warning(
                "Restarting proxy (cycle %d/%d, trigger=%s)",
                cycle,
                cfg.max_restart_attempts,
                attempt.trigger,
            )
            healthy, interrupted = self._restart_cycle(name)
            if healthy:
                self._finish_recovery(attempt)
                return
            if interrupted:
                break

        if interrupted:
            attempt.finish("interrupted", "shutdown requested during recovery", self._clock())
            self._remember(attempt)
            self._record(AuditEntry.recovery(attempt))
            self.transition(ControllerState.MONITORING)
            return

        attempt.finish(
            "failure", f"proxy unhealthy after {attempt.cycles} restart cycle(s)", self._clock()
        )
        self._remember(attempt)
        self._record(AuditEntry.recovery(attempt))
        logger.critical("Recovery failed after %d restart cycle(s)", attempt.cycles)
        self._alert(
            AlertEvent.critical(
                f"Tor proxy failed to recover after {attempt.cycles} restart attempt(s); "
                f"entering emergency mode",
                trigger=attempt.trigger,
                container=name,
            )
        )
        self.transition(ControllerState.EMERGENCY)

    def _restart_cycle(self, name: str) -> tuple[bool, bool]:
        """Stop, wait, start, then poll. Returns (healthy, interrupted)."""
        cfg = self._config.recovery
        try:
            self._pm.stop(name)
        except ProcessManagerError as exc:
            logger.warning("Stopping %s failed: %s", name, exc)

        # The proxy is started again even if shutdown was requested meanwhile
        interrupted = self._wait(cfg.grace_period)
        restarted_at = self._clock()
        try:
            self._pm.start(name)
        except ProcessManagerError as exc:
            logger.error("Starting %s failed: %s", name, exc)
            return False, interrupted
        self._last_restart = restarted_at
        if interrupted:
            return False, True

        for i in range(cfg.recovery_polls):
            if self._wait(cfg.recovery_poll_interval):
                return False, True
            status = self._checker.poll(log_since=restarted_at)
            self.last_status = status
            if status.is_healthy:
                logger.info("Proxy healthy after restart (poll %d/%d)", i + 1, cfg.recovery_polls)
                return True, False
            logger.debug("Waiting for proxy: %s", status.describe())
        return False, False

    def _finish_recovery(self, attempt: RecoveryAttempt) -> None:
        if self.apply_rules() is None:
            logger.warning("Rules could not be re-applied after recovery; next rule check will retry")
        previous = self.counter.reset()
        attempt.finish("success", f"recovered after {attempt.cycles} restart cycle(s)", self._clock())
        self._remember(attempt)
        self._record(AuditEntry.recovery(attempt))
        logger.info("Recovery succeeded in %.1fs", attempt.duration_s)
        self._alert(
            AlertEvent.info(
                f"Tor proxy recovered after {attempt.cycles} restart(s)",
                trigger=attempt.trigger,
                failed_polls=previous,
                duration_s=round(attempt.duration_s, 1),
            )
        )
        self.transition(ControllerState.MONITORING)

    def _remember(self, attempt: RecoveryAttempt) -> None:
        self.recoveries_total += 1
        if attempt.outcome == "failure":
            self.recoveries_failed += 1
        self.attempts.append(attempt)
        if len(self.attempts) > MAX_ATTEMPT_HISTORY:
            self.attempts = self.attempts[-MAX_ATTEMPT_HISTORY:]

    # ------------------------------------------------------------------
    # Emergency
    # ------------------------------------------------------------------

    def _emergency(self) -> None:
        cooldown = self._config.recovery.emergency_cooldown
        logger.critical("Emergency mode: waiting %.0fs before resuming monitoring", cooldown)
        self._record(AuditEntry.emergency("Recovery exhausted", cooldown))
        self._wait(cooldown)
        self.check_rules()
        self.transition(ControllerState.MONITORING)

    # ------------------------------------------------------------------
    # Side channels
    # ------------------------------------------------------------------

    def _alert(self, event: AlertEvent) -> None:
        delivered = False
        try:
            delivered = self._alerts.send(event)
        except Exception as exc:
            logger.error("Alert delivery raised: %s", exc)
        if not delivered:
            logger.warning("Alert not delivered: %s", event.message)
        self._record(AuditEntry.alert(event.severity, event.message, delivered))

    def _record(self, entry: AuditEntry) -> None:
        if self._audit is not None:
            self._audit.log(entry)

    def snapshot(self) -> dict[str, Any]:
        """Current controller view, for metrics and status output."""
        status = self.last_status
        rules = self.last_rule_status
        return {
            "state": self.state.value,
            "failure_count": self.counter.value,
            "health": status.state.value if status else None,
            "health_reason": status.reason.value if status and status.reason else None,
            "circuits": status.circuits if status else None,
            "last_poll": status.timestamp if status else None,
            "rule_count": rules.rule_count if rules else None,
            "rules_complete": rules.is_complete if rules else None,
            "recoveries_total": self.recoveries_total,
            "recoveries_failed": self.recoveries_failed,
            "ticks": self.ticks,
        }

    def _write_metrics(self) -> None:
        if self._metrics is None:
            return
        try:
            self._metrics.write(self.snapshot())
        except OSError as exc:
            logger.warning("Cannot write metrics textfile: %s", exc)
