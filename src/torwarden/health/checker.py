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
"""Layered proxy health poll.

Layers, in order:

    1. process liveness          FAILED(process-down)
    2. SOCKS and DNS ports        FAILED(port-unreachable)
    3. bootstrap progress         warning bootstrap-incomplete
    4. built circuit count        warning low-circuit-count / control-unreachable
    5. log phrases                FAILED(critical-log-error) or warning log-warning

A FAILED layer ends the poll. Warnings accumulate and turn the verdict
into DEGRADED. The checker never changes anything outside itself, and
no collaborator exception escapes ``poll``.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable

from torwarden.config import HealthConfig, ProxyConfig
from torwarden.errors import ControlPortError
from torwarden.health.models import HealthReason, HealthState, HealthStatus
from torwarden.health.patterns import LogPatternMatcher
from torwarden.proxy.control import ControlPortClient
from torwarden.proxy.probe import tcp_connect
from torwarden.proxy.process import ProcessManager

logger = logging.getLogger("torwarden.health.checker")

_BOOTSTRAPPED_RE = re.compile(r"Bootstrapped (\d+)%")


class HealthChecker:
    """Poll the proxy and classify its health."""

    def __init__(
        self,
        process_manager: ProcessManager,
        proxy: ProxyConfig | None = None,
        config: HealthConfig | None = None,
        control: ControlPortClient | None = None,
        probe: Callable[[str, int, float], bool] = tcp_connect,
        matcher: LogPatternMatcher | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pm = process_manager
        self._proxy = proxy or ProxyConfig()
        self._config = config or HealthConfig()
        self._control = control
        self._probe = probe
        self._matcher = matcher or LogPatternMatcher.from_config(
            self._config.critical_patterns, self._config.warning_patterns
        )
        self._clock = clock

    @property
    def matcher(self) -> LogPatternMatcher:
        return self._matcher

    @matcher.setter
    def matcher(self, value: LogPatternMatcher) -> None:
        self._matcher = value

    def poll(self, include_circuits: bool = True, log_since: float | None = None) -> HealthStatus:
        """Run every layer and return a fresh HealthStatus.

        Args:
            include_circuits: Query the control port for the built circuit count.
            log_since: Ignore log lines older than this timestamp (e.g. a restart).
        """
        name = self._proxy.container_name

        # 1. Process liveness
        try:
            running = self._pm.is_running(name)
            runtime_health = self._pm.health(name) if running else None
        except Exception as exc:
            logger.warning("Process check failed: %s", exc)
            return HealthStatus.failed(HealthReason.PROCESS_DOWN, f"process check failed: {exc}")
        if not running:
            return HealthStatus.failed(HealthReason.PROCESS_DOWN, f"{name} is not running")
        if runtime_health == "unhealthy":
            return HealthStatus.failed(
                HealthReason.PROCESS_DOWN, f"{name} reports container health 'unhealthy'"
            )

        # 2. Ports
        host = self._proxy.host
        timeout = self._config.probe_timeout
        for label, port in (("SOCKS", self._proxy.socks_port), ("DNS", self._proxy.dns_port)):
            if not self._safe_probe(host, port, timeout):
                return HealthStatus.failed(
                    HealthReason.PORT_UNREACHABLE, f"{label} port {host}:{port} not accepting"
                )

        warnings: list[HealthReason] = []
        notes: list[str] = []

        # 3. Bootstrap
        bootstrap = self._bootstrap_progress(name)
        if bootstrap is None or bootstrap < 100:
            warnings.append(HealthReason.BOOTSTRAP_INCOMPLETE)
            notes.append(
                "bootstrap progress unknown" if bootstrap is None else f"bootstrap at {bootstrap}%"
            )

        # 4. Circuits
        circuits: int | None = None
        if include_circuits and self._control is not None:
            try:
                circuits = self._control.count_built_circuits()
            except (ControlPortError, OSError) as exc:
                warnings.append(HealthReason.CONTROL_UNREACHABLE)
                notes.append(f"control port: {exc}")
            else:
                if circuits < self._config.min_circuits:
                    warnings.append(HealthReason.LOW_CIRCUIT_COUNT)
                    notes.append(f"{circuits} built circuits (< {self._config.min_circuits})")

        # 5. Critical log scan
        since = self._clock() - self._config.log_window
        if log_since is not None:
            since = max(since, log_since)
        try:
            lines = self._pm.recent_logs(name, since=since)
        except Exception as exc:
            logger.warning("Cannot read proxy logs: %s", exc)
            warnings.append(HealthReason.LOGS_UNREADABLE)
            notes.append(f"logs unreadable: {exc}")
        else:
            matches = self._matcher.scan(lines)
            critical = [m for m in matches if m.is_critical]
            if critical:
                first = critical[0]
                return HealthStatus(
                    state=HealthState.FAILED,
                    reason=HealthReason.CRITICAL_LOG_ERROR,
                    detail=f"{len(critical)} critical log line(s), first: {first.line.strip()[:200]}",
                    warnings=tuple(warnings),
                    circuits=circuits,
                    bootstrap=bootstrap,
                )
            if matches:
                warnings.append(HealthReason.LOG_WARNING)
                notes.append(f"{len(matches)} warning log line(s), first: {matches[0].line.strip()[:200]}")

        if warnings:
            return HealthStatus(
                state=HealthState.DEGRADED,
                reason=warnings[0],
                detail="; ".join(notes),
                warnings=tuple(warnings),
                circuits=circuits,
                bootstrap=bootstrap,
            )
        return HealthStatus.healthy(circuits=circuits, bootstrap=bootstrap)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _safe_probe(self, host: str, port: int, timeout: float) -> bool:
        try:
            return bool(self._probe(host, port, timeout))
        except Exception as exc:
            logger.warning("Probe %s:%d raised: %s", host, port, exc)
            return False

    def _bootstrap_progress(self, name: str) -> int | None:
        """Progress from the control port, else the latest log marker."""
        if self._control is not None:
            try:
                return self._control.bootstrap_progress()
            except (ControlPortError, OSError) as exc:
                logger.debug("Bootstrap via control port failed: %s", exc)

        try:
            lines = self._pm.recent_logs(name, tail=self._config.bootstrap_tail)
        except Exception as exc:
            logger.debug("Bootstrap via logs failed: %s", exc)
            return None
        for line in reversed(lines):
            match = _BOOTSTRAPPED_RE.search(line)
            if match:
                return int(match.group(1))
        return None
