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
"""Health verdict types."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class HealthReason(str, Enum):
    """Why a poll was not healthy."""

    PROCESS_DOWN = "process-down"
    PORT_UNREACHABLE = "port-unreachable"
    BOOTSTRAP_INCOMPLETE = "bootstrap-incomplete"
    LOW_CIRCUIT_COUNT = "low-circuit-count"
    CONTROL_UNREACHABLE = "control-unreachable"
    CRITICAL_LOG_ERROR = "critical-log-error"
    LOG_WARNING = "log-warning"
    LOGS_UNREADABLE = "logs-unreadable"


@dataclass(frozen=True)
class HealthStatus:
    """Result of one poll. Produced fresh each time, never mutated."""

    state: HealthState
    reason: HealthReason | None = None
    detail: str = ""
    warnings: tuple[HealthReason, ...] = ()
    circuits: int | None = None
    bootstrap: int | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_healthy(self) -> bool:
        return self.state == HealthState.HEALTHY

    @classmethod
    def healthy(cls, circuits: int | None = None, bootstrap: int | None = None) -> HealthStatus:
        return cls(state=HealthState.HEALTHY, circuits=circuits, bootstrap=bootstrap)

    @classmethod
    def failed(cls, reason: HealthReason, detail: str = "", **kwargs: Any) -> HealthStatus:
        return cls(state=HealthState.FAILED, reason=reason, detail=detail, **kwargs)

    def describe(self) -> str:
        if self.state == HealthState.HEALTHY:
            return "healthy"
        label = self.reason.value if self.reason else "unknown"
        return f"{self.state.value} ({label}){': ' + self.detail if self.detail else ''}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
            "warnings": [w.value for w in self.warnings],
            "circuits": self.circuits,
            "bootstrap": self.bootstrap,
            "timestamp": self.timestamp,
        }
