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
"""Watchdog audit log.

Every health failure, recovery attempt, rule repair and alert is
appended here. The core never rewrites or truncates the file; it is the
authoritative history of what the watchdog did and why.

Log format: JSON Lines (one JSON object per line) for easy parsing.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, TextIO

logger = logging.getLogger("torwarden.audit")

EVENT_TYPES = frozenset(
    {
        "watchdog_start",
        "watchdog_stop",
        "health_failure",
        "health_recovered",
        "recovery",
        "emergency",
        "rules_repaired",
        "rules_repair_failed",
        "alert",
    }
)


@dataclass
class AuditEntry:
    """A single auditable watchdog event."""

    timestamp: float
    event_type: str
    state: str = ""  # Controller state when the event was recorded
    reason: str = ""  # Health reason or trigger
    outcome: str = ""  # "success", "failure", "warning", ...
    message: str = ""
    duration_s: float = 0.0
    failure_count: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), separators=(",", ":"), default=str)

    @classmethod
    def health_failure(cls, state: str, reason: str, message: str, failure_count: int) -> AuditEntry:
        """A non-healthy poll."""
        return cls(
            timestamp=time.time(),
            event_type="health_failure",
            state=state,
            reason=reason,
            outcome="failure",
            message=message,
            failure_count=failure_count,
        )

    @classmethod
    def health_recovered(cls, state: str, previous_failures: int) -> AuditEntry:
        """A healthy poll after one or more failures."""
        return cls(
            timestamp=time.time(),
            event_type="health_recovered",
            state=state,
            outcome="success",
            message="Proxy healthy again",
            failure_count=previous_failures,
        )

    @classmethod
    def recovery(cls, attempt: Any) -> AuditEntry:
        """A completed recovery attempt (see RecoveryAttempt)."""
        return cls(
            timestamp=attempt.started_at,
            event_type="recovery",
            state="recovering",
            reason=attempt.trigger,
            outcome=attempt.outcome,
            message=attempt.detail,
            duration_s=round(attempt.duration_s, 3),
            details={"cycles": attempt.cycles},
        )

    @classmethod
    def emergency(cls, message: str, cooldown_s: float) -> AuditEntry:
        return cls(
            timestamp=time.time(),
            event_type="emergency",
            state="emergency",
            outcome="failure",
            message=message,
            details={"cooldown_s": cooldown_s},
        )

    @classmethod
    def rules_repaired(cls, rule_count_before: int, rule_count_after: int) -> AuditEntry:
        return cls(
            timestamp=time.time(),
            event_type="rules_repaired",
            outcome="success",
            message="Redirection rules re-applied",
            details={"before": rule_count_before, "after": rule_count_after},
        )

    @classmethod
    def rules_repair_failed(cls, error: str, consecutive: int) -> AuditEntry:
        return cls(
            timestamp=time.time(),
            event_type="rules_repair_failed",
            outcome="failure",
            message=error,
            failure_count=consecutive,
        )

    @classmethod
    def alert(cls, severity: str, message: str, delivered: bool) -> AuditEntry:
        return cls(
            timestamp=time.time(),
            event_type="alert",
            reason=severity,
            outcome="delivered" if delivered else "undelivered",
            message=message,
        )

    @classmethod
    def lifecycle(cls, event_type: str, message: str = "") -> AuditEntry:
        """Daemon start/stop marker."""
        return cls(timestamp=time.time(), event_type=event_type, message=message)


class AuditLogger:
    """Thread-safe audit logger that appends JSON Lines to a host file."""

    def __init__(self, log_path: str | Path) -> None:
        self._path = Path(log_path)
        self._lock = threading.Lock()
        self._file: TextIO | None = None
        self._entry_count = 0

    def _ensure_open(self) -> TextIO:
        """Lazily open the log file."""
        if self._file is None or self._file.closed:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self._path, "a", encoding="utf-8")
        return self._file

    def log(self, entry: AuditEntry) -> None:
        """Write an audit entry to the log file (thread-safe)."""
        line = entry.to_json() + "\n"
        with self._lock:
            try:
                f = self._ensure_open()
                f.write(line)
                f.flush()
                self._entry_count += 1
            except OSError as exc:
                logger.error("Failed to write audit entry: %s", exc)

    def close(self) -> None:
        """Close the log file."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
                self._file = None

    @property
    def entry_count(self) -> int:
        """Number of entries written in this session."""
        return self._entry_count

    @property
    def path(self) -> Path:
        return self._path

    def read_recent(self, n: int = 50) -> list[AuditEntry]:
        """Read the N most recent audit entries."""
        if not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        try:
            lines = self._path.read_text(encoding="utf-8").strip().splitlines()
            for line in lines[-n:]:
                try:
                    data = json.loads(line)
                    entries.append(AuditEntry(**data))
                except (json.JSONDecodeError, TypeError):
                    continue
        except OSError as exc:
            logger.error("Failed to read audit log: %s", exc)

        return entries

    def get_stats(self) -> dict:
        """Summary counts over the most recent entries."""
        entries = self.read_recent(1000)
        recoveries = [e for e in entries if e.event_type == "recovery"]
        last_recovery = recoveries[-1] if recoveries else None
        return {
            "total_events": len(entries),
            "health_failures": sum(1 for e in entries if e.event_type == "health_failure"),
            "recoveries": len(recoveries),
            "recoveries_succeeded": sum(1 for e in recoveries if e.outcome == "success"),
            "emergencies": sum(1 for e in entries if e.event_type == "emergency"),
            "rule_repairs": sum(1 for e in entries if e.event_type == "rules_repaired"),
            "alerts": sum(1 for e in entries if e.event_type == "alert"),
            "last_recovery_at": last_recovery.timestamp if last_recovery else None,
        }

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
