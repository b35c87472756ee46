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
"""Prometheus textfile export.

node_exporter's textfile collector picks up ``*.prom`` files from a
directory. The watchdog rewrites its file after every tick; the write
goes to a temp file first and is renamed into place so the collector
never reads a partial file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("torwarden.metrics")

PREFIX = "torwarden"

_STATES = ("monitoring", "recovering", "emergency")
_HEALTH = ("healthy", "degraded", "failed")


def _gauge(lines: list[str], name: str, help_text: str, value: Any, kind: str = "gauge") -> None:
    if value is None:
        return
    if isinstance(value, bool):
        value = int(value)
    lines.append(f"# HELP {PREFIX}_{name} {help_text}")
    lines.append(f"# TYPE {PREFIX}_{name} {kind}")
    lines.append(f"{PREFIX}_{name} {value}")


def to_prometheus(snapshot: dict[str, Any]) -> str:
    """Render a controller snapshot in Prometheus exposition format."""
    lines: list[str] = []

    lines.append(f"# HELP {PREFIX}_state Current watchdog state (1 = active)")
    lines.append(f"# TYPE {PREFIX}_state gauge")
    for state in _STATES:
        active = 1 if snapshot.get("state") == state else 0
        lines.append(f'{PREFIX}_state{{state="{state}"}} {active}')

    health = snapshot.get("health")
    if health is not None:
        lines.append(f"# HELP {PREFIX}_health Last poll verdict (1 = current)")
        lines.append(f"# TYPE {PREFIX}_health gauge")
        for verdict in _HEALTH:
            lines.append(f'{PREFIX}_health{{verdict="{verdict}"}} {1 if health == verdict else 0}')

    _gauge(lines, "failure_count", "Consecutive non-healthy polls", snapshot.get("failure_count"))
    _gauge(lines, "circuits_built", "Built circuits at the last circuit check", snapshot.get("circuits"))
    _gauge(lines, "rule_count", "Redirection rules found at the last verification", snapshot.get("rule_count"))
    _gauge(lines, "rules_complete", "Rule set complete at the last verification", snapshot.get("rules_complete"))
    _gauge(lines, "recoveries_total", "Recovery attempts since start", snapshot.get("recoveries_total"), "counter")
    _gauge(lines, "recoveries_failed_total", "Recovery attempts that failed", snapshot.get("recoveries_failed"), "counter")
    _gauge(lines, "last_poll_timestamp_seconds", "Unix time of the last poll", snapshot.get("last_poll"))
    return "\n".join(lines) + "\n"


class MetricsTextfile:
    """Writes the snapshot to a .prom file atomically."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, snapshot: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f".{self._path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(to_prometheus(snapshot), encoding="utf-8")
            os.replace(tmp, self._path)
        finally:
            tmp.unlink(missing_ok=True)
