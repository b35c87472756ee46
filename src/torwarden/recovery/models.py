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
"""Failure counter and recovery attempt records."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class FailureCounter:
    """Consecutive non-healthy polls.

    Owned by the controller. Only ever incremented by one, or reset to zero.
    """

    value: int = 0
    last_reason: str = ""

    def increment(self, reason: str = "") -> int:
        self.value += 1
        self.last_reason = reason
        return self.value

    def reset(self) -> int:
        """Zero the counter and return its previous value."""
        previous = self.value
        self.value = 0
        self.last_reason = ""
        return previous

    def reached(self, threshold: int) -> bool:
        return self.value >= threshold


@dataclass
class RecoveryAttempt:
    """One pass through the Recovering state."""

    trigger: str
    started_at: float = field(default_factory=time.time)
    outcome: str = "pending"  # "success", "failure", "interrupted"
    duration_s: float = 0.0
    cycles: int = 0
    detail: str = ""

    def finish(self, outcome: str, detail: str = "", now: float | None = None) -> None:
        self.outcome = outcome
        self.detail = detail
        self.duration_s = max(0.0, (now if now is not None else time.time()) - self.started_at)

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
