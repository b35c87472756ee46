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
"""Recovery state machine and alert delivery."""

from torwarden.recovery.alerts import AlertEvent, AlertSink, build_alert_sink
from torwarden.recovery.controller import ControllerState, RecoveryController
from torwarden.recovery.models import FailureCounter, RecoveryAttempt

__all__ = [
    "AlertEvent",
    "AlertSink",
    "ControllerState",
    "FailureCounter",
    "RecoveryAttempt",
    "RecoveryController",
    "build_alert_sink",
]
