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
"""Exception hierarchy for collaborator failures.

Every failure of an external collaborator (packet filter, container
runtime, control port) is raised as one of these so callers can catch
them at the call site and turn them into a health outcome.
"""

from __future__ import annotations


class TorwardenError(Exception):
    """Base class for all Torwarden errors."""


class FirewallError(TorwardenError):
    """A packet-filter command failed or timed out."""

    def __init__(self, message: str, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr


class ProcessManagerError(TorwardenError):
    """The container runtime could not complete a lifecycle operation."""


class ControlPortError(TorwardenError):
    """The proxy control port refused, timed out, or answered with an error."""


class InvalidTransitionError(ValueError):
    """Raised when an invalid controller state transition is attempted."""
