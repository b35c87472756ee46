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
"""Interfaces to the onion-routing proxy: container lifecycle, port probes, control port."""

from torwarden.proxy.control import ControlPortClient
from torwarden.proxy.probe import tcp_connect
from torwarden.proxy.process import DockerProcessManager, ProcessManager

__all__ = ["ControlPortClient", "DockerProcessManager", "ProcessManager", "tcp_connect"]
