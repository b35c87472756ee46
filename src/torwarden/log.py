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
"""
Service logging for the watchdog daemon.

Every poll, recovery step and rule repair is written to a rotating log
file that operators can tail, plus stderr for journald.

LOG LOCATION:
    /var/log/torwarden/watchdog.log      (current)
    /var/log/torwarden/watchdog.log.1    (previous rotation)

FORMAT:
    2026-02-09T17:30:45.123Z | WARN  | health.checker | Proxy degraded | reason="low-circuit-count"

Structured fields are passed through ``extra={"fields": {...}}``.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path

# =============================================================================
# CONSTANTS
# =============================================================================

MAX_LOG_FILE_BYTES = 10 * 1024 * 1024  # 10 MB per file
LOG_BACKUP_COUNT = 5
ROOT_LOGGER = "torwarden"

_LEVEL_NAMES = {"WARNING": "WARN", "CRITICAL": "CRIT"}


# =============================================================================
# FORMATTER
# =============================================================================


class WatchdogLogFormatter(logging.Formatter):
    """
    Format: TIMESTAMP | LEVEL | COMPONENT | MESSAGE | {structured fields}

    COMPONENT is the logger name without the package prefix.
    """

    LEVEL_WIDTH = 5
    COMPONENT_WIDTH = 18

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.fromtimestamp(record.created, tz=timezone.utc)
        ts = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

        level = _LEVEL_NAMES.get(record.levelname, record.levelname)
        component = record.name
        if component.startswith(ROOT_LOGGER + "."):
            component = component[len(ROOT_LOGGER) + 1 :]
        message = record.getMessage()

        fields = getattr(record, "fields", None) or {}
        field_str = ""
        if fields:
            parts = []
            for k, v in fields.items():
                if isinstance(v, str):
                    parts.append(f'{k}="{v}"')
                elif isinstance(v, float):
                    parts.append(f"{k}={v:.3f}")
                else:
                    parts.append(f"{k}={v}")
            field_str = " | " + " ".join(parts)

        line = (
            f"{ts} | {level:<{self.LEVEL_WIDTH}} | "
            f"{component:<{self.COMPONENT_WIDTH}} | {message}{field_str}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# SETUP
# =============================================================================


def configure_logging(level: str = "INFO", log_file: str | Path | None = None) -> logging.Logger:
    """Attach stderr and (optionally) rotating-file handlers to the package logger.

    Safe to call more than once; previously installed handlers are replaced.
    A log file that cannot be opened is reported on stderr and skipped.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.propagate = False

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = WatchdogLogFormatter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                str(path),
                maxBytes=MAX_LOG_FILE_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as exc:
            root.warning("Cannot open log file %s: %s -- logging to stderr only", path, exc)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    return root
