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
"""Alert delivery.

Alerts are best-effort: a sink that cannot deliver logs the failure and
returns False. Nothing here ever raises into the control loop.
"""

from __future__ import annotations

import logging
import logging.handlers
import smtplib
import socket
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from typing import Any

import httpx

from torwarden.config import AlertConfig

logger = logging.getLogger("torwarden.recovery.alerts")

SEVERITIES = ("info", "warning", "critical")

_SYSLOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "critical": logging.CRITICAL,
}


@dataclass(frozen=True)
class AlertEvent:
    """A single operator alert."""

    severity: str
    message: str
    timestamp: float = field(default_factory=time.time)
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.severity not in SEVERITIES:
            raise ValueError(f"Unknown severity {self.severity!r}")

    @classmethod
    def info(cls, message: str, **context: Any) -> AlertEvent:
        return cls(severity="info", message=message, context=context)

    @classmethod
    def warning(cls, message: str, **context: Any) -> AlertEvent:
        return cls(severity="warning", message=message, context=context)

    @classmethod
    def critical(cls, message: str, **context: Any) -> AlertEvent:
        return cls(severity="critical", message=message, context=context)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "message": self.message,
            "timestamp": self.timestamp,
            "context": self.context,
            "host": socket.gethostname(),
        }


class AlertSink(ABC):
    """Abstract base class for alert delivery."""

    @abstractmethod
    def send(self, event: AlertEvent) -> bool:
        """Deliver an alert. Returns True on success; never raises."""

    @property
    @abstractmethod
    def sink_name(self) -> str:
        """Human-readable sink name."""


class _SysLogHandler(logging.handlers.SysLogHandler):
    """SysLogHandler that lets delivery errors propagate to the caller."""

    def handleError(self, record: logging.LogRecord) -> None:
        raise


class SyslogAlertSink(AlertSink):
    """Syslog, daemon facility. Critical alerts land at daemon.crit."""

    def __init__(self, address: str = "/dev/log", tag: str = "tor-watchdog"):
        self._address = address
        self._tag = tag
        self._handler: logging.handlers.SysLogHandler | None = None

    @property
    def sink_name(self) -> str:
        return "syslog"

    def _get_handler(self) -> logging.handlers.SysLogHandler:
        if self._handler is None:
            self._handler = _SysLogHandler(
                address=self._address,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON,
            )
            self._handler.ident = f"{self._tag}: "
        return self._handler

    def send(self, event: AlertEvent) -> bool:
        try:
            handler = self._get_handler()
            record = logging.LogRecord(
                name=self._tag,
                level=_SYSLOG_LEVELS[event.severity],
                pathname=__file__,
                lineno=0,
                msg=event.message,
                args=None,
                exc_info=None,
            )
            handler.emit(record)
            return True
        except Exception as e:
            logger.error("Syslog alert failed: %s", e)
            self._handler = None
            return False


class EmailAlertSink(AlertSink):
    """Plain-text SMTP alert to a single operator address."""

    def __init__(
        self,
        to_address: str,
        from_address: str = "torwarden@localhost",
        smtp_host: str = "localhost",
        smtp_port: int = 25,
        subject: str = "Tor Exit Node Alert",
    ):
        self._to_address = to_address
        self._from_address = from_address
        self._smtp_host = smtp_host
        self._smtp_port = smtp_port
        self._subject = subject

    @property
    def sink_name(self) -> str:
        return "email"

    def send(self, event: AlertEvent) -> bool:
        try:
            body = event.message
            if event.context:
                body += "\n\n" + "\n".join(f"{k}: {v}" for k, v in event.context.items())
            msg = MIMEText(body, "plain")
            msg["From"] = self._from_address
            msg["To"] = self._to_address
            msg["Subject"] = f"{self._subject} [{event.severity.upper()}]"

            with smtplib.SMTP(self._smtp_host, self._smtp_port, timeout=10) as server:
                server.send_message(msg)

            logger.info("Alert email sent to %s", self._to_address)
            return True
        except Exception as e:
            logger.error("Alert email failed: %s", e)
            return False


class WebhookAlertSink(AlertSink):
    """POSTs the alert as JSON to a configured URL."""

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        self._url = url
        self._timeout = timeout
        self._client = client

    @property
    def sink_name(self) -> str:
        return "webhook"

    def send(self, event: AlertEvent) -> bool:
        try:
            if self._client is not None:
                resp = self._client.post(self._url, json=event.to_dict(), timeout=self._timeout)
            else:
                resp = httpx.post(self._url, json=event.to_dict(), timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.error("Webhook alert failed: %s", e)
            return False
        if resp.is_success:
            logger.info("Webhook alert delivered to %s", self._url)
            return True
        logger.warning("Webhook returned %d", resp.status_code)
        return False


class CompositeAlertSink(AlertSink):
    """Fan an alert out to several sinks. Succeeds if any sink succeeds."""

    def __init__(self, sinks: list[AlertSink] | None = None):
        self._sinks = list(sinks or [])

    @property
    def sink_name(self) -> str:
        return "+".join(s.sink_name for s in self._sinks) or "none"

    @property
    def sinks(self) -> list[AlertSink]:
        return list(self._sinks)

    def send(self, event: AlertEvent) -> bool:
        delivered = False
        for sink in self._sinks:
            try:
                delivered = sink.send(event) or delivered
            except Exception as e:
                logger.error("Alert sink %s raised: %s", sink.sink_name, e)
        return delivered


def build_alert_sink(config: AlertConfig) -> CompositeAlertSink:
    """Assemble the configured sinks."""
    sinks: list[AlertSink] = []
    if config.syslog:
        sinks.append(SyslogAlertSink(address=config.syslog_address, tag=config.syslog_tag))
    if config.email_to:
        sinks.append(
            EmailAlertSink(
                to_address=config.email_to,
                from_address=config.email_from,
                smtp_host=config.smtp_host,
                smtp_port=config.smtp_port,
                subject=config.email_subject,
            )
        )
    if config.webhook_url:
        sinks.append(WebhookAlertSink(config.webhook_url, timeout=config.webhook_timeout))
    return CompositeAlertSink(sinks)
