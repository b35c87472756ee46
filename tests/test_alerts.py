# Torwarden
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for alert events and sinks."""

import json
import logging
from unittest.mock import MagicMock, patch

import httpx
import pytest

from torwarden.config import AlertConfig
from torwarden.recovery.alerts import (
    AlertEvent,
    CompositeAlertSink,
    EmailAlertSink,
    SyslogAlertSink,
    WebhookAlertSink,
    build_alert_sink,
)


class TestAlertEvent:
    def test_factories(self):
        assert AlertEvent.critical("down").severity == "critical"
        assert AlertEvent.info("up", cycles=1).context == {"cycles": 1}

    def test_unknown_severity(self):
        with pytest.raises(ValueError):
            AlertEvent(severity="panic", message="x")

    def test_frozen(self):
        event = AlertEvent.warning("x")
        with pytest.raises(AttributeError):
            event.message = "y"

    def test_to_dict(self):
        data = AlertEvent.critical("down", container="tor-proxy").to_dict()
        assert data["severity"] == "critical"
        assert data["context"] == {"container": "tor-proxy"}
        assert "host" in data


class TestWebhookSink:
    def test_posts_json(self):
        received = {}

        def handler(request: httpx.Request) -> httpx.Response:
            received["body"] = json.loads(request.content)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        sink = WebhookAlertSink("https://hooks.example/alert", client=client)
        assert sink.send(AlertEvent.critical("proxy down")) is True
        assert received["body"]["message"] == "proxy down"

    def test_error_status_returns_false(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        assert WebhookAlertSink("https://hooks.example", client=client).send(AlertEvent.info("x")) is False

    def test_transport_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        assert WebhookAlertSink("https://hooks.example", client=client).send(AlertEvent.info("x")) is False


class TestEmailSink:
    def test_sends_message(self):
        with patch("torwarden.recovery.alerts.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            sink = EmailAlertSink("ops@example.org", smtp_host="mail.example.org")
            assert sink.send(AlertEvent.critical("exit node down", attempts=3)) is True
            msg = server.send_message.call_args[0][0]
            assert msg["To"] == "ops@example.org"
            assert msg["Subject"] == "Tor Exit Node Alert [CRITICAL]"
            assert "attempts: 3" in msg.get_payload()

    def test_smtp_failure_returns_false(self):
        with patch("torwarden.recovery.alerts.smtplib.SMTP", side_effect=OSError("no route")):
            assert EmailAlertSink("ops@example.org").send(AlertEvent.info("x")) is False


class TestSyslogSink:
    def test_emits_at_mapped_level(self):
        sink = SyslogAlertSink(tag="tor-watchdog")
        handler = MagicMock()
        sink._handler = handler
        assert sink.send(AlertEvent.critical("down")) is True
        record = handler.emit.call_args[0][0]
        assert record.levelno == logging.CRITICAL
        assert record.getMessage() == "down"

    def test_unreachable_syslog_returns_false(self, tmp_path):
        sink = SyslogAlertSink(address=str(tmp_path / "missing.sock"))
        assert sink.send(AlertEvent.critical("down")) is False


class TestComposite:
    def test_any_success_is_success(self, alert_sink):
        failing = MagicMock()
        failing.send.return_value = False
        failing.sink_name = "broken"
        composite = CompositeAlertSink([failing, alert_sink])
        assert composite.send(AlertEvent.info("x")) is True
        assert len(alert_sink.events) == 1

    def test_raising_sink_is_contained(self, alert_sink):
        raising = MagicMock()
        raising.send.side_effect = RuntimeError("boom")
        raising.sink_name = "raising"
        assert CompositeAlertSink([raising, alert_sink]).send(AlertEvent.info("x")) is True

    def test_empty_composite_delivers_nothing(self):
        assert CompositeAlertSink().send(AlertEvent.info("x")) is False


class TestBuildAlertSink:
    def test_default_is_syslog_only(self):
        sink = build_alert_sink(AlertConfig())
        assert sink.sink_name == "syslog"

    def test_all_sinks(self):
        cfg = AlertConfig(email_to="ops@example.org", webhook_url="https://hooks.example")
        assert build_alert_sink(cfg).sink_name == "syslog+email+webhook"
