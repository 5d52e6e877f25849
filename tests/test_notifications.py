import json
from datetime import datetime

import httpx
import pytest

from devicemon.config import Settings
from devicemon.notifications import (
    AlertNotification,
    NotificationDispatcher,
    NotificationOptions,
    build_email,
    parse_recipients,
    send_email_notification,
    send_webhook_notification,
)

NOTIFICATION = AlertNotification(
    threshold_name="Core offline",
    condition="Device Offline",
    severity="CRITICAL",
    message='Device "core-sw" in system "DC1" is now OFFLINE',
    timestamp=datetime(2025, 6, 1, 12, 0, 0),
    device_name="core-sw",
    system_name="DC1",
)


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_parse_recipients():
    assert parse_recipients(" a@x.io, ,b@y.io ,") == ["a@x.io", "b@y.io"]
    assert parse_recipients(None) == []
    assert parse_recipients("") == []


def test_webhook_payload(settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    assert send_webhook_notification("https://hooks.example.com/x", NOTIFICATION, settings, _client(handler))

    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://hooks.example.com/x"
    assert json.loads(request.content) == {
        "alert": {
            "threshold": "Core offline",
            "condition": "Device Offline",
            "severity": "CRITICAL",
            "message": 'Device "core-sw" in system "DC1" is now OFFLINE',
            "device": "core-sw",
            "system": "DC1",
            "timestamp": "2025-06-01T12:00:00",
        }
    }


def test_webhook_non_2xx_is_failure(settings):
    client = _client(lambda request: httpx.Response(500))
    assert send_webhook_notification("https://hooks.example.com/x", NOTIFICATION, settings, client) is False


def test_webhook_transport_error_is_failure(settings):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    assert send_webhook_notification("https://hooks.example.com/x", NOTIFICATION, settings, _client(handler)) is False


def test_email_requires_master_switch(settings):
    assert send_email_notification(["ops@example.com"], NOTIFICATION, settings) is False

    enabled = Settings(_env_file=None, alert_email_enabled=True)
    assert send_email_notification(["ops@example.com"], NOTIFICATION, enabled) is True
    assert send_email_notification([], NOTIFICATION, enabled) is False


def test_email_content():
    subject, body = build_email(NOTIFICATION)
    assert subject.startswith("[CRITICAL] Core offline:")
    assert "Device: core-sw" in body
    assert "System: DC1" in body


def test_dispatcher_runs_enabled_channels_independently():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    settings = Settings(_env_file=None, alert_email_enabled=True)
    dispatcher = NotificationDispatcher(settings, http_client=_client(handler))
    options = NotificationOptions(
        notify_email=True,
        notify_webhook=True,
        email_recipients="ops@example.com",
        webhook_url="https://hooks.example.com/x",
    )

    assert dispatcher.send(NOTIFICATION, options) == {"email": True, "webhook": False}
    assert len(calls) == 1


def test_dispatcher_contains_channel_exceptions(settings, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr("devicemon.notifications.send_webhook_notification", boom)
    dispatcher = NotificationDispatcher(settings)
    options = NotificationOptions(notify_webhook=True, webhook_url="https://hooks.example.com/x")

    assert dispatcher.send(NOTIFICATION, options) == {"webhook": False}


@pytest.mark.parametrize(
    "options",
    [
        NotificationOptions(),
        NotificationOptions(notify_email=True, email_recipients=" , "),
        NotificationOptions(notify_webhook=True, webhook_url=None),
    ],
)
def test_dispatcher_skips_unconfigured_channels(settings, options):
    assert NotificationDispatcher(settings).send(NOTIFICATION, options) == {}
