"""
Alert notification delivery.

Channels:
- email:   gated by ALERT_EMAIL_ENABLED; currently writes the message to the
           log (no SMTP transport is wired in yet)
- webhook: JSON POST via httpx, bounded by ALERT_WEBHOOK_TIMEOUT_SECONDS

Every enabled channel is attempted independently and concurrently. A
failing channel is logged and reported as False; it never stops the
others and is never retried.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from devicemon.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertNotification:
    threshold_name: str
    condition: str
    severity: str
    message: str
    timestamp: datetime
    device_name: Optional[str] = None
    system_name: Optional[str] = None


@dataclass(frozen=True)
class NotificationOptions:
    notify_email: bool = False
    notify_webhook: bool = False
    email_recipients: Optional[str] = None
    webhook_url: Optional[str] = None


def parse_recipients(raw: Optional[str]) -> List[str]:
    """'a@x, ,b@y' -> ['a@x', 'b@y']"""
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def build_webhook_payload(notification: AlertNotification) -> dict:
    return {
        "alert": {
            "threshold": notification.threshold_name,
            "condition": notification.condition,
            "severity": notification.severity,
            "message": notification.message,
            "device": notification.device_name,
            "system": notification.system_name,
            "timestamp": notification.timestamp.isoformat(),
        }
    }


def build_email(notification: AlertNotification) -> tuple:
    """Return (subject, body) for an alert email."""
    subject = f"[{notification.severity}] {notification.threshold_name}: {notification.message}"
    lines = [
        f"Alert: {notification.threshold_name}",
        f"Condition: {notification.condition}",
        f"Severity: {notification.severity}",
    ]
    if notification.device_name:
        lines.append(f"Device: {notification.device_name}")
    if notification.system_name:
        lines.append(f"System: {notification.system_name}")
    lines.append(f"Message: {notification.message}")
    lines.append(f"Time: {notification.timestamp.isoformat()}")
    return subject, "\n".join(lines)


def send_email_notification(
    recipients: List[str],
    notification: AlertNotification,
    settings: Settings = default_settings,
) -> bool:
    if not settings.alert_email_enabled or not recipients:
        return False

    subject, body = build_email(notification)
    # TODO: hand (subject, body) to an SMTP transport once SMTP settings exist
    logger.info(
        "Email notification from %s to %s: %s\n%s",
        settings.alert_email_from,
        ", ".join(recipients),
        subject,
        body,
        extra={"channel": "email"},
    )
    return True


def send_webhook_notification(
    webhook_url: str,
    notification: AlertNotification,
    settings: Settings = default_settings,
    client: Optional[httpx.Client] = None,
) -> bool:
    if not webhook_url:
        return False

    payload = build_webhook_payload(notification)
    try:
        if client is None:
            with httpx.Client(timeout=settings.alert_webhook_timeout_seconds) as own_client:
                response = own_client.post(webhook_url, json=payload)
        else:
            response = client.post(
                webhook_url, json=payload, timeout=settings.alert_webhook_timeout_seconds
            )
    except httpx.HTTPError as exc:
        logger.error("Webhook error for %s: %s", webhook_url, exc, extra={"channel": "webhook"})
        return False

    if not response.is_success:
        logger.error(
            "Webhook failed: %s %s",
            response.status_code,
            response.reason_phrase,
            extra={"channel": "webhook"},
        )
        return False

    logger.info("Webhook notification sent to %s", webhook_url, extra={"channel": "webhook"})
    return True


class NotificationDispatcher:
    """
    Fan an alert out to its configured channels.

    `http_client` is optional; when given it is used for every webhook
    (tests pass one built on `httpx.MockTransport`).
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        http_client: Optional[httpx.Client] = None,
        max_workers: int = 4,
    ):
        self.settings = settings
        self.http_client = http_client
        self.max_workers = max_workers

    def send(self, notification: AlertNotification, options: NotificationOptions) -> Dict[str, bool]:
        """
        Send to every enabled channel and wait for all of them.

        Returns {channel: delivered}. Exceptions inside a channel are
        logged and reported as False.
        """
        jobs = {}

        if options.notify_email and options.email_recipients:
            recipients = parse_recipients(options.email_recipients)
            if recipients:
                jobs["email"] = (send_email_notification, (recipients, notification, self.settings))

        if options.notify_webhook and options.webhook_url:
            jobs["webhook"] = (
                send_webhook_notification,
                (options.webhook_url, notification, self.settings, self.http_client),
            )

        if not jobs:
            return {}

        results: Dict[str, bool] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(jobs))) as pool:
            futures = {name: pool.submit(fn, *args) for name, (fn, args) in jobs.items()}
            for name, future in futures.items():
                try:
                    results[name] = bool(future.result())
                except Exception:
                    logger.exception("Notification channel %s failed", name, extra={"channel": name})
                    results[name] = False
        return results
