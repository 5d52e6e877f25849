"""
Alert threshold evaluation.

For every status transition, `check_and_trigger_alerts`:

1. loads the enabled thresholds in scope for the device,
2. evaluates each threshold's condition against the transition,
3. raises an ACTIVE Alert unless one already exists for the same
   threshold + device inside the cooldown window,
4. hands the new alert to the notification dispatcher.

Scope matching is an OR over three tiers (device, system, global). A
device-level rule does not shadow a system-level or global rule: all of
them can fire for the same transition.

The cooldown check and the insert run under a per (threshold, device)
lock, so alert workers evaluating the same device concurrently still
raise at most one ACTIVE alert per cooldown window.

This module also carries the operator actions on thresholds and alerts
(create/update/delete, acknowledge, resolve).
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from devicemon.config import Settings, settings as default_settings
from devicemon.errors import AlertNotFoundError, ThresholdNotFoundError
from devicemon.models import (
    Alert,
    AlertCondition,
    AlertSeverity,
    AlertStatus,
    AlertThreshold,
    DeviceStatus,
    utcnow,
)
from devicemon.notifications import (
    AlertNotification,
    NotificationDispatcher,
    NotificationOptions,
)
from devicemon.uptime import calculate_recent_uptime

logger = logging.getLogger(__name__)

CONDITION_LABELS = {
    AlertCondition.DEVICE_OFFLINE: "Device Offline",
    AlertCondition.DEVICE_ERROR: "Device Error",
    AlertCondition.LOW_UPTIME: "Low Uptime",
    AlertCondition.STATUS_CHANGE: "Status Change",
}

SEVERITY_LABELS = {
    AlertSeverity.INFO: "Info",
    AlertSeverity.WARNING: "Warning",
    AlertSeverity.CRITICAL: "Critical",
}

THRESHOLD_FIELDS = (
    "name",
    "description",
    "condition",
    "severity",
    "threshold",
    "threshold_unit",
    "enabled",
    "notify_email",
    "notify_webhook",
    "webhook_url",
    "email_recipients",
    "system_id",
    "device_id",
)

_cooldown_guard = threading.Lock()
_cooldown_locks: Dict[Tuple[int, Optional[int]], threading.Lock] = {}


def _cooldown_lock(threshold_id: int, device_id: Optional[int]) -> threading.Lock:
    key = (threshold_id, device_id)
    with _cooldown_guard:
        lock = _cooldown_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _cooldown_locks[key] = lock
        return lock


@dataclass(frozen=True)
class AlertContext:
    """What changed: the input to threshold evaluation."""

    device_id: Optional[int] = None
    system_id: Optional[int] = None
    device_name: Optional[str] = None
    system_name: Optional[str] = None
    previous_status: Optional[DeviceStatus] = None
    new_status: Optional[DeviceStatus] = None


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def get_matching_thresholds(db: Session, context: AlertContext) -> List[AlertThreshold]:
    """Enabled thresholds whose scope covers the context (OR across tiers)."""
    if context.device_id is not None:
        scope = or_(
            AlertThreshold.device_id == context.device_id,
            and_(
                AlertThreshold.device_id.is_(None),
                AlertThreshold.system_id == context.system_id,
            ),
            and_(AlertThreshold.device_id.is_(None), AlertThreshold.system_id.is_(None)),
        )
    elif context.system_id is not None:
        scope = or_(
            AlertThreshold.system_id == context.system_id,
            AlertThreshold.system_id.is_(None),
        )
    else:
        scope = and_(AlertThreshold.device_id.is_(None), AlertThreshold.system_id.is_(None))

    return (
        db.query(AlertThreshold)
        .filter(AlertThreshold.enabled.is_(True), scope)
        .order_by(AlertThreshold.id)
        .all()
    )


def uptime_window_start(unit: Optional[str], now: datetime) -> datetime:
    """'hours' looks back 24 hours; any other unit looks back 30 days."""
    if unit == "hours":
        return now - timedelta(hours=24)
    return now - timedelta(days=30)


def evaluate_condition(
    db: Session,
    threshold: AlertThreshold,
    context: AlertContext,
    now: Optional[datetime] = None,
) -> bool:
    condition = threshold.condition

    if condition == AlertCondition.DEVICE_OFFLINE:
        return context.new_status == DeviceStatus.OFFLINE

    if condition == AlertCondition.DEVICE_ERROR:
        return context.new_status == DeviceStatus.ERROR

    if condition == AlertCondition.STATUS_CHANGE:
        return context.previous_status is not None and context.previous_status != context.new_status

    if condition == AlertCondition.LOW_UPTIME:
        if context.device_id is None or not threshold.threshold:
            return False
        since = uptime_window_start(threshold.threshold_unit, now or utcnow())
        uptime = calculate_recent_uptime(db, context.device_id, since)
        return uptime < threshold.threshold

    return False


def _status_text(status: Optional[DeviceStatus]) -> str:
    return status.value if status is not None else "UNKNOWN"


def build_alert_message(condition: AlertCondition, context: AlertContext) -> str:
    device = f'Device "{context.device_name}"' if context.device_name else "A device"
    system = f' in system "{context.system_name}"' if context.system_name else ""

    if condition == AlertCondition.DEVICE_OFFLINE:
        return f"{device}{system} is now OFFLINE"
    if condition == AlertCondition.DEVICE_ERROR:
        return f"{device}{system} is in ERROR state"
    if condition == AlertCondition.STATUS_CHANGE:
        return (
            f"{device}{system} changed from "
            f"{_status_text(context.previous_status)} to {_status_text(context.new_status)}"
        )
    if condition == AlertCondition.LOW_UPTIME:
        return f"{device}{system} has low uptime"
    return f"{device}{system} triggered an alert"


def find_recent_active_alert(
    db: Session,
    threshold_id: int,
    device_id: Optional[int],
    since: datetime,
) -> Optional[Alert]:
    q = db.query(Alert).filter(
        Alert.threshold_id == threshold_id,
        Alert.status == AlertStatus.ACTIVE,
        Alert.created_at >= since,
    )
    if device_id is None:
        q = q.filter(Alert.device_id.is_(None))
    else:
        q = q.filter(Alert.device_id == device_id)
    return q.first()


def trigger_alert(
    db: Session,
    threshold: AlertThreshold,
    context: AlertContext,
    settings: Settings = default_settings,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
) -> Optional[Alert]:
    """
    Create an alert for `threshold` unless the cooldown suppresses it.

    The alert is committed before notifications go out; a failed delivery
    leaves the alert in place.
    """
    now = now or utcnow()
    cooldown_start = now - timedelta(minutes=settings.alert_cooldown_minutes)

    with _cooldown_lock(threshold.id, context.device_id):
        if find_recent_active_alert(db, threshold.id, context.device_id, cooldown_start):
            logger.info(
                "Skipping %s - cooldown active", threshold.name,
                extra={"threshold_id": threshold.id, "device_id": context.device_id},
            )
            return None

        message = build_alert_message(threshold.condition, context)
        alert = Alert(
            threshold_id=threshold.id,
            device_id=context.device_id,
            system_id=context.system_id,
            severity=threshold.severity,
            status=AlertStatus.ACTIVE,
            message=message,
            created_at=now,
        )
        db.add(alert)
        db.commit()
        db.refresh(alert)

    logger.info("Created alert %s: %s", alert.id, message, extra={"alert_id": alert.id})

    notification = AlertNotification(
        threshold_name=threshold.name,
        condition=CONDITION_LABELS[threshold.condition],
        severity=threshold.severity.value,
        message=message,
        device_name=context.device_name,
        system_name=context.system_name,
        timestamp=alert.created_at,
    )
    options = NotificationOptions(
        notify_email=threshold.notify_email,
        notify_webhook=threshold.notify_webhook,
        email_recipients=threshold.email_recipients,
        webhook_url=threshold.webhook_url,
    )
    dispatcher = dispatcher or NotificationDispatcher(settings)
    try:
        dispatcher.send(notification, options)
    except Exception:
        logger.exception("Notification dispatch failed for alert %s", alert.id, extra={"alert_id": alert.id})

    return alert


def check_and_trigger_alerts(
    db: Session,
    context: AlertContext,
    settings: Settings = default_settings,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
) -> List[Alert]:
    """
    Evaluate every matching threshold for one transition; return new alerts.

    A threshold whose evaluation or insert fails is rolled back and logged;
    the remaining thresholds are still evaluated.
    """
    now = now or utcnow()
    created: List[Alert] = []

    for threshold in get_matching_thresholds(db, context):
        threshold_id = threshold.id
        try:
            if not threshold.enabled:
                continue
            if not evaluate_condition(db, threshold, context, now):
                continue
            alert = trigger_alert(db, threshold, context, settings, dispatcher, now)
        except Exception:
            db.rollback()
            logger.exception(
                "Error evaluating threshold %s for device %s", threshold_id, context.device_id,
                extra={"threshold_id": threshold_id, "device_id": context.device_id},
            )
            continue
        if alert is not None:
            created.append(alert)

    return created


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


def list_thresholds(db: Session) -> List[AlertThreshold]:
    return db.query(AlertThreshold).order_by(AlertThreshold.created_at.desc(), AlertThreshold.id.desc()).all()


def get_threshold(db: Session, threshold_id: int) -> AlertThreshold:
    threshold = db.get(AlertThreshold, threshold_id)
    if threshold is None:
        raise ThresholdNotFoundError(f"Threshold {threshold_id} not found")
    return threshold


def create_threshold(db: Session, **fields) -> AlertThreshold:
    unknown = set(fields) - set(THRESHOLD_FIELDS)
    if unknown:
        raise TypeError(f"unknown threshold fields: {sorted(unknown)}")
    threshold = AlertThreshold(**fields)
    db.add(threshold)
    db.commit()
    db.refresh(threshold)
    return threshold


def update_threshold(db: Session, threshold_id: int, **fields) -> AlertThreshold:
    threshold = get_threshold(db, threshold_id)
    for key, value in fields.items():
        if key not in THRESHOLD_FIELDS:
            raise TypeError(f"unknown threshold field: {key}")
        setattr(threshold, key, value)
    db.commit()
    db.refresh(threshold)
    return threshold


def delete_threshold(db: Session, threshold_id: int) -> None:
    threshold = get_threshold(db, threshold_id)
    db.delete(threshold)
    db.commit()


def list_alerts(db: Session, status: Optional[AlertStatus] = None, limit: int = 50) -> List[Alert]:
    q = db.query(Alert)
    if status is not None:
        q = q.filter(Alert.status == status)
    return q.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit).all()


def _get_alert(db: Session, alert_id: int) -> Alert:
    alert = db.get(Alert, alert_id)
    if alert is None:
        raise AlertNotFoundError(f"Alert {alert_id} not found")
    return alert


def acknowledge_alert(db: Session, alert_id: int, user: Optional[str] = None) -> Alert:
    alert = _get_alert(db, alert_id)
    alert.status = AlertStatus.ACKNOWLEDGED
    alert.acknowledged_at = utcnow()
    alert.acknowledged_by = user
    db.commit()
    db.refresh(alert)
    return alert


def resolve_alert(db: Session, alert_id: int) -> Alert:
    alert = _get_alert(db, alert_id)
    alert.status = AlertStatus.RESOLVED
    alert.resolved_at = utcnow()
    db.commit()
    db.refresh(alert)
    return alert


def resolve_all_alerts(db: Session) -> int:
    count = (
        db.query(Alert)
        .filter(Alert.status == AlertStatus.ACTIVE)
        .update(
            {Alert.status: AlertStatus.RESOLVED, Alert.resolved_at: utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    return count
