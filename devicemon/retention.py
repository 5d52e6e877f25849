"""
Retention cleanup.

Deletes rows older than the windows configured in the singleton
RetentionPolicy:

- device_logs            by `timestamp`
- device_status_history  by `recorded_at`
- alerts (not RESOLVED)  by `created_at`, alert window
- alerts (RESOLVED)      by `created_at`, resolved-alert window

Deletion is permanent. Each table is cleaned in its own transaction; a
failure is logged and the remaining tables are still processed.

Run it as:

    python -m devicemon.retention

or via the `devicemon-retention` console script (e.g. from cron).
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from devicemon.database import SessionLocal, init_db
from devicemon.logging_config import configure_logging
from devicemon.models import (
    Alert,
    AlertStatus,
    DeviceLog,
    DeviceStatusHistory,
    RetentionPolicy,
    utcnow,
)
from devicemon.schemas import (
    RetentionPolicyOut,
    RetentionPreview,
    RetentionStats,
    RetentionTablePreview,
)

logger = logging.getLogger(__name__)

POLICY_FIELDS = (
    "device_log_retention_days",
    "status_history_retention_days",
    "alert_retention_days",
    "resolved_alert_retention_days",
    "enabled",
)


def get_retention_policy(db: Session) -> RetentionPolicy:
    """Return the policy row, creating it with defaults on first use."""
    policy = db.query(RetentionPolicy).order_by(RetentionPolicy.id).first()
    if policy is None:
        policy = RetentionPolicy(
            name="Default Policy",
            device_log_retention_days=30,
            status_history_retention_days=90,
            alert_retention_days=30,
            resolved_alert_retention_days=7,
            enabled=True,
        )
        db.add(policy)
        db.commit()
        db.refresh(policy)
    return policy


def update_retention_policy(db: Session, **fields) -> RetentionPolicy:
    policy = get_retention_policy(db)
    for key, value in fields.items():
        if key not in POLICY_FIELDS:
            raise TypeError(f"unknown retention field: {key}")
        if value is None:
            continue
        if key != "enabled" and int(value) < 1:
            raise ValueError(f"{key} must be at least 1 day")
        setattr(policy, key, value)
    db.commit()
    db.refresh(policy)
    return policy


def _cutoffs(policy: RetentionPolicy, now: datetime) -> dict:
    return {
        "device_logs": now - timedelta(days=policy.device_log_retention_days),
        "status_history": now - timedelta(days=policy.status_history_retention_days),
        "alerts": now - timedelta(days=policy.alert_retention_days),
        "resolved_alerts": now - timedelta(days=policy.resolved_alert_retention_days),
    }


def _delete_step(db: Session, label: str, delete: Callable[[], int]) -> int:
    try:
        count = delete()
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Error deleting %s", label)
        return 0
    logger.info("Deleted %d %s", count, label)
    return count


def run_retention_cleanup(db: Session, now: Optional[datetime] = None) -> RetentionStats:
    now = now or utcnow()
    stats = RetentionStats(run_at=now)
    policy = get_retention_policy(db)

    if not policy.enabled:
        logger.info("Retention cleanup is disabled")
        stats.skipped = True
        return stats

    logger.info(
        "Starting cleanup with policy: device logs %dd, status history %dd, alerts %dd, resolved alerts %dd",
        policy.device_log_retention_days,
        policy.status_history_retention_days,
        policy.alert_retention_days,
        policy.resolved_alert_retention_days,
    )
    cut = _cutoffs(policy, now)
    policy_id = policy.id

    stats.device_logs_deleted = _delete_step(
        db,
        "device logs",
        lambda: db.query(DeviceLog)
        .filter(DeviceLog.timestamp < cut["device_logs"])
        .delete(synchronize_session=False),
    )
    stats.status_history_deleted = _delete_step(
        db,
        "status history records",
        lambda: db.query(DeviceStatusHistory)
        .filter(DeviceStatusHistory.recorded_at < cut["status_history"])
        .delete(synchronize_session=False),
    )
    stats.alerts_deleted = _delete_step(
        db,
        "non-resolved alerts",
        lambda: db.query(Alert)
        .filter(Alert.created_at < cut["alerts"], Alert.status != AlertStatus.RESOLVED)
        .delete(synchronize_session=False),
    )
    stats.resolved_alerts_deleted = _delete_step(
        db,
        "resolved alerts",
        lambda: db.query(Alert)
        .filter(Alert.created_at < cut["resolved_alerts"], Alert.status == AlertStatus.RESOLVED)
        .delete(synchronize_session=False),
    )

    try:
        db.query(RetentionPolicy).filter(RetentionPolicy.id == policy_id).update(
            {RetentionPolicy.last_cleanup_at: now}, synchronize_session=False
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Error updating last cleanup time")

    logger.info("Cleanup complete: %s", stats.model_dump())
    return stats


def _count(db: Session, model, *criteria) -> int:
    return db.query(func.count(model.id)).filter(*criteria).scalar() or 0


def get_retention_preview(db: Session, now: Optional[datetime] = None) -> RetentionPreview:
    """What a cleanup run at `now` would delete, per table."""
    now = now or utcnow()
    policy = get_retention_policy(db)
    cut = _cutoffs(policy, now)

    not_resolved = Alert.status != AlertStatus.RESOLVED
    resolved = Alert.status == AlertStatus.RESOLVED

    return RetentionPreview(
        policy=RetentionPolicyOut.model_validate(policy),
        device_logs=RetentionTablePreview(
            total=_count(db, DeviceLog),
            to_delete=_count(db, DeviceLog, DeviceLog.timestamp < cut["device_logs"]),
            cutoff_date=cut["device_logs"],
        ),
        status_history=RetentionTablePreview(
            total=_count(db, DeviceStatusHistory),
            to_delete=_count(db, DeviceStatusHistory, DeviceStatusHistory.recorded_at < cut["status_history"]),
            cutoff_date=cut["status_history"],
        ),
        alerts=RetentionTablePreview(
            total=_count(db, Alert, not_resolved),
            to_delete=_count(db, Alert, not_resolved, Alert.created_at < cut["alerts"]),
            cutoff_date=cut["alerts"],
        ),
        resolved_alerts=RetentionTablePreview(
            total=_count(db, Alert, resolved),
            to_delete=_count(db, Alert, resolved, Alert.created_at < cut["resolved_alerts"]),
            cutoff_date=cut["resolved_alerts"],
        ),
    )


def main() -> None:
    configure_logging()
    init_db()

    logger.info("Starting retention cleanup job...")
    with SessionLocal() as db:
        policy = get_retention_policy(db)
        logger.info(
            "Current policy: enabled=%s device logs=%dd status history=%dd alerts=%dd resolved alerts=%dd last cleanup=%s",
            policy.enabled,
            policy.device_log_retention_days,
            policy.status_history_retention_days,
            policy.alert_retention_days,
            policy.resolved_alert_retention_days,
            policy.last_cleanup_at,
        )
        if not policy.enabled:
            logger.info("Cleanup is disabled, exiting")
            return

        stats = run_retention_cleanup(db)

    logger.info("Device logs deleted: %d", stats.device_logs_deleted)
    logger.info("Status history deleted: %d", stats.status_history_deleted)
    logger.info("Alerts deleted: %d", stats.alerts_deleted)
    logger.info("Resolved alerts deleted: %d", stats.resolved_alerts_deleted)
    logger.info("Run completed at: %s", stats.run_at.isoformat())


if __name__ == "__main__":
    main()
