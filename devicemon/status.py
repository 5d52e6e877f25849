"""
Device status transitions.

`record_device_status_change` is the one path through which the SNMP
poller, the syslog receiver and manual updates change a device's status:

- same status as stored      -> nothing is written
- different status           -> one DeviceStatusHistory row, device row
                                updated, alert evaluation queued

The read-compare-write is guarded twice: a per-device lock for threads in
this process, and a conditional UPDATE (`WHERE status = <previous>`) so a
concurrent writer in another process makes the update miss and we re-read.
"""

import logging
import threading
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from devicemon.alerts import AlertContext
from devicemon.errors import DeviceNotFoundError, StatusConflictError
from devicemon.models import Device, DeviceStatus, DeviceStatusHistory, utcnow
from devicemon.schemas import StatusChangeResult

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 3

_locks_guard = threading.Lock()
_device_locks: Dict[int, threading.Lock] = {}


def _device_lock(device_id: int) -> threading.Lock:
    with _locks_guard:
        lock = _device_locks.get(device_id)
        if lock is None:
            lock = threading.Lock()
            _device_locks[device_id] = lock
        return lock


def _load_device(db: Session, device_id: int) -> Optional[Device]:
    # populate_existing: a retry must see the row as it is now, not the
    # copy already sitting in the session's identity map.
    return (
        db.query(Device)
        .populate_existing()
        .filter(Device.id == device_id)
        .first()
    )


def record_device_status_change(
    db: Session,
    device_id: int,
    new_status: DeviceStatus,
    source: Optional[str] = None,
    alert_queue=None,
) -> StatusChangeResult:
    """
    Move `device_id` to `new_status`, recording the transition.

    Commits `db` when the status changes. Alert evaluation is handed to
    `alert_queue` (default: the process-wide queue) after the commit and
    never blocks or fails this call.

    Raises DeviceNotFoundError for an unknown device and
    StatusConflictError when the row keeps changing underneath us.
    """
    new_status = DeviceStatus(new_status)

    with _device_lock(device_id):
        for _attempt in range(MAX_UPDATE_ATTEMPTS):
            device = _load_device(db, device_id)
            if device is None:
                raise DeviceNotFoundError(f"Device {device_id} not found")

            previous_status = device.status
            if previous_status == new_status:
                return StatusChangeResult(
                    status_changed=False,
                    previous_status=previous_status,
                    new_status=new_status,
                )

            now = utcnow()
            values = {"status": new_status, "updated_at": now}
            if new_status == DeviceStatus.ONLINE:
                values["last_seen_at"] = now

            result = db.execute(
                update(Device)
                .where(Device.id == device_id, Device.status == previous_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.info(
                    "Device %s changed concurrently, re-reading", device_id,
                    extra={"device_id": device_id},
                )
                continue

            db.add(
                DeviceStatusHistory(
                    device_id=device_id,
                    status=new_status,
                    previous_status=previous_status,
                    source=source,
                    recorded_at=now,
                )
            )
            context = AlertContext(
                device_id=device_id,
                system_id=device.system_id,
                device_name=device.name,
                system_name=device.system.name if device.system else None,
                previous_status=previous_status,
                new_status=new_status,
            )
            db.commit()
            break
        else:
            raise StatusConflictError(
                f"Device {device_id} status kept changing; gave up after {MAX_UPDATE_ATTEMPTS} attempts"
            )

    logger.info(
        "Device %s status %s -> %s (%s)",
        device_id,
        previous_status.value,
        new_status.value,
        source or "unknown source",
        extra={"device_id": device_id},
    )
    _queue_alert_check(context, alert_queue)

    return StatusChangeResult(
        status_changed=True,
        previous_status=previous_status,
        new_status=new_status,
    )


def _queue_alert_check(context: AlertContext, alert_queue) -> None:
    try:
        if alert_queue is None:
            from devicemon.alert_queue import get_default_queue

            alert_queue = get_default_queue()
        alert_queue.submit(context)
    except Exception:
        logger.exception(
            "Could not queue alert evaluation for device %s", context.device_id,
            extra={"device_id": context.device_id},
        )


def get_status_history(db: Session, device_id: int, limit: int = 50) -> List[DeviceStatusHistory]:
    """Most recent transitions first."""
    return (
        db.query(DeviceStatusHistory)
        .filter(DeviceStatusHistory.device_id == device_id)
        .order_by(DeviceStatusHistory.recorded_at.desc(), DeviceStatusHistory.id.desc())
        .limit(limit)
        .all()
    )
