"""
Uptime statistics computed from DeviceStatusHistory.

Uptime here is transition-based: every recorded status change counts as
one "check", and the uptime percentage is the share of those checks that
were ONLINE. A device with no history in the window has 0% uptime.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from devicemon.errors import DeviceNotFoundError, SystemNotFoundError
from devicemon.models import Device, DeviceStatus, DeviceStatusHistory, System, utcnow
from devicemon.schemas import (
    DeviceUptimeOut,
    StatusBreakdown,
    SystemUptimeSummary,
    UptimeStats,
)

_COUNT_FIELDS = {
    DeviceStatus.ONLINE: ("online_count", "online"),
    DeviceStatus.OFFLINE: ("offline_count", "offline"),
    DeviceStatus.WARNING: ("warning_count", "warning"),
    DeviceStatus.ERROR: ("error_count", "error"),
    DeviceStatus.UNKNOWN: ("unknown_count", "unknown"),
}


def get_device_uptime_stats(
    db: Session,
    device_id: int,
    days: int = 30,
    now: Optional[datetime] = None,
) -> UptimeStats:
    """
    Count the device's transitions over the last `days` days.

    The last-24-hours breakdown is taken from the same rows, filtered again
    by `recorded_at`.
    """
    if db.get(Device, device_id) is None:
        raise DeviceNotFoundError(f"Device {device_id} not found")

    now = now or utcnow()
    start = now - timedelta(days=days)
    day_ago = now - timedelta(hours=24)

    rows = (
        db.query(DeviceStatusHistory.status, DeviceStatusHistory.recorded_at)
        .filter(
            DeviceStatusHistory.device_id == device_id,
            DeviceStatusHistory.recorded_at >= start,
        )
        .all()
    )

    stats = UptimeStats(device_id=device_id, days=days, total_checks=len(rows))
    last_24 = StatusBreakdown()
    for status, recorded_at in rows:
        total_field, day_field = _COUNT_FIELDS[status]
        setattr(stats, total_field, getattr(stats, total_field) + 1)
        if recorded_at >= day_ago:
            setattr(last_24, day_field, getattr(last_24, day_field) + 1)
    stats.last_24_hours = last_24

    if stats.total_checks > 0:
        stats.uptime_percentage = stats.online_count / stats.total_checks * 100.0

    return stats


def calculate_recent_uptime(db: Session, device_id: int, since: datetime) -> float:
    """ONLINE share of the device's transitions since `since`, 0 when none."""
    base = db.query(func.count(DeviceStatusHistory.id)).filter(
        DeviceStatusHistory.device_id == device_id,
        DeviceStatusHistory.recorded_at >= since,
    )
    total = base.scalar() or 0
    if total == 0:
        return 0.0
    online = base.filter(DeviceStatusHistory.status == DeviceStatus.ONLINE).scalar() or 0
    return online / total * 100.0


def _device_uptime_row(db: Session, device: Device, since: datetime) -> DeviceUptimeOut:
    total = (
        db.query(func.count(DeviceStatusHistory.id))
        .filter(
            DeviceStatusHistory.device_id == device.id,
            DeviceStatusHistory.recorded_at >= since,
        )
        .scalar()
        or 0
    )
    return DeviceUptimeOut(
        id=device.id,
        name=device.name,
        status=device.status,
        system_id=device.system_id,
        last_seen_at=device.last_seen_at,
        uptime_percentage=calculate_recent_uptime(db, device.id, since),
        total_checks=total,
    )


def get_system_uptime_stats(
    db: Session,
    system_id: int,
    days: int = 30,
    now: Optional[datetime] = None,
) -> SystemUptimeSummary:
    """
    Roll up the devices of one system.

    `system_uptime` is the percentage of the system's devices whose current
    status is ONLINE. A system with zero devices reports 100: nothing in it
    is down. That is counter-intuitive on a dashboard, so callers that want
    to flag empty systems should check `total_devices`.

    `average_device_uptime` is the mean of the per-device history-based
    uptime percentages (0 for an empty system).

    Devices are counted per current status. `offline_devices` is only the
    OFFLINE ones, not "everything that is not ONLINE"; that figure is
    `total_devices - online_devices`.
    """
    system = db.get(System, system_id)
    if system is None:
        raise SystemNotFoundError(f"System {system_id} not found")

    now = now or utcnow()
    since = now - timedelta(days=days)

    devices = db.query(Device).filter(Device.system_id == system_id).order_by(Device.name).all()
    rows = [_device_uptime_row(db, d, since) for d in devices]

    def _count(status: DeviceStatus) -> int:
        return sum(1 for r in rows if r.status == status)

    total = len(rows)
    online = _count(DeviceStatus.ONLINE)

    return SystemUptimeSummary(
        system_id=system_id,
        system_name=system.name,
        days=days,
        total_devices=total,
        online_devices=online,
        offline_devices=_count(DeviceStatus.OFFLINE),
        warning_devices=_count(DeviceStatus.WARNING),
        error_devices=_count(DeviceStatus.ERROR),
        unknown_devices=_count(DeviceStatus.UNKNOWN),
        system_uptime=(online / total * 100.0) if total > 0 else 100.0,
        average_device_uptime=(
            sum(r.uptime_percentage for r in rows) / total if total > 0 else 0.0
        ),
        devices=rows,
    )


def get_all_devices_uptime(
    db: Session,
    days: int = 30,
    now: Optional[datetime] = None,
) -> List[DeviceUptimeOut]:
    now = now or utcnow()
    since = now - timedelta(days=days)
    devices = db.query(Device).order_by(Device.name).all()
    return [_device_uptime_row(db, d, since) for d in devices]
