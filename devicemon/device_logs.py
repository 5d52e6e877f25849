"""
DeviceLog helpers: writing log rows and querying them back.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from devicemon.models import DeviceLog, LogLevel, utcnow


@dataclass
class LogFilters:
    device_id: Optional[int] = None
    level: Optional[LogLevel] = None
    source: Optional[str] = None
    search: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


def add_device_log(
    db: Session,
    device_id: int,
    level: LogLevel,
    message: str,
    source: Optional[str] = None,
    raw_log: Optional[str] = None,
) -> DeviceLog:
    """Stage one DeviceLog row on `db`; the caller commits."""
    entry = DeviceLog(
        device_id=device_id,
        level=level,
        message=message,
        source=source,
        raw_log=raw_log,
        timestamp=utcnow(),
    )
    db.add(entry)
    return entry


def query_device_logs(
    db: Session,
    filters: Optional[LogFilters] = None,
    page: int = 1,
    page_size: int = 50,
) -> Tuple[List[DeviceLog], int]:
    """Return one page of logs (newest first) plus the total match count."""
    filters = filters or LogFilters()
    q = db.query(DeviceLog)

    if filters.device_id is not None:
        q = q.filter(DeviceLog.device_id == filters.device_id)
    if filters.level is not None:
        q = q.filter(DeviceLog.level == filters.level)
    if filters.source:
        q = q.filter(DeviceLog.source.ilike(f"%{filters.source}%"))
    if filters.search:
        pattern = f"%{filters.search}%"
        q = q.filter(or_(DeviceLog.message.ilike(pattern), DeviceLog.raw_log.ilike(pattern)))
    if filters.start_date is not None:
        q = q.filter(DeviceLog.timestamp >= filters.start_date)
    if filters.end_date is not None:
        q = q.filter(DeviceLog.timestamp <= filters.end_date)

    total = q.count()
    page = max(page, 1)
    rows = (
        q.order_by(DeviceLog.timestamp.desc(), DeviceLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return rows, total


def get_log_stats(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    total = db.query(func.count(DeviceLog.id)).scalar() or 0
    last_24h = (
        db.query(func.count(DeviceLog.id))
        .filter(DeviceLog.timestamp >= now - timedelta(hours=24))
        .scalar()
        or 0
    )
    last_7d = (
        db.query(func.count(DeviceLog.id))
        .filter(DeviceLog.timestamp >= now - timedelta(days=7))
        .scalar()
        or 0
    )
    by_level = {
        level.value: count
        for level, count in db.query(DeviceLog.level, func.count(DeviceLog.id))
        .group_by(DeviceLog.level)
        .all()
    }
    return {"total": total, "last_24h": last_24h, "last_7d": last_7d, "by_level": by_level}
