"""
FastAPI application exposing the monitoring core to the inventory app.

Endpoints
---------
- GET    /health                     -> Simple liveness check
- POST   /devices/{id}/status        -> Manual status update
- GET    /devices/{id}/uptime        -> Uptime stats for one device
- GET    /devices/{id}/history       -> Recent status transitions
- GET    /systems/{id}/uptime        -> Uptime roll-up for one system
- GET    /uptime                     -> Uptime for every device
- GET    /thresholds                 -> Alert thresholds
- POST   /thresholds                 -> Create a threshold
- PATCH  /thresholds/{id}            -> Update a threshold
- DELETE /thresholds/{id}            -> Delete a threshold (and its alerts)
- GET    /alerts                     -> Alerts, newest first
- POST   /alerts/{id}/acknowledge    -> Acknowledge one alert
- POST   /alerts/{id}/resolve        -> Resolve one alert
- POST   /alerts/resolve-all         -> Resolve every ACTIVE alert
- GET    /retention                  -> Retention policy
- PATCH  /retention                  -> Update the policy
- GET    /retention/preview          -> What a cleanup would delete
- POST   /retention/cleanup          -> Run a cleanup now
- GET    /logs                       -> Paged device logs
- GET    /logs/stats                 -> Log counts
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from devicemon import alerts as alert_ops
from devicemon.alert_queue import get_default_queue
from devicemon.database import SessionLocal, init_db
from devicemon.device_logs import LogFilters, get_log_stats, query_device_logs
from devicemon.errors import DeviceNotFoundError, MonitoringError
from devicemon.logging_config import configure_logging
from devicemon.models import AlertStatus, Device, LogLevel
from devicemon.retention import (
    get_retention_policy,
    get_retention_preview,
    run_retention_cleanup,
    update_retention_policy,
)
from devicemon.schemas import (
    AcknowledgeIn,
    AlertOut,
    DeviceLogOut,
    DeviceLogPage,
    DeviceUptimeOut,
    LogStats,
    RetentionPolicyOut,
    RetentionPolicyUpdate,
    RetentionPreview,
    RetentionStats,
    StatusChangeResult,
    StatusHistoryOut,
    StatusUpdateIn,
    SystemUptimeSummary,
    ThresholdIn,
    ThresholdOut,
    ThresholdUpdate,
    UptimeStats,
)
from devicemon.status import get_status_history, record_device_status_change
from devicemon.uptime import (
    get_all_devices_uptime,
    get_device_uptime_stats,
    get_system_uptime_stats,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Make sure tables exist even if the ingest processes have not run yet.
    configure_logging()
    init_db()
    yield


app = FastAPI(
    title="Device Monitoring API",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(MonitoringError)
async def monitoring_error_handler(_request: Request, exc: MonitoringError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "detail": exc.detail},
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_db() -> Session:
    """
    FastAPI dependency that provides a SQLAlchemy session.

    The session is created at the start of the request and closed at the end.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_alert_queue():
    """Where manual status changes send their alert evaluations."""
    return get_default_queue()


# ---------------------------------------------------------------------------
# Health & status
# ---------------------------------------------------------------------------

@app.get("/health")
def health() -> dict:
    """Simple liveness endpoint used for health checks."""
    return {"status": "ok"}


@app.post("/devices/{device_id}/status", response_model=StatusChangeResult)
def update_device_status(
    device_id: int,
    body: StatusUpdateIn,
    db: Session = Depends(get_db),
    alert_queue=Depends(get_alert_queue),
):
    """Manual status update, recorded like any other observation."""
    return record_device_status_change(
        db, device_id, body.status, body.source or "manual", alert_queue=alert_queue
    )


@app.get("/devices/{device_id}/history", response_model=List[StatusHistoryOut])
def device_history(
    device_id: int,
    limit: int = Query(50, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    if db.get(Device, device_id) is None:
        raise DeviceNotFoundError(f"Device {device_id} not found")
    return get_status_history(db, device_id, limit)


# ---------------------------------------------------------------------------
# Uptime
# ---------------------------------------------------------------------------

@app.get("/devices/{device_id}/uptime", response_model=UptimeStats)
def device_uptime(
    device_id: int,
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
):
    return get_device_uptime_stats(db, device_id, days)


@app.get("/systems/{system_id}/uptime", response_model=SystemUptimeSummary)
def system_uptime(
    system_id: int,
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
):
    return get_system_uptime_stats(db, system_id, days)


@app.get("/uptime", response_model=List[DeviceUptimeOut])
def all_uptime(days: int = Query(30, ge=1, le=365), db: Session = Depends(get_db)):
    return get_all_devices_uptime(db, days)


# ---------------------------------------------------------------------------
# Thresholds & alerts
# ---------------------------------------------------------------------------

@app.get("/thresholds", response_model=List[ThresholdOut])
def list_thresholds(db: Session = Depends(get_db)):
    return alert_ops.list_thresholds(db)


@app.post("/thresholds", response_model=ThresholdOut, status_code=201)
def create_threshold(body: ThresholdIn, db: Session = Depends(get_db)):
    return alert_ops.create_threshold(db, **body.model_dump())


@app.patch("/thresholds/{threshold_id}", response_model=ThresholdOut)
def update_threshold(threshold_id: int, body: ThresholdUpdate, db: Session = Depends(get_db)):
    return alert_ops.update_threshold(db, threshold_id, **body.model_dump(exclude_unset=True))


@app.delete("/thresholds/{threshold_id}", status_code=204)
def delete_threshold(threshold_id: int, db: Session = Depends(get_db)):
    alert_ops.delete_threshold(db, threshold_id)
    return Response(status_code=204)


@app.get("/alerts", response_model=List[AlertOut])
def list_alerts(
    status: Optional[AlertStatus] = None,
    limit: int = Query(50, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return alert_ops.list_alerts(db, status, limit)


# Declared before /alerts/{alert_id}/... so "resolve-all" is never read as an id.
@app.post("/alerts/resolve-all")
def resolve_all(db: Session = Depends(get_db)) -> dict:
    return {"resolved": alert_ops.resolve_all_alerts(db)}


@app.post("/alerts/{alert_id}/acknowledge", response_model=AlertOut)
def acknowledge(alert_id: int, body: Optional[AcknowledgeIn] = None, db: Session = Depends(get_db)):
    return alert_ops.acknowledge_alert(db, alert_id, body.user if body else None)


@app.post("/alerts/{alert_id}/resolve", response_model=AlertOut)
def resolve(alert_id: int, db: Session = Depends(get_db)):
    return alert_ops.resolve_alert(db, alert_id)


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

@app.get("/retention", response_model=RetentionPolicyOut)
def retention_policy(db: Session = Depends(get_db)):
    return get_retention_policy(db)


@app.patch("/retention", response_model=RetentionPolicyOut)
def patch_retention_policy(body: RetentionPolicyUpdate, db: Session = Depends(get_db)):
    return update_retention_policy(db, **body.model_dump(exclude_unset=True))


@app.get("/retention/preview", response_model=RetentionPreview)
def retention_preview(db: Session = Depends(get_db)):
    return get_retention_preview(db)


@app.post("/retention/cleanup", response_model=RetentionStats)
def retention_cleanup(db: Session = Depends(get_db)):
    logger.info("Manual retention cleanup requested")
    return run_retention_cleanup(db)


# ---------------------------------------------------------------------------
# Device logs
# ---------------------------------------------------------------------------

@app.get("/logs", response_model=DeviceLogPage)
def list_logs(
    device_id: Optional[int] = None,
    level: Optional[LogLevel] = None,
    source: Optional[str] = None,
    search: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    filters = LogFilters(
        device_id=device_id,
        level=level,
        source=source,
        search=search,
        start_date=start_date,
        end_date=end_date,
    )
    rows, total = query_device_logs(db, filters, page, page_size)
    return DeviceLogPage(
        logs=[DeviceLogOut.model_validate(r) for r in rows],
        total=total,
        page=page,
        page_size=page_size,
    )


@app.get("/logs/stats", response_model=LogStats)
def log_stats(db: Session = Depends(get_db)):
    return LogStats(**get_log_stats(db))
