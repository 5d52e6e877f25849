"""
Pydantic models ("schemas") for results and API payloads.

We keep these separate from the ORM models so callers and the API layer
do not depend on SQLAlchemy internals.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from devicemon.models import (
    AlertCondition,
    AlertSeverity,
    AlertStatus,
    DeviceStatus,
    LogLevel,
)


class StatusChangeResult(BaseModel):
    """Outcome of `record_device_status_change`."""

    status_changed: bool
    previous_status: Optional[DeviceStatus] = None
    new_status: DeviceStatus


class StatusUpdateIn(BaseModel):
    status: DeviceStatus
    source: Optional[str] = "manual"


class StatusHistoryOut(BaseModel):
    id: int
    device_id: int
    status: DeviceStatus
    previous_status: Optional[DeviceStatus] = None
    source: Optional[str] = None
    recorded_at: datetime

    class Config:
        from_attributes = True


class StatusBreakdown(BaseModel):
    online: int = 0
    offline: int = 0
    warning: int = 0
    error: int = 0
    unknown: int = 0


class UptimeStats(BaseModel):
    """
    Per-device uptime over a lookback window.

    - total_checks: number of status transitions recorded in the window
    - uptime_percentage: share of those transitions that were ONLINE
      (0 when there are none: an unobserved device has no uptime)
    - last_24_hours: the same counts restricted to the last day
    """

    device_id: int
    days: int
    total_checks: int = 0
    online_count: int = 0
    offline_count: int = 0
    warning_count: int = 0
    error_count: int = 0
    unknown_count: int = 0
    uptime_percentage: float = 0.0
    last_24_hours: StatusBreakdown = Field(default_factory=StatusBreakdown)


class DeviceUptimeOut(BaseModel):
    id: int
    name: str
    status: DeviceStatus
    system_id: Optional[int] = None
    last_seen_at: Optional[datetime] = None
    uptime_percentage: float
    total_checks: int


class SystemUptimeSummary(BaseModel):
    """
    Uptime roll-up for one system.

    `system_uptime` is the share of the system's devices currently ONLINE.
    A system with no devices reports 100.
    """

    system_id: int
    system_name: str
    days: int
    total_devices: int
    online_devices: int
    offline_devices: int
    warning_devices: int
    error_devices: int
    unknown_devices: int
    system_uptime: float
    average_device_uptime: float
    devices: List[DeviceUptimeOut]


class ThresholdIn(BaseModel):
    name: str
    description: Optional[str] = None
    condition: AlertCondition
    severity: AlertSeverity = AlertSeverity.WARNING
    threshold: Optional[float] = None
    threshold_unit: Optional[str] = None
    enabled: bool = True
    notify_email: bool = False
    notify_webhook: bool = False
    webhook_url: Optional[str] = None
    email_recipients: Optional[str] = None
    system_id: Optional[int] = None
    device_id: Optional[int] = None


class ThresholdUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    condition: Optional[AlertCondition] = None
    severity: Optional[AlertSeverity] = None
    threshold: Optional[float] = None
    threshold_unit: Optional[str] = None
    enabled: Optional[bool] = None
    notify_email: Optional[bool] = None
    notify_webhook: Optional[bool] = None
    webhook_url: Optional[str] = None
    email_recipients: Optional[str] = None
    system_id: Optional[int] = None
    device_id: Optional[int] = None

    @field_validator("name", "condition", "severity", "enabled", "notify_email", "notify_webhook")
    @classmethod
    def reject_null(cls, v):
        # omit the field to leave it unchanged; these columns are NOT NULL
        if v is None:
            raise ValueError("may not be null")
        return v


class ThresholdOut(ThresholdIn):
    id: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AlertOut(BaseModel):
    id: int
    threshold_id: int
    device_id: Optional[int] = None
    system_id: Optional[int] = None
    severity: AlertSeverity
    status: AlertStatus
    message: str
    created_at: datetime
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AcknowledgeIn(BaseModel):
    user: Optional[str] = None


class RetentionPolicyOut(BaseModel):
    id: int
    name: str
    device_log_retention_days: int
    status_history_retention_days: int
    alert_retention_days: int
    resolved_alert_retention_days: int
    enabled: bool
    last_cleanup_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RetentionPolicyUpdate(BaseModel):
    device_log_retention_days: Optional[int] = Field(default=None, ge=1)
    status_history_retention_days: Optional[int] = Field(default=None, ge=1)
    alert_retention_days: Optional[int] = Field(default=None, ge=1)
    resolved_alert_retention_days: Optional[int] = Field(default=None, ge=1)
    enabled: Optional[bool] = None


class RetentionStats(BaseModel):
    device_logs_deleted: int = 0
    status_history_deleted: int = 0
    alerts_deleted: int = 0
    resolved_alerts_deleted: int = 0
    run_at: datetime
    skipped: bool = False


class RetentionTablePreview(BaseModel):
    total: int
    to_delete: int
    cutoff_date: datetime


class RetentionPreview(BaseModel):
    policy: RetentionPolicyOut
    device_logs: RetentionTablePreview
    status_history: RetentionTablePreview
    alerts: RetentionTablePreview
    resolved_alerts: RetentionTablePreview


class DeviceLogOut(BaseModel):
    id: int
    device_id: int
    level: LogLevel
    message: str
    raw_log: Optional[str] = None
    source: Optional[str] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class DeviceLogPage(BaseModel):
    logs: List[DeviceLogOut]
    total: int
    page: int
    page_size: int


class LogStats(BaseModel):
    total: int
    last_24h: int
    last_7d: int
    by_level: Dict[str, int]
