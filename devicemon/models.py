"""
SQLAlchemy ORM models.

Tables owned by the monitoring core:

- DeviceStatusHistory: one row per observed status transition (append-only)
- DeviceLog:           one row per ingested syslog line or poll outcome
- AlertThreshold:      operator-defined alert rules
- Alert:               alerts raised when a threshold fires
- RetentionPolicy:     singleton retention windows

`System` and `Device` belong to the surrounding inventory application; the
monitoring core only writes the device's monitoring columns
(`status`, `last_seen_at`, `snmp_last_polled`).

All timestamps are naive UTC.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from devicemon.database import Base


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DeviceStatus(str, enum.Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    WARNING = "WARNING"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


class LogLevel(str, enum.Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AlertCondition(str, enum.Enum):
    DEVICE_OFFLINE = "DEVICE_OFFLINE"
    DEVICE_ERROR = "DEVICE_ERROR"
    LOW_UPTIME = "LOW_UPTIME"
    STATUS_CHANGE = "STATUS_CHANGE"


class AlertSeverity(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AlertStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class SnmpVersion(str, enum.Enum):
    V1 = "V1"
    V2C = "V2C"
    V3 = "V3"


class System(Base):
    """A group of devices (owned by the inventory application)."""

    __tablename__ = "systems"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)

    devices = relationship("Device", back_populates="system")


class Device(Base):
    """
    A monitored network-attached device.

    Typical usage:
    - the SNMP poller and the syslog receiver observe it
    - `devicemon.status.record_device_status_change` moves `status`
    """

    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    ip_address = Column(String(64), index=True, nullable=True)

    system_id = Column(Integer, ForeignKey("systems.id"), nullable=True, index=True)

    status = Column(Enum(DeviceStatus), nullable=False, default=DeviceStatus.UNKNOWN)
    last_seen_at = Column(DateTime, nullable=True)

    # SNMP monitoring config; NULL means "use the process default"
    snmp_enabled = Column(Boolean, nullable=False, default=False)
    snmp_version = Column(Enum(SnmpVersion), nullable=True)
    snmp_community = Column(String(255), nullable=True)
    snmp_port = Column(Integer, nullable=True)
    snmp_last_polled = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    system = relationship("System", back_populates="devices")


class DeviceStatusHistory(Base):
    """One row per status transition. Never updated, only purged by retention."""

    __tablename__ = "device_status_history"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(Enum(DeviceStatus), nullable=False)
    previous_status = Column(Enum(DeviceStatus), nullable=True)

    # e.g. "snmp-poller", "syslog:10.0.0.5", "manual"
    source = Column(String(255), nullable=True)

    recorded_at = Column(DateTime, index=True, nullable=False, default=utcnow)


class DeviceLog(Base):
    """A raw or parsed log line attached to a device."""

    __tablename__ = "device_logs"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)

    level = Column(Enum(LogLevel), nullable=False, default=LogLevel.INFO)
    message = Column(Text, nullable=False)
    raw_log = Column(Text, nullable=True)
    source = Column(String(255), nullable=True)

    timestamp = Column(DateTime, index=True, nullable=False, default=utcnow)


class AlertThreshold(Base):
    """
    An alert rule.

    Scope: `device_id` set -> one device; only `system_id` set -> every device
    of that system; both NULL -> global.
    `threshold` / `threshold_unit` are only read by LOW_UPTIME.
    """

    __tablename__ = "alert_thresholds"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    condition = Column(Enum(AlertCondition), nullable=False)
    severity = Column(Enum(AlertSeverity), nullable=False, default=AlertSeverity.WARNING)

    threshold = Column(Float, nullable=True)
    threshold_unit = Column(String(32), nullable=True)

    enabled = Column(Boolean, nullable=False, default=True)

    notify_email = Column(Boolean, nullable=False, default=False)
    notify_webhook = Column(Boolean, nullable=False, default=False)
    webhook_url = Column(String(2048), nullable=True)
    email_recipients = Column(Text, nullable=True)  # comma-separated

    system_id = Column(Integer, ForeignKey("systems.id", ondelete="CASCADE"), nullable=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    alerts = relationship("Alert", back_populates="threshold", cascade="all, delete-orphan")


class Alert(Base):
    """An alert raised by a threshold for a device and/or system."""

    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    threshold_id = Column(Integer, ForeignKey("alert_thresholds.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="SET NULL"), nullable=True, index=True)
    system_id = Column(Integer, ForeignKey("systems.id", ondelete="SET NULL"), nullable=True, index=True)

    severity = Column(Enum(AlertSeverity), nullable=False)
    status = Column(Enum(AlertStatus), nullable=False, default=AlertStatus.ACTIVE, index=True)
    message = Column(Text, nullable=False)

    created_at = Column(DateTime, index=True, nullable=False, default=utcnow)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String(255), nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    threshold = relationship("AlertThreshold", back_populates="alerts")


class RetentionPolicy(Base):
    """Retention windows in days. Only one row is ever used."""

    __tablename__ = "retention_policies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, default="Default Policy")

    device_log_retention_days = Column(Integer, nullable=False, default=30)
    status_history_retention_days = Column(Integer, nullable=False, default=90)
    alert_retention_days = Column(Integer, nullable=False, default=30)
    resolved_alert_retention_days = Column(Integer, nullable=False, default=7)

    enabled = Column(Boolean, nullable=False, default=True)
    last_cleanup_at = Column(DateTime, nullable=True)
