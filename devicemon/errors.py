"""
Exception types raised by the monitoring core.

The HTTP layer maps these to JSON responses using `status_code` and
`error`; everything else treats them as ordinary exceptions.
"""

from typing import Optional


class MonitoringError(Exception):
    """Base class for monitoring errors."""

    status_code: int = 400
    error: str = "monitoring_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class DeviceNotFoundError(MonitoringError):
    status_code = 404
    error = "device_not_found"


class SystemNotFoundError(MonitoringError):
    status_code = 404
    error = "system_not_found"


class ThresholdNotFoundError(MonitoringError):
    status_code = 404
    error = "threshold_not_found"


class AlertNotFoundError(MonitoringError):
    status_code = 404
    error = "alert_not_found"


class StatusConflictError(MonitoringError):
    """The device row kept changing underneath a status update."""

    status_code = 409
    error = "status_conflict"


class SnmpError(MonitoringError):
    """Raised when SNMP retrieval fails."""

    status_code = 502
    error = "snmp_error"
