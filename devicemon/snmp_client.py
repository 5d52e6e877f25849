"""
SNMP client used by the poller.

One GET for the standard system-group OIDs (SNMPv2-MIB):

- sysDescr    1.3.6.1.2.1.1.1.0
- sysUpTime   1.3.6.1.2.1.1.3.0
- sysContact  1.3.6.1.2.1.1.4.0
- sysName     1.3.6.1.2.1.1.5.0
- sysLocation 1.3.6.1.2.1.1.6.0

Outcome classes:

- no response / transport failure  -> success=False, error set  (OFFLINE)
- response carrying error status or
  noSuchObject/noSuchInstance      -> success=True,  error set  (WARNING)
- clean response                   -> success=True,  no error   (ONLINE)

pysnmp's high-level API is asyncio-based; `fetch_system_info` runs one
request to completion on a private event loop so the poller stays a plain
synchronous loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    get_cmd,
)
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from devicemon.config import Settings, settings as default_settings
from devicemon.errors import SnmpError
from devicemon.models import Device, DeviceStatus, SnmpVersion, utcnow

logger = logging.getLogger(__name__)


STANDARD_OIDS: Dict[str, str] = {
    "sys_descr": "1.3.6.1.2.1.1.1.0",
    "sys_uptime": "1.3.6.1.2.1.1.3.0",
    "sys_contact": "1.3.6.1.2.1.1.4.0",
    "sys_name": "1.3.6.1.2.1.1.5.0",
    "sys_location": "1.3.6.1.2.1.1.6.0",
}

_VARBIND_ERRORS = (NoSuchObject, NoSuchInstance, EndOfMibView)


@dataclass(frozen=True)
class SnmpTarget:
    host: str
    port: int
    community: str
    version: str  # "1" or "2c"
    timeout: float
    retries: int


@dataclass
class SnmpPollResult:
    success: bool
    polled_at: datetime = field(default_factory=utcnow)
    sys_descr: Optional[str] = None
    sys_uptime: Optional[int] = None  # hundredths of a second
    sys_contact: Optional[str] = None
    sys_name: Optional[str] = None
    sys_location: Optional[str] = None
    error: Optional[str] = None


def target_for_device(device: Device, settings: Settings = default_settings) -> SnmpTarget:
    """
    Build the request target, per-device values first, then process defaults.

    SNMPv3 devices are polled as v2c: v3 credentials are not modelled.
    """
    if not device.ip_address:
        raise SnmpError("No IP address configured")

    if device.snmp_version == SnmpVersion.V1:
        version = "1"
    elif device.snmp_version in (SnmpVersion.V2C, SnmpVersion.V3):
        version = "2c"
    else:
        version = settings.snmp_default_version

    return SnmpTarget(
        host=device.ip_address,
        port=device.snmp_port or settings.snmp_default_port,
        community=device.snmp_community or settings.snmp_default_community,
        version=version,
        timeout=settings.snmp_timeout_seconds,
        retries=settings.snmp_retries,
    )


def _decode(key: str, value: Any) -> Any:
    if key == "sys_uptime":
        return int(value)
    return str(value)


def apply_varbinds(result: SnmpPollResult, var_binds) -> None:
    """
    Copy response values onto `result`, in request order.

    Varbind-level exceptions (noSuchObject etc.) are collected into
    `result.error` instead of being treated as values.
    """
    problems = []
    for key, var_bind in zip(STANDARD_OIDS, var_binds):
        oid, value = var_bind[0], var_bind[1]
        if isinstance(value, _VARBIND_ERRORS):
            problems.append(f"{oid}: {value.prettyPrint()}")
            continue
        try:
            setattr(result, key, _decode(key, value))
        except (TypeError, ValueError):
            problems.append(f"{oid}: unreadable value {value!r}")
    if problems:
        result.error = "; ".join(problems)


async def _get_system_info(target: SnmpTarget) -> SnmpPollResult:
    result = SnmpPollResult(success=False)
    engine = SnmpEngine()
    try:
        transport = await UdpTransportTarget.create(
            (target.host, target.port),
            timeout=target.timeout,
            retries=target.retries,
        )
        error_indication, error_status, error_index, var_binds = await get_cmd(
            engine,
            CommunityData(target.community, mpModel=0 if target.version == "1" else 1),
            transport,
            ContextData(),
            *[ObjectType(ObjectIdentity(oid)) for oid in STANDARD_OIDS.values()],
            lookupMib=False,
        )
    finally:
        engine.close_dispatcher()

    if error_indication:
        result.error = str(error_indication)
        return result

    result.success = True
    if error_status:
        at = var_binds[int(error_index) - 1][0] if error_index and var_binds else "?"
        result.error = f"{error_status.prettyPrint()} at {at}"
        return result

    apply_varbinds(result, var_binds)
    return result


def fetch_system_info(target: SnmpTarget) -> SnmpPollResult:
    """Run one SNMP GET against `target`. Never raises."""
    try:
        return asyncio.run(_get_system_info(target))
    except Exception as exc:
        logger.debug("SNMP request to %s:%s failed", target.host, target.port, exc_info=True)
        return SnmpPollResult(success=False, error=str(exc) or exc.__class__.__name__)


def map_result_to_status(result: SnmpPollResult) -> DeviceStatus:
    if not result.success:
        return DeviceStatus.OFFLINE
    if result.error:
        return DeviceStatus.WARNING
    return DeviceStatus.ONLINE


def format_uptime(uptime_hundredths: int) -> str:
    """sysUpTime (hundredths of a second) -> '3d 4h 5m' / '4h 5m' / '5m'."""
    seconds = uptime_hundredths // 100
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60

    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
