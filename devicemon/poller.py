"""
SNMP poller process.

This module:
- loads every device with SNMP enabled and an IP address (fresh each cycle)
- polls them one after another with the SNMP client
- feeds the outcome through the status recorder
- writes one DeviceLog row per poll

A device that fails (even with an unexpected exception) is logged and
skipped; the rest of the cycle carries on.

Run it as:

    python -m devicemon.poller

or via the `devicemon-poller` console script.
"""

import logging
import signal
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from devicemon.config import Settings, settings as default_settings
from devicemon.database import SessionLocal, init_db
from devicemon.device_logs import add_device_log
from devicemon.errors import SnmpError
from devicemon.logging_config import configure_logging
from devicemon.models import Device, DeviceStatus, LogLevel, utcnow
from devicemon.snmp_client import (
    SnmpPollResult,
    fetch_system_info,
    format_uptime,
    map_result_to_status,
    target_for_device,
)
from devicemon.status import record_device_status_change

logger = logging.getLogger(__name__)

SOURCE = "snmp-poller"

Fetcher = Callable[..., SnmpPollResult]


@dataclass
class PollSummary:
    polled: int = 0
    online: int = 0
    warning: int = 0
    offline: int = 0
    failed: int = 0


def poll_device(
    device: Device,
    settings: Settings = default_settings,
    fetch: Fetcher = fetch_system_info,
) -> SnmpPollResult:
    try:
        target = target_for_device(device, settings)
    except SnmpError as exc:
        return SnmpPollResult(success=False, error=exc.message)
    return fetch(target)


def describe_success(result: SnmpPollResult) -> str:
    info = []
    if result.sys_descr:
        info.append(f"Description: {result.sys_descr}")
    if result.sys_name:
        info.append(f"Name: {result.sys_name}")
    if result.sys_uptime:
        info.append(f"Uptime: {format_uptime(result.sys_uptime)}")
    text = "SNMP poll successful"
    if info:
        text += " - " + "; ".join(info)
    return text


def apply_poll_result(
    db: Session,
    device: Device,
    result: SnmpPollResult,
    alert_queue=None,
) -> DeviceStatus:
    """
    Record one poll outcome for `device` and commit.

    `snmp_last_polled` is always bumped; `last_seen_at` only when the
    device answered.
    """
    device_id = device.id
    status = map_result_to_status(result)

    record_device_status_change(db, device_id, status, SOURCE, alert_queue=alert_queue)

    device = db.get(Device, device_id)
    device.snmp_last_polled = result.polled_at
    if result.success:
        device.last_seen_at = result.polled_at

    if status == DeviceStatus.ONLINE:
        add_device_log(db, device_id, LogLevel.INFO, describe_success(result), SOURCE)
    elif status == DeviceStatus.WARNING:
        add_device_log(db, device_id, LogLevel.WARNING, f"SNMP poll returned errors: {result.error}", SOURCE)
    else:
        add_device_log(db, device_id, LogLevel.WARNING, f"SNMP poll failed: {result.error}", SOURCE)

    db.commit()
    return status


def poll_once(
    db: Session,
    settings: Settings = default_settings,
    fetch: Fetcher = fetch_system_info,
    alert_queue=None,
) -> PollSummary:
    """Poll every monitored device once."""
    devices = (
        db.query(Device)
        .filter(Device.snmp_enabled.is_(True), Device.ip_address.isnot(None))
        .order_by(Device.id)
        .all()
    )
    logger.info("Found %d devices to poll", len(devices))

    summary = PollSummary()
    # Plain values: a rollback below expires the ORM objects.
    targets = [(d.id, d.name, d.ip_address) for d in devices]

    for device_id, name, ip_address in targets:
        summary.polled += 1
        try:
            device = db.get(Device, device_id)
            if device is None:
                logger.info("Device %s was removed mid-cycle", device_id)
                continue
            result = poll_device(device, settings, fetch)
            if result.success:
                logger.info("%s (%s): OK - %s", name, ip_address, (result.sys_descr or "no description")[:50])
            else:
                logger.warning("%s (%s): FAILED - %s", name, ip_address, result.error)

            status = apply_poll_result(db, device, result, alert_queue)
        except Exception:
            db.rollback()
            summary.failed += 1
            logger.exception("Error polling device %s (%s)", name, ip_address, extra={"device_id": device_id})
            continue

        if status == DeviceStatus.ONLINE:
            summary.online += 1
        elif status == DeviceStatus.WARNING:
            summary.warning += 1
        else:
            summary.offline += 1

    logger.info(
        "Poll cycle complete: %d polled, %d online, %d warning, %d offline, %d failed",
        summary.polled, summary.online, summary.warning, summary.offline, summary.failed,
    )
    return summary


def run_forever(
    settings: Settings = default_settings,
    stop_event: Optional[threading.Event] = None,
    session_factory=SessionLocal,
    fetch: Fetcher = fetch_system_info,
    alert_queue=None,
) -> None:
    """
    Main poller loop: open a session, poll, close, wait, repeat.

    The first cycle starts immediately.
    """
    stop_event = stop_event or threading.Event()
    while not stop_event.is_set():
        started = utcnow()
        try:
            with session_factory() as db:
                poll_once(db, settings, fetch, alert_queue)
        except Exception:
            logger.exception("Poll cycle failed")
        elapsed = (utcnow() - started).total_seconds()
        stop_event.wait(max(settings.snmp_poll_interval_seconds - elapsed, 0.0))


def main() -> None:
    configure_logging()
    init_db()

    logger.info("Starting SNMP poller...")
    logger.info("Poll interval: %s seconds", default_settings.snmp_poll_interval_seconds)

    stop_event = threading.Event()

    def _shutdown(signum, _frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    run_forever(default_settings, stop_event)


if __name__ == "__main__":
    main()
