"""
Syslog message parsing.

Accepted formats, tried in order:

1. RFC 5424:  <PRI>VERSION TIMESTAMP HOSTNAME APP-NAME PROCID MSGID MESSAGE
2. RFC 3164:  <PRI>Mmm dd hh:mm:ss HOSTNAME MESSAGE
3. Bare:      <PRI>HOSTNAME MESSAGE
4. Anything else after <PRI> is the message, hostname = sender IP.

A line without a <PRI> prefix is kept whole as an INFO message.

RFC 3164 timestamps carry no year; the current year is assumed, so lines
sent around New Year can land a year off.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from devicemon.models import LogLevel, utcnow


FACILITY_NAMES = [
    "kern", "user", "mail", "daemon", "auth", "syslog", "lpr", "news",
    "uucp", "clock", "authpriv", "ftp", "ntp", "logaudit", "logalert", "cron",
    "local0", "local1", "local2", "local3", "local4", "local5", "local6", "local7",
]

SEVERITY_TO_LOG_LEVEL = {
    0: LogLevel.CRITICAL,
    1: LogLevel.ERROR,
    2: LogLevel.ERROR,
    3: LogLevel.ERROR,
    4: LogLevel.WARNING,
    5: LogLevel.INFO,
    6: LogLevel.INFO,
    7: LogLevel.DEBUG,
}

MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

_PRI_RE = re.compile(r"^<(\d+)>")
_RFC5424_RE = re.compile(r"^(\d+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(.*)$", re.DOTALL)
_RFC3164_RE = re.compile(r"^(\w{3}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})\s+(\S+)\s+(.*)$", re.DOTALL)
_RFC3164_TS_RE = re.compile(r"^(\w{3})\s+(\d{1,2})\s+(\d{2}):(\d{2}):(\d{2})$")
_SIMPLE_RE = re.compile(r"^(\S+)\s+(.*)$", re.DOTALL)


@dataclass(frozen=True)
class ParsedSyslogMessage:
    priority: int
    facility: int
    severity: int
    timestamp: Optional[datetime]
    hostname: Optional[str]
    app_name: Optional[str]
    proc_id: Optional[str]
    msg_id: Optional[str]
    message: str
    raw: str

    @property
    def level(self) -> LogLevel:
        return log_level_from_severity(self.severity)

    @property
    def facility_name(self) -> str:
        return facility_name(self.facility)


def parse_priority(priority: int) -> Tuple[int, int]:
    """Split a PRI value into (facility, severity)."""
    return priority // 8, priority % 8


def log_level_from_severity(severity: int) -> LogLevel:
    return SEVERITY_TO_LOG_LEVEL.get(severity, LogLevel.INFO)


def facility_name(facility: int) -> str:
    if 0 <= facility < len(FACILITY_NAMES):
        return FACILITY_NAMES[facility]
    return f"facility{facility}"


def _nil(value: str) -> Optional[str]:
    return None if value == "-" else value


def _parse_rfc5424_timestamp(text: str) -> Optional[datetime]:
    """ISO 8601 timestamp -> naive UTC, or None when it cannot be read."""
    if text == "-":
        return None
    candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_rfc3164_timestamp(text: str, now: datetime) -> datetime:
    match = _RFC3164_TS_RE.match(text)
    if match:
        month, day, hour, minute, second = match.groups()
        if month in MONTHS:
            try:
                return datetime(
                    now.year,
                    MONTHS.index(month) + 1,
                    int(day),
                    int(hour),
                    int(minute),
                    int(second),
                )
            except ValueError:
                # e.g. "Feb 30"
                return now
    return now


def parse_syslog_message(
    raw: str,
    source_ip: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ParsedSyslogMessage:
    """
    Parse one syslog line.

    `source_ip` stands in for the hostname when the line does not carry one.
    `now` is the reference time for formats without a full timestamp.
    """
    now = now or utcnow()
    trimmed = raw.strip()

    pri_match = _PRI_RE.match(trimmed)
    if not pri_match:
        return ParsedSyslogMessage(
            priority=0,
            facility=0,
            severity=6,
            timestamp=None,
            hostname=source_ip,
            app_name=None,
            proc_id=None,
            msg_id=None,
            message=trimmed,
            raw=trimmed,
        )

    priority = int(pri_match.group(1))
    facility, severity = parse_priority(priority)
    rest = trimmed[pri_match.end():]

    m = _RFC5424_RE.match(rest)
    if m:
        _version, ts, hostname, app_name, proc_id, msg_id, message = m.groups()
        return ParsedSyslogMessage(
            priority=priority,
            facility=facility,
            severity=severity,
            timestamp=_parse_rfc5424_timestamp(ts),
            hostname=_nil(hostname),
            app_name=_nil(app_name),
            proc_id=_nil(proc_id),
            msg_id=_nil(msg_id),
            message=message.strip(),
            raw=trimmed,
        )

    m = _RFC3164_RE.match(rest)
    if m:
        ts, hostname, message = m.groups()
        return ParsedSyslogMessage(
            priority=priority,
            facility=facility,
            severity=severity,
            timestamp=_parse_rfc3164_timestamp(ts, now),
            hostname=hostname,
            app_name=None,
            proc_id=None,
            msg_id=None,
            message=message.strip(),
            raw=trimmed,
        )

    m = _SIMPLE_RE.match(rest)
    if m:
        hostname, message = m.groups()
        return ParsedSyslogMessage(
            priority=priority,
            facility=facility,
            severity=severity,
            timestamp=now,
            hostname=hostname,
            app_name=None,
            proc_id=None,
            msg_id=None,
            message=message.strip(),
            raw=trimmed,
        )

    return ParsedSyslogMessage(
        priority=priority,
        facility=facility,
        severity=severity,
        timestamp=now,
        hostname=source_ip,
        app_name=None,
        proc_id=None,
        msg_id=None,
        message=rest,
        raw=trimmed,
    )
