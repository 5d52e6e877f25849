"""
Logging setup shared by the API, the syslog server, the poller and the
retention job.

`configure_logging` installs one stdout handler at LOG_LEVEL, in plain text
or, with LOG_FORMAT=json, one JSON object per line with community strings,
passwords and tokens masked.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone

from devicemon.config import Settings, settings as default_settings


class JsonFormatter(logging.Formatter):
    """One JSON object per record, carrying the device/alert/threshold extras."""

    _redact_re = re.compile(
        r"(?i)\b(password|passwd|secret|token|api[_-]?key|snmp_community|community)\b\s*[:=]\s*([^\s,;]+)"
    )

    @classmethod
    def _redact(cls, msg: str) -> str:
        return cls._redact_re.sub(lambda m: f"{m.group(1)}=********", msg)

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": self._redact(record.getMessage()),
        }
        for k in ("device_id", "alert_id", "threshold_id", "source_ip", "channel"):
            v = getattr(record, k, None)
            if v is not None:
                payload[k] = v
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(settings: Settings = default_settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    if settings.log_format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )

    stream = logging.StreamHandler(sys.stdout)
    stream.setLevel(level)
    stream.setFormatter(formatter)
    root.handlers = [stream]

    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.handlers = [stream]
        logger.propagate = False

    # pysnmp and httpx are chatty at DEBUG
    for name in ("pysnmp", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
