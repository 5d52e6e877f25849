"""
Configuration for the device monitoring service.

We use pydantic-settings (Pydantic v2) to load settings from:
- environment variables
- a local `.env` file in the project root

A single `settings` object is built at import time. Every long-running
component (syslog server, SNMP poller, alert workers, notification
dispatcher, retention job) accepts a `settings` argument that defaults to
this object, so tests can hand in their own instance.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Environment variables (with defaults):

    - DATABASE_URL:                     SQLAlchemy URL (default: sqlite:///./devicemon.db)

    - SYSLOG_HOST:                      Bind address for the syslog listeners (0.0.0.0)
    - SYSLOG_UDP_PORT / SYSLOG_TCP_PORT: Listener ports (514 / 514)
    - SYSLOG_BUFFER_SIZE:               Max datagram / read size in bytes (65536)
    - SYSLOG_ENABLE_UDP / SYSLOG_ENABLE_TCP: Toggle each listener (true / true)
    - SYSLOG_DEVICE_CACHE_TTL_SECONDS:  IP -> device cache lifetime, 0 disables (300)

    - SNMP_DEFAULT_PORT:                UDP port when a device has none (161)
    - SNMP_DEFAULT_COMMUNITY:           Community when a device has none ("public")
    - SNMP_DEFAULT_VERSION:             "1" or "2c" (default: "2c")
    - SNMP_TIMEOUT_SECONDS:             Per-request timeout (5.0)
    - SNMP_RETRIES:                     Transport-level retries (2)
    - SNMP_POLL_INTERVAL_SECONDS:       Seconds between poll cycles (60)

    - ALERT_COOLDOWN_MINUTES:           Dedup window per threshold + device (15)
    - ALERT_EMAIL_ENABLED:              Master switch for the email channel (false)
    - ALERT_EMAIL_FROM:                 Sender address for alert emails
    - ALERT_WEBHOOK_TIMEOUT_SECONDS:    Webhook POST timeout (10.0)
    - ALERT_QUEUE_SIZE:                 Pending evaluations before new ones are dropped (1000)
    - ALERT_WORKERS:                    Alert evaluation worker threads (4)

    - LOG_LEVEL:                        Root log level ("INFO")
    - LOG_FORMAT:                       "text" or "json" ("text")
    """

    database_url: str = "sqlite:///./devicemon.db"

    syslog_host: str = "0.0.0.0"
    syslog_udp_port: int = 514
    syslog_tcp_port: int = 514
    syslog_buffer_size: int = 65536
    syslog_enable_udp: bool = True
    syslog_enable_tcp: bool = True
    syslog_device_cache_ttl_seconds: float = 300.0

    snmp_default_port: int = 161
    snmp_default_community: str = "public"
    snmp_default_version: str = "2c"
    snmp_timeout_seconds: float = 5.0
    snmp_retries: int = 2
    snmp_poll_interval_seconds: float = 60.0

    alert_cooldown_minutes: int = 15
    alert_email_enabled: bool = False
    alert_email_from: str = "alerts@devicemon.local"
    alert_webhook_timeout_seconds: float = 10.0
    alert_queue_size: int = 1000
    alert_workers: int = 4

    log_level: str = "INFO"
    log_format: str = "text"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("snmp_default_version", mode="before")
    @classmethod
    def normalize_snmp_version(cls, v):
        """
        Accept the spellings operators actually type:

        - "1", "v1"              -> "1"
        - "2c", "2C", "v2c", "2" -> "2c"
        """
        if v is None:
            return "2c"
        text = str(v).strip().lower()
        if text.startswith("v"):
            text = text[1:]
        if text == "1":
            return "1"
        if text in ("2", "2c"):
            return "2c"
        raise ValueError(f"unsupported SNMP version: {v!r}")

    @field_validator("log_format", mode="before")
    @classmethod
    def normalize_log_format(cls, v):
        text = str(v or "text").strip().lower()
        return "json" if text == "json" else "text"


# Single global settings object
settings = Settings()
