"""
Syslog receiver.

Listens on UDP (one message per datagram) and TCP (newline-delimited
stream, one handler thread per connection). Every line is parsed, attached
to the device whose IP sent it, stored as a DeviceLog row and turned into
a status observation:

- ERROR / CRITICAL -> device ERROR
- WARNING          -> device WARNING, unless it is already ERROR or OFFLINE
- anything else    -> device ONLINE

Lines from IPs that match no device are logged here and otherwise ignored.

Run it as:

    python -m devicemon.syslog_server

or via the `devicemon-syslog` console script.
"""

import codecs
import logging
import signal
import socketserver
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from devicemon.config import Settings, settings as default_settings
from devicemon.database import SessionLocal, init_db
from devicemon.device_logs import add_device_log
from devicemon.logging_config import configure_logging
from devicemon.models import Device, DeviceStatus, LogLevel
from devicemon.status import record_device_status_change
from devicemon.syslog_parser import ParsedSyslogMessage, parse_syslog_message

logger = logging.getLogger(__name__)


class LineBuffer:
    """
    Reassemble newline-delimited lines from arbitrary TCP reads.

    A line split across two reads is returned once, complete, from the read
    that carries its newline. Decoding is incremental so a UTF-8 sequence
    split between reads is not mangled.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> List[str]:
        self._pending += self._decoder.decode(data)
        parts = self._pending.split("\n")
        self._pending = parts.pop()
        return [line.strip() for line in parts if line.strip()]

    def flush(self) -> Optional[str]:
        """Return the unterminated tail (stripped), or None if it is blank."""
        tail = (self._pending + self._decoder.decode(b"", final=True)).strip()
        self._pending = ""
        return tail or None


class DeviceIpCache:
    """
    IP -> device id lookups with a time-to-live.

    Only hits are cached, so a device registered after its first syslog
    line is found on the next one. A device whose IP is reassigned is
    picked up once its entry expires. `ttl_seconds=0` disables caching.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def get(self, db: Session, ip: str) -> Optional[int]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(ip)
            if entry is not None and entry[1] > now:
                return entry[0]

        device_id = (
            db.query(Device.id)
            .filter(Device.ip_address == ip)
            .order_by(Device.id)
            .limit(1)
            .scalar()
        )

        with self._lock:
            if device_id is None:
                self._entries.pop(ip, None)
            elif self.ttl_seconds > 0:
                self._entries[ip] = (device_id, now + self.ttl_seconds)
        return device_id

    def invalidate(self, ip: Optional[str] = None) -> None:
        with self._lock:
            if ip is None:
                self._entries.clear()
            else:
                self._entries.pop(ip, None)


class SyslogIngestor:
    """Transport-independent handling of one received syslog line."""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        settings: Settings = default_settings,
        cache: Optional[DeviceIpCache] = None,
        alert_queue=None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.cache = cache or DeviceIpCache(settings.syslog_device_cache_ttl_seconds)
        self.alert_queue = alert_queue

    def handle_message(self, raw: str, source_ip: str) -> Optional[ParsedSyslogMessage]:
        """Parse, store and apply one line. Never raises."""
        try:
            parsed = parse_syslog_message(raw, source_ip)
        except Exception:
            logger.exception("Could not parse syslog line from %s", source_ip, extra={"source_ip": source_ip})
            return None

        level = parsed.level
        source = f"syslog:{source_ip}"
        preview = parsed.message if len(parsed.message) <= 100 else parsed.message[:100] + "..."

        db = self.session_factory()
        try:
            device_id = self.cache.get(db, source_ip)
            if device_id is None:
                logger.info("%s (unregistered): [%s] %s", source_ip, level.value, preview,
                            extra={"source_ip": source_ip})
                return parsed

            add_device_log(db, device_id, level, parsed.message, source, raw_log=parsed.raw)
            db.commit()

            self.apply_level(db, device_id, level, source)
            logger.info("%s (device %s): [%s] %s", source_ip, device_id, level.value, preview,
                        extra={"source_ip": source_ip, "device_id": device_id})
        except Exception:
            db.rollback()
            logger.exception("Error storing syslog line from %s", source_ip, extra={"source_ip": source_ip})
        finally:
            db.close()

        return parsed

    def apply_level(self, db: Session, device_id: int, level: LogLevel, source: str) -> None:
        if level in (LogLevel.ERROR, LogLevel.CRITICAL):
            new_status = DeviceStatus.ERROR
        elif level == LogLevel.WARNING:
            current = db.query(Device.status).filter(Device.id == device_id).scalar()
            # never downgrade a more severe state
            if current in (DeviceStatus.ERROR, DeviceStatus.OFFLINE):
                return
            new_status = DeviceStatus.WARNING
        else:
            new_status = DeviceStatus.ONLINE

        record_device_status_change(db, device_id, new_status, source, alert_queue=self.alert_queue)


# ---------------------------------------------------------------------------
# Socket servers
# ---------------------------------------------------------------------------


class SyslogUDPHandler(socketserver.BaseRequestHandler):
    def handle(self):
        data, _sock = self.request
        self.server.ingestor.handle_message(data.decode("utf-8", errors="replace"), self.client_address[0])


class SyslogTCPHandler(socketserver.BaseRequestHandler):
    def handle(self):
        client_ip = self.client_address[0]
        ingestor = self.server.ingestor
        buffer = LineBuffer()
        logger.info("TCP connection from %s", client_ip, extra={"source_ip": client_ip})

        try:
            while True:
                data = self.request.recv(self.server.buffer_size)
                if not data:
                    break
                for line in buffer.feed(data):
                    ingestor.handle_message(line, client_ip)
        except OSError as exc:
            logger.warning("TCP socket error from %s: %s", client_ip, exc, extra={"source_ip": client_ip})
        finally:
            tail = buffer.flush()
            if tail:
                ingestor.handle_message(tail, client_ip)


class _UDPServer(socketserver.ThreadingUDPServer):
    allow_reuse_address = True
    daemon_threads = True


class _TCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


class SyslogServer:
    """Owns the UDP and TCP listeners and their serving threads."""

    def __init__(self, ingestor: SyslogIngestor, settings: Settings = default_settings):
        self.ingestor = ingestor
        self.settings = settings
        self.udp: Optional[_UDPServer] = None
        self.tcp: Optional[_TCPServer] = None
        self._threads: List[threading.Thread] = []

    def _serve(self, server, name: str) -> None:
        t = threading.Thread(target=server.serve_forever, name=name, daemon=True)
        t.start()
        self._threads.append(t)

    def start(self) -> "SyslogServer":
        s = self.settings
        if s.syslog_enable_udp:
            self.udp = _UDPServer((s.syslog_host, s.syslog_udp_port), SyslogUDPHandler)
            self.udp.max_packet_size = s.syslog_buffer_size
            self.udp.ingestor = self.ingestor
            self._serve(self.udp, "syslog-udp")
            logger.info("UDP listening on %s:%s", *self.udp.server_address[:2])

        if s.syslog_enable_tcp:
            self.tcp = _TCPServer((s.syslog_host, s.syslog_tcp_port), SyslogTCPHandler)
            self.tcp.buffer_size = s.syslog_buffer_size
            self.tcp.ingestor = self.ingestor
            self._serve(self.tcp, "syslog-tcp")
            logger.info("TCP listening on %s:%s", *self.tcp.server_address[:2])

        return self

    def stop(self) -> None:
        for server in (self.udp, self.tcp):
            if server is not None:
                server.shutdown()
                server.server_close()
        for t in self._threads:
            t.join(timeout=5)
        self._threads = []
        self.udp = None
        self.tcp = None


def main() -> None:
    configure_logging()
    init_db()

    s = default_settings
    logger.info("Starting syslog server...")
    logger.info(
        "Config: UDP=%s, TCP=%s",
        s.syslog_udp_port if s.syslog_enable_udp else "disabled",
        s.syslog_tcp_port if s.syslog_enable_tcp else "disabled",
    )

    server = SyslogServer(SyslogIngestor(SessionLocal, s), s).start()
    stop_event = threading.Event()

    def _shutdown(signum, _frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    stop_event.wait()
    server.stop()


if __name__ == "__main__":
    main()
