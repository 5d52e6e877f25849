import socket
import threading
import time

from devicemon.alert_queue import AlertQueue
from devicemon.config import Settings
from devicemon.models import (
    Alert,
    AlertCondition,
    AlertSeverity,
    AlertThreshold,
    Device,
    DeviceLog,
    DeviceStatus,
    DeviceStatusHistory,
    LogLevel,
)
from devicemon.notifications import NotificationDispatcher
from devicemon.syslog_server import DeviceIpCache, LineBuffer, SyslogIngestor, SyslogServer


# ---------------------------------------------------------------------------
# LineBuffer
# ---------------------------------------------------------------------------

def test_line_split_across_reads_is_one_message():
    buf = LineBuffer()
    assert buf.feed(b"<134>Jan 15 10:30:00 sw1 interface Gi0/1 ") == []
    assert buf.feed(b"changed state to up\n<131>next") == [
        "<134>Jan 15 10:30:00 sw1 interface Gi0/1 changed state to up"
    ]
    assert buf.flush() == "<131>next"
    assert buf.flush() is None


def test_blank_lines_are_dropped():
    buf = LineBuffer()
    assert buf.feed(b"one\n\n  \r\ntwo\r\n") == ["one", "two"]
    assert buf.flush() is None


def test_multibyte_character_split_between_reads():
    buf = LineBuffer()
    data = "café down\n".encode("utf-8")
    split = data.index(b"\xc3") + 1
    assert buf.feed(data[:split]) == []
    assert buf.feed(data[split:]) == ["café down"]


# ---------------------------------------------------------------------------
# DeviceIpCache
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_cache_hit_expires_after_ttl(db, make_device):
    device = make_device(ip_address="10.0.0.5")
    clock = FakeClock()
    cache = DeviceIpCache(ttl_seconds=60, clock=clock)

    assert cache.get(db, "10.0.0.5") == device.id

    device.ip_address = "10.0.0.99"
    db.commit()

    clock.now += 30
    assert cache.get(db, "10.0.0.5") == device.id

    clock.now += 31
    assert cache.get(db, "10.0.0.5") is None
    assert cache.get(db, "10.0.0.99") == device.id


def test_cache_does_not_remember_misses(db, make_device):
    cache = DeviceIpCache(ttl_seconds=300, clock=FakeClock())
    assert cache.get(db, "10.0.0.7") is None

    device = make_device(ip_address="10.0.0.7")
    assert cache.get(db, "10.0.0.7") == device.id


def test_invalidate(db, make_device):
    device = make_device(ip_address="10.0.0.5")
    cache = DeviceIpCache(ttl_seconds=300, clock=FakeClock())
    cache.get(db, "10.0.0.5")

    device.ip_address = None
    db.commit()
    cache.invalidate("10.0.0.5")
    assert cache.get(db, "10.0.0.5") is None


# ---------------------------------------------------------------------------
# SyslogIngestor
# ---------------------------------------------------------------------------

def _ingestor(session_factory, settings, alert_queue):
    return SyslogIngestor(session_factory, settings, DeviceIpCache(300), alert_queue)


def _device(db, device_id):
    db.expire_all()
    return db.get(Device, device_id)


def test_error_line_stores_log_and_sets_error(db, make_device, session_factory, settings, alert_queue):
    device = make_device(status=DeviceStatus.ONLINE)
    ingestor = _ingestor(session_factory, settings, alert_queue)

    parsed = ingestor.handle_message("<131>Jan 15 10:30:00 sw1 %LINK-3-UPDOWN: Gi0/1 down", "10.0.0.5")

    assert parsed.level == LogLevel.ERROR
    logs = db.query(DeviceLog).all()
    assert len(logs) == 1
    assert logs[0].device_id == device.id
    assert logs[0].level == LogLevel.ERROR
    assert logs[0].source == "syslog:10.0.0.5"
    assert logs[0].raw_log == "<131>Jan 15 10:30:00 sw1 %LINK-3-UPDOWN: Gi0/1 down"
    assert _device(db, device.id).status == DeviceStatus.ERROR
    assert len(alert_queue.contexts) == 1


def test_warning_does_not_downgrade_error_or_offline(db, make_device, session_factory, settings, alert_queue):
    ingestor = _ingestor(session_factory, settings, alert_queue)
    errored = make_device(name="a", ip_address="10.0.0.1", status=DeviceStatus.ERROR)
    offline = make_device(name="b", ip_address="10.0.0.2", status=DeviceStatus.OFFLINE)
    online = make_device(name="c", ip_address="10.0.0.3", status=DeviceStatus.ONLINE)

    for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
        ingestor.handle_message("<12>host fan speed high", ip)

    assert _device(db, errored.id).status == DeviceStatus.ERROR
    assert _device(db, offline.id).status == DeviceStatus.OFFLINE
    assert _device(db, online.id).status == DeviceStatus.WARNING
    assert db.query(DeviceLog).count() == 3


def test_info_line_brings_device_online(db, make_device, session_factory, settings, alert_queue):
    device = make_device(status=DeviceStatus.OFFLINE)
    ingestor = _ingestor(session_factory, settings, alert_queue)

    ingestor.handle_message("<134>Jan 15 10:30:00 sw1 heartbeat", "10.0.0.5")

    refreshed = _device(db, device.id)
    assert refreshed.status == DeviceStatus.ONLINE
    assert refreshed.last_seen_at is not None


def test_unknown_ip_is_not_stored(db, make_device, session_factory, settings, alert_queue):
    make_device(ip_address="10.0.0.5")
    ingestor = _ingestor(session_factory, settings, alert_queue)

    parsed = ingestor.handle_message("<131>host down", "192.168.1.1")

    assert parsed is not None
    assert db.query(DeviceLog).count() == 0
    assert db.query(DeviceStatusHistory).count() == 0
    assert alert_queue.contexts == []


def test_error_syslog_on_offline_device_fires_status_change_only(
    db, make_device, session_factory, settings, alert_queue
):
    device = make_device(name="X", status=DeviceStatus.OFFLINE)
    db.add_all([
        AlertThreshold(name="offline", condition=AlertCondition.DEVICE_OFFLINE, severity=AlertSeverity.CRITICAL),
        AlertThreshold(name="changes", condition=AlertCondition.STATUS_CHANGE, severity=AlertSeverity.INFO),
    ])
    db.commit()

    ingestor = _ingestor(session_factory, settings, alert_queue)
    ingestor.handle_message("<131>Jan 15 10:30:00 X link failure", "10.0.0.5")

    assert _device(db, device.id).status == DeviceStatus.ERROR
    assert len(alert_queue.contexts) == 1
    context = alert_queue.contexts[0]
    assert context.previous_status == DeviceStatus.OFFLINE
    assert context.new_status == DeviceStatus.ERROR

    worker = AlertQueue(session_factory, settings, dispatcher=NotificationDispatcher(settings))
    worker.process(context)

    alerts = db.query(Alert).all()
    assert len(alerts) == 1
    assert alerts[0].message == 'Device "X" changed from OFFLINE to ERROR'
    assert alerts[0].severity == AlertSeverity.INFO


# ---------------------------------------------------------------------------
# Socket servers
# ---------------------------------------------------------------------------

class CollectingIngestor:
    def __init__(self):
        self.lines = []
        self.lock = threading.Lock()

    def handle_message(self, raw, source_ip):
        with self.lock:
            self.lines.append((raw, source_ip))


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _server_settings(**overrides):
    values = dict(
        _env_file=None,
        syslog_host="127.0.0.1",
        syslog_udp_port=0,
        syslog_tcp_port=0,
        syslog_enable_udp=False,
        syslog_enable_tcp=False,
    )
    values.update(overrides)
    return Settings(**values)


def test_tcp_stream_split_mid_line():
    ingestor = CollectingIngestor()
    server = SyslogServer(ingestor, _server_settings(syslog_enable_tcp=True)).start()
    try:
        port = server.tcp.server_address[1]
        with socket.create_connection(("127.0.0.1", port)) as sock:
            sock.sendall(b"<134>Jan 15 10:30:00 sw1 inter")
            time.sleep(0.05)
            sock.sendall(b"face up\n<131>sw1 unterminated")

        assert _wait_for(lambda: len(ingestor.lines) == 2)
    finally:
        server.stop()

    assert ingestor.lines == [
        ("<134>Jan 15 10:30:00 sw1 interface up", "127.0.0.1"),
        ("<131>sw1 unterminated", "127.0.0.1"),
    ]


def test_udp_datagram_is_one_message():
    ingestor = CollectingIngestor()
    server = SyslogServer(ingestor, _server_settings(syslog_enable_udp=True)).start()
    try:
        port = server.udp.server_address[1]
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.sendto(b"<134>sw1 hello", ("127.0.0.1", port))

        assert _wait_for(lambda: len(ingestor.lines) == 1)
    finally:
        server.stop()

    assert ingestor.lines == [("<134>sw1 hello", "127.0.0.1")]
    assert server.udp is None
