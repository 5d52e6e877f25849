from types import SimpleNamespace

import pytest
from sqlalchemy.sql.dml import Update

from devicemon.errors import DeviceNotFoundError, StatusConflictError
from devicemon.models import Device, DeviceStatus, DeviceStatusHistory
from devicemon.status import get_status_history, record_device_status_change


def _history(db, device_id):
    return (
        db.query(DeviceStatusHistory)
        .filter(DeviceStatusHistory.device_id == device_id)
        .order_by(DeviceStatusHistory.id)
        .all()
    )


def test_unchanged_status_is_a_no_op(db, make_device, alert_queue):
    device = make_device(status=DeviceStatus.ONLINE)

    for _ in range(2):
        result = record_device_status_change(db, device.id, DeviceStatus.ONLINE, "manual", alert_queue)
        assert result.status_changed is False
        assert result.previous_status == DeviceStatus.ONLINE

    assert _history(db, device.id) == []
    assert alert_queue.contexts == []


def test_one_row_per_transition(db, make_device, alert_queue):
    device = make_device(status=DeviceStatus.UNKNOWN)
    sequence = [
        DeviceStatus.ONLINE,
        DeviceStatus.WARNING,
        DeviceStatus.ERROR,
        DeviceStatus.OFFLINE,
        DeviceStatus.ONLINE,
    ]

    for status in sequence:
        result = record_device_status_change(db, device.id, status, "snmp-poller", alert_queue)
        assert result.status_changed is True

    rows = _history(db, device.id)
    assert len(rows) == len(sequence)
    expected_previous = [DeviceStatus.UNKNOWN] + sequence[:-1]
    assert [(r.previous_status, r.status) for r in rows] == list(zip(expected_previous, sequence))
    assert all(r.source == "snmp-poller" for r in rows)
    assert len(alert_queue.contexts) == len(sequence)


def test_last_seen_only_moves_on_online(db, make_device, alert_queue):
    device = make_device(status=DeviceStatus.UNKNOWN)

    record_device_status_change(db, device.id, DeviceStatus.OFFLINE, None, alert_queue)
    assert db.get(Device, device.id).last_seen_at is None

    record_device_status_change(db, device.id, DeviceStatus.ONLINE, None, alert_queue)
    assert db.get(Device, device.id).last_seen_at is not None


def test_alert_context_carries_names(db, make_device, make_system, alert_queue):
    system = make_system("DC1")
    device = make_device(name="edge-1", system=system, status=DeviceStatus.ONLINE)

    record_device_status_change(db, device.id, DeviceStatus.OFFLINE, "manual", alert_queue)

    context = alert_queue.contexts[0]
    assert context.device_id == device.id
    assert context.system_id == system.id
    assert context.device_name == "edge-1"
    assert context.system_name == "DC1"
    assert context.previous_status == DeviceStatus.ONLINE
    assert context.new_status == DeviceStatus.OFFLINE


def test_queue_failure_does_not_fail_the_update(db, make_device):
    class BrokenQueue:
        def submit(self, context):
            raise RuntimeError("queue down")

    device = make_device(status=DeviceStatus.ONLINE)
    result = record_device_status_change(db, device.id, DeviceStatus.ERROR, None, BrokenQueue())

    assert result.status_changed is True
    assert len(_history(db, device.id)) == 1


def test_missing_device(db, alert_queue):
    with pytest.raises(DeviceNotFoundError):
        record_device_status_change(db, 999, DeviceStatus.ONLINE, None, alert_queue)


def test_conflict_after_repeated_misses(db, make_device, alert_queue, monkeypatch):
    device = make_device(status=DeviceStatus.ONLINE)
    real_execute = db.execute

    def execute(statement, *args, **kwargs):
        # every conditional UPDATE matches nothing, as if another writer always won
        if isinstance(statement, Update):
            return SimpleNamespace(rowcount=0)
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db, "execute", execute)

    with pytest.raises(StatusConflictError):
        record_device_status_change(db, device.id, DeviceStatus.OFFLINE, None, alert_queue)

    monkeypatch.undo()
    assert _history(db, device.id) == []
    assert alert_queue.contexts == []


def test_history_newest_first(db, make_device, alert_queue):
    device = make_device(status=DeviceStatus.UNKNOWN)
    for status in (DeviceStatus.ONLINE, DeviceStatus.OFFLINE, DeviceStatus.ONLINE):
        record_device_status_change(db, device.id, status, None, alert_queue)

    rows = get_status_history(db, device.id, limit=2)
    assert [r.status for r in rows] == [DeviceStatus.ONLINE, DeviceStatus.OFFLINE]
