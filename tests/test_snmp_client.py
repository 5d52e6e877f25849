import pytest
from pysnmp.proto.rfc1902 import ObjectName, OctetString, TimeTicks
from pysnmp.proto.rfc1905 import noSuchObject

from devicemon.config import Settings
from devicemon.errors import SnmpError
from devicemon.models import Device, DeviceStatus, SnmpVersion
from devicemon.snmp_client import (
    STANDARD_OIDS,
    SnmpPollResult,
    SnmpTarget,
    apply_varbinds,
    fetch_system_info,
    format_uptime,
    map_result_to_status,
    target_for_device,
)


def test_standard_oids():
    assert list(STANDARD_OIDS.values()) == [
        "1.3.6.1.2.1.1.1.0",
        "1.3.6.1.2.1.1.3.0",
        "1.3.6.1.2.1.1.4.0",
        "1.3.6.1.2.1.1.5.0",
        "1.3.6.1.2.1.1.6.0",
    ]


def test_target_uses_device_values_then_defaults(settings):
    custom = Device(
        name="a", ip_address="10.0.0.1", snmp_version=SnmpVersion.V1,
        snmp_community="s3cret", snmp_port=1161,
    )
    target = target_for_device(custom, settings)
    assert (target.host, target.port, target.community, target.version) == ("10.0.0.1", 1161, "s3cret", "1")

    plain = Device(name="b", ip_address="10.0.0.2")
    target = target_for_device(plain, settings)
    assert (target.port, target.community, target.version) == (161, "public", "2c")
    assert target.timeout == settings.snmp_timeout_seconds
    assert target.retries == settings.snmp_retries


def test_v3_device_is_polled_as_v2c():
    settings = Settings(_env_file=None, snmp_default_version="v1")
    device = Device(name="c", ip_address="10.0.0.3", snmp_version=SnmpVersion.V3)
    assert target_for_device(device, settings).version == "2c"
    assert target_for_device(Device(name="d", ip_address="10.0.0.4"), settings).version == "1"


def test_target_without_ip(settings):
    with pytest.raises(SnmpError, match="No IP address configured"):
        target_for_device(Device(name="e"), settings)


def test_apply_varbinds_values_and_missing_objects():
    oids = list(STANDARD_OIDS.values())
    var_binds = [
        (ObjectName(oids[0]), OctetString("Cisco IOS Software")),
        (ObjectName(oids[1]), TimeTicks(1234567)),
        (ObjectName(oids[2]), noSuchObject),
        (ObjectName(oids[3]), OctetString("core-sw")),
        (ObjectName(oids[4]), OctetString("Rack 4")),
    ]
    result = SnmpPollResult(success=True)

    apply_varbinds(result, var_binds)

    assert result.sys_descr == "Cisco IOS Software"
    assert result.sys_uptime == 1234567
    assert result.sys_contact is None
    assert result.sys_name == "core-sw"
    assert result.sys_location == "Rack 4"
    assert "1.3.6.1.2.1.1.4.0" in result.error
    assert map_result_to_status(result) == DeviceStatus.WARNING


def test_status_mapping():
    assert map_result_to_status(SnmpPollResult(success=False, error="timeout")) == DeviceStatus.OFFLINE
    assert map_result_to_status(SnmpPollResult(success=True, error="noSuchName")) == DeviceStatus.WARNING
    assert map_result_to_status(SnmpPollResult(success=True)) == DeviceStatus.ONLINE


def test_format_uptime():
    assert format_uptime(0) == "0m"
    assert format_uptime(5 * 60 * 100) == "5m"
    assert format_uptime((4 * 3600 + 5 * 60) * 100) == "4h 5m"
    assert format_uptime((3 * 86400 + 4 * 3600 + 5 * 60) * 100) == "3d 4h 5m"


def test_unreachable_agent_never_raises():
    target = SnmpTarget(host="127.0.0.1", port=1, community="public", version="2c", timeout=0.2, retries=0)

    result = fetch_system_info(target)

    assert result.success is False
    assert result.error
    assert map_result_to_status(result) == DeviceStatus.OFFLINE
