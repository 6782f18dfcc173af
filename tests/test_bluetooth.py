import asyncio

from palpable_bootstrap.core.bluetooth import (
    ADV_DATA_MAX,
    BluetoothBeacon,
    build_advertising_data,
)

from .conftest import FakeRunner


def test_advertising_data_layout():
    data = build_advertising_data("Palpable", "b827eb12abcd")

    assert len(data) <= ADV_DATA_MAX
    assert data[:3] == bytes([0x02, 0x01, 0x06])
    assert b"Palpable" in data
    assert data.endswith(bytes.fromhex("ffff") + bytes.fromhex("b827eb12abcd"))


def test_long_name_is_truncated_to_fit():
    data = build_advertising_data("A-very-long-device-local-name", "b827eb12abcd")

    assert len(data) <= ADV_DATA_MAX
    assert bytes.fromhex("b827eb12abcd") in data


def test_beacon_absent_hardware(tmp_path):
    runner = FakeRunner()
    beacon = BluetoothBeacon(sysfs_bluetooth_dir=tmp_path, runner=runner)

    assert asyncio.run(beacon.start("b827eb12abcd")) is False
    assert not beacon.is_running()
    assert runner.commands == []


def test_beacon_start_and_stop(tmp_path):
    (tmp_path / "hci0").mkdir()
    runner = FakeRunner()
    beacon = BluetoothBeacon(sysfs_bluetooth_dir=tmp_path, runner=runner)

    assert asyncio.run(beacon.start("b827eb12abcd")) is True
    assert beacon.is_running()
    assert runner.ran("hciconfig", "hci0", "up")
    assert runner.ran("hciconfig", "hci0", "name", "Palpable-ABCD")
    assert runner.ran("hciconfig", "hci0", "leadv", "3")

    adv = next(cmd for cmd in runner.commands if cmd[0] == "hcitool")
    # opcode group/command, length byte, then 31 data bytes
    assert adv[3:6] == ["cmd", "0x08", "0x0008"]
    assert len(adv[6:]) == 1 + ADV_DATA_MAX

    asyncio.run(beacon.stop())
    assert not beacon.is_running()
    assert runner.ran("hciconfig", "hci0", "noleadv")


def test_beacon_adapter_failure_is_not_fatal(tmp_path):
    (tmp_path / "hci0").mkdir()
    runner = FakeRunner()
    runner.failures["hciconfig"] = (1, "", "Operation not possible due to RF-kill")
    beacon = BluetoothBeacon(sysfs_bluetooth_dir=tmp_path, runner=runner)

    assert asyncio.run(beacon.start("b827eb12abcd")) is False
    assert not beacon.is_running()
