"""
Bluetooth LE beacon so the mobile app can discover unprovisioned devices.
"""

import logging
from pathlib import Path

from .process import run_command

logger = logging.getLogger(__name__)

# Bluetooth SIG "reserved for testing" company identifier
COMPANY_ID = 0xFFFF
ADV_DATA_MAX = 31


def build_advertising_data(local_name: str, device_id: str) -> bytes:
    """Flags + complete local name + manufacturer data carrying the device ID."""
    name = local_name.encode("utf-8")
    try:
        payload = bytes.fromhex(device_id)
    except ValueError:
        payload = device_id.encode("utf-8")

    flags = bytes([0x02, 0x01, 0x06])
    manufacturer = COMPANY_ID.to_bytes(2, "little") + payload

    room = ADV_DATA_MAX - len(flags) - (2 + len(manufacturer))
    name = name[: max(0, room - 2)]

    data = flags
    if name:
        data += bytes([len(name) + 1, 0x09]) + name
    data += bytes([len(manufacturer) + 1, 0xFF]) + manufacturer
    return data[:ADV_DATA_MAX]


class BluetoothBeacon:
    """Controls LE advertising on the HCI adapter. Absence is never fatal."""

    def __init__(
        self,
        adapter: str = "hci0",
        sysfs_bluetooth_dir: Path = Path("/sys/class/bluetooth"),
        runner=run_command,
    ):
        self.adapter = adapter
        self.sysfs_bluetooth_dir = sysfs_bluetooth_dir
        self._run_command = runner
        self._advertising = False

    def is_available(self) -> bool:
        return (self.sysfs_bluetooth_dir / self.adapter).exists()

    def is_running(self) -> bool:
        return self._advertising

    async def start(self, device_id: str, local_name: str = "Palpable") -> bool:
        if self._advertising:
            logger.debug("Bluetooth beacon already running")
            return True

        if not self.is_available():
            logger.warning("Bluetooth not available")
            return False

        returncode, _, stderr = await self._run_command(["hciconfig", self.adapter, "up"])
        if returncode != 0:
            logger.warning(f"Could not bring up {self.adapter}: {stderr}")
            return False

        short_id = device_id[-4:].upper()
        await self._run_command(["hciconfig", self.adapter, "name", f"{local_name}-{short_id}"])

        # HCI LE Set Advertising Data: significant length, then 31 zero-padded bytes
        data = build_advertising_data(local_name, device_id)
        params = [f"{len(data):02x}"] + [f"{b:02x}" for b in data.ljust(ADV_DATA_MAX, b"\0")]
        returncode, _, stderr = await self._run_command(
            ["hcitool", "-i", self.adapter, "cmd", "0x08", "0x0008", *params]
        )
        if returncode != 0:
            logger.warning(f"Could not set advertising data: {stderr}")

        returncode, _, stderr = await self._run_command(["hciconfig", self.adapter, "leadv", "3"])
        if returncode != 0:
            logger.warning(f"Could not enable LE advertising: {stderr}")
            return False

        self._advertising = True
        logger.info("Bluetooth beacon started")
        return True

    async def stop(self) -> None:
        if not self._advertising:
            return
        await self._run_command(["hciconfig", self.adapter, "noleadv"])
        self._advertising = False
        logger.info("Bluetooth beacon stopped")
