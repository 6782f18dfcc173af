"""Device identity derived from the WiFi hardware address."""

import logging
import re
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

_MAC_HEX = re.compile(r"^[0-9a-f]{12}$")


def normalize_mac(mac_address: str) -> str:
    """Return a MAC address as 12 lower-case hex digits.

    Raises:
        ValueError: If the address is not a valid 48-bit MAC
    """
    clean_mac = mac_address.strip().lower().replace(":", "").replace("-", "")
    if not _MAC_HEX.match(clean_mac):
        raise ValueError(f"Invalid MAC address format: {mac_address}")
    return clean_mac


def device_id_from_mac(mac_address: str) -> str:
    return normalize_mac(mac_address)


def ap_ssid_from_mac(mac_address: str, prefix: str = "Palpable") -> str:
    """Stable, human-distinguishable AP SSID: prefix plus last 4 MAC hex digits."""
    return f"{prefix}-{normalize_mac(mac_address)[-4:].upper()}"


def read_interface_mac(sysfs_net_dir: Path, interface: str) -> str | None:
    """Read MAC address of a network interface from sysfs."""
    try:
        mac = (sysfs_net_dir / interface / "address").read_text().strip().lower()
    except OSError:
        return None

    if not mac or mac == "00:00:00:00:00:00":
        return None
    try:
        normalize_mac(mac)
    except ValueError:
        logger.warning(f"Ignoring malformed MAC address for {interface}: {mac!r}")
        return None
    return mac


def _get_mac_from_uuid() -> str | None:
    """Get MAC address using uuid.getnode() when the interface has none."""
    mac_num = uuid.getnode()
    # getnode() falls back to a random number with the multicast bit set
    if mac_num == 0 or (mac_num >> 40) & 1:
        return None
    mac_hex = f"{mac_num:012x}"
    mac = ":".join(mac_hex[i : i + 2] for i in range(0, 12, 2))
    logger.debug(f"Found MAC address {mac} using uuid.getnode()")
    return mac


def resolve_device_id(sysfs_net_dir: Path, interface: str) -> str:
    """Derive the immutable device ID from the WiFi MAC, falling back to any host MAC."""
    mac = read_interface_mac(sysfs_net_dir, interface) or _get_mac_from_uuid()
    if mac is None:
        logger.error("Could not detect any MAC address for the device ID")
        return "unknown"
    return device_id_from_mac(mac)
