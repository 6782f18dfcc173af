"""Boot partition persistence for device settings and claim state."""

import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .state import ClaimSession, DeviceInfo, DeviceSettings, has_control_chars

logger = logging.getLogger(__name__)

# On-disk key -> DeviceSettings field
SETTINGS_KEYS = {
    "WIFI_SSID": "wifi_ssid",
    "WIFI_PASSWORD": "wifi_password",
    "WIFI_COUNTRY": "wifi_country",
    "DEVICE_NAME": "device_name",
    "TIMEZONE": "timezone",
    "IP_ADDRESS": "static_ip",
}


class SettingsWriteError(Exception):
    """Raised when settings cannot be persisted to the boot partition."""


def parse_settings(text: str) -> DeviceSettings:
    """Parse key=value settings text. Unknown keys are ignored."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            logger.debug(f"Skipping malformed settings line: {raw_line!r}")
            continue

        key, value = raw_line.split("=", 1)
        field = SETTINGS_KEYS.get(key.strip())
        if field is None:
            continue
        # Passphrases may begin or end with spaces
        values[field] = value if field == "wifi_password" else value.strip()

    return DeviceSettings(**values)


def format_settings(settings: DeviceSettings) -> str:
    generated = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    lines = ["# Palpable Device Settings", f"# Generated {generated}", ""]
    for key, field in SETTINGS_KEYS.items():
        value = getattr(settings, field)
        if value is not None and has_control_chars(str(value)):
            raise SettingsWriteError(f"{key} contains control characters")
        lines.append(f"{key}={value if value is not None else ''}")
    return "\n".join(lines) + "\n"


def _atomic_write(path: Path, content: str) -> None:
    """Write content to path via a synced temp file and rename.

    A power loss at any point leaves either the old or the new file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            temp_fd = None
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, path)
        temp_path = None

        # Persist the rename itself
        dir_fd = os.open(str(path.parent), os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    finally:
        if temp_fd is not None:
            os.close(temp_fd)
        if temp_path is not None and os.path.exists(temp_path):
            os.unlink(temp_path)


class SettingsStore:
    """Single writer of everything the bootstrap persists on the boot partition."""

    def __init__(self, settings_file: Path, claim_file: Path, version_file: Path):
        self.settings_file = settings_file
        self.claim_file = claim_file
        self.version_file = version_file
        self.current = DeviceSettings()

    def load(self) -> DeviceSettings:
        """Load settings; a missing or unreadable file yields defaults."""
        if not self.settings_file.exists():
            logger.debug(f"No {self.settings_file.name} found, using defaults")
            self.current = DeviceSettings()
            return self.current

        try:
            text = self.settings_file.read_text(encoding="utf-8", errors="replace")
            self.current = parse_settings(text)
        except (OSError, ValidationError) as e:
            logger.warning(f"Could not read {self.settings_file}, using defaults: {e}")
            self.current = DeviceSettings()
            return self.current

        logger.info(f"Settings loaded from {self.settings_file}")
        logger.debug(f"WIFI_SSID={self.current.wifi_ssid}")
        logger.debug(f"DEVICE_NAME={self.current.device_name}")
        logger.debug(f"WIFI_COUNTRY={self.current.wifi_country}")
        return self.current

    def save(self, settings: DeviceSettings) -> None:
        try:
            _atomic_write(self.settings_file, format_settings(settings))
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")
            raise SettingsWriteError(str(e)) from e

        self.current = settings
        logger.info("Settings saved")

    def read_version(self, default: str = "0.0.0") -> str:
        try:
            version = self.version_file.read_text(encoding="utf-8").strip()
        except OSError:
            return default
        return version or default

    def load_claim(self, device_id: str) -> ClaimSession:
        """Load the persisted claim record for this device, if any."""
        session = ClaimSession(device_id=device_id)
        if not self.claim_file.exists():
            return session

        try:
            data = json.loads(self.claim_file.read_text(encoding="utf-8"))
            stored = ClaimSession.model_validate(data)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable claim record: {e}")
            return session

        if stored.device_id != device_id:
            logger.warning(
                f"Claim record belongs to {stored.device_id}, not {device_id}; ignoring"
            )
            return session

        return stored.model_copy(update={"code": None})

    def save_claim(self, session: ClaimSession) -> None:
        data = session.model_dump(mode="json", by_alias=True, exclude={"code"})
        try:
            _atomic_write(self.claim_file, json.dumps(data, indent=2) + "\n")
        except OSError as e:
            logger.error(f"Failed to save claim record: {e}")
            raise SettingsWriteError(str(e)) from e
        logger.info(f"Claim record saved for {session.device_id}")

    def device_info(
        self,
        *,
        device_id: str,
        ip: str | None,
        mac: str | None,
        wifi_mode: str,
    ) -> dict:
        """JSON-serializable snapshot combining settings with live network facts."""
        info = DeviceInfo(
            device_id=device_id,
            device_name=self.current.device_name,
            version=self.read_version(default="unknown"),
            ip=ip or "",
            mac=mac or "",
            wifi_mode=wifi_mode,
            wifi_ssid=self.current.wifi_ssid,
        )
        return info.model_dump(by_alias=True)
