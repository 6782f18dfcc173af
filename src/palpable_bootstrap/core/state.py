"""
Data model shared by the orchestrator components.
"""

import ipaddress
import logging
import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_NAME = "palpable"
DEVICE_NAME_MAX_LENGTH = 63

_DEVICE_NAME_INVALID = re.compile(r"[^A-Za-z0-9-]")
_COUNTRY_CODE = re.compile(r"^[A-Z]{2}$")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def has_control_chars(value: str | None) -> bool:
    return bool(value) and _CONTROL_CHARS.search(value) is not None


def sanitize_device_name(name: str | None) -> str:
    """Restrict a device name to [A-Za-z0-9-], at most 63 characters."""
    cleaned = _DEVICE_NAME_INVALID.sub("", name or "")[:DEVICE_NAME_MAX_LENGTH]
    return cleaned or DEFAULT_DEVICE_NAME


class ConnectivityState(str, Enum):
    """WiFi connectivity states."""

    UNCONFIGURED = "Unconfigured"
    CONNECTING_CLIENT = "ConnectingClient"
    CLIENT_CONNECTED = "ClientConnected"
    CLIENT_FAILED = "ClientFailed"
    AP_MODE = "APMode"


class DeviceSettings(BaseModel):
    """User-facing device configuration persisted on the boot partition."""

    model_config = ConfigDict(frozen=True)

    wifi_ssid: str = ""
    wifi_password: str | None = None
    wifi_country: str = "US"
    device_name: str = DEFAULT_DEVICE_NAME
    timezone: str = "UTC"
    static_ip: str | None = None

    @field_validator("wifi_ssid", mode="before")
    @classmethod
    def _strip_ssid(cls, v):
        ssid = (v or "").strip()
        if has_control_chars(ssid):
            raise ValueError("SSID must not contain control characters")
        return ssid

    @field_validator("wifi_password", mode="before")
    @classmethod
    def _empty_password_is_none(cls, v):
        if has_control_chars(v):
            raise ValueError("Password must not contain control characters")
        return v or None

    @field_validator("wifi_country", mode="before")
    @classmethod
    def _normalize_country(cls, v):
        country = (v or "").strip().upper()
        if not _COUNTRY_CODE.match(country):
            if country:
                logger.warning(f"Ignoring invalid WiFi country code: {v!r}")
            return "US"
        return country

    @field_validator("device_name", mode="before")
    @classmethod
    def _sanitize_name(cls, v):
        return sanitize_device_name(v)

    @field_validator("timezone", mode="before")
    @classmethod
    def _default_timezone(cls, v):
        return (v or "").strip() or "UTC"

    @field_validator("static_ip", mode="before")
    @classmethod
    def _validate_static_ip(cls, v):
        if not v or not str(v).strip():
            return None
        value = str(v).strip()
        try:
            ipaddress.IPv4Interface(value)
        except ValueError:
            logger.warning(f"Ignoring invalid static IP address: {value!r}")
            return None
        return value

    @property
    def has_wifi(self) -> bool:
        return bool(self.wifi_ssid)


class WiFiNetwork(BaseModel):
    """One entry of a network scan."""

    ssid: str
    signal: int = Field(ge=0, le=100)


class ConnectionResult(BaseModel):
    """Outcome of a connectivity transition."""

    state: ConnectivityState
    ip_address: str | None = None
    error: str | None = None

    @property
    def connected(self) -> bool:
        return self.state == ConnectivityState.CLIENT_CONNECTED


class ClaimSession(BaseModel):
    """Device claim progress. `claimed` only ever flips from False to True."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    device_id: str
    code: str | None = None
    claimed: bool = False
    claimed_at: datetime | None = None


class UpdateInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    current_version: str
    latest_version: str | None = None
    checked_at: datetime | None = None

    @property
    def update_available(self) -> bool:
        # Plain inequality: downgrades count as updates too
        return self.latest_version is not None and self.latest_version != self.current_version


class DeviceInfo(BaseModel):
    """Snapshot served to the portal UI as device-info JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    device_id: str
    device_name: str
    version: str
    ip: str
    mac: str
    wifi_mode: str
    wifi_ssid: str
