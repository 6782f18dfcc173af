"""
Runtime configuration using Pydantic settings.

These are the orchestrator's operational knobs. The user-facing device
settings live on the boot partition and are handled by SettingsStore.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..paths import get_boot_dir, get_log_dir, get_runtime_dir, get_static_dir


class Settings(BaseSettings):
    """Application settings with automatic validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PALPABLE_",
        case_sensitive=False,
    )

    # Hardware
    wifi_interface: str = Field(default="wlan0", description="Wireless interface name")
    bluetooth_adapter: str = Field(default="hci0", description="Bluetooth HCI adapter")
    bluetooth_enabled: bool = Field(default=True, description="Advertise a BLE beacon")

    # Access point
    ap_ssid_prefix: str = Field(default="Palpable", description="Access Point SSID prefix")
    ap_ip: str = Field(default="192.168.4.1", description="Access Point IP address")
    ap_prefix_length: int = Field(default=24, description="Access Point network prefix length")
    ap_dhcp_start: str = Field(default="192.168.4.10", description="First DHCP lease address")
    ap_dhcp_end: str = Field(default="192.168.4.100", description="Last DHCP lease address")
    ap_channel: int = Field(default=7, description="Access Point WiFi channel (1-11 for 2.4GHz)")

    # Client mode timing
    client_connect_timeout: float = Field(
        default=30.0, description="Window for association and address assignment (seconds)"
    )
    client_poll_interval: float = Field(
        default=1.0, description="Interval between supplicant status polls (seconds)"
    )
    portal_connect_grace: float = Field(
        default=10.0,
        description="Extra time the portal waits beyond the connect window before failing",
    )

    # Daemon supervision
    daemon_stop_timeout: float = Field(
        default=5.0, description="Time to wait after SIGTERM before SIGKILL (seconds)"
    )
    daemon_startup_grace: float = Field(
        default=0.5, description="A daemon exiting within this window failed to start"
    )

    # Boot
    boot_timeout: float = Field(
        default=120.0, description="Overall connectivity bring-up budget (seconds)"
    )

    # Link monitoring
    link_check_interval: float = Field(
        default=15.0, description="Client link health check interval (seconds)"
    )
    link_failure_threshold: int = Field(
        default=3, description="Consecutive failed link checks before reconnecting"
    )

    # Web server configuration
    web_host: str = Field(
        default="0.0.0.0", description="Web server host (0.0.0.0 for IPv4 all interfaces)"
    )
    web_port: int = Field(default=80, description="Web server port")

    # Cloud endpoints
    api_base_url: str = Field(
        default="https://api.palpable.technology", description="Palpable cloud API base URL"
    )
    claim_path: str = Field(default="/devices/claim", description="Public claim-with-code path")
    claim_code_path: str = Field(
        default="/devices/claim-code", description="Authenticated claim code generation path"
    )
    version_path: str = Field(
        default="/bootstrap/version", description="Bootstrap version lookup path"
    )
    api_token: str | None = Field(default=None, description="Device API token for claim codes")
    claim_timeout: float = Field(default=15.0, description="Claim request timeout (seconds)")

    # Updates
    update_check_interval: float = Field(
        default=3600.0, description="Interval between update checks (seconds)"
    )
    update_check_timeout: float = Field(
        default=10.0, description="Update check request timeout (seconds)"
    )

    # Device agent hand-off and reboot
    agent_command: str | None = Field(
        default="/opt/palpable/start.sh", description="Long-running device agent entrypoint"
    )
    reboot_command: list[str] = Field(
        default_factory=lambda: ["reboot"], description="Command that reboots the device"
    )
    reboot_delay: float = Field(
        default=1.0, description="Delay before shutdown so the HTTP reply can leave"
    )

    # Runtime settings
    debug: bool = Field(default=False, description="Enable debug logging")

    # Paths
    boot_dir: Path = Field(default_factory=get_boot_dir, description="Boot partition")
    runtime_dir: Path = Field(
        default_factory=get_runtime_dir, description="Generated daemon configuration"
    )
    log_dir: Path = Field(default_factory=get_log_dir, description="Log file directory")
    static_dir: Path = Field(default_factory=get_static_dir, description="Portal UI directory")
    sysfs_net_dir: Path = Field(default=Path("/sys/class/net"))
    sysfs_bluetooth_dir: Path = Field(default=Path("/sys/class/bluetooth"))

    @property
    def settings_file(self) -> Path:
        return self.boot_dir / "settings.txt"

    @property
    def version_file(self) -> Path:
        return self.boot_dir / "version.txt"

    @property
    def claim_file(self) -> Path:
        return self.boot_dir / "claim.json"

    @property
    def portal_url(self) -> str:
        if self.web_port == 80:
            return f"http://{self.ap_ip}/"
        return f"http://{self.ap_ip}:{self.web_port}/"

    def ensure_directories(self) -> None:
        """Ensure writable directories exist."""
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    settings.ensure_directories()
    return settings
