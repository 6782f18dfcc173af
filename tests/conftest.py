"""Shared fakes for the external daemons and commands."""

import asyncio

import pytest

from palpable_bootstrap.core.config import Settings
from palpable_bootstrap.core.network_manager import ConnectivityManager
from palpable_bootstrap.core.settings_store import SettingsStore

MAC = "b8:27:eb:12:ab:cd"
DEVICE_ID = "b827eb12abcd"

CLIENT_DAEMONS = {"wpa_supplicant"}
AP_DAEMONS = {"hostapd", "dnsmasq"}

SCAN_OUTPUT = """\
BSS 00:11:22:33:44:55(on wlan0)
\tfreq: 2412
\tsignal: -70.00 dBm
\tSSID: CoffeeShop
BSS 00:11:22:33:44:66(on wlan0)
\tfreq: 2437
\tsignal: -45.00 dBm
\tSSID: HomeNet
BSS 00:11:22:33:44:77(on wlan0)
\tsignal: -80.00 dBm
\tSSID:
BSS 00:11:22:33:44:88(on wlan0)
\tsignal: -60.00 dBm
\tSSID: CoffeeShop
"""


class FakeRunner:
    """Stands in for run_command; answers the few commands whose output matters."""

    def __init__(self):
        self.commands: list[list[str]] = []
        self.wpa_state = "COMPLETED"
        self.ip_output = (
            "3: wlan0    inet 192.168.1.50/24 brd 192.168.1.255 scope global wlan0"
        )
        self.scan_output = SCAN_OUTPUT
        self.failures: dict[str, tuple] = {}

    async def __call__(self, cmd, timeout=None):
        self.commands.append(list(cmd))
        if cmd[0] in self.failures:
            return self.failures[cmd[0]]
        if cmd[0] == "wpa_cli":
            return (0, f"bssid=00:11:22:33:44:66\nwpa_state={self.wpa_state}\n", "")
        if cmd[:3] == ["ip", "-4", "-o"]:
            return (0, self.ip_output, "")
        if cmd[:2] == ["iw", "dev"] and "scan" in cmd:
            return (0, self.scan_output, "")
        return (0, "", "")

    def ran(self, *prefix: str) -> bool:
        return any(cmd[: len(prefix)] == list(prefix) for cmd in self.commands)


class DaemonRegistry:
    """Tracks fake daemons and flags any overlap between client and AP mode."""

    def __init__(self):
        self.processes: dict[str, "FakeProcess"] = {}
        self.events: list[tuple[str, str]] = []
        self.violations: list[str] = []
        self.refuse_start: set[str] = set()
        self.start_delay: dict[str, float] = {}

    def __call__(self, name: str) -> "FakeProcess":
        process = FakeProcess(name, self)
        self.processes[name] = process
        return process

    def running(self) -> set[str]:
        return {name for name, p in self.processes.items() if p.is_running()}


class FakeProcess:
    def __init__(self, name: str, registry: DaemonRegistry):
        self.name = name
        self.registry = registry
        self.running = False
        self.commands: list[list[str]] = []

    def is_running(self) -> bool:
        return self.running

    async def start(self, cmd) -> bool:
        self.commands.append(list(cmd))
        if self.name in self.registry.refuse_start:
            return False

        delay = self.registry.start_delay.get(self.name)
        if delay:
            await asyncio.sleep(delay)

        if self.name in CLIENT_DAEMONS:
            other = AP_DAEMONS
        elif self.name in AP_DAEMONS:
            other = CLIENT_DAEMONS
        else:
            other = set()
        overlap = self.registry.running() & other
        if overlap:
            self.registry.violations.append(f"{self.name} started while {overlap} running")

        self.running = True
        self.registry.events.append(("start", self.name))
        return True

    async def stop(self) -> bool:
        if self.running:
            self.registry.events.append(("stop", self.name))
        self.running = False
        return True


@pytest.fixture
def sysfs(tmp_path):
    net = tmp_path / "sys" / "net"
    (net / "wlan0").mkdir(parents=True)
    (net / "wlan0" / "address").write_text(MAC + "\n")
    return net


@pytest.fixture
def settings(tmp_path, sysfs):
    return Settings(
        boot_dir=tmp_path / "boot",
        runtime_dir=tmp_path / "run",
        log_dir=tmp_path / "log",
        static_dir=tmp_path / "portal",
        sysfs_net_dir=sysfs,
        sysfs_bluetooth_dir=tmp_path / "sys" / "bluetooth",
        client_connect_timeout=0.5,
        client_poll_interval=0.01,
        portal_connect_grace=0.5,
        boot_timeout=5.0,
        link_check_interval=0.01,
        reboot_delay=0.01,
        api_base_url="https://cloud.test",
        agent_command=None,
    )


@pytest.fixture
def store(settings):
    return SettingsStore(settings.settings_file, settings.claim_file, settings.version_file)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def daemons():
    return DaemonRegistry()


@pytest.fixture
def manager(settings, runner, daemons):
    return ConnectivityManager(settings, runner=runner, process_factory=daemons)
