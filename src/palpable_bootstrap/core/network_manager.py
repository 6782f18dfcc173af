"""WiFi client / access point state machine for the bootstrap."""

import asyncio
import ipaddress
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

from .config import Settings
from .device_identity import ap_ssid_from_mac, read_interface_mac
from .process import CommandResult, ManagedProcess, run_command
from .state import ConnectionResult, ConnectivityState, DeviceSettings, WiFiNetwork

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., Awaitable[CommandResult]]
ProcessFactory = Callable[[str], ManagedProcess]

_INET = re.compile(r"\binet (\d{1,3}(?:\.\d{1,3}){3})")


class WifiUnavailableError(Exception):
    """The wireless interface is missing or its driver refuses to operate."""


def dbm_to_percent(dbm: float) -> int:
    return max(0, min(100, int(round(2 * (dbm + 100)))))


def parse_iw_scan(output: str) -> list[WiFiNetwork]:
    """Parse `iw dev <iface> scan` output into networks ordered by signal."""
    best: dict[str, int] = {}
    ssid: str | None = None
    signal: int | None = None

    def flush() -> None:
        if ssid and signal is not None and signal > best.get(ssid, -1):
            best[ssid] = signal

    for line in output.splitlines():
        if line.startswith("BSS "):
            flush()
            ssid, signal = None, None
            continue

        stripped = line.strip()
        if stripped.startswith("signal:"):
            try:
                signal = dbm_to_percent(float(stripped.split()[1]))
            except (IndexError, ValueError):
                signal = None
        elif stripped.startswith("SSID:"):
            ssid = stripped[len("SSID:") :].strip()
    flush()

    networks = [WiFiNetwork(ssid=name, signal=value) for name, value in best.items()]
    networks.sort(key=lambda n: n.signal, reverse=True)
    return networks


def parse_wpa_state(output: str) -> str | None:
    for line in output.splitlines():
        if line.startswith("wpa_state="):
            return line.split("=", 1)[1].strip()
    return None


def _describe_client_failure(wpa_state: str | None, ssid: str) -> str:
    """Convert the last observed supplicant state into a user-facing message."""
    error_map = {
        "4WAY_HANDSHAKE": "Incorrect password",
        "GROUP_HANDSHAKE": "Incorrect password",
        "SCANNING": f"Network '{ssid}' not found or out of range",
        "DISCONNECTED": f"Network '{ssid}' not found or out of range",
        "INACTIVE": f"Network '{ssid}' not found or out of range",
        "ASSOCIATING": "Connection timeout - weak signal",
        "ASSOCIATED": "Connection timeout - weak signal",
        "AUTHENTICATING": "Connection timeout - weak signal",
    }
    return error_map.get(wpa_state or "", f"Could not connect to '{ssid}'")


def _valid_passphrase(password: str) -> bool:
    # WPA passphrases are 8-63 printable ASCII characters
    return 8 <= len(password) <= 63 and all(32 <= ord(c) <= 126 for c in password)


class ConnectivityManager:
    """Owns the wireless interface and every daemon that touches it.

    At most one transition runs at a time. Client and access point modes are
    exclusive: the previous mode's daemons are stopped (and their exit
    observed) before the next mode's daemons start.
    """

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner = run_command,
        process_factory: ProcessFactory | None = None,
    ):
        self.settings = settings
        self.interface = settings.wifi_interface
        self._run_command = runner

        factory = process_factory or self._default_process
        self.client_daemon = factory("wpa_supplicant")
        self.ap_daemon = factory("hostapd")
        self.dhcp_dns_daemon = factory("dnsmasq")

        self._state = ConnectivityState.UNCONFIGURED
        self._transition_lock = asyncio.Lock()
        self._state_callbacks: list[Callable[..., Any]] = []
        self._last_scan_results: list[WiFiNetwork] = []
        self._device_settings: DeviceSettings | None = None
        self._shutting_down = False

        self.wifi_available = False
        self.mac_address: str | None = None
        self.ip_address: str | None = None
        self.last_error: str | None = None

    def _default_process(self, name: str) -> ManagedProcess:
        return ManagedProcess(
            name,
            log_dir=self.settings.runtime_dir,
            startup_grace=self.settings.daemon_startup_grace,
            stop_timeout=self.settings.daemon_stop_timeout,
        )

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def ap_ssid(self) -> str | None:
        if not self.mac_address:
            return None
        return ap_ssid_from_mac(self.mac_address, prefix=self.settings.ap_ssid_prefix)

    @property
    def wifi_mode(self) -> str:
        return "hotspot" if self._state == ConnectivityState.AP_MODE else "client"

    @property
    def current_ssid(self) -> str | None:
        if self._state == ConnectivityState.CLIENT_CONNECTED and self._device_settings:
            return self._device_settings.wifi_ssid
        if self._state == ConnectivityState.AP_MODE:
            return self.ap_ssid
        return None

    @property
    def transition_in_progress(self) -> bool:
        return self._transition_lock.locked()

    def on_state_change(self, callback: Callable[..., Any]) -> None:
        """Register a callback(old_state, new_state); may be sync or async."""
        self._state_callbacks.append(callback)

    async def _set_state(self, new_state: ConnectivityState) -> None:
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        logger.info(f"Connectivity: {old_state.value} -> {new_state.value}")

        for callback in self._state_callbacks:
            try:
                result = callback(old_state, new_state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in state change callback: {e}", exc_info=True)

    async def initialize(self) -> None:
        """Detect the wireless interface and clear daemons left by an earlier run."""
        if not (self.settings.sysfs_net_dir / self.interface).exists():
            logger.error(f"Wireless interface {self.interface} not found - WiFi disabled")
            self.wifi_available = False
            return

        self.mac_address = read_interface_mac(self.settings.sysfs_net_dir, self.interface)
        self.wifi_available = True
        logger.info(f"WiFi device detected: {self.interface} ({self.mac_address})")

        for daemon in ("wpa_supplicant", "hostapd", "dnsmasq", "udhcpc"):
            await self._run_command(["killall", "-q", daemon])

    def _require_wifi(self) -> None:
        if not self.wifi_available:
            raise WifiUnavailableError(f"Wireless interface {self.interface} is not available")
        if self._shutting_down:
            raise WifiUnavailableError("Connectivity manager is shutting down")

    async def bring_up(self, device_settings: DeviceSettings) -> ConnectivityState:
        """Boot-time transition: try the configured network, else start the hotspot.

        Raises:
            WifiUnavailableError: If the interface is missing or AP mode cannot start
        """
        async with self._transition_lock:
            self._require_wifi()
            self._device_settings = device_settings

            if device_settings.has_wifi:
                if await self._attempt_client(device_settings):
                    return self._state
                logger.warning(f"WiFi connection failed: {self.last_error}")
            else:
                logger.info("No WiFi configured, starting hotspot")

            await self._start_ap()
            return self._state

    async def connect_with_credentials(self, device_settings: DeviceSettings) -> ConnectionResult:
        """Switch to client mode with new credentials, falling back to the hotspot.

        Serialized behind any transition already in progress. If the caller
        cancels, the client attempt is torn down and the hotspot restored
        before the cancellation propagates.
        """
        async with self._transition_lock:
            try:
                self._require_wifi()
            except WifiUnavailableError as e:
                return ConnectionResult(state=self._state, error=str(e))

            self._device_settings = device_settings
            try:
                try:
                    if await self._attempt_client(device_settings):
                        return ConnectionResult(state=self._state, ip_address=self.ip_address)
                    error = self.last_error
                except WifiUnavailableError as e:
                    error = str(e)

                await self._restore_ap()
                return ConnectionResult(state=self._state, error=error)

            except asyncio.CancelledError:
                logger.warning("Connection attempt cancelled, restoring hotspot")
                await asyncio.shield(self._restore_ap())
                raise

    async def enter_ap_mode(self) -> ConnectivityState:
        """Force hotspot mode, tearing down any client link first."""
        async with self._transition_lock:
            self._require_wifi()
            await self._start_ap()
            return self._state

    async def _restore_ap(self) -> None:
        try:
            await self._start_ap()
        except WifiUnavailableError as e:
            logger.error(f"Could not restore hotspot: {e}")

    async def _write_supplicant_config(self, device_settings: DeviceSettings) -> str:
        ssid_hex = device_settings.wifi_ssid.encode("utf-8").hex()
        lines = [
            "ctrl_interface=/var/run/wpa_supplicant",
            "update_config=1",
            f"country={device_settings.wifi_country}",
            "",
            "network={",
            f"    ssid={ssid_hex}",
        ]
        if device_settings.wifi_password:
            lines += [f'    psk="{device_settings.wifi_password}"', "    key_mgmt=WPA-PSK"]
        else:
            lines.append("    key_mgmt=NONE")
        lines.append("}")

        conf = self.settings.runtime_dir / "wpa_supplicant.conf"
        conf.parent.mkdir(parents=True, exist_ok=True)
        conf.write_text("\n".join(lines) + "\n")
        conf.chmod(0o600)
        return str(conf)

    async def _attempt_client(self, device_settings: DeviceSettings) -> bool:
        """ConnectingClient -> ClientConnected | ClientFailed, within the connect window."""
        ssid = device_settings.wifi_ssid
        password = device_settings.wifi_password

        if not await self._stop_ap():
            raise WifiUnavailableError("Access point daemons could not be stopped")
        await self._stop_client()

        await self._set_state(ConnectivityState.CONNECTING_CLIENT)
        self.last_error = None
        logger.info(f"Connecting to {ssid}...")

        if password and not _valid_passphrase(password):
            self.last_error = "Password must be 8-63 printable characters"
            await self._set_state(ConnectivityState.CLIENT_FAILED)
            return False

        conf = await self._write_supplicant_config(device_settings)
        await self._run_command(["iw", "reg", "set", device_settings.wifi_country])
        await self._run_command(["ip", "link", "set", self.interface, "up"])

        self._require_wifi()
        started = await self.client_daemon.start(
            ["wpa_supplicant", "-i", self.interface, "-c", conf, "-D", "nl80211"]
        )
        if not started:
            self.last_error = "WiFi client failed to start"
            await self._stop_client()
            await self._set_state(ConnectivityState.CLIENT_FAILED)
            return False

        timeout = self.settings.client_connect_timeout
        try:
            ip_address = await asyncio.wait_for(
                self._associate_and_address(device_settings), timeout=timeout
            )
        except TimeoutError:
            ip_address = None
            logger.warning(f"No connection to {ssid} within {timeout}s")
            if self.last_error is None:
                self.last_error = _describe_client_failure(await self._supplicant_state(), ssid)
        except asyncio.CancelledError:
            await asyncio.shield(self._stop_client())
            self._state = ConnectivityState.CLIENT_FAILED
            raise

        if ip_address is None:
            await self._stop_client()
            await self._set_state(ConnectivityState.CLIENT_FAILED)
            return False

        self.ip_address = ip_address
        await self._set_state(ConnectivityState.CLIENT_CONNECTED)
        logger.info(f"Connected to {ssid} with IP {ip_address}")
        return True

    async def _supplicant_state(self) -> str | None:
        returncode, stdout, _ = await self._run_command(
            ["wpa_cli", "-i", self.interface, "status"]
        )
        if returncode != 0:
            return None
        return parse_wpa_state(stdout)

    async def _wait_for_association(self) -> bool:
        """Poll the supplicant at a fixed interval until it reports COMPLETED."""
        while True:
            if not self.client_daemon.is_running():
                self.last_error = "WiFi client exited unexpectedly"
                return False
            if await self._supplicant_state() == "COMPLETED":
                return True
            await asyncio.sleep(self.settings.client_poll_interval)

    async def _associate_and_address(self, device_settings: DeviceSettings) -> str | None:
        if not await self._wait_for_association():
            return None

        if device_settings.static_ip:
            address = device_settings.static_ip
            interface = ipaddress.IPv4Interface(address if "/" in address else f"{address}/24")
            returncode, _, stderr = await self._run_command(
                ["ip", "addr", "add", str(interface), "dev", self.interface]
            )
            if returncode != 0:
                self.last_error = f"Could not assign static address {interface}"
                logger.error(f"{self.last_error}: {stderr}")
                return None
        else:
            returncode, _, stderr = await self._run_command(
                ["udhcpc", "-i", self.interface, "-q", "-t", "10", "-n"]
            )
            if returncode != 0:
                self.last_error = "DHCP timeout - no address from the network"
                logger.error(f"{self.last_error}: {stderr}")
                return None

        ip_address = await self.get_ip_address()
        if ip_address is None:
            self.last_error = "Connected but no IP address was assigned"
        return ip_address

    async def _stop_client(self) -> bool:
        stopped = await self.client_daemon.stop()
        await self._run_command(["ip", "addr", "flush", "dev", self.interface])
        self.ip_address = None
        return stopped

    async def _stop_ap(self) -> bool:
        was_running = self.ap_daemon.is_running() or self.dhcp_dns_daemon.is_running()
        ap_stopped = await self.ap_daemon.stop()
        dns_stopped = await self.dhcp_dns_daemon.stop()
        if was_running:
            await self._run_command(["ip", "addr", "flush", "dev", self.interface])
            self.ip_address = None
            logger.info("Hotspot stopped")
        return ap_stopped and dns_stopped

    def _write_ap_configs(self, ssid: str) -> tuple[str, str]:
        s = self.settings
        netmask = ipaddress.IPv4Network(f"0.0.0.0/{s.ap_prefix_length}").netmask
        hostapd_conf = s.runtime_dir / "hostapd.conf"
        dnsmasq_conf = s.runtime_dir / "dnsmasq.conf"
        s.runtime_dir.mkdir(parents=True, exist_ok=True)

        hostapd_conf.write_text(
            f"interface={self.interface}\n"
            "driver=nl80211\n"
            f"ssid={ssid}\n"
            "hw_mode=g\n"
            f"channel={s.ap_channel}\n"
            "wmm_enabled=0\n"
            "macaddr_acl=0\n"
            "auth_algs=1\n"
            "ignore_broadcast_ssid=0\n"
            "wpa=0\n"
        )

        # Every DNS name resolves to us so clients raise the captive portal prompt
        dnsmasq_conf.write_text(
            f"interface={self.interface}\n"
            "bind-interfaces\n"
            f"dhcp-range={s.ap_dhcp_start},{s.ap_dhcp_end},{netmask},24h\n"
            f"dhcp-option=3,{s.ap_ip}\n"
            f"dhcp-option=6,{s.ap_ip}\n"
            f"address=/#/{s.ap_ip}\n"
            "no-resolv\n"
            "no-poll\n"
        )
        return str(hostapd_conf), str(dnsmasq_conf)

    async def _start_ap(self) -> None:
        """Enter APMode: client torn down, then hostapd and dnsmasq started."""
        if not await self._stop_client():
            raise WifiUnavailableError("WiFi client could not be stopped")

        if not self._last_scan_results:
            logger.info("Performing network scan before entering AP mode...")
            await self._scan()

        ssid = self.ap_ssid
        if ssid is None:
            raise WifiUnavailableError(f"No hardware address for {self.interface}")
        logger.info(f"Starting hotspot: {ssid}")

        s = self.settings
        await self._run_command(["ip", "link", "set", self.interface, "up"])
        await self._run_command(["ip", "addr", "flush", "dev", self.interface])
        await self._run_command(
            ["ip", "addr", "add", f"{s.ap_ip}/{s.ap_prefix_length}", "dev", self.interface]
        )
        hostapd_conf, dnsmasq_conf = self._write_ap_configs(ssid)

        self._require_wifi()
        if not await self.ap_daemon.start(["hostapd", hostapd_conf]):
            await self._stop_ap()
            raise WifiUnavailableError("Access point daemon failed to start")

        try:
            self._require_wifi()
        except WifiUnavailableError:
            await self._stop_ap()
            raise
        if not await self.dhcp_dns_daemon.start(
            ["dnsmasq", "--keep-in-foreground", f"--conf-file={dnsmasq_conf}"]
        ):
            await self._stop_ap()
            raise WifiUnavailableError("DHCP/DNS server failed to start")

        await self._run_command(["hostname", ssid])
        self.ip_address = s.ap_ip
        await self._set_state(ConnectivityState.AP_MODE)
        logger.info(f"Hotspot started: {ssid}")

    async def _scan(self, ap_force: bool = False) -> list[WiFiNetwork] | None:
        cmd = ["iw", "dev", self.interface, "scan"]
        if ap_force:
            cmd.append("ap-force")

        returncode, stdout, stderr = await self._run_command(cmd, timeout=15.0)
        if returncode != 0:
            logger.warning(f"Network scan failed: {stderr}")
            return None

        networks = parse_iw_scan(stdout)
        self._last_scan_results = networks
        return networks

    async def scan_networks(self) -> list[WiFiNetwork]:
        """Scan on demand; an empty list means nothing was found."""
        if not self.wifi_available:
            return []

        if self._state == ConnectivityState.AP_MODE:
            networks = await self._scan(ap_force=True)
            if not networks:
                logger.info("In AP mode - returning cached network list")
                return self._last_scan_results
            return networks

        networks = await self._scan()
        return networks if networks is not None else self._last_scan_results

    async def get_ip_address(self) -> str | None:
        returncode, stdout, _ = await self._run_command(
            ["ip", "-4", "-o", "addr", "show", "dev", self.interface]
        )
        if returncode != 0:
            return None
        match = _INET.search(stdout)
        return match.group(1) if match else None

    async def _link_healthy(self) -> bool:
        if not self.client_daemon.is_running():
            return False
        return await self._supplicant_state() == "COMPLETED"

    def _hotspot_healthy(self) -> bool:
        return self.ap_daemon.is_running() and self.dhcp_dns_daemon.is_running()

    async def monitor_link(self) -> None:
        """Watch the active link: reconnect a dropped client, restart a dead hotspot."""
        logger.info("Starting WiFi link monitor")
        failures = 0

        while True:
            await asyncio.sleep(self.settings.link_check_interval)
            try:
                if self.transition_in_progress:
                    failures = 0
                    continue

                if self._state == ConnectivityState.CLIENT_CONNECTED:
                    healthy = await self._link_healthy()
                    recover = self._recover_link
                elif self._state == ConnectivityState.AP_MODE:
                    healthy = self._hotspot_healthy()
                    recover = self._recover_ap
                else:
                    failures = 0
                    continue

                if healthy:
                    failures = 0
                    continue

                failures += 1
                logger.warning(
                    f"{self.wifi_mode.capitalize()} link check failed "
                    f"({failures}/{self.settings.link_failure_threshold})"
                )
                if failures >= self.settings.link_failure_threshold:
                    failures = 0
                    await recover()

            except WifiUnavailableError as e:
                logger.error(f"Link recovery failed: {e}")
            except Exception as e:
                logger.error(f"Link monitor error: {e}", exc_info=True)

    async def _recover_link(self) -> None:
        async with self._transition_lock:
            if self._state != ConnectivityState.CLIENT_CONNECTED or not self._device_settings:
                return
            logger.warning("WiFi link lost, reconnecting")
            self._require_wifi()
            if await self._attempt_client(self._device_settings):
                return
            await self._start_ap()

    async def _recover_ap(self) -> None:
        async with self._transition_lock:
            if self._state != ConnectivityState.AP_MODE or self._hotspot_healthy():
                return
            logger.warning("Hotspot daemons died, restarting access point")
            self._require_wifi()
            await self._stop_ap()
            await self._start_ap()

    async def shutdown(self) -> None:
        """Stop every owned daemon and release the interface.

        An in-flight transition is given the time a client attempt may take to
        notice the shutdown flag; after that the daemons are stopped regardless.
        """
        logger.info("Stopping WiFi daemons...")
        self._shutting_down = True

        s = self.settings
        acquired = False
        try:
            await asyncio.wait_for(
                self._transition_lock.acquire(),
                timeout=s.client_connect_timeout + 2 * s.daemon_stop_timeout,
            )
            acquired = True
        except TimeoutError:
            logger.warning("WiFi transition still running, stopping daemons anyway")

        try:
            results = [
                await self.client_daemon.stop(),
                await self.ap_daemon.stop(),
                await self.dhcp_dns_daemon.stop(),
            ]
            if self.wifi_available:
                await self._run_command(["ip", "addr", "flush", "dev", self.interface])
            self.ip_address = None
        finally:
            if acquired:
                self._transition_lock.release()

        if not all(results):
            logger.error("Some WiFi daemons could not be stopped")
