#!/usr/bin/env python3
"""Palpable boot-time connectivity and provisioning orchestrator."""

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import uvicorn

from palpable_bootstrap.core.bluetooth import BluetoothBeacon
from palpable_bootstrap.core.config import Settings, get_settings
from palpable_bootstrap.core.device_identity import resolve_device_id
from palpable_bootstrap.core.network_manager import ConnectivityManager, WifiUnavailableError
from palpable_bootstrap.core.process import ManagedProcess, run_command
from palpable_bootstrap.core.settings_store import SettingsStore
from palpable_bootstrap.core.state import ClaimSession, ConnectivityState
from palpable_bootstrap.paths import get_log_dir
from palpable_bootstrap.services.claim_workflow import ClaimWorkflow
from palpable_bootstrap.services.update_checker import UpdateChecker
from palpable_bootstrap.services.web_server import WebServer


def setup_logging(debug: bool = False, log_dir: Path | None = None):
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
    ]

    # Add file handler if we have write permissions
    try:
        log_dir = log_dir or get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_dir / "palpable-bootstrap.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(log_format))
        handlers.append(file_handler)
    except OSError as e:
        print(f"Warning: Could not create log file: {e}", file=sys.stderr)

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
        force=True,
    )


logger = logging.getLogger(__name__)


def check_port_available(host: str, port: int) -> bool:
    """Test if port can be bound on specified host."""
    try:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        with socket.socket(family, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
            return True
    except OSError:
        return False


class PalpableBootstrapApp:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.running = False

        self.store = SettingsStore(
            self.settings.settings_file, self.settings.claim_file, self.settings.version_file
        )
        self.device_id = resolve_device_id(
            self.settings.sysfs_net_dir, self.settings.wifi_interface
        )
        self.connectivity = ConnectivityManager(self.settings)
        self.beacon = BluetoothBeacon(
            self.settings.bluetooth_adapter, self.settings.sysfs_bluetooth_dir
        )
        self.agent = ManagedProcess(
            "palpable-agent",
            log_dir=self.settings.log_dir,
            stop_timeout=self.settings.daemon_stop_timeout,
        )

        self.claim_workflow = ClaimWorkflow(
            self.settings, self.store, ClaimSession(device_id=self.device_id)
        )
        self.update_checker = UpdateChecker(self.settings, self.store, is_online=self.is_online)
        self.web_server = WebServer(
            self.settings,
            self.store,
            self.connectivity,
            self.claim_workflow,
            self.update_checker,
            self.device_id,
            on_reboot=self.request_reboot,
        )

        self.tasks: list[asyncio.Task] = []
        self.server: uvicorn.Server | None = None
        self.reboot_requested = False
        self._reboot_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._shut_down = False

    def is_online(self) -> bool:
        return self.connectivity.state == ConnectivityState.CLIENT_CONNECTED

    async def initialize(self):
        logger.info("Initializing Palpable bootstrap...")

        self.store.load()
        self.claim_workflow.session = self.store.load_claim(self.device_id)
        logger.info(f"Device ID: {self.device_id}")
        logger.info(f"Version: {self.store.read_version()}")
        if self.claim_workflow.claimed:
            logger.info("Device is already claimed")

        self.connectivity.on_state_change(self._handle_state_change)
        self.claim_workflow.on_claimed(self._handle_claimed)

        await self.connectivity.initialize()
        await self.bring_up_connectivity()

        logger.info("Initialization complete")

    async def bring_up_connectivity(self):
        """Join the configured network or start the hotspot, within the boot budget."""
        timeout = self.settings.boot_timeout
        try:
            await asyncio.wait_for(
                self.connectivity.bring_up(self.store.current), timeout=timeout
            )
            return
        except TimeoutError:
            logger.warning(f"Connectivity bring-up exceeded {timeout}s, forcing hotspot")
        except WifiUnavailableError as e:
            logger.error(f"WiFi unavailable, continuing without network: {e}")
            return

        try:
            await self.connectivity.enter_ap_mode()
        except WifiUnavailableError as e:
            logger.error(f"Could not start hotspot, continuing without network: {e}")

    async def _handle_state_change(
        self, old_state: ConnectivityState, new_state: ConnectivityState
    ):
        if new_state == ConnectivityState.CLIENT_CONNECTED:
            await self.start_agent()

    async def _handle_claimed(self, session: ClaimSession):
        await self.start_agent()

    async def start_agent(self) -> bool:
        """Hand off to the device agent once the device is claimed and online."""
        if not self.claim_workflow.claimed or not self.is_online():
            return False
        if self.agent.is_running():
            return True

        command = self.settings.agent_command
        if not command or not os.access(command, os.X_OK):
            logger.warning(f"Device agent not installed ({command}), staying in provisioning mode")
            return False

        logger.info(f"Handing off to device agent: {command}")
        return await self.agent.start([command])

    async def run_web_server(self):
        uvicorn_logger = logging.getLogger("uvicorn.error")
        if not self.settings.debug:
            uvicorn_logger.setLevel(logging.ERROR)

        host = self.settings.web_host
        port = self.settings.web_port
        if not check_port_available(host, port):
            logger.critical(f"Port {port} on {host} is in use, portal not started")
            return

        logger.info(f"Starting web server on {host}:{port}")

        config = uvicorn.Config(
            app=self.web_server.get_app(),
            host=host,
            port=port,
            log_level="info" if self.settings.debug else "error",
            access_log=self.settings.debug,
        )
        self.server = uvicorn.Server(config)
        await self.server.serve()

    async def start_beacon(self):
        if not self.settings.bluetooth_enabled:
            logger.debug("Bluetooth beacon disabled")
            return
        await self.beacon.start(self.device_id, local_name=self.settings.ap_ssid_prefix)

    def request_reboot(self):
        """Acknowledge now, shut down and reboot shortly after."""
        if self._reboot_task is None:
            self._reboot_task = asyncio.get_running_loop().create_task(self._delayed_reboot())

    async def _delayed_reboot(self):
        # Let the HTTP reply leave before the server goes away
        await asyncio.sleep(self.settings.reboot_delay)
        self.reboot_requested = True
        self._stop_event.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._stop_event.set)

    def _log_portal_urls(self):
        state = self.connectivity.state
        if state == ConnectivityState.AP_MODE:
            logger.info("=" * 60)
            logger.info(f"Hotspot {self.connectivity.ap_ssid} active")
            logger.info(f"Setup portal: {self.settings.portal_url}")
            logger.info("=" * 60)
        elif state == ConnectivityState.CLIENT_CONNECTED and self.connectivity.ip_address:
            logger.info(
                f"Portal available at: "
                f"http://{self.connectivity.ip_address}:{self.settings.web_port}/"
            )
        else:
            logger.warning(f"No network connectivity (state: {state.value})")

    async def run(self):
        self.running = True
        self._install_signal_handlers()

        try:
            await self.initialize()

            self.tasks = [
                asyncio.create_task(self.run_web_server()),
                asyncio.create_task(self.update_checker.run()),
                asyncio.create_task(self.connectivity.monitor_link()),
            ]
            await self.start_beacon()
            await self.start_agent()

            logger.info("All services started successfully")
            self._log_portal_urls()

            await self._stop_event.wait()

        except Exception as e:
            logger.error(f"Application error: {e}")
            raise
        finally:
            await self.shutdown()

        if self.reboot_requested:
            logger.info("Rebooting...")
            returncode, _, stderr = await run_command(self.settings.reboot_command)
            if returncode != 0:
                logger.error(f"Reboot command failed: {stderr}")

    async def shutdown(self):
        """Stop every owned process and release the wireless interface."""
        if self._shut_down:
            return
        self._shut_down = True

        logger.info("Shutting down services...")
        self.running = False

        if self.server:
            self.server.should_exit = True
        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self.tasks, return_exceptions=True), timeout=5.0
                )
            except TimeoutError:
                logger.warning("Some tasks did not complete within timeout")

        try:
            await self.beacon.stop()
            await self.agent.stop()
        except Exception as e:
            logger.error(f"Error stopping services: {e}")

        await self.connectivity.shutdown()

        logger.info("Shutdown complete")


def main():
    if os.geteuid() != 0:
        print("Error: This application requires root privileges.")
        print("Please run with sudo:")
        print(f"  sudo {' '.join(sys.argv)}")
        sys.exit(1)

    parser = argparse.ArgumentParser(description="Palpable boot-time provisioning")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--port", type=int, default=None, help="Web server port (default: 80)")

    args = parser.parse_args()
    settings = get_settings()

    if args.debug:
        settings.debug = True
    if args.port:
        settings.web_port = args.port

    setup_logging(debug=settings.debug, log_dir=settings.log_dir)

    app = PalpableBootstrapApp(settings)

    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
