"""
Background poller for new bootstrap releases.

Only reports availability; installing is left to the installer.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

import httpx

from palpable_bootstrap.core.config import Settings
from palpable_bootstrap.core.settings_store import SettingsStore
from palpable_bootstrap.core.state import UpdateInfo

logger = logging.getLogger(__name__)


class UpdateChecker:
    def __init__(
        self,
        settings: Settings,
        store: SettingsStore,
        is_online: Callable[[], bool] = lambda: True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.store = store
        self.is_online = is_online
        self._transport = transport
        self.latest: UpdateInfo | None = None

    async def fetch_remote_version(self) -> str | None:
        """Return the published version, or None if it could not be determined."""
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.api_base_url,
                timeout=self.settings.update_check_timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(self.settings.version_path)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.debug(f"Update check failed: {e}")
            return None
        except ValueError:
            logger.warning("Update check returned invalid JSON")
            return None

        version = data.get("version") if isinstance(data, dict) else None
        if not isinstance(version, str) or not version.strip():
            logger.warning("Update check response has no version")
            return None
        return version.strip()

    async def check(self) -> UpdateInfo:
        info = UpdateInfo(
            current_version=self.store.read_version(),
            latest_version=await self.fetch_remote_version(),
            checked_at=datetime.now(),
        )
        self.latest = info

        if info.update_available:
            logger.info(
                f"Update available: {info.latest_version} (current: {info.current_version})"
            )
        elif info.latest_version is not None:
            logger.debug("System is up to date")
        return info

    async def run(self):
        """Poll at a fixed interval for the process lifetime."""
        logger.info("Update checker started")

        while True:
            try:
                if self.is_online():
                    await self.check()
                else:
                    logger.debug("Offline, skipping update check")
            except Exception as e:
                logger.error(f"Update checker error: {e}")

            await asyncio.sleep(self.settings.update_check_interval)
