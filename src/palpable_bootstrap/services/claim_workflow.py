"""
Device claim handshake against the Palpable cloud registry.
"""

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel

from palpable_bootstrap.core.config import Settings
from palpable_bootstrap.core.settings_store import SettingsStore, SettingsWriteError
from palpable_bootstrap.core.state import ClaimSession

logger = logging.getLogger(__name__)

CLAIM_CODE_PATTERN = re.compile(r"\A[0-9]{6}\Z")


class ClaimFailure(str, Enum):
    INVALID_FORMAT = "invalid_format"
    INVALID_CODE = "invalid_code"
    NETWORK_UNREACHABLE = "network_unreachable"
    SERVER_ERROR = "server_error"
    UNAVAILABLE = "unavailable"


FAILURE_MESSAGES = {
    ClaimFailure.INVALID_FORMAT: "Please enter a 6-digit code",
    ClaimFailure.INVALID_CODE: "Invalid or expired claim code",
    ClaimFailure.NETWORK_UNREACHABLE: (
        "Cannot reach the Palpable cloud. Check the WiFi connection and try again."
    ),
    ClaimFailure.SERVER_ERROR: "The Palpable cloud returned an error. Please try again later.",
    ClaimFailure.UNAVAILABLE: "Claim codes cannot be generated on this device",
}


class ClaimResult(BaseModel):
    success: bool
    reason: ClaimFailure | None = None
    code: str | None = None

    @property
    def message(self) -> str | None:
        return FAILURE_MESSAGES[self.reason] if self.reason else None

    @classmethod
    def failure(cls, reason: ClaimFailure) -> "ClaimResult":
        return cls(success=False, reason=reason)


def is_valid_claim_code(code: str | None) -> bool:
    return bool(code) and CLAIM_CODE_PATTERN.fullmatch(code) is not None


def _json_body(response: httpx.Response) -> dict[str, Any] | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class ClaimWorkflow:
    """Claims the device with a code entered by the user.

    There is no retry loop here: retrying is a user action in the portal.
    """

    def __init__(
        self,
        settings: Settings,
        store: SettingsStore,
        session: ClaimSession,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.store = store
        self.session = session
        self._transport = transport
        self._claimed_callbacks: list[Callable[..., Any]] = []

    @property
    def claimed(self) -> bool:
        return self.session.claimed

    def on_claimed(self, callback: Callable[..., Any]) -> None:
        self._claimed_callbacks.append(callback)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.api_base_url, timeout=timeout, transport=self._transport
        )

    async def claim(self, code: str, device_id: str) -> ClaimResult:
        """Post code + device ID to the claim endpoint.

        Re-claiming a device that is already claimed succeeds.
        """
        code = code or ""
        if not is_valid_claim_code(code):
            return ClaimResult.failure(ClaimFailure.INVALID_FORMAT)

        if self.session.claimed and self.session.device_id == device_id:
            logger.info(f"Device {device_id} already claimed")
            return ClaimResult(success=True)

        logger.info(f"Claiming device {device_id}")
        try:
            async with self._client(self.settings.claim_timeout) as client:
                response = await client.post(
                    self.settings.claim_path, json={"code": code, "deviceId": device_id}
                )
        except httpx.TimeoutException:
            logger.warning("Claim request timed out")
            return ClaimResult.failure(ClaimFailure.NETWORK_UNREACHABLE)
        except httpx.HTTPError as e:
            logger.warning(f"Claim request failed: {e}")
            return ClaimResult.failure(ClaimFailure.NETWORK_UNREACHABLE)

        result = self._interpret_claim_response(response)
        if result.success:
            await self._mark_claimed(code)
        else:
            logger.warning(f"Claim rejected ({response.status_code}): {result.reason.value}")
        return result

    def _interpret_claim_response(self, response: httpx.Response) -> ClaimResult:
        status = response.status_code

        if status == 409:
            # Already claimed: claiming is idempotent
            return ClaimResult(success=True)
        if status in (400, 404, 410, 422):
            return ClaimResult.failure(ClaimFailure.INVALID_CODE)
        if status >= 400:
            return ClaimResult.failure(ClaimFailure.SERVER_ERROR)

        body = _json_body(response)
        if body is None or not isinstance(body.get("success"), bool):
            logger.warning("Malformed claim response")
            return ClaimResult.failure(ClaimFailure.SERVER_ERROR)
        if not body["success"]:
            return ClaimResult.failure(ClaimFailure.INVALID_CODE)
        return ClaimResult(success=True)

    async def _mark_claimed(self, code: str) -> None:
        if self.session.claimed:
            return

        self.session = self.session.model_copy(
            update={"claimed": True, "claimed_at": datetime.now(), "code": code}
        )
        logger.info(f"Device {self.session.device_id} claimed")

        try:
            self.store.save_claim(self.session)
        except SettingsWriteError as e:
            logger.error(f"Claim succeeded but could not be recorded: {e}")

        for callback in self._claimed_callbacks:
            try:
                result = callback(self.session)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in claim callback: {e}", exc_info=True)

    async def request_code(self, device_id: str) -> ClaimResult:
        """Ask the registry for a fresh claim code (authenticated endpoint)."""
        if not self.settings.api_token:
            return ClaimResult.failure(ClaimFailure.UNAVAILABLE)

        try:
            async with self._client(self.settings.claim_timeout) as client:
                response = await client.post(
                    self.settings.claim_code_path,
                    json={"deviceId": device_id},
                    headers={"Authorization": f"Bearer {self.settings.api_token}"},
                )
        except httpx.HTTPError as e:
            logger.warning(f"Claim code request failed: {e}")
            return ClaimResult.failure(ClaimFailure.NETWORK_UNREACHABLE)

        if response.status_code >= 400:
            logger.warning(f"Claim code request rejected: HTTP {response.status_code}")
            return ClaimResult.failure(ClaimFailure.SERVER_ERROR)

        body = _json_body(response)
        code = body.get("code") if body else None
        if not isinstance(code, str) or not is_valid_claim_code(code):
            logger.warning("Malformed claim code response")
            return ClaimResult.failure(ClaimFailure.SERVER_ERROR)

        self.session = self.session.model_copy(update={"code": code})
        return ClaimResult(success=True, code=code)
