"""FastAPI captive portal and provisioning API."""

import asyncio
import io
import logging
from collections.abc import Callable
from typing import Any

import qrcode
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field, field_validator

from palpable_bootstrap.core.config import Settings
from palpable_bootstrap.core.network_manager import ConnectivityManager
from palpable_bootstrap.core.settings_store import SettingsStore, SettingsWriteError
from palpable_bootstrap.core.state import DeviceSettings, UpdateInfo, has_control_chars
from palpable_bootstrap.services.claim_workflow import ClaimFailure, ClaimWorkflow
from palpable_bootstrap.services.update_checker import UpdateChecker

logger = logging.getLogger(__name__)

CAPTIVE_CHECK_PATHS = [
    # Android
    "/generate_204",
    "/gen_204",
    # Apple
    "/hotspot-detect.html",
    "/library/test/success.html",
    "/success.txt",
    # Windows
    "/ncsi.txt",
    "/connecttest.txt",
    "/redirect",
    # Firefox
    "/canonical.html",
    # Kindle
    "/kindle-wifi/wifistub.html",
]


class ConnectionRequest(BaseModel):
    ssid: str = Field(..., max_length=32)
    password: str | None = Field(None, max_length=63)

    @field_validator("ssid")
    @classmethod
    def validate_ssid(cls, v):
        if not v or len(v.strip()) == 0:
            raise ValueError("SSID is required")
        if has_control_chars(v):
            raise ValueError("SSID must not contain control characters")
        return v.strip()

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        if not v:
            return None
        # WPA/WPA2 passphrases are 8-63 printable ASCII characters
        if len(v) < 8 or not all(32 <= ord(c) <= 126 for c in v):
            raise ValueError("Password must be 8-63 printable characters")
        return v


class ClaimRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = ""
    device_id: str | None = Field(None, alias="deviceId")


def _failure(error: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content={"success": False, "error": error}, status_code=status_code)


def _validation_message(exc: RequestValidationError) -> str:
    for error in exc.errors():
        message = str(error.get("msg", ""))
        # "Value error, SSID is required" -> "SSID is required"
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        if message:
            return message
    return "Invalid request"


class WebServer:
    def __init__(
        self,
        settings: Settings,
        store: SettingsStore,
        connectivity: ConnectivityManager,
        claim_workflow: ClaimWorkflow,
        update_checker: UpdateChecker,
        device_id: str,
        on_reboot: Callable[[], Any] | None = None,
    ):
        self.settings = settings
        self.store = store
        self.connectivity = connectivity
        self.claim_workflow = claim_workflow
        self.update_checker = update_checker
        self.device_id = device_id
        self.on_reboot = on_reboot

        self.app = FastAPI(
            title="Palpable Setup",
            docs_url="/api/docs" if settings.debug else None,
            redoc_url="/api/redoc" if settings.debug else None,
        )

        self._setup_error_handlers()
        self._setup_captive_portal_routes()
        self._setup_routes()
        self._mount_static()

    def _setup_error_handlers(self):
        @self.app.exception_handler(RequestValidationError)
        async def validation_error(request: Request, exc: RequestValidationError):
            message = _validation_message(exc)
            logger.debug(f"Rejected {request.url.path}: {message}")
            return _failure(message, status_code=400)

    def _setup_captive_portal_routes(self):
        """Routes that answer OS connectivity checks with a redirect to the portal.

        Together with the wildcard DNS answer from dnsmasq this makes phones
        and laptops open the provisioning page on their own.
        """

        async def captive_check(request: Request):
            return Response(status_code=302, headers={"Location": self.settings.portal_url})

        for path in CAPTIVE_CHECK_PATHS:
            self.app.add_api_route(path, captive_check, methods=["GET"], include_in_schema=False)

    def _device_info(self) -> dict:
        return self.store.device_info(
            device_id=self.device_id,
            ip=self.connectivity.ip_address,
            mac=self.connectivity.mac_address,
            wifi_mode=self.connectivity.wifi_mode,
        )

    def _setup_routes(self):
        @self.app.get("/api/device-info")
        @self.app.get("/api/device-info.json")
        async def device_info() -> dict:
            return self._device_info()

        @self.app.get("/api/scan-wifi")
        @self.app.get("/api/scan-wifi.json")
        async def scan_wifi() -> list[dict]:
            networks = await self.connectivity.scan_networks()
            return [network.model_dump() for network in networks]

        @self.app.post("/api/connect-wifi")
        async def connect_wifi(conn_req: ConnectionRequest) -> JSONResponse:
            new_settings = DeviceSettings.model_validate(
                {
                    **self.store.current.model_dump(),
                    "wifi_ssid": conn_req.ssid,
                    "wifi_password": conn_req.password,
                }
            )

            try:
                self.store.save(new_settings)
            except SettingsWriteError:
                return _failure("Could not save settings", status_code=500)

            timeout = self.settings.client_connect_timeout + self.settings.portal_connect_grace
            try:
                result = await asyncio.wait_for(
                    self.connectivity.connect_with_credentials(new_settings), timeout=timeout
                )
            except TimeoutError:
                logger.warning(f"Connection to {conn_req.ssid} did not finish within {timeout}s")
                return _failure("Connection timed out")

            if not result.connected:
                return _failure(result.error or "Connection failed")
            return JSONResponse(content={"success": True, "ip": result.ip_address})

        @self.app.post("/api/claim")
        async def claim(claim_req: ClaimRequest) -> JSONResponse:
            device_id = claim_req.device_id
            if not device_id or device_id == "unknown":
                device_id = self.device_id
            elif device_id != self.device_id:
                logger.warning(f"Claim for foreign device {device_id} rejected")
                return _failure("Device ID does not match this device", status_code=400)

            result = await self.claim_workflow.claim(claim_req.code, device_id)
            if result.success:
                return JSONResponse(content={"success": True})

            status_code = 400 if result.reason == ClaimFailure.INVALID_FORMAT else 200
            return _failure(result.message, status_code=status_code)

        @self.app.get("/api/claim-code")
        async def claim_code() -> JSONResponse:
            result = await self.claim_workflow.request_code(self.device_id)
            if not result.success:
                return _failure(result.message)
            return JSONResponse(content={"success": True, "code": result.code})

        @self.app.get("/api/claim-qr.png")
        async def claim_qr() -> Response:
            return Response(content=self.render_claim_qr(), media_type="image/png")

        @self.app.get("/api/status")
        async def get_status() -> dict:
            return {
                "state": self.connectivity.state.value,
                "ssid": self.connectivity.current_ssid,
                "ip": self.connectivity.ip_address,
                "error": self.connectivity.last_error,
                "claimed": self.claim_workflow.claimed,
            }

        @self.app.get("/api/update")
        async def update_status() -> dict:
            info = self.update_checker.latest or UpdateInfo(
                current_version=self.store.read_version()
            )
            return {
                **info.model_dump(mode="json", by_alias=True, exclude={"checked_at"}),
                "updateAvailable": info.update_available,
            }

        @self.app.post("/api/reboot")
        async def reboot() -> dict:
            logger.info("Reboot requested from portal")
            if self.on_reboot is not None:
                self.on_reboot()
            return {"success": True}

        @self.app.get("/health")
        async def health_check() -> JSONResponse:
            """Basic health check endpoint."""
            return JSONResponse(
                content={
                    "status": "healthy",
                    "service": "palpable-bootstrap",
                    "state": self.connectivity.state.value,
                },
                status_code=200,
            )

    def _mount_static(self):
        # Registered last so the API routes win
        static_dir = self.settings.static_dir
        if static_dir.is_dir():
            self.app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="portal")
        else:
            logger.warning(f"Portal UI directory {static_dir} not found, serving API only")

    def render_claim_qr(self) -> bytes:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=8,
            border=2,
        )
        qr.add_data(f"palpable://claim?deviceId={self.device_id}")
        qr.make(fit=True)

        buffer = io.BytesIO()
        qr.make_image(fill_color="black", back_color="white").save(buffer, format="PNG")
        return buffer.getvalue()

    def get_app(self) -> FastAPI:
        return self.app
