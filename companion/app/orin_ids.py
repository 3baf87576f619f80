"""OrinId lookups and edits on top of the authenticated session."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .backend.http_client import error_message
from .config import Settings, get_settings
from .errors import ApiError
from .payloads import classify_identifier, identifier_value, validate_identifier_format
from .sensors.camera import CaptureController
from .sensors.decode_pipeline import DecodePipeline, EventCallback, FrameDecoder
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

MY_ORIN_PATH = "/api/orin/my"


class OrinIdRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: Optional[int] = Field(None, alias="userId")
    email: Optional[str] = None
    orin_id: Optional[str] = Field(None, alias="orinId")


@dataclass
class OrinIdAvailability:
    available: bool
    message: str


def _user_path(orin_id: str) -> str:
    return f"/api/orin/user/{quote(orin_id, safe='')}"


def _check_path(orin_id: str) -> str:
    return f"/api/orin/check/{quote(orin_id, safe='')}"


class OrinIdService:
    def __init__(self, session: SessionManager, *, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.session = session

    async def get_mine(self) -> OrinIdRecord:
        response = await self.session.authenticated_request("GET", MY_ORIN_PATH)
        self._raise_for_status(response, "Failed to load your OrinId.")
        return self._parse_record(response)

    async def update_mine(self, orin_id: str) -> OrinIdRecord:
        validate_identifier_format(orin_id)
        response = await self.session.authenticated_request("PUT", MY_ORIN_PATH, json={"orinId": orin_id})
        if response.status_code == httpx.codes.BAD_REQUEST:
            raise ApiError(response.status_code, error_message(response, "message", "Invalid request."))
        self._raise_for_status(response, "Failed to update your OrinId.")
        record = self._parse_record(response)
        if record.orin_id:
            self.session.remember_orin_id(record.orin_id)
        logger.info("orin.update_mine: OrinId updated")
        return record

    async def delete_mine(self) -> OrinIdRecord:
        response = await self.session.authenticated_request("DELETE", MY_ORIN_PATH)
        self._raise_for_status(response, "Failed to delete your OrinId.")
        self.session.remember_orin_id(None)
        logger.info("orin.delete_mine: OrinId removed")
        return self._parse_record(response)

    async def lookup(self, orin_id: str) -> OrinIdRecord:
        response = await self.session.authenticated_request("GET", _user_path(orin_id))
        if response.status_code == httpx.codes.NOT_FOUND:
            raise ApiError(response.status_code, "User not found.")
        self._raise_for_status(response, "Failed to look up the user.")
        return self._parse_record(response)

    async def check_availability(self, orin_id: str) -> OrinIdAvailability:
        """Format check first; only well-formed ids reach the server."""
        validate_identifier_format(orin_id)
        response = await self.session.authenticated_request("GET", _check_path(orin_id))
        self._raise_for_status(response, "Failed to check the OrinId.")
        try:
            body = response.json()
        except ValueError:
            body = {}
        available = not (isinstance(body, dict) and body.get("available") is False)
        message = "This OrinId is available." if available else "This OrinId is already taken."
        return OrinIdAvailability(available=available, message=message)

    async def scan_identifier(
        self,
        capture: CaptureController,
        *,
        decoder: Optional[FrameDecoder] = None,
        on_event: Optional[EventCallback] = None,
    ) -> Optional[str]:
        """Scan an OrinId QR code. Returns the identifier, or None if the scan was stopped."""
        try:
            device = await capture.start()
            if device is None:
                return None
            pipeline = DecodePipeline(
                capture,
                classify_identifier,
                decoder=decoder,
                settings=self.settings,
                invalid_pause=self.settings.scan.identifier_invalid_pause_seconds,
                invalid_message="The QR code does not contain a valid OrinId.",
            )
            if on_event is not None:
                pipeline.register_callback(on_event)
            payload = await pipeline.run()
            if payload is None:
                return None
            orin_id = identifier_value(payload)
            logger.info("orin.scan_identifier: scanned %s", type(payload).__name__)
            return orin_id
        finally:
            capture.stop()

    def _raise_for_status(self, response: httpx.Response, default: str) -> None:
        if response.is_success:
            return
        logger.warning("orin: HTTP %d - %s", response.status_code, default)
        raise ApiError(response.status_code, default)

    def _parse_record(self, response: httpx.Response) -> OrinIdRecord:
        try:
            data: Dict[str, Any] = response.json()
            return OrinIdRecord.model_validate(data)
        except (ValueError, ValidationError):
            return OrinIdRecord()


__all__ = ["OrinIdService", "OrinIdRecord", "OrinIdAvailability"]
