"""HTTP client helpers for the auth and identifier REST endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..config import Settings
from ..errors import NetworkError

logger = logging.getLogger(__name__)

LOGIN_PATH = "/api/auth/login"
SIGNUP_PATH = "/api/auth/signup"
REFRESH_PATH = "/api/qr/token/refresh"
APPROVE_PATH = "/api/qr/approve"


class TokenResponse(BaseModel):
    """Token body returned by login and refresh. Lifetimes are milliseconds."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: str = Field(..., alias="accessToken", min_length=1)
    refresh_token: str = Field(..., alias="refreshToken", min_length=1)
    access_token_expires_in: int = Field(..., alias="accessTokenExpiresIn", ge=0)
    refresh_token_expires_in: Optional[int] = Field(None, alias="refreshTokenExpiresIn")
    orin_id: Optional[str] = Field(None, alias="orinId")


def error_message(response: httpx.Response, field: str = "message", default: str = "Request failed") -> str:
    """Pull the server-provided message out of an error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        value = body.get(field)
        if value:
            return str(value)
    return default


class ApiHttpClient:
    """Thin wrapper around the REST API; every call carries the configured timeout."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.settings.backend_api_url,
            timeout=self.settings.request_timeout_seconds,
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Issue one request; transport failures become ``NetworkError``."""
        try:
            return await self._client.request(method, path, json=json, headers=headers, params=params)
        except httpx.TimeoutException as e:
            logger.error("api.%s %s: request timeout", method.lower(), path)
            raise NetworkError("The server did not respond in time.", log_message=f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            logger.error("api.%s %s: network error - %s", method.lower(), path, e)
            raise NetworkError("Network error. Check your connection.", log_message=f"{method} {path}: {e}") from e

    async def post_json(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        return await self.request("POST", path, json=payload)

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)


__all__ = [
    "ApiHttpClient",
    "TokenResponse",
    "error_message",
    "LOGIN_PATH",
    "SIGNUP_PATH",
    "REFRESH_PATH",
    "APPROVE_PATH",
]
