"""Shared state definitions for the Orin companion."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class CaptureState(str, enum.Enum):
    """
    Capture controller states:

    1. IDLE        - No device held
    2. REQUESTING  - Waiting for the device to be granted
    3. ACTIVE      - Device held, frames available
    4. ERROR       - Request failed (permission, absent, busy); retry goes back to REQUESTING
    """
    IDLE = "idle"
    REQUESTING = "requesting"
    ACTIVE = "active"
    ERROR = "error"


class DeviceErrorReason(str, enum.Enum):
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Credential:
    """Access/refresh token pair with the access token expiry (epoch seconds)."""

    access_token: str
    refresh_token: str
    expiry_at: float
    orin_id: Optional[str] = None


@dataclass
class ScanEvent:
    """Event payload handed to the front end while a scan runs."""

    type: str
    state: CaptureState
    data: Dict[str, Any]
    error: Optional[str] = None


__all__ = ["CaptureState", "DeviceErrorReason", "Credential", "ScanEvent"]
