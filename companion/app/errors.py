"""Error taxonomy for the companion core."""
from __future__ import annotations

import enum
from typing import Optional

from .state import DeviceErrorReason


class CompanionError(RuntimeError):
    """Base error; ``user_message`` is safe to show to the operator."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class CameraPermissionError(CompanionError):
    """Camera access was denied."""

    reason = DeviceErrorReason.PERMISSION_DENIED


class DeviceError(CompanionError):
    """Camera absent or busy."""

    def __init__(self, reason: DeviceErrorReason, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(user_message, log_message=log_message)
        self.reason = reason


class DecodeFormatError(CompanionError):
    """A decoded code did not match the grammar of the running scan."""


class NetworkError(CompanionError):
    """Transport-level failure talking to the API."""


class AuthErrorKind(str, enum.Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    SIGNUP_REJECTED = "signup_rejected"
    NO_REFRESH_TOKEN = "no_refresh_token"
    REFRESH_FAILED = "refresh_failed"
    AUTH_REQUIRED = "auth_required"


class AuthError(CompanionError):
    def __init__(self, kind: AuthErrorKind, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(user_message, log_message=log_message)
        self.kind = kind


class IdentifierValidationError(CompanionError):
    """Manually typed identifier failed the format check."""


class ApiError(CompanionError):
    """Non-2xx API response surfaced to the caller as-is."""

    def __init__(self, status_code: int, user_message: str) -> None:
        super().__init__(user_message, log_message=f"HTTP {status_code}: {user_message}")
        self.status_code = status_code


__all__ = [
    "CompanionError",
    "CameraPermissionError",
    "DeviceError",
    "DecodeFormatError",
    "NetworkError",
    "AuthErrorKind",
    "AuthError",
    "IdentifierValidationError",
    "ApiError",
]
