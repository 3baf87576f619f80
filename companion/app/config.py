"""Central configuration for the Orin companion service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class AuthSettings(BaseModel):
    """Credential lifecycle configuration."""
    refresh_skew_seconds: float = Field(120.0, description="Refresh this long before the access token expires")
    credential_file: Path = Field(ROOT_DIR / "data" / "credentials.json", description="Flat key-value credential store")


class CameraSettings(BaseModel):
    """Capture device configuration."""
    device_indices: List[int] = Field(default_factory=lambda: [0, 1, 2], description="V4L2 indices probed during enumeration")
    rear_labels: List[str] = Field(
        default_factory=lambda: ["back", "rear", "environment"],
        description="Label fragments that identify an environment-facing camera",
    )
    resolution_width: int = Field(1280, description="Requested capture width (pixels)")
    resolution_height: int = Field(720, description="Requested capture height (pixels)")
    fps: int = Field(30, description="Requested capture frame rate")


class ScanSettings(BaseModel):
    """Decode loop pacing."""
    cycle_interval_seconds: float = Field(0.0, description="Delay between decode cycles after a miss")
    invalid_pause_seconds: float = Field(2.0, description="Pause after an unrecognized code before resuming")
    identifier_invalid_pause_seconds: float = Field(3.0, description="Pause after a malformed identifier code")


class Settings(BaseSettings):
    """Environment-driven settings for companion subsystems."""

    # Backend & API
    backend_api_url: str = Field("https://minjcho.site", description="REST base URL of the auth/identifier API")
    request_timeout_seconds: float = Field(15.0, description="Timeout applied to every API round trip")

    # Companion HTTP Server
    companion_host: str = Field("127.0.0.1", description="Host interface for local FastAPI server")
    companion_port: int = Field(5000, description="Port for FastAPI server")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    auth: AuthSettings = Field(default_factory=AuthSettings, description="Credential lifecycle settings")
    camera: CameraSettings = Field(default_factory=CameraSettings, description="Camera hardware settings")
    scan: ScanSettings = Field(default_factory=ScanSettings, description="Decode loop settings")

    @field_validator("backend_api_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
