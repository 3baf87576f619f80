"""Logging bootstrap for the companion service."""
from __future__ import annotations

import logging
import re
from logging.config import dictConfig
from pathlib import Path
from typing import Optional

_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(r"""(["']?(?:accessToken|refreshToken|password)["']?\s*[:=]\s*["']?)[^"',\s}]+"""),
)


class RedactSecretsFilter(logging.Filter):
    """Masks bearer tokens, token fields and passwords before a record is written."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in _SECRET_PATTERNS:
            redacted = pattern.sub(r"\1***", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> None:
    """Console plus a nightly-rotated runtime log, both with secrets masked.

    Session and camera activity goes to ``companion-runtime.log``; failed
    auth and device errors are also copied to ``companion-errors.log`` so
    they survive the shorter runtime retention.
    """

    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[2] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    retention = max(int(retention_days), 1)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "redact": {"()": RedactSecretsFilter},
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["redact"],
                    "level": level,
                },
                "runtime_file": {
                    "class": "logging.handlers.TimedRotatingFileHandler",
                    "formatter": "default",
                    "filters": ["redact"],
                    "level": level,
                    "filename": str(log_dir / "companion-runtime.log"),
                    "when": "midnight",
                    "backupCount": retention,
                    "utc": True,
                    "delay": True,
                    "encoding": "utf-8",
                },
                "error_file": {
                    "class": "logging.handlers.TimedRotatingFileHandler",
                    "formatter": "default",
                    "filters": ["redact"],
                    "level": "WARNING",
                    "filename": str(log_dir / "companion-errors.log"),
                    "when": "midnight",
                    "backupCount": retention * 4,
                    "utc": True,
                    "delay": True,
                    "encoding": "utf-8",
                },
            },
            "loggers": {
                # httpx logs every request at INFO, including URLs with identifiers
                "httpx": {"level": "WARNING"},
                "uvicorn.access": {"level": "WARNING"},
            },
            "root": {"level": level, "handlers": ["console", "runtime_file", "error_file"]},
        }
    )


__all__ = ["configure_logging", "RedactSecretsFilter"]
