"""Flat key-value persistence for token material."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Mapping, Optional

from ..state import Credential

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
TOKEN_EXPIRY_KEY = "tokenExpiry"
ORIN_ID_KEY = "orinId"

CREDENTIAL_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY, ORIN_ID_KEY)


class CredentialStore:
    """In-memory store; subclasses add durability by overriding ``_flush``."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self._values: Dict[str, str] = {}
        if initial:
            self._values.update({k: str(v) for k, v in initial.items() if k in CREDENTIAL_KEYS})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        if key not in CREDENTIAL_KEYS:
            raise KeyError(f"Unknown credential key: {key}")
        self._values[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if self._values.pop(key, None) is not None:
            self._flush()

    def snapshot(self) -> Dict[str, str]:
        return dict(self._values)

    def load_credential(self) -> Optional[Credential]:
        """Rebuild the stored credential; partial material is treated as absent."""
        access = self._values.get(ACCESS_TOKEN_KEY)
        refresh = self._values.get(REFRESH_TOKEN_KEY)
        expiry_raw = self._values.get(TOKEN_EXPIRY_KEY)
        if not access or not refresh or not expiry_raw:
            return None
        try:
            expiry_ms = int(expiry_raw)
        except ValueError:
            logger.warning("credential_store: unreadable %s=%r", TOKEN_EXPIRY_KEY, expiry_raw)
            return None
        return Credential(
            access_token=access,
            refresh_token=refresh,
            expiry_at=expiry_ms / 1000.0,
            orin_id=self._values.get(ORIN_ID_KEY),
        )

    def save_credential(self, credential: Credential) -> None:
        """Write both tokens and the expiry (epoch ms, string-encoded) in one flush."""
        self._values[ACCESS_TOKEN_KEY] = credential.access_token
        self._values[REFRESH_TOKEN_KEY] = credential.refresh_token
        self._values[TOKEN_EXPIRY_KEY] = str(int(credential.expiry_at * 1000))
        if credential.orin_id:
            self._values[ORIN_ID_KEY] = credential.orin_id
        self._flush()

    def clear(self) -> None:
        """Drop all four keys together."""
        for key in CREDENTIAL_KEYS:
            self._values.pop(key, None)
        self._flush()

    def _flush(self) -> None:
        pass


class FileCredentialStore(CredentialStore):
    """JSON file backed store, replaced atomically on every write."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        super().__init__(self._read())

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("credential_store: ignoring unreadable %s - %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("credential_store: ignoring non-object content in %s", self.path)
            return {}
        return {k: str(v) for k, v in data.items() if k in CREDENTIAL_KEYS}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".credentials-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._values, fh)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except Exception:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


__all__ = [
    "CredentialStore",
    "FileCredentialStore",
    "CREDENTIAL_KEYS",
    "ACCESS_TOKEN_KEY",
    "REFRESH_TOKEN_KEY",
    "TOKEN_EXPIRY_KEY",
    "ORIN_ID_KEY",
]
