"""Shared pytest fixtures for companion tests."""
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import numpy as np
import pytest
import pytest_asyncio

from companion.app.backend.credential_store import CredentialStore
from companion.app.backend.http_client import ApiHttpClient
from companion.app.config import AuthSettings, ScanSettings, Settings
from companion.app.sensors.camera import CameraBackend, CameraDevice, CaptureController, DeviceHandle
from companion.app.sensors.decode_pipeline import FrameDecoder
from companion.app.session_manager import SessionManager

API_URL = "http://api.test"


# ---------------------------------------------------------------------------
# API collaborator
# ---------------------------------------------------------------------------

class FakeApi:
    """Scripted REST API behind httpx.MockTransport.

    Responses are queued per (method, path); the last queued response for a
    route is reused once the queue runs dry.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.calls: List[httpx.Request] = []

    def add(self, method: str, path: str, status_code: int = 200, body: Any = None) -> None:
        self.routes.setdefault((method, path), []).append((status_code, body))

    def add_handler(self, method: str, path: str, handler: Callable[[httpx.Request], Any]) -> None:
        self.routes.setdefault((method, path), []).append(handler)

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [c for c in self.calls if c.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "no route"})
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(entry):
            result = entry(request)
            if hasattr(result, "__await__"):
                result = await result
            return result
        status_code, body = entry
        if body is None:
            return httpx.Response(status_code)
        return httpx.Response(status_code, json=body)


def token_body(access: str = "access-1", refresh: str = "refresh-1", expires_ms: int = 15 * 60 * 1000,
               orin_id: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "accessToken": access,
        "refreshToken": refresh,
        "accessTokenExpiresIn": expires_ms,
        "refreshTokenExpiresIn": 7 * 24 * 3600 * 1000,
    }
    if orin_id is not None:
        body["orinId"] = orin_id
    return body


def bearer(request: httpx.Request) -> Optional[str]:
    return request.headers.get("Authorization")


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Camera
# ---------------------------------------------------------------------------

class FakeHandle(DeviceHandle):
    def __init__(self) -> None:
        self.released = 0
        self.reads = 0

    @property
    def live(self) -> bool:
        return self.released == 0

    def read(self) -> Optional[np.ndarray]:
        if not self.live:
            raise RuntimeError("read after release")
        self.reads += 1
        return np.zeros((4, 4, 3), dtype=np.uint8)

    def release(self) -> None:
        self.released += 1


class FakeBackend(CameraBackend):
    def __init__(self, devices: Optional[List[CameraDevice]] = None, open_error: Optional[Exception] = None) -> None:
        self.devices = [CameraDevice(0, "Front Camera")] if devices is None else devices
        self.open_error = open_error
        self.handles: List[FakeHandle] = []
        self.opened: List[CameraDevice] = []

    def list_devices(self) -> List[CameraDevice]:
        return list(self.devices)

    def open(self, device: CameraDevice) -> DeviceHandle:
        if self.open_error is not None:
            raise self.open_error
        handle = FakeHandle()
        self.handles.append(handle)
        self.opened.append(device)
        return handle

    @property
    def live_handles(self) -> int:
        return sum(1 for h in self.handles if h.live)


class ScriptedDecoder(FrameDecoder):
    """Returns the scripted texts in order, then None (no code) forever."""

    def __init__(self, texts: List[Optional[str]]) -> None:
        self.texts = list(texts)
        self.calls = 0

    def decode(self, frame: np.ndarray) -> Optional[str]:
        self.calls += 1
        if self.texts:
            return self.texts.pop(0)
        return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return Settings(
        backend_api_url=API_URL,
        request_timeout_seconds=2.0,
        log_directory=tmp_path / "logs",
        auth=AuthSettings(refresh_skew_seconds=120.0, credential_file=tmp_path / "credentials.json"),
        scan=ScanSettings(
            cycle_interval_seconds=0.0,
            invalid_pause_seconds=0.05,
            identifier_invalid_pause_seconds=0.05,
        ),
    )


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return CredentialStore()


@pytest_asyncio.fixture
async def session(settings, fake_api, store, clock):
    http = ApiHttpClient(settings, transport=httpx.MockTransport(fake_api))
    manager = SessionManager(settings=settings, store=store, http_client=http, clock=clock)
    yield manager
    await manager.aclose()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def capture(settings, backend):
    controller = CaptureController(backend, settings=settings, name="test-camera")
    yield controller
    controller.stop()


@pytest.fixture(autouse=True)
def _release_camera_lease():
    yield
    holder = CaptureController.lease_holder()
    if holder is not None:
        holder.stop()
    CaptureController._lease_holder = None
