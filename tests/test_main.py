"""HTTP surface of the companion service."""

import importlib
import sys
import time

import pytest
from fastapi.testclient import TestClient

from companion.app.config import get_settings

from conftest import FakeBackend


@pytest.fixture
def main_module(tmp_path, monkeypatch):
    monkeypatch.setenv("BACKEND_API_URL", "http://api.test")
    monkeypatch.setenv("LOG_DIRECTORY", str(tmp_path / "logs"))
    monkeypatch.setenv("AUTH__CREDENTIAL_FILE", str(tmp_path / "credentials.json"))
    get_settings.cache_clear()
    sys.modules.pop("companion.app.main", None)
    module = importlib.import_module("companion.app.main")
    yield module
    sys.modules.pop("companion.app.main", None)
    get_settings.cache_clear()


@pytest.fixture
def client(main_module):
    with TestClient(main_module.app) as test_client:
        yield test_client


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "capture": "idle"}


def test_auth_status_signed_out(client):
    response = client.get("/auth/status")
    assert response.json() == {"authenticated": False, "orinId": None, "refreshAt": None}


def test_protected_endpoint_requires_login(client):
    response = client.get("/orin/my")
    assert response.status_code == 401
    assert response.json()["kind"] == "auth_required"


def test_malformed_identifier_is_422(client):
    response = client.get("/orin/check/ab")
    assert response.status_code == 422
    assert "at least 3" in response.json()["detail"]


def test_login_body_validation(client):
    response = client.post("/auth/login", json={"email": "user@example.com"})
    assert response.status_code == 422


def test_scan_status_idle(client):
    body = client.get("/scan/status").json()
    assert body["running"] is False
    assert body["capture_state"] == "idle"
    assert body["result"] is None


def test_scan_stop_when_idle(client):
    response = client.post("/scan/stop")
    assert response.status_code == 200
    assert response.json()["capture_state"] == "idle"


def test_identifier_scan_reports_camera_error(client, main_module):
    main_module.capture.backend = FakeBackend(devices=[])

    response = client.post("/scan/identifier")
    assert response.status_code == 202
    assert response.json()["kind"] == "identifier"

    body = client.get("/scan/status").json()
    for _ in range(100):
        if not body["running"] and body["result"] is not None:
            break
        time.sleep(0.02)
        body = client.get("/scan/status").json()

    assert body["running"] is False
    assert body["result"] == {"error": "No camera was found on this device."}
    assert body["capture_state"] == "idle"
