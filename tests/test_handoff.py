"""Tests for the scan-to-approve login hand-off."""

import httpx
import pytest

from companion.app.backend.http_client import APPROVE_PATH, LOGIN_PATH, REFRESH_PATH
from companion.app.errors import DeviceError
from companion.app.handoff import HandoffOrchestrator
from companion.app.payloads import Challenge
from companion.app.sensors.camera import CaptureController
from companion.app.state import CaptureState

from conftest import FakeBackend, ScriptedDecoder, bearer, request_json, token_body

CHALLENGE_TEXT = '{"challengeId":"c-42","nonce":"n-42"}'


async def logged_in(session, fake_api):
    fake_api.add("POST", LOGIN_PATH, 200, token_body())
    await session.login("user@example.com", "pw")


def orchestrator(session, capture, settings, texts=()):
    return HandoffOrchestrator(session, capture, settings=settings, decoder=ScriptedDecoder(list(texts)))


class TestApprove:
    @pytest.mark.asyncio
    async def test_success_stops_capture(self, session, capture, settings, fake_api, backend):
        await logged_in(session, fake_api)
        fake_api.add("POST", APPROVE_PATH, 200, {"status": "approved"})
        await capture.start()

        result = await orchestrator(session, capture, settings).approve(Challenge("c-1", "n-1"))

        assert result.approved
        assert result.message == "Desktop login approved."
        assert capture.state is CaptureState.IDLE
        assert backend.live_handles == 0
        calls = fake_api.calls_to(APPROVE_PATH)
        assert len(calls) == 1
        assert request_json(calls[0]) == {"challengeId": "c-1", "nonce": "n-1"}
        assert bearer(calls[0]) == "Bearer access-1"

    @pytest.mark.asyncio
    async def test_rejection_reports_server_message(self, session, capture, settings, fake_api):
        await logged_in(session, fake_api)
        fake_api.add("POST", APPROVE_PATH, 410, {"message": "Challenge expired"})
        await capture.start()

        result = await orchestrator(session, capture, settings).approve(Challenge("c-1", "n-1"))

        assert not result.approved
        assert result.message == "Challenge expired"
        assert result.status_code == 410
        assert capture.state is CaptureState.IDLE
        assert len(fake_api.calls_to(APPROVE_PATH)) == 1

    @pytest.mark.asyncio
    async def test_rejection_without_body(self, session, capture, settings, fake_api):
        await logged_in(session, fake_api)
        fake_api.add("POST", APPROVE_PATH, 500)

        result = await orchestrator(session, capture, settings).approve(Challenge("c-1", "n-1"))

        assert not result.approved
        assert result.message == "Approval failed"

    @pytest.mark.asyncio
    async def test_signed_out_user_gets_message(self, session, capture, settings, fake_api):
        await capture.start()

        result = await orchestrator(session, capture, settings).approve(Challenge("c-1", "n-1"))

        assert not result.approved
        assert result.message
        assert fake_api.calls_to(APPROVE_PATH) == []
        assert capture.state is CaptureState.IDLE

    @pytest.mark.asyncio
    async def test_network_failure_reported(self, session, capture, settings, fake_api):
        await logged_in(session, fake_api)

        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        fake_api.add_handler("POST", APPROVE_PATH, unreachable)

        result = await orchestrator(session, capture, settings).approve(Challenge("c-1", "n-1"))

        assert not result.approved
        assert session.is_valid()

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_before_approve(self, session, capture, settings, fake_api, clock):
        await logged_in(session, fake_api)
        clock.advance(3600)
        fake_api.add("POST", REFRESH_PATH, 200, token_body(access="access-2", refresh="refresh-2"))
        fake_api.add("POST", APPROVE_PATH, 200, {})

        result = await orchestrator(session, capture, settings).approve(Challenge("c-1", "n-1"))

        assert result.approved
        assert bearer(fake_api.calls_to(APPROVE_PATH)[0]) == "Bearer access-2"


class TestScanAndApprove:
    @pytest.mark.asyncio
    async def test_end_to_end(self, session, capture, settings, fake_api, backend):
        await logged_in(session, fake_api)
        fake_api.add("POST", APPROVE_PATH, 200, {})
        events = []

        result = await orchestrator(session, capture, settings, [None, "garbage", CHALLENGE_TEXT]).scan_and_approve(
            on_event=events.append
        )

        assert result.approved
        assert [e.type for e in events] == ["invalid_code"]
        assert request_json(fake_api.calls_to(APPROVE_PATH)[0]) == {"challengeId": "c-42", "nonce": "n-42"}
        assert capture.state is CaptureState.IDLE
        assert backend.live_handles == 0
        assert CaptureController.lease_holder() is None

    @pytest.mark.asyncio
    async def test_failed_approval_leaves_capture_closed(self, session, capture, settings, fake_api, backend):
        await logged_in(session, fake_api)
        fake_api.add("POST", APPROVE_PATH, 403, {"message": "Not allowed"})

        result = await orchestrator(session, capture, settings, [CHALLENGE_TEXT]).scan_and_approve()

        assert not result.approved
        assert result.message == "Not allowed"
        assert capture.state is CaptureState.IDLE
        assert backend.live_handles == 0

    @pytest.mark.asyncio
    async def test_camera_error_propagates_and_releases(self, session, settings, fake_api):
        await logged_in(session, fake_api)
        capture = CaptureController(FakeBackend(devices=[]), settings=settings)

        with pytest.raises(DeviceError):
            await orchestrator(session, capture, settings).scan_and_approve()

        assert capture.state is CaptureState.IDLE
        assert fake_api.calls_to(APPROVE_PATH) == []

    @pytest.mark.asyncio
    async def test_each_scan_approves_its_own_challenge(self, session, capture, settings, fake_api):
        await logged_in(session, fake_api)
        fake_api.add("POST", APPROVE_PATH, 200, {})
        handoff = HandoffOrchestrator(
            session,
            capture,
            settings=settings,
            decoder=ScriptedDecoder([CHALLENGE_TEXT, '{"challengeId":"c-43","nonce":"n-43"}']),
        )

        await handoff.scan_and_approve()
        await handoff.scan_and_approve()

        bodies = [request_json(c) for c in fake_api.calls_to(APPROVE_PATH)]
        assert [b["challengeId"] for b in bodies] == ["c-42", "c-43"]
