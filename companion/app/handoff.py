"""Cross-device login hand-off: scan a desktop's challenge and approve it."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .backend.http_client import APPROVE_PATH, error_message
from .config import Settings, get_settings
from .errors import AuthError, CompanionError
from .payloads import Challenge, classify_challenge
from .sensors.camera import CaptureController
from .sensors.decode_pipeline import DecodePipeline, EventCallback, FrameDecoder
from .session_manager import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class HandoffResult:
    approved: bool
    message: str
    status_code: Optional[int] = None


class HandoffOrchestrator:
    """Approves one scanned challenge per scan; the capture is always closed afterwards."""

    def __init__(
        self,
        session: SessionManager,
        capture: CaptureController,
        *,
        settings: Optional[Settings] = None,
        decoder: Optional[FrameDecoder] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session = session
        self.capture = capture
        self.decoder = decoder

    async def approve(self, challenge: Challenge) -> HandoffResult:
        """Send the approval once. The challenge is never kept for a retry."""
        try:
            response = await self.session.authenticated_request(
                "POST",
                APPROVE_PATH,
                json={"challengeId": challenge.challenge_id, "nonce": challenge.nonce},
            )
        except AuthError as e:
            logger.warning("handoff.approve: %s", e)
            return HandoffResult(approved=False, message=e.user_message)
        except CompanionError as e:
            logger.error("handoff.approve: %s", e)
            return HandoffResult(approved=False, message=e.user_message)
        finally:
            self.capture.stop()

        if response.is_success:
            logger.info("handoff.approve: desktop login approved")
            return HandoffResult(approved=True, message="Desktop login approved.", status_code=response.status_code)

        message = error_message(response, "message", "Approval failed")
        logger.warning("handoff.approve: rejected with HTTP %d - %s", response.status_code, message)
        return HandoffResult(approved=False, message=message, status_code=response.status_code)

    async def scan_and_approve(self, on_event: Optional[EventCallback] = None) -> Optional[HandoffResult]:
        """Open the camera, wait for a login QR code, approve it.

        Returns None when the scan was stopped before a challenge was read.
        Camera errors propagate; the device is released on every path.
        """
        try:
            device = await self.capture.start()
            if device is None:
                return None
            pipeline = DecodePipeline(
                self.capture,
                classify_challenge,
                decoder=self.decoder,
                settings=self.settings,
                invalid_message="Invalid QR code. Please scan a valid login QR code.",
            )
            if on_event is not None:
                pipeline.register_callback(on_event)
            payload = await pipeline.run()
            if not isinstance(payload, Challenge):
                return None
            logger.info("handoff: challenge %s scanned", payload.challenge_id)
            return await self.approve(payload)
        finally:
            self.capture.stop()


__all__ = ["HandoffOrchestrator", "HandoffResult"]
