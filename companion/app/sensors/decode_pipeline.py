"""Self-resuming QR decode loop over frames from an active capture."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Union

import cv2
import numpy as np

from ..config import Settings, get_settings
from ..errors import DecodeFormatError
from ..payloads import DecodedPayload, Invalid, is_recognized
from ..state import CaptureState, ScanEvent
from .camera import CaptureController

logger = logging.getLogger(__name__)

Classifier = Callable[[str], DecodedPayload]
EventCallback = Callable[[ScanEvent], Union[Awaitable[None], None]]


class FrameDecoder:
    def decode(self, frame: np.ndarray) -> Optional[str]:
        """Return the code text in ``frame`` or None when there is no code."""
        raise NotImplementedError


class QRCodeFrameDecoder(FrameDecoder):
    """OpenCV QR detector. Not thread-safe; the pipeline calls it from one worker at a time."""

    def __init__(self) -> None:
        self._detector = cv2.QRCodeDetector()

    def decode(self, frame: np.ndarray) -> Optional[str]:
        try:
            text, points, _ = self._detector.detectAndDecode(frame)
        except cv2.error as e:
            logger.debug("QR detector error: %s", e)
            return None
        if points is None or not text:
            return None
        return text


class DecodePipeline:
    """Decode frames until one classifies as a recognized payload.

    Misses go straight to the next cycle. An ``Invalid`` payload emits an
    ``invalid_code`` event, pauses, and resumes on its own. The first
    recognized payload ends the loop and is returned exactly once. The
    loop checks once per cycle whether the capture left ACTIVE (or
    ``cancel()`` was called) and returns None without touching the device.
    """

    def __init__(
        self,
        capture: CaptureController,
        classify: Classifier,
        *,
        decoder: Optional[FrameDecoder] = None,
        settings: Optional[Settings] = None,
        invalid_pause: Optional[float] = None,
        cycle_interval: Optional[float] = None,
        invalid_message: str = "Invalid QR code. Please scan a valid QR code.",
    ) -> None:
        self.settings = settings or get_settings()
        self.capture = capture
        self.classify = classify
        self.decoder = decoder or QRCodeFrameDecoder()
        self.invalid_pause = self.settings.scan.invalid_pause_seconds if invalid_pause is None else invalid_pause
        self.cycle_interval = self.settings.scan.cycle_interval_seconds if cycle_interval is None else cycle_interval
        self.invalid_message = invalid_message

        self.cycles = 0
        self.invalid_count = 0
        self._callbacks: List[EventCallback] = []
        self._cancelled = False
        self._delivered = False
        self._running = False
        # Set by cancel() or any capture transition to cut an invalid-code pause short.
        self._wake = asyncio.Event()

    @property
    def delivered(self) -> bool:
        return self._delivered

    def register_callback(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)

    def cancel(self) -> None:
        self._cancelled = True
        self._wake.set()

    async def run(self) -> Optional[DecodedPayload]:
        if self._delivered:
            raise RuntimeError("decode pipeline already delivered its payload")
        if self._running:
            raise RuntimeError("decode pipeline is already running")
        if not self.capture.is_active:
            raise RuntimeError(f"capture is {self.capture.state.value}, expected active")

        self._running = True
        self._wake.clear()
        generation = self.capture.generation
        self.capture.register_listener(self._on_capture_event)
        logger.info("Decode loop started")
        try:
            while not self._halted(generation):
                self.cycles += 1
                frame = await self.capture.read_frame()
                if self._halted(generation):
                    break
                text = await self._decode(frame) if frame is not None else None
                if self._halted(generation):
                    break
                if text is None:
                    await asyncio.sleep(self.cycle_interval)
                    continue

                payload = self.classify(text)
                if not is_recognized(payload):
                    await self._report_invalid(text, payload)
                    await self._pause(self.invalid_pause)
                    continue

                self._delivered = True
                logger.info("Decode loop delivered %s after %d cycles", type(payload).__name__, self.cycles)
                return payload
            logger.info("Decode loop halted after %d cycles", self.cycles)
            return None
        finally:
            self.capture.unregister_listener(self._on_capture_event)
            self._running = False

    async def _decode(self, frame: np.ndarray) -> Optional[str]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.decoder.decode, frame)

    def _halted(self, generation: int) -> bool:
        return (
            self._cancelled
            or self.capture.generation != generation
            or self.capture.state is not CaptureState.ACTIVE
        )

    def _on_capture_event(self, event: ScanEvent) -> None:
        if event.state is not CaptureState.ACTIVE:
            self._wake.set()

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _report_invalid(self, text: str, payload: Invalid) -> None:
        self.invalid_count += 1
        error = DecodeFormatError(self.invalid_message, log_message=payload.reason)
        logger.info("Unrecognized code (%s), resuming in %.1fs", error, self.invalid_pause)
        event = ScanEvent(
            type="invalid_code",
            state=self.capture.state,
            data={"text": text, "reason": payload.reason},
            error=error.user_message,
        )
        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Decode event callback failed")


__all__ = ["FrameDecoder", "QRCodeFrameDecoder", "DecodePipeline", "Classifier"]
