"""
Camera capture controller.

Owns the capture device as a scoped resource: at most one controller in the
process holds a live device handle, and stop() always gives it back.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, ClassVar, Dict, FrozenSet, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..config import Settings, get_settings
from ..errors import CameraPermissionError, CompanionError, DeviceError
from ..state import CaptureState, DeviceErrorReason, ScanEvent

logger = logging.getLogger(__name__)

StateListener = Callable[[ScanEvent], None]

_TRANSITIONS: Dict[CaptureState, FrozenSet[CaptureState]] = {
    CaptureState.IDLE: frozenset({CaptureState.REQUESTING}),
    CaptureState.REQUESTING: frozenset({CaptureState.ACTIVE, CaptureState.ERROR, CaptureState.IDLE}),
    CaptureState.ACTIVE: frozenset({CaptureState.IDLE, CaptureState.ERROR}),
    CaptureState.ERROR: frozenset({CaptureState.REQUESTING, CaptureState.IDLE}),
}


@dataclass(frozen=True)
class CameraDevice:
    """An enumerated video input."""
    index: int
    label: str

    @property
    def device_id(self) -> str:
        return str(self.index)


class DeviceHandle:
    """Exclusive handle on an opened device."""

    def read(self) -> Optional[np.ndarray]:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError


class CameraBackend:
    """Enumerates and opens devices. Both calls may block; they run in a worker thread."""

    def list_devices(self) -> List[CameraDevice]:
        raise NotImplementedError

    def open(self, device: CameraDevice) -> DeviceHandle:
        raise NotImplementedError


class OpenCVDeviceHandle(DeviceHandle):
    """VideoCapture wrapper; read and release are serialized so release never races a read."""

    def __init__(self, capture: cv2.VideoCapture) -> None:
        self._capture: Optional[cv2.VideoCapture] = capture
        self._lock = threading.Lock()

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._capture is None:
                return None
            ret, frame = self._capture.read()
            if not ret or frame is None:
                return None
            return frame

    def release(self) -> None:
        with self._lock:
            if self._capture is None:
                return
            self._capture.release()
            self._capture = None


class OpenCVCameraBackend(CameraBackend):
    """V4L2/OpenCV backend probing the configured device indices."""

    def __init__(self, settings: Optional[Settings] = None, *, dev_root: Path = Path("/dev")) -> None:
        self.settings = settings or get_settings()
        self._dev_root = dev_root

    def list_devices(self) -> List[CameraDevice]:
        devices: List[CameraDevice] = []
        for index in self.settings.camera.device_indices:
            node = self._dev_root / f"video{index}"
            if node.exists():
                devices.append(CameraDevice(index=index, label=self._read_label(index)))
        return devices

    def _read_label(self, index: int) -> str:
        name_file = Path(f"/sys/class/video4linux/video{index}/name")
        try:
            return name_file.read_text(encoding="utf-8").strip() or f"Camera {index}"
        except OSError:
            return f"Camera {index}"

    def open(self, device: CameraDevice) -> DeviceHandle:
        node = self._dev_root / f"video{device.index}"
        if node.exists() and not os.access(node, os.R_OK | os.W_OK):
            raise CameraPermissionError(
                "Camera permission was denied. Allow camera access and try again.",
                log_message=f"no read/write access to {node}",
            )

        logger.info("Opening camera %s (%s)", device.device_id, device.label)
        capture = cv2.VideoCapture(device.index)
        if not capture.isOpened():
            capture.release()
            raise DeviceError(
                DeviceErrorReason.BUSY,
                "The camera is in use by another application.",
                log_message=f"VideoCapture({device.index}) failed to open",
            )

        cam = self.settings.camera
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, cam.resolution_width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, cam.resolution_height)
        capture.set(cv2.CAP_PROP_FPS, cam.fps)
        return OpenCVDeviceHandle(capture)


def select_device(devices: Sequence[CameraDevice], rear_labels: Sequence[str]) -> CameraDevice:
    """Prefer an environment-facing camera, else the first one enumerated."""
    fragments = [f.lower() for f in rear_labels]
    for device in devices:
        label = device.label.lower()
        if any(fragment in label for fragment in fragments):
            return device
    return devices[0]


class CaptureController:
    """IDLE -> REQUESTING -> ACTIVE state machine around one camera device."""

    _lease_holder: ClassVar[Optional["CaptureController"]] = None

    def __init__(
        self,
        backend: Optional[CameraBackend] = None,
        *,
        settings: Optional[Settings] = None,
        name: str = "capture",
    ) -> None:
        self.settings = settings or get_settings()
        self.backend = backend or OpenCVCameraBackend(self.settings)
        self.name = name
        self._state = CaptureState.IDLE
        self._handle: Optional[DeviceHandle] = None
        self._device: Optional[CameraDevice] = None
        self._error: Optional[CompanionError] = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is CaptureState.ACTIVE

    @property
    def has_handle(self) -> bool:
        return self._handle is not None

    @property
    def device(self) -> Optional[CameraDevice]:
        return self._device

    @property
    def error(self) -> Optional[CompanionError]:
        return self._error

    @property
    def generation(self) -> int:
        """Incremented on every stop; a decode cycle started under an older value is stale."""
        return self._generation

    @classmethod
    def lease_holder(cls) -> Optional["CaptureController"]:
        return cls._lease_holder

    def register_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def unregister_listener(self, listener: StateListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def start(self) -> Optional[CameraDevice]:
        """Request the camera. Returns the device, or None if stop() raced the request."""
        async with self._lock:
            if self._state is CaptureState.ACTIVE:
                return self._device

            self._error = None
            self._transition(CaptureState.REQUESTING)
            holder = CaptureController._lease_holder
            if holder is not None and holder is not self:
                error = DeviceError(
                    DeviceErrorReason.BUSY,
                    "Another scanner is already using the camera.",
                    log_message=f"{self.name}: camera leased by {holder.name}",
                )
                self._fail(error, release_lease=False)
                raise error
            CaptureController._lease_holder = self

            generation = self._generation
            loop = asyncio.get_running_loop()
            try:
                device, handle = await loop.run_in_executor(None, self._acquire)
            except CompanionError as e:
                if generation == self._generation:
                    self._fail(e)
                else:
                    self._release_lease()
                raise
            except Exception as e:
                logger.exception("%s: camera request failed - %s", self.name, e)
                error = DeviceError(
                    DeviceErrorReason.UNAVAILABLE,
                    "Camera access failed. Please try again.",
                    log_message=str(e),
                )
                if generation == self._generation:
                    self._fail(error)
                else:
                    self._release_lease()
                raise error from e

            if generation != self._generation:
                logger.info("%s: stopped while requesting, releasing %s", self.name, device.label)
                _safe_release(handle)
                self._release_lease()
                return None

            self._handle = handle
            self._device = device
            self._transition(CaptureState.ACTIVE, data={"device": device.label})
            logger.info("%s: camera active (%s)", self.name, device.label)
            return device

    def stop(self) -> None:
        """Release the device and return to IDLE. Valid from any state; repeat calls are no-ops."""
        previous = self._state
        handle = self._handle
        self._handle = None
        self._device = None
        self._error = None
        self._generation += 1

        if handle is not None:
            _safe_release(handle)
            logger.info("%s: camera released", self.name)

        # While REQUESTING the open is still running in a worker; start() drops the lease once it lands.
        if previous is not CaptureState.REQUESTING:
            self._release_lease()
        if previous is not CaptureState.IDLE:
            self._transition(CaptureState.IDLE)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Optional[CameraDevice]]:
        """Hold the camera for the duration of the block."""
        try:
            yield await self.start()
        finally:
            self.stop()

    async def read_frame(self) -> Optional[np.ndarray]:
        """Read the current frame; None when not ACTIVE or stopped mid-read."""
        handle = self._handle
        if not self.is_active or handle is None:
            return None
        generation = self._generation
        loop = asyncio.get_running_loop()
        try:
            frame = await loop.run_in_executor(None, handle.read)
        except Exception as e:
            if generation != self._generation:
                return None
            logger.error("%s: frame read failed - %s", self.name, e)
            error = DeviceError(DeviceErrorReason.UNAVAILABLE, "The camera stopped responding.", log_message=str(e))
            self._fail(error)
            raise error from e
        if generation != self._generation:
            return None
        return frame

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _acquire(self) -> Tuple[CameraDevice, DeviceHandle]:
        devices = self.backend.list_devices()
        if not devices:
            raise DeviceError(DeviceErrorReason.NOT_FOUND, "No camera was found on this device.")
        logger.debug("%s: available cameras %s", self.name, [d.label for d in devices])
        device = select_device(devices, self.settings.camera.rear_labels)
        return device, self.backend.open(device)

    def _fail(self, error: CompanionError, *, release_lease: bool = True) -> None:
        handle = self._handle
        self._handle = None
        self._device = None
        if handle is not None:
            _safe_release(handle)
        if release_lease:
            self._release_lease()
        self._error = error
        reason = getattr(error, "reason", None)
        logger.warning("%s: camera error (%s) - %s", self.name, reason.value if reason else "unknown", error)
        self._transition(
            CaptureState.ERROR,
            data={"reason": reason.value if reason else None},
            error=error.user_message,
        )

    def _release_lease(self) -> None:
        if CaptureController._lease_holder is self:
            CaptureController._lease_holder = None

    def _transition(self, new_state: CaptureState, *, data: Optional[dict] = None, error: Optional[str] = None) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"{self.name}: invalid capture transition {self._state.value} -> {new_state.value}")
        self._state = new_state
        event = ScanEvent(type="state", state=new_state, data=data or {}, error=error)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("%s: state listener failed", self.name)


def _safe_release(handle: DeviceHandle) -> None:
    try:
        handle.release()
    except Exception as e:
        logger.warning("Error releasing camera handle: %s", e)


__all__ = [
    "CameraDevice",
    "DeviceHandle",
    "CameraBackend",
    "OpenCVCameraBackend",
    "OpenCVDeviceHandle",
    "CaptureController",
    "select_device",
]
