"""Camera acquisition for the selfie screen.

`CameraController` owns the single camera device: it acquires a stream,
waits until the stream is playable and playing, captures stills and tears
everything down again. `SelfieCapture` is the screen object on top of it
(capture/preview mode, retake, file pick).

Devices are duck-typed: `open(front) -> stream`, and a stream exposes
`wait_playable()`, `play()`, `read_frame()` (all awaitable) and `stop()`.
`OpenCVDevice` is the stock implementation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import cv2

from photo_flow.config import settings
from photo_flow.utils import mirror_jpeg, to_jpeg

log = logging.getLogger("camera")


class CameraState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"
    STOPPED = "stopped"


class CameraErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    BUSY = "busy"
    UNKNOWN = "unknown"


ERROR_MESSAGES = {
    CameraErrorKind.PERMISSION_DENIED: "相机权限被拒绝，请在设置中允许访问相机",
    CameraErrorKind.NOT_FOUND: "未找到相机设备",
    CameraErrorKind.BUSY: "相机被其他应用占用，请关闭其他应用后重试",
    CameraErrorKind.UNKNOWN: "无法访问相机，请检查权限设置",
}


class DeviceError(Exception):
    """Raised by device implementations."""


class DevicePermissionError(DeviceError):
    pass


class DeviceNotFoundError(DeviceError):
    pass


class DeviceBusyError(DeviceError):
    pass


class DeviceAbortedError(DeviceError):
    """The device operation was interrupted by a concurrent teardown."""


class CameraNotReadyError(RuntimeError):
    pass


class CameraCaptureError(RuntimeError):
    """Reading a still from a live stream failed; the controller is in ERROR."""

    def __init__(self, error: CameraError):
        super().__init__(error.message)
        self.error = error


@dataclass
class CameraError:
    kind: CameraErrorKind
    detail: str = ""

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self.kind]


def classify_device_error(exc: BaseException) -> CameraErrorKind:
    if isinstance(exc, (DevicePermissionError, PermissionError)):
        return CameraErrorKind.PERMISSION_DENIED
    if isinstance(exc, (DeviceNotFoundError, FileNotFoundError)):
        return CameraErrorKind.NOT_FOUND
    if isinstance(exc, DeviceBusyError):
        return CameraErrorKind.BUSY
    return CameraErrorKind.UNKNOWN


@dataclass
class CapturedImage:
    """A still in memory. `data` is never mirrored unless composited at capture."""

    data: bytes
    mirrored: bool = False
    source: str = "camera"
    mime_type: str = "image/jpeg"

    def preview_bytes(self) -> bytes:
        """What the user sees on the preview screen."""
        return mirror_jpeg(self.data) if self.mirrored else self.data


# --------------------------
# OpenCV device
# --------------------------
class OpenCVStream:
    def __init__(self, cap):
        self._cap = cap
        self.playing = False
        self.active = True

    async def wait_playable(self):
        ok, _ = await asyncio.to_thread(self._read)
        if not ok:
            raise DeviceBusyError("Camera opened but delivered no frame")

    async def play(self):
        if not self.active:
            raise DeviceAbortedError("play() on a released stream")
        self.playing = True

    async def read_frame(self):
        ok, frame = await asyncio.to_thread(self._read)
        if not ok or frame is None:
            raise DeviceBusyError("Failed to read frame from camera")
        return frame

    def _read(self):
        if not self.active:
            raise DeviceAbortedError("read() on a released stream")
        return self._cap.read()

    def stop(self):
        self.playing = False
        if self.active:
            self.active = False
            self._cap.release()


class OpenCVDevice:
    def __init__(self, front_index: Optional[int] = None, back_index: Optional[int] = None,
                 width: Optional[int] = None, height: Optional[int] = None):
        self.front_index = settings.CAMERA_FRONT_INDEX if front_index is None else front_index
        self.back_index = settings.CAMERA_BACK_INDEX if back_index is None else back_index
        self.width = width or settings.CAMERA_WIDTH
        self.height = height or settings.CAMERA_HEIGHT

    async def open(self, front: bool) -> OpenCVStream:
        index = self.front_index if front else self.back_index
        cap = await asyncio.to_thread(self._open_capture, index)
        return OpenCVStream(cap)

    def _open_capture(self, index: int):
        cap = cv2.VideoCapture(index)
        if not cap.isOpened():
            cap.release()
            raise DeviceNotFoundError(f"No camera at index {index}")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        return cap


def encode_frame(frame, quality: int, mirror: bool = False) -> bytes:
    if mirror:
        frame = cv2.flip(frame, 1)
    ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise RuntimeError("Failed to encode frame as JPEG")
    return buf.tobytes()


# --------------------------
# Controller
# --------------------------
class CameraController:
    def __init__(self, device=None, jpeg_quality: Optional[int] = None,
                 toggle_debounce: Optional[float] = None, mirror_composite: Optional[bool] = None):
        self.device = device if device is not None else OpenCVDevice()
        self.jpeg_quality = jpeg_quality or settings.JPEG_QUALITY
        self.toggle_debounce = settings.CAMERA_TOGGLE_DEBOUNCE_SECONDS if toggle_debounce is None else toggle_debounce
        self.mirror_composite = settings.MIRROR_COMPOSITE if mirror_composite is None else mirror_composite

        self.state = CameraState.IDLE
        self.front = True
        self.error: Optional[CameraError] = None

        self._stream = None
        self._play_task: Optional[asyncio.Future] = None
        self._attempt = 0
        self._device_lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self.state == CameraState.READY

    def _set_state(self, state: CameraState):
        if state != self.state:
            log.debug("state %s -> %s", self.state.value, state.value)
            self.state = state

    def _release(self):
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            log.info("Camera stream released")

    async def start(self):
        """Acquire the camera. A no-op while already initializing or ready."""
        if self.state in (CameraState.INITIALIZING, CameraState.READY):
            return

        self._attempt += 1
        attempt = self._attempt
        self._set_state(CameraState.INITIALIZING)
        self.error = None

        def superseded() -> bool:
            return attempt != self._attempt

        try:
            async with self._device_lock:
                if superseded():
                    return
                stream = await self.device.open(front=self.front)
                if superseded():
                    stream.stop()
                    log.info("Camera acquired after cancellation; released")
                    return
                self._stream = stream

            await stream.wait_playable()
            if superseded():
                return

            self._play_task = asyncio.ensure_future(stream.play())
            try:
                await asyncio.shield(self._play_task)
            finally:
                self._play_task = None
            if superseded():
                return

            self._set_state(CameraState.READY)
            log.info("Camera ready front=%s", self.front)

        except Exception as e:
            if superseded() or isinstance(e, DeviceAbortedError):
                log.debug("Camera initialization aborted: %s", e)
                if not superseded():
                    self._release()
                    self._set_state(CameraState.STOPPED)
                return
            self._release()
            kind = classify_device_error(e)
            self.error = CameraError(kind=kind, detail=str(e))
            self._set_state(CameraState.ERROR)
            log.error("Camera error kind=%s: %s", kind.value, e)

    async def retry(self):
        self.error = None
        await self.start()

    async def stop(self):
        """Cancel any in-flight initialization and release the device."""
        self._attempt += 1

        play = self._play_task
        if play is not None and not play.done():
            # teardown must not race the playback start
            await asyncio.wait({play})
            if not play.cancelled() and play.exception() is not None:
                log.debug("Pending playback failed during stop: %s", play.exception())

        self._release()
        if self.state != CameraState.IDLE:
            self._set_state(CameraState.STOPPED)

    async def toggle_facing(self):
        self.front = not self.front
        log.info("Switching camera front=%s", self.front)
        await self.stop()
        await asyncio.sleep(self.toggle_debounce)
        await self.start()

    async def capture(self) -> CapturedImage:
        """Grab the current frame as JPEG and stop the camera."""
        if not self.is_ready or self._stream is None:
            raise CameraNotReadyError("Camera is not ready")

        composite = self.front and self.mirror_composite
        try:
            frame = await self._stream.read_frame()
            data = encode_frame(frame, self.jpeg_quality, mirror=composite)
        except Exception as e:
            self._release()
            kind = classify_device_error(e)
            self.error = CameraError(kind=kind, detail=str(e))
            self._set_state(CameraState.ERROR)
            log.error("Capture failed kind=%s: %s", kind.value, e)
            raise CameraCaptureError(self.error) from e
        image = CapturedImage(data=data, mirrored=self.front and not composite)
        log.info("Captured %d bytes front=%s", len(data), self.front)

        await self.stop()
        return image


class SelfieCapture:
    """The selfie screen: live capture mode or a preview of the taken photo."""

    def __init__(self, controller: CameraController):
        self.controller = controller
        self.mode = "capture"
        self.image: Optional[CapturedImage] = None

    async def enter(self):
        self.mode = "capture"
        await self.controller.start()

    async def capture(self) -> CapturedImage:
        self.image = await self.controller.capture()
        self.mode = "preview"
        return self.image

    async def pick_file(self, data: bytes) -> CapturedImage:
        jpeg = to_jpeg(data, quality=self.controller.jpeg_quality)
        await self.controller.stop()
        self.image = CapturedImage(data=jpeg, mirrored=False, source="file")
        self.mode = "preview"
        return self.image

    async def retake(self):
        self.image = None
        await self.controller.stop()
        await self.enter()

    async def toggle_facing(self):
        if self.mode == "capture":
            await self.controller.toggle_facing()
        else:
            self.controller.front = not self.controller.front

    def consume(self) -> Optional[CapturedImage]:
        """Drop the image once it has been uploaded."""
        image, self.image = self.image, None
        return image

    async def leave(self):
        await self.controller.stop()
