"""Camera and video-file frame sources."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple, Union

try:
    import cv2  # type: ignore
except ImportError:  # pragma: no cover - optional dependency
    cv2 = None  # type: ignore

from .errors import DeviceUnavailableError, PermissionDeniedError
from .settings import CaptureSelection

LOGGER = logging.getLogger(__name__)


@dataclass
class Frame:
    """One decoded RGB image."""

    image: Any
    timestamp_ms: int
    index: int

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height) of the image, or (0, 0) when it has no shape."""
        shape = getattr(self.image, "shape", None)
        if shape is None or len(shape) < 2:
            return (0, 0)
        return (int(shape[1]), int(shape[0]))


FrameCallback = Callable[[Frame], Awaitable[None]]


class CaptureSource:
    """Base class for frame sources.

    :meth:`run` hands frames to the callback one at a time: the next frame is
    only read after the callback for the previous one has returned.
    """

    mode = ""
    mirrored = False

    def __init__(self) -> None:
        self._running = False
        self._in_flight = False
        self._index = 0

    def open(self) -> None:
        """Acquire the device or file. Raises a :class:`CaptureError` subclass."""

    def play(self) -> None:
        """Allow frames past the first one to be read."""

    async def read(self) -> Optional[Frame]:
        raise NotImplementedError

    async def run(self, on_frame: FrameCallback) -> None:
        self._running = True
        while self._running:
            frame = await self.read()
            if frame is None:
                LOGGER.info("%s source reached end of stream", self.mode or "capture")
                break
            if not self._running:
                break
            if self._in_flight:
                raise RuntimeError("Frame callback is already in flight")
            self._in_flight = True
            try:
                await on_frame(frame)
            finally:
                self._in_flight = False
        self._running = False

    def stop(self) -> None:
        self._running = False

    def close(self) -> None:
        """Release the device or file handle."""

    def _next_frame(self, image: Any) -> Frame:
        frame = Frame(image=image, timestamp_ms=int(time.monotonic() * 1000), index=self._index)
        self._index += 1
        return frame


def _to_rgb(bgr_frame):
    return cv2.cvtColor(bgr_frame, cv2.COLOR_BGR2RGB)


class CameraCaptureSource(CaptureSource):
    """Live OpenCV camera. Frames arrive at the device's native rate."""

    mode = "camera"
    mirrored = True
    device_node = "/dev/video{}"

    def __init__(self, camera_id: Optional[Union[int, str]] = None) -> None:
        super().__init__()
        if cv2 is None:  # pragma: no cover - optional dependency
            raise RuntimeError("opencv-python is not installed")
        self._camera_id = self._resolve_camera_id(camera_id)
        self._capture: Optional["cv2.VideoCapture"] = None
        self._last_frame_fail = False

    @staticmethod
    def _resolve_camera_id(camera_id: Optional[Union[int, str]]) -> Union[int, str]:
        if camera_id is None or camera_id == "":
            return 0
        if isinstance(camera_id, str) and camera_id.isdigit():
            return int(camera_id)
        return camera_id

    def _check_permission(self) -> None:
        if not sys.platform.startswith("linux") or not isinstance(self._camera_id, int):
            return
        node = Path(self.device_node.format(self._camera_id))
        if node.exists() and not os.access(node, os.R_OK):
            raise PermissionDeniedError(f"No permission to read {node}")

    def open(self) -> None:
        if self._capture is not None and self._capture.isOpened():
            return
        self._check_permission()
        LOGGER.info("Opening camera %s", self._camera_id)
        self._capture = cv2.VideoCapture(self._camera_id)
        if not self._capture.isOpened():
            self._capture.release()
            self._capture = None
            raise DeviceUnavailableError(f"Failed to open camera {self._camera_id!r}")

    async def read(self) -> Optional[Frame]:
        while self._running:
            if self._capture is None:
                return None
            success, bgr = await asyncio.to_thread(self._capture.read)
            if success:
                self._last_frame_fail = False
                return self._next_frame(_to_rgb(bgr))
            if not self._last_frame_fail:
                LOGGER.warning("Failed to read frame from camera %s", self._camera_id)
            self._last_frame_fail = True
            await asyncio.sleep(0.01)
        return None

    def close(self) -> None:
        if self._capture is not None:
            LOGGER.info("Releasing camera %s", self._camera_id)
            self._capture.release()
        self._capture = None


class VideoFileCaptureSource(CaptureSource):
    """Looped video file.

    The first frame is returned straight away; the rest wait for :meth:`play`
    so playback does not run ahead of solver warm-up.
    """

    mode = "file"

    def __init__(self, path: Union[str, Path], loop: bool = True) -> None:
        super().__init__()
        if cv2 is None:  # pragma: no cover - optional dependency
            raise RuntimeError("opencv-python is not installed")
        self.path = Path(path)
        self.loop = loop
        self._capture: Optional["cv2.VideoCapture"] = None
        self._playing = asyncio.Event()

    def open(self) -> None:
        if not self.path.is_file():
            raise DeviceUnavailableError(f"Video file {self.path} does not exist")
        LOGGER.info("Opening video file %s", self.path)
        self._capture = cv2.VideoCapture(str(self.path))
        if not self._capture.isOpened():
            self._capture.release()
            self._capture = None
            raise DeviceUnavailableError(f"Cannot decode video file {self.path}")

    def play(self) -> None:
        if not self._playing.is_set():
            LOGGER.debug("Starting playback of %s", self.path)
        self._playing.set()

    def stop(self) -> None:
        super().stop()
        # wake a reader blocked on the play gate
        self._playing.set()

    def _read_looping(self):
        success, bgr = self._capture.read()
        if not success and self.loop and self._index:
            self._capture.set(cv2.CAP_PROP_POS_FRAMES, 0)
            success, bgr = self._capture.read()
        return success, bgr

    async def read(self) -> Optional[Frame]:
        if self._capture is None:
            return None
        if self._index:
            await self._playing.wait()
            if not self._running:
                return None
        success, bgr = await asyncio.to_thread(self._read_looping)
        if not success:
            return None
        return self._next_frame(_to_rgb(bgr))

    def close(self) -> None:
        if self._capture is not None:
            LOGGER.info("Closing video file %s", self.path)
            self._capture.release()
        self._capture = None


def open_capture_source(selection: CaptureSelection) -> CaptureSource:
    """Build and open the source recorded in ``selection``."""

    if selection.source == "file":
        if not selection.video_file:
            raise DeviceUnavailableError("No video file selected")
        source: CaptureSource = VideoFileCaptureSource(selection.video_file)
    else:
        source = CameraCaptureSource(selection.camera_id)
    source.open()
    return source
