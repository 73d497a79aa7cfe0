"""Frame sources and camera capture (OpenCV-based)."""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from time import perf_counter
from typing import AsyncIterator, Callable, Optional, Tuple

from .frame import Frame

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Requested camera mode. Drivers may deliver a different one."""

    device_index: int = 0
    width: int = 640
    height: int = 480
    fps: int = 30


class Capture:
    """OpenCV camera handle producing RGB ``Frame`` objects.

    ``read`` and ``release`` are serialized on one lock so a read running in
    a worker thread never overlaps another read or the release of the device.
    """

    def __init__(self, cfg: Optional[CaptureConfig] = None, clock: Callable[[], float] = perf_counter) -> None:
        self.cfg = cfg or CaptureConfig()
        self._clock = clock
        self._cap = None
        self._lock = threading.Lock()
        self.frame_size: Optional[Tuple[int, int]] = None

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def open(self) -> None:
        import cv2

        cap = cv2.VideoCapture(self.cfg.device_index)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(f"Failed to open camera {self.cfg.device_index}")
        for prop, value in (
            (cv2.CAP_PROP_FRAME_WIDTH, self.cfg.width),
            (cv2.CAP_PROP_FRAME_HEIGHT, self.cfg.height),
            (cv2.CAP_PROP_FPS, self.cfg.fps),
        ):
            cap.set(prop, value)
        with self._lock:
            self._cap = cap

    def read(self) -> Frame:
        """Grab one frame, stamped with the clock just before the grab."""
        import cv2

        with self._lock:
            if self._cap is None:
                raise RuntimeError("Capture is not opened")
            ts = self._clock()
            ok, bgr = self._cap.read()
        if not ok or bgr is None:
            raise RuntimeError("Camera read failed")
        rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
        if self.frame_size is None:
            self.frame_size = (rgb.shape[1], rgb.shape[0])
            logger.info("Camera %s delivers %dx%d", self.cfg.device_index, *self.frame_size)
        return Frame.from_array(rgb, keep_array=True, timestamp=[ts])

    def release(self) -> None:
        with self._lock:
            cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()


class FrameSource(ABC):
    """Async producer of frames with a unique id.

    ``next()`` returns ``None`` once the source is exhausted or stopped.
    """

    def __init__(self) -> None:
        self.id = str(uuid.uuid4())
        self.closed = False

    @abstractmethod
    async def start(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def next(self) -> Optional[Frame]:
        raise NotImplementedError

    def stop(self) -> None:
        self.closed = True

    def __aiter__(self) -> AsyncIterator[Frame]:
        return self

    async def __anext__(self) -> Frame:
        if self.closed:
            raise StopAsyncIteration
        frame = await self.next()
        if frame is None:
            self.stop()
            raise StopAsyncIteration
        return frame


class CameraFrameSource(FrameSource):
    """Live RGB frames from a camera, stamped with ``perf_counter`` time."""

    def __init__(self, capture: Optional[Capture] = None) -> None:
        super().__init__()
        self.capture = capture or Capture()

    async def start(self) -> None:
        if not self.capture.is_open:
            await asyncio.to_thread(self.capture.open)
            logger.info("Camera %s opened", self.capture.cfg.device_index)

    async def next(self) -> Optional[Frame]:
        if self.closed or not self.capture.is_open:
            return None
        return await asyncio.to_thread(self.capture.read)

    def stop(self) -> None:
        super().stop()
        self.capture.release()
