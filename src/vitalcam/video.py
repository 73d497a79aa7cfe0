"""Video probing and decoding with OpenCV."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import numpy as np

from .roi import ROI, crop_slices

logger = logging.getLogger(__name__)


@dataclass
class VideoProbeResult:
    fps: float
    total_frames: int
    width: int
    height: int
    codec: str = ""
    bitrate: float = 0.0
    rotation: int = 0
    issues: bool = False


@dataclass
class VideoProcessingOptions:
    """How to decode: target fps, crop, scale ``(width, height)`` and frame trim."""

    fps_target: Optional[float] = None
    crop: Optional[ROI] = None
    scale: Optional[Tuple[int, int]] = None
    trim: Optional[Tuple[int, int]] = None  # [start, end) in native frames
    pixel_format: str = "rgb24"


def downsample_factor(native_fps: float, fps_target: Optional[float]) -> int:
    if not fps_target or native_fps <= 0:
        return 1
    return max(int(math.floor(native_fps / fps_target + 0.5)), 1)


class VideoReader(Protocol):
    def probe(self, path: str) -> VideoProbeResult:
        ...

    def read_frames(
        self, path: str, options: VideoProcessingOptions, probe: VideoProbeResult
    ) -> bytes:
        ...


class OpenCVVideoReader:
    """Decode a video file into packed RGB (or gray) bytes."""

    def _open(self, path: str):
        import cv2  # lazy import

        cap = cv2.VideoCapture(path)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(f"Failed to open video: {path}")
        return cap

    def probe(self, path: str) -> VideoProbeResult:
        import cv2

        cap = self._open(path)
        try:
            fourcc = int(cap.get(cv2.CAP_PROP_FOURCC))
            codec = "".join(chr((fourcc >> (8 * i)) & 0xFF) for i in range(4)).strip("\x00")
            rotation = int(cap.get(getattr(cv2, "CAP_PROP_ORIENTATION_META", -1)) or 0)
            result = VideoProbeResult(
                fps=float(cap.get(cv2.CAP_PROP_FPS)),
                total_frames=int(cap.get(cv2.CAP_PROP_FRAME_COUNT)),
                width=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
                height=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
                codec=codec,
                bitrate=float(cap.get(getattr(cv2, "CAP_PROP_BITRATE", -1)) or 0.0),
                rotation=rotation,
            )
        finally:
            cap.release()
        result.issues = result.fps <= 0 or result.total_frames <= 0
        if result.issues:
            logger.warning("Video probe reported unusual metadata: %s", result)
        return result

    def read_frames(
        self, path: str, options: VideoProcessingOptions, probe: VideoProbeResult
    ) -> bytes:
        """Read ``trim`` range, keep every ds-th frame, crop then scale."""
        import cv2

        ds = downsample_factor(probe.fps, options.fps_target)
        start, end = options.trim if options.trim is not None else (0, probe.total_frames)
        cap = self._open(path)
        chunks = []
        try:
            if start > 0:
                cap.set(cv2.CAP_PROP_POS_FRAMES, start)
            for idx in range(start, end):
                ok, frame_bgr = cap.read()
                if not ok:
                    break
                if (idx - start) % ds:
                    continue
                frame = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
                if options.crop is not None:
                    rows, cols = crop_slices(options.crop)
                    frame = frame[rows, cols]
                if options.scale is not None:
                    frame = cv2.resize(frame, options.scale, interpolation=cv2.INTER_AREA)
                if options.pixel_format == "gray":
                    frame = cv2.cvtColor(frame, cv2.COLOR_RGB2GRAY)
                chunks.append(np.ascontiguousarray(frame, dtype=np.uint8).tobytes())
        finally:
            cap.release()
        return b"".join(chunks)
