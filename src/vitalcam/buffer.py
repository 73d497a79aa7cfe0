"""Per-ROI frame buffers and the manager that selects which one to consume.

A buffer collects preprocessed frames keyed by timestamp until it holds
enough for one window. Consuming merges every buffered frame into a single
window and keeps a short tail so the next window overlaps the previous one.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import numpy as np

from .config import MethodConfig
from .errors import ValidationError
from .frame import Frame, merge_frames
from .roi import ROI, check_roi_in_frame, crop_slices

logger = logging.getLogger(__name__)


class Buffer(ABC):
    """Timestamp-ordered window of preprocessed frames for one ROI."""

    def __init__(self, roi: ROI, method_config: MethodConfig) -> None:
        self.roi = roi
        self.method_config = method_config
        self._frames: Dict[float, Frame] = {}

    def size(self) -> int:
        return len(self._frames)

    def timestamps(self) -> List[float]:
        return sorted(self._frames)

    def add(self, frame: Frame, override_roi: Optional[ROI] = None) -> None:
        processed = self.preprocess(frame, keep_array=True, override_roi=override_roi)
        ts = frame.timestamp[0]
        previous = self._frames.get(ts)
        if previous is not None and previous is not processed:
            previous.release()
        self._frames[ts] = processed
        while len(self._frames) > self.method_config.max_window_length:
            oldest = min(self._frames)
            self._frames.pop(oldest).release()

    def is_ready(self) -> bool:
        return len(self._frames) >= self.method_config.min_window_length

    def is_ready_state(self) -> bool:
        if self.method_config.min_window_length_state:
            return len(self._frames) >= self.method_config.min_window_length_state
        return self.is_ready()

    def consume(self) -> Optional[Frame]:
        """Merge all buffered frames, keeping the last frames for continuity."""
        keys = sorted(self._frames)
        if not keys:
            return None
        min_len = self.method_config.effective_min_window_length
        retain_count = max(min(min_len - 1, len(keys)), 0)
        retain_keys = keys[len(keys) - retain_count:]

        merged = merge_frames(
            [self._frames[k] for k in keys],
            keep_array=self.method_config.method != "vitallens",
        )
        for key in keys[: len(keys) - retain_count]:
            self._frames.pop(key).release()
        self._frames = {k: self._frames[k] for k in retain_keys}
        return merged

    def clear(self) -> None:
        for frame in self._frames.values():
            frame.release()
        self._frames.clear()

    def _validated_roi(self, frame: Frame, override_roi: Optional[ROI]) -> ROI:
        shape = frame.shape
        if len(shape) != 3 or shape[0] <= 0 or shape[1] <= 0 or shape[2] != 3:
            raise ValidationError(
                f"Frame data must be a 3D array of shape [h, w, 3]. Received shape: {shape}"
            )
        roi = override_roi if override_roi is not None else self.roi
        return check_roi_in_frame(roi, height=shape[0], width=shape[1])

    @abstractmethod
    def preprocess(
        self, frame: Frame, keep_array: bool = False, override_roi: Optional[ROI] = None
    ) -> Frame:
        raise NotImplementedError


class FrameBuffer(Buffer):
    """Buffer of ROI crops resized to the method input size."""

    def preprocess(
        self, frame: Frame, keep_array: bool = False, override_roi: Optional[ROI] = None
    ) -> Frame:
        roi = self._validated_roi(frame, override_roi)
        rows, cols = crop_slices(roi)
        cropped = frame.get_array()[rows, cols]
        size = self.method_config.input_size
        if size:
            import cv2  # lazy import

            cropped = cv2.resize(
                np.ascontiguousarray(cropped), (size, size), interpolation=cv2.INTER_LINEAR
            )
        result = Frame.from_array(
            np.ascontiguousarray(cropped),
            keep_array=keep_array,
            timestamp=frame.timestamp,
            roi=[roi],
        )
        if keep_array:
            result.retain()
        return result


class RGBBuffer(Buffer):
    """Buffer of spatially averaged RGB triples over the ROI."""

    def preprocess(
        self, frame: Frame, keep_array: bool = False, override_roi: Optional[ROI] = None
    ) -> Frame:
        roi = self._validated_roi(frame, override_roi)
        rows, cols = crop_slices(roi)
        cropped = frame.get_array()[rows, cols]
        rgb = cropped.reshape(-1, 3).astype(np.float32).mean(axis=0).astype(np.float32)
        result = Frame.from_array(
            rgb, keep_array=keep_array, timestamp=frame.timestamp, roi=[roi]
        )
        if keep_array:
            result.retain()
        return result


class BufferManager:
    """Owns one buffer per active ROI plus the recurrent state."""

    def __init__(self) -> None:
        self._buffers: Dict[Tuple[float, float, float, float], Tuple[Buffer, float]] = {}
        self._state: Optional[np.ndarray] = None

    def add_buffer(self, roi: ROI, method_config: MethodConfig, created_at: float) -> None:
        """Create a buffer for ``roi`` unless one with the same key exists."""
        if roi.key in self._buffers:
            return
        buffer: Buffer
        if method_config.method == "vitallens":
            buffer = FrameBuffer(roi, method_config)
        else:
            buffer = RGBBuffer(roi, method_config)
        self._buffers[roi.key] = (buffer, created_at)
        logger.debug("Added buffer for ROI %s", roi.key)

    def _ready_buffer(self) -> Optional[Buffer]:
        ready: Optional[Buffer] = None
        ready_at: Optional[float] = None
        has_state = self._state is not None
        for buffer, created_at in self._buffers.values():
            ok = buffer.is_ready_state() if has_state else buffer.is_ready()
            if ok and (ready_at is None or created_at > ready_at):
                ready, ready_at = buffer, created_at
        if ready_at is not None:
            self._purge_older_than(ready_at)
        return ready

    def _purge_older_than(self, created_at: float) -> None:
        for key in [k for k, (_, t) in self._buffers.items() if t < created_at]:
            buffer, _ = self._buffers.pop(key)
            buffer.clear()
            logger.debug("Purged stale buffer for ROI %s", key)

    def is_ready(self) -> bool:
        return self._ready_buffer() is not None

    def add(self, frame: Frame, override_roi: Optional[ROI] = None) -> None:
        for buffer, _ in list(self._buffers.values()):
            buffer.add(frame, override_roi)

    def consume(self) -> Optional[Frame]:
        buffer = self._ready_buffer()
        return buffer.consume() if buffer is not None else None

    def is_empty(self) -> bool:
        return not self._buffers

    def buffers(self) -> List[Buffer]:
        return [b for b, _ in self._buffers.values()]

    def cleanup(self) -> None:
        """Clear all buffers and the recurrent state."""
        for buffer, _ in self._buffers.values():
            buffer.clear()
        self._buffers.clear()
        self._state = None

    def set_state(self, state: np.ndarray) -> None:
        self._state = state

    def reset_state(self) -> None:
        self._state = None

    @property
    def state(self) -> Optional[np.ndarray]:
        return self._state
