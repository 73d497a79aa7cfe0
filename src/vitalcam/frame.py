"""Frame container with explicit ownership.

A ``Frame`` holds one or many frames (or RGB samples) either as owned raw
bytes or as a kept ``numpy`` array. Consumers that must outlive the tick that
produced a frame call ``retain()``; ``release()`` drops the kept array once
the last holder is done. Frames cross thread boundaries only as a
``FrameTransferable`` carrying its own copy of the bytes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from .errors import ValidationError
from .roi import ROI

SUPPORTED_DTYPES = ("uint8", "int32", "float32")


def _check_dtype(dtype: str) -> np.dtype:
    if dtype not in SUPPORTED_DTYPES:
        raise ValidationError(f"Unsupported dtype: {dtype}")
    return np.dtype(dtype)


def _expected_size(shape: Sequence[int]) -> int:
    return int(np.prod(shape, dtype=np.int64)) if len(shape) else 1


@dataclass
class FrameTransferable:
    """Self-contained frame representation for message passing."""

    raw_data: bytes
    shape: List[int]
    dtype: str
    timestamp: List[float] = field(default_factory=list)
    roi: List[ROI] = field(default_factory=list)


class Frame:
    """One or multiple frames in the processing pipeline."""

    def __init__(
        self,
        *,
        raw_data: Optional[bytes] = None,
        array: Optional[np.ndarray] = None,
        shape: Optional[Sequence[int]] = None,
        dtype: Optional[str] = None,
        keep_array: bool = False,
        timestamp: Optional[Sequence[float]] = None,
        roi: Optional[Sequence[ROI]] = None,
    ) -> None:
        self._raw_data: Optional[bytes] = None
        self._array: Optional[np.ndarray] = None
        self._ref_count = 0
        self._disposed = False
        self.timestamp: List[float] = list(timestamp) if timestamp is not None else []
        self.roi: List[ROI] = list(roi) if roi is not None else []

        if array is not None:
            arr = np.ascontiguousarray(array)
            _check_dtype(str(arr.dtype))
            if keep_array:
                self._array = arr
            else:
                self._raw_data = arr.tobytes()
            self.shape: List[int] = list(arr.shape)
            self.dtype: str = str(arr.dtype)
        else:
            if raw_data is None or shape is None or dtype is None:
                raise ValidationError(
                    "Frame: raw_data, shape and dtype are required without an array."
                )
            np_dtype = _check_dtype(dtype)
            expected = _expected_size(shape)
            actual = len(raw_data) // np_dtype.itemsize
            if len(raw_data) % np_dtype.itemsize or expected != actual:
                raise ValidationError(
                    f"Mismatch in raw data size: expected {expected}, but got {actual}"
                )
            self._raw_data = bytes(raw_data)
            self.shape = list(shape)
            self.dtype = dtype

    @classmethod
    def from_array(
        cls,
        array: np.ndarray,
        keep_array: bool = False,
        timestamp: Optional[Sequence[float]] = None,
        roi: Optional[Sequence[ROI]] = None,
    ) -> "Frame":
        return cls(array=array, keep_array=keep_array, timestamp=timestamp, roi=roi)

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        shape: Sequence[int],
        dtype: str = "uint8",
        timestamp: Optional[Sequence[float]] = None,
        roi: Optional[Sequence[ROI]] = None,
    ) -> "Frame":
        return cls(raw_data=data, shape=shape, dtype=dtype, timestamp=timestamp, roi=roi)

    @classmethod
    def from_transferable(cls, data: FrameTransferable) -> "Frame":
        return cls(
            raw_data=data.raw_data,
            shape=data.shape,
            dtype=data.dtype,
            timestamp=data.timestamp,
            roi=data.roi,
        )

    # ownership

    @property
    def ref_count(self) -> int:
        return self._ref_count

    def retain(self) -> None:
        self._ref_count += 1

    def release(self) -> None:
        """Drop one reference; the kept array is disposed at zero."""
        self._ref_count -= 1
        if self._ref_count <= 0:
            self.dispose()

    def dispose(self) -> None:
        """Drop the kept array. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        self._array = None
        self._ref_count = 0

    @property
    def disposed(self) -> bool:
        return self._disposed

    def has_array(self) -> bool:
        return self._array is not None

    # data access

    def get_array(self) -> np.ndarray:
        """Return the kept array, or rebuild a read-only one from raw bytes."""
        if self._array is not None:
            return self._array
        if self._raw_data is None:
            raise ValidationError("No array stored and no raw data to create one.")
        arr = np.frombuffer(self._raw_data, dtype=np.dtype(self.dtype))
        if arr.size != _expected_size(self.shape):
            raise ValidationError(
                f"Mismatch in array size: expected {_expected_size(self.shape)}, but got {arr.size}"
            )
        return arr.reshape(self.shape)

    def raw_bytes(self) -> bytes:
        if self._raw_data is not None:
            return self._raw_data
        return self.get_array().tobytes()

    def to_uint8_bytes(self) -> bytes:
        """Pixel data as uint8 bytes (values clipped to 0..255)."""
        if self.dtype == "uint8":
            return self.raw_bytes()
        arr = np.clip(self.get_array(), 0, 255).astype(np.uint8)
        return arr.tobytes()

    def to_transferable(self) -> FrameTransferable:
        return FrameTransferable(
            raw_data=self.raw_bytes(),
            shape=list(self.shape),
            dtype=self.dtype,
            timestamp=list(self.timestamp),
            roi=list(self.roi),
        )

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return (
            f"Frame(shape={self.shape}, dtype={self.dtype}, n_ts={len(self.timestamp)}, "
            f"kept={self.has_array()}, refs={self._ref_count})"
        )


def merge_frames(frames: Sequence[Frame], keep_array: bool = False) -> Frame:
    """Stack frames along a new leading axis and concatenate their metadata."""
    if not frames:
        raise ValidationError("Cannot merge an empty list of frames.")
    stacked = np.stack([f.get_array() for f in frames])
    timestamps = [t for f in frames for t in f.timestamp]
    rois = [r for f in frames for r in f.roi]
    merged = Frame.from_array(stacked, keep_array=keep_array, timestamp=timestamps, roi=rois)
    if keep_array:
        merged.retain()
    return merged
