"""ROI geometry and mean RGB utilities.

ROIs are absolute pixel boxes ``(x0, y0, x1, y1)``. The helpers derive
method-specific regions (face, forehead, upper body) from a face detection,
combine ROIs over a chunk of frames and test how well a face is covered.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .errors import ValidationError

RelChange = Tuple[float, float, float, float]  # left, top, right, bottom


@dataclass(frozen=True)
class ROI:
    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def key(self) -> Tuple[float, float, float, float]:
        """Structural key used to index per-ROI buffers."""
        return (self.x0, self.y0, self.x1, self.y1)

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    def as_list(self) -> list[float]:
        return [self.x0, self.y0, self.x1, self.y1]

    def shifted(self, dx: float, dy: float) -> "ROI":
        return ROI(self.x0 + dx, self.y0 + dy, self.x1 + dx, self.y1 + dy)

    @classmethod
    def zero(cls) -> "ROI":
        return cls(0, 0, 0, 0)


def is_roi_valid(roi: ROI) -> bool:
    """Reject negative origins and zero or negative area boxes."""
    return roi.x0 >= 0 and roi.y0 >= 0 and roi.width > 0 and roi.height > 0


def check_roi_in_frame(roi: Optional[ROI], height: int, width: int) -> ROI:
    """Return ``roi`` if it lies inside a ``height`` x ``width`` frame."""
    if (
        roi is None
        or roi.x0 < 0
        or roi.y0 < 0
        or roi.x1 > width
        or roi.y1 > height
        or roi.width <= 0
        or roi.height <= 0
    ):
        raise ValidationError(
            f"ROI dimensions are out of bounds. Frame dimensions: [{height}, {width}], ROI: {roi}"
        )
    return roi


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clip(value: float, lo: float, hi: float) -> float:
    return min(max(value, lo), hi)


def _even_dims(roi: ROI) -> ROI:
    x1 = roi.x1 - 1 if (roi.x1 - roi.x0) % 2 != 0 else roi.x1
    y1 = roi.y1 - 1 if (roi.y1 - roi.y0) % 2 != 0 else roi.y1
    return ROI(roi.x0, roi.y0, x1, y1)


def roi_from_detection(
    det: ROI,
    rel_change: RelChange,
    clip_dims: Optional[Tuple[int, int]] = None,
    force_even_dims: bool = False,
) -> ROI:
    """Grow (positive) or shrink (negative) a detection by relative amounts.

    Args:
        det: face detection in absolute pixels.
        rel_change: relative change of the left, top, right and bottom edges.
        clip_dims: optional ``(width, height)`` to clip the result to.
        force_even_dims: make width and height even by trimming x1/y1.
    """
    left, top, right, bottom = rel_change
    x0 = det.x0 - round_half_up(left * det.width)
    y0 = det.y0 - round_half_up(top * det.height)
    x1 = det.x1 + round_half_up(right * det.width)
    y1 = det.y1 + round_half_up(bottom * det.height)
    if clip_dims is not None:
        w, h = clip_dims
        x0, x1 = _clip(x0, 0, w), _clip(x1, 0, w)
        y0, y1 = _clip(y0, 0, h), _clip(y1, 0, h)
    roi = ROI(x0, y0, x1, y1)
    return _even_dims(roi) if force_even_dims else roi


def face_roi(det: ROI, clip_dims: Tuple[int, int], force_even_dims: bool = False) -> ROI:
    # 60% of the detection width, 80% of its height
    return roi_from_detection(det, (-0.2, -0.1, -0.2, -0.1), clip_dims, force_even_dims)


def forehead_roi(det: ROI, clip_dims: Tuple[int, int], force_even_dims: bool = False) -> ROI:
    return roi_from_detection(det, (-0.35, -0.15, -0.35, -0.75), clip_dims, force_even_dims)


def upper_body_roi(
    det: ROI,
    clip_dims: Tuple[int, int],
    cropped: bool = True,
    force_even_dims: bool = False,
) -> ROI:
    rel: RelChange = (0.175, 0.15, 0.175, 0.3) if cropped else (0.25, 0.2, 0.25, 0.4)
    return roi_from_detection(det, rel, clip_dims, force_even_dims)


def roi_for_method(
    det: ROI,
    roi_method: str,
    clip_dims: Tuple[int, int],
    force_even_dims: bool = False,
) -> ROI:
    """Derive the ROI a method analyses from a face detection."""
    if roi_method == "face":
        return face_roi(det, clip_dims, force_even_dims)
    if roi_method == "forehead":
        return forehead_roi(det, clip_dims, force_even_dims)
    if roi_method == "upper_body":
        return upper_body_roi(det, clip_dims, True, force_even_dims)
    raise ValueError(f"Unsupported roi_method: {roi_method}")


def representative_roi(rois: Sequence[ROI]) -> ROI:
    """Return the ROI closest to the mean ROI, with even width and height."""
    if not rois:
        raise ValidationError("The ROI array is empty.")
    coords = np.array([r.as_list() for r in rois], dtype=np.float64)
    mean = coords.mean(axis=0)
    idx = int(np.argmin(np.linalg.norm(coords - mean, axis=1)))
    return _even_dims(rois[idx])


def union_roi(rois: Sequence[ROI]) -> ROI:
    """Smallest ROI enclosing all ``rois``, with even width and height."""
    if not rois:
        raise ValidationError("The ROI array is empty.")
    roi = ROI(
        min(r.x0 for r in rois),
        min(r.y0 for r in rois),
        max(r.x1 for r in rois),
        max(r.y1 for r in rois),
    )
    return _even_dims(roi)


def check_face_in_roi(
    face: ROI, roi: ROI, required: Tuple[float, float] = (0.5, 0.5)
) -> bool:
    """True if the given fractions of the face width/height lie inside ``roi``."""
    req_w = required[0] * face.width
    req_h = required[1] * face.height
    inside_w = face.x1 - roi.x0 >= req_w and roi.x1 - face.x0 >= req_w
    inside_h = face.y1 - roi.y0 >= req_h and roi.y1 - face.y0 >= req_h
    return inside_w and inside_h


def check_roi_in_face(
    roi: ROI, face: ROI, required: Tuple[float, float] = (0.5, 0.5)
) -> bool:
    """True if the given fractions of the ROI width/height lie inside ``face``."""
    return check_face_in_roi(roi, face, required)


def crop_slices(roi: ROI) -> Tuple[slice, slice]:
    """Row/column slices for an ROI with possibly fractional coordinates."""
    x0, y0 = int(math.floor(roi.x0)), int(math.floor(roi.y0))
    x1, y1 = int(math.floor(roi.x1)), int(math.floor(roi.y1))
    return slice(y0, y1), slice(x0, x1)


def mean_rgb(frame_rgb: np.ndarray, roi: Optional[ROI] = None) -> Tuple[float, float, float]:
    """Compute mean RGB over an optional ROI.

    Args:
        frame_rgb: HxWx3 uint8 or float array in RGB order.
        roi: optional box; it is clipped to the frame.

    Returns:
        (R, G, B) means as floats; zeros if the clipped ROI is empty.
    """
    if frame_rgb.ndim != 3 or frame_rgb.shape[2] != 3:
        raise ValueError("frame_rgb must be HxWx3 array")
    h, w, _ = frame_rgb.shape
    if roi is not None:
        clipped = ROI(max(0, roi.x0), max(0, roi.y0), min(w, roi.x1), min(h, roi.y1))
        if clipped.width <= 0 or clipped.height <= 0:
            return 0.0, 0.0, 0.0
        rows, cols = crop_slices(clipped)
        sel = frame_rgb[rows, cols].reshape(-1, 3)
    else:
        sel = frame_rgb.reshape(-1, 3)
    if sel.size == 0:
        return 0.0, 0.0, 0.0
    r, g, b = sel.astype(np.float32).mean(axis=0)
    return float(r), float(g), float(b)
