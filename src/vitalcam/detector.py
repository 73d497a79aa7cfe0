"""Face detection: batching, non-max suppression and ROI interpolation.

``FaceDetector`` samples frames at a low rate, runs a detection model on
normalized 320x240 inputs in batches, keeps the best box per frame with NMS
and fills unscanned frames by linear interpolation between neighbouring
detections. Boxes are normalized to [0, 1]; the detection worker converts
them to pixels.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from .errors import ValidationError
from .frame import Frame
from .roi import ROI
from .video import VideoProbeResult, VideoProcessingOptions, VideoReader

logger = logging.getLogger(__name__)

DET_WIDTH = 320
DET_HEIGHT = 240
DET_CHANNELS = 3
MAX_BATCH_FRAMES = 100


def nms(
    boxes: np.ndarray,
    scores: np.ndarray,
    max_output_size: int,
    iou_threshold: float,
    score_threshold: float,
) -> List[int]:
    """Greedy non-max suppression.

    Args:
        boxes: [N, 4] boxes as (x0, y0, x1, y1).
        scores: [N] confidence scores.
        max_output_size: maximum number of boxes to keep.
        iou_threshold: boxes overlapping a kept box above this IoU are dropped.
        score_threshold: boxes scoring below this are never kept.

    Returns:
        Indices of kept boxes, best first.
    """
    boxes = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
    scores = np.asarray(scores, dtype=np.float64).reshape(-1)
    areas = (boxes[:, 2] - boxes[:, 0]) * (boxes[:, 3] - boxes[:, 1])
    candidates = [int(i) for i in np.argsort(-scores, kind="stable") if scores[i] >= score_threshold]
    selected: List[int] = []
    while candidates and len(selected) < max_output_size:
        current = candidates.pop(0)
        selected.append(current)
        x0, y0, x1, y1 = boxes[current]
        remaining = []
        for idx in candidates:
            xx0, yy0, xx1, yy1 = boxes[idx]
            inter = max(0.0, min(x1, xx1) - max(x0, xx0)) * max(0.0, min(y1, yy1) - max(y0, yy0))
            union = areas[current] + areas[idx] - inter
            iou = inter / union if union > 0 else 0.0
            if iou <= iou_threshold:
                remaining.append(idx)
        candidates = remaining
    return selected


@dataclass
class DetectionInfo:
    frame_index: int
    face_found: bool
    confidence: float
    roi: Optional[ROI] = None


class DetectionModel(Protocol):
    """Batch detector on normalized ``[n, 240, 320, 3]`` float inputs.

    Returns per-frame ``(boxes [N, 4] normalized, scores [N])``.
    """

    def __call__(self, inputs: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
        ...


def _denormalize(inputs: np.ndarray) -> np.ndarray:
    return np.clip(inputs * 128.0 + 127.0, 0, 255).astype(np.uint8)


class CascadeDetectionModel:
    """OpenCV Haar-cascade backend (no ML runtime beyond OpenCV)."""

    def __init__(self, scale_factor: float = 1.1, min_neighbors: int = 5) -> None:
        import cv2

        cascade_path = cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
        self._clf = cv2.CascadeClassifier(cascade_path)
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors

    def __call__(self, inputs: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
        import cv2

        out = []
        for img in _denormalize(inputs):
            gray = cv2.cvtColor(img, cv2.COLOR_RGB2GRAY)
            rects, _, weights = self._clf.detectMultiScale3(
                gray,
                scaleFactor=self.scale_factor,
                minNeighbors=self.min_neighbors,
                flags=cv2.CASCADE_SCALE_IMAGE,
                outputRejectLevels=True,
            )
            if len(rects) == 0:
                out.append((np.zeros((0, 4)), np.zeros(0)))
                continue
            rects = np.asarray(rects, dtype=np.float64).reshape(-1, 4)
            boxes = np.stack(
                [
                    rects[:, 0] / DET_WIDTH,
                    rects[:, 1] / DET_HEIGHT,
                    (rects[:, 0] + rects[:, 2]) / DET_WIDTH,
                    (rects[:, 1] + rects[:, 3]) / DET_HEIGHT,
                ],
                axis=1,
            )
            # level weights are unbounded margins; squash to (0, 1)
            scores = 1.0 / (1.0 + np.exp(-np.asarray(weights, dtype=np.float64).reshape(-1)))
            out.append((boxes, scores))
        return out


class MediaPipeDetectionModel:
    """MediaPipe Face Detection backend (optional dependency)."""

    def __init__(self, min_confidence: float = 0.5) -> None:
        self.min_confidence = min_confidence
        self._fd = None

    def _ensure_model(self) -> None:
        if self._fd is None:
            try:
                import mediapipe as mp  # type: ignore

                self._fd = mp.solutions.face_detection.FaceDetection(
                    model_selection=0,
                    min_detection_confidence=self.min_confidence,
                )
            except Exception as exc:  # pragma: no cover - optional path
                raise RuntimeError(
                    f"Failed to initialize MediaPipe FaceDetection: {exc}"
                ) from exc

    def __call__(self, inputs: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:  # pragma: no cover - optional path
        self._ensure_model()
        out = []
        for img in _denormalize(inputs):
            result = self._fd.process(img)  # type: ignore[union-attr]
            boxes, scores = [], []
            for det in result.detections or []:
                loc = det.location_data.relative_bounding_box
                boxes.append([loc.xmin, loc.ymin, loc.xmin + loc.width, loc.ymin + loc.height])
                scores.append(float(det.score[0]))
            out.append((np.asarray(boxes, dtype=np.float64).reshape(-1, 4), np.asarray(scores)))
        return out


DetectorInput = Union[Frame, str]


class FaceDetector:
    def __init__(
        self,
        model: Optional[DetectionModel] = None,
        max_faces: int = 1,
        score_threshold: float = 0.5,
        iou_threshold: float = 0.3,
    ) -> None:
        self._model = model
        self.max_faces = max_faces
        self.score_threshold = score_threshold
        self.iou_threshold = iou_threshold

    @property
    def model(self) -> DetectionModel:
        if self._model is None:
            self._model = CascadeDetectionModel()
        return self._model

    def load(self) -> None:
        _ = self.model

    def detect(
        self,
        input: DetectorInput,
        fs: float,
        reader: Optional[VideoReader] = None,
        probe: Optional[VideoProbeResult] = None,
    ) -> List[ROI]:
        """Return one normalized ROI per frame of ``input``.

        A Frame is scanned entirely. A video path is scanned every
        ``round(fps / fs)`` frames and the rest interpolated.
        """
        if isinstance(input, Frame):
            shape = input.shape
            total = 1 if len(shape) == 3 else shape[0]
            scanned = list(range(total))
        else:
            if reader is None or probe is None:
                raise ValidationError("A video reader and probe info are required for video input.")
            total = probe.total_frames
            ds = max(int(math.floor(probe.fps / fs + 0.5)), 1)
            scanned = list(range(0, total, ds))

        infos: List[DetectionInfo] = []
        for start in range(0, len(scanned), MAX_BATCH_FRAMES):
            batch = scanned[start : start + MAX_BATCH_FRAMES]
            infos.extend(self._process_batch(input, batch, reader, probe))
        return self.interpolate_detections(infos, total)

    def _process_batch(
        self,
        input: DetectorInput,
        indices: Sequence[int],
        reader: Optional[VideoReader],
        probe: Optional[VideoProbeResult],
    ) -> List[DetectionInfo]:
        if isinstance(input, Frame):
            arr = input.get_array()
            if arr.ndim == 3:
                arr = arr[np.newaxis]
            arr = arr[list(indices)]
        else:
            step = indices[1] - indices[0] if len(indices) > 1 else 1
            raw = reader.read_frames(
                input,
                VideoProcessingOptions(
                    fps_target=probe.fps / step,
                    scale=(DET_WIDTH, DET_HEIGHT),
                    trim=(indices[0], indices[-1] + 1),
                ),
                probe,
            )
            expected = len(indices) * DET_HEIGHT * DET_WIDTH * DET_CHANNELS
            if len(raw) != expected:
                raise ValidationError(
                    f"Detector read {len(raw)} bytes, expected {expected} for {len(indices)} frames"
                )
            arr = np.frombuffer(raw, dtype=np.uint8).reshape(
                len(indices), DET_HEIGHT, DET_WIDTH, DET_CHANNELS
            )

        outputs = self.model(self._prepare(arr))
        infos = []
        for idx, (boxes, scores) in zip(indices, outputs):
            keep = nms(boxes, scores, self.max_faces, self.iou_threshold, self.score_threshold)
            if keep:
                x0, y0, x1, y1 = (float(v) for v in np.asarray(boxes)[keep[0]])
                infos.append(DetectionInfo(idx, True, float(np.asarray(scores)[keep[0]]), ROI(x0, y0, x1, y1)))
            else:
                infos.append(DetectionInfo(idx, False, 0.0, None))
        return infos

    @staticmethod
    def _prepare(arr: np.ndarray) -> np.ndarray:
        """Resize to 320x240 and scale to roughly [-1, 1]."""
        if arr.shape[1:3] != (DET_HEIGHT, DET_WIDTH):
            import cv2

            arr = np.stack(
                [cv2.resize(np.ascontiguousarray(a), (DET_WIDTH, DET_HEIGHT), interpolation=cv2.INTER_LINEAR) for a in arr]
            )
        return (arr.astype(np.float32) - 127.0) / 128.0

    @staticmethod
    def interpolate_detections(detections: Sequence[DetectionInfo], total_frames: int) -> List[ROI]:
        """One ROI per frame; unscanned frames interpolate between valid neighbours."""
        by_index: Dict[int, DetectionInfo] = {d.frame_index: d for d in detections}
        valid = sorted(i for i, d in by_index.items() if d.face_found and d.roi is not None)
        rois: List[ROI] = []
        for i in range(total_frames):
            det = by_index.get(i)
            if det is not None:
                rois.append(det.roi if det.roi is not None else ROI.zero())
                continue
            pos = int(np.searchsorted(valid, i))
            prev_i = valid[pos - 1] if pos > 0 else None
            next_i = valid[pos] if pos < len(valid) else None
            if prev_i is not None and next_i is not None:
                a, b = by_index[prev_i].roi, by_index[next_i].roi
                t = (i - prev_i) / (next_i - prev_i)
                rois.append(
                    ROI(
                        a.x0 * (1 - t) + b.x0 * t,
                        a.y0 * (1 - t) + b.y0 * t,
                        a.x1 * (1 - t) + b.x1 * t,
                        a.y1 * (1 - t) + b.y1 * t,
                    )
                )
            elif prev_i is not None:
                rois.append(by_index[prev_i].roi)
            elif next_i is not None:
                rois.append(by_index[next_i].roi)
            else:
                rois.append(ROI.zero())
        return rois
