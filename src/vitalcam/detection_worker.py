"""Face detection on a background thread with message passing.

Requests carry their own copy of the frame bytes (``FrameTransferable``) or a
video path; responses carry absolute pixel ROIs. No frame is shared by live
reference between the caller and the worker thread.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Callable, Dict, List, Optional

from .detector import FaceDetector
from .errors import ValidationError
from .frame import Frame, FrameTransferable
from .roi import ROI, is_roi_valid, round_half_up
from .video import OpenCVVideoReader, VideoProbeResult, VideoReader

logger = logging.getLogger(__name__)


@dataclass
class DetectionRequest:
    id: int
    data_type: str  # "frame" | "video"
    fs: float
    frame: Optional[FrameTransferable] = None
    path: Optional[str] = None
    timestamp: Optional[float] = None


@dataclass
class DetectionResponse:
    id: int
    detections: List[ROI] = field(default_factory=list)
    probe: Optional[VideoProbeResult] = None
    timestamp: Optional[float] = None
    error: Optional[str] = None


def to_absolute(rois: List[ROI], probe: VideoProbeResult) -> List[ROI]:
    """Scale normalized ROIs to pixels, swapping width/height for 90 deg rotation."""
    w, h = probe.width, probe.height
    rotation = abs(int(probe.rotation))
    if rotation == 90:
        w, h = h, w
    elif rotation != 0:
        raise ValidationError(f"Unsupported rotation angle: {probe.rotation}")

    rnd = round_half_up
    return [ROI(rnd(r.x0 * w), rnd(r.y0 * h), rnd(r.x1 * w), rnd(r.y1 * h)) for r in rois]


class DetectionWorker:
    """Runs a ``FaceDetector`` on its own thread, fed by a request queue."""

    def __init__(
        self,
        detector: Optional[FaceDetector] = None,
        reader: Optional[VideoReader] = None,
        on_message: Optional[Callable[[DetectionResponse], None]] = None,
    ) -> None:
        self.detector = detector or FaceDetector()
        self.reader: VideoReader = reader or OpenCVVideoReader()
        self.on_message = on_message
        self._queue: "Queue[DetectionRequest | None]" = Queue()
        self._pending: Dict[int, Future] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count()
        self._thread: Optional[threading.Thread] = threading.Thread(
            target=self._loop, name="face-detection", daemon=True
        )
        self._thread.start()

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_id(self) -> int:
        return next(self._ids)

    def post_message(self, request: DetectionRequest) -> None:
        if self._thread is None:
            raise RuntimeError("Detection worker is terminated")
        self._queue.put(request)

    def detect_faces(
        self,
        data_type: str,
        fs: float,
        frame: Optional[Frame] = None,
        path: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> "Future[DetectionResponse]":
        """Send one request and return a future resolved with its response."""
        request = DetectionRequest(
            id=self.next_id(),
            data_type=data_type,
            fs=fs,
            frame=frame.to_transferable() if frame is not None else None,
            path=path,
            timestamp=timestamp,
        )
        fut: "Future[DetectionResponse]" = Future()
        with self._lock:
            self._pending[request.id] = fut
        self.post_message(request)
        return fut

    def terminate(self, timeout: float = 1.0) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=timeout)
        self._thread = None
        with self._lock:
            pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(RuntimeError("Detection worker terminated"))

    def _loop(self) -> None:
        try:
            self.detector.load()
        except Exception:
            logger.exception("Failed to load face detection model")
        while True:
            try:
                request = self._queue.get(timeout=0.5)
            except Empty:
                continue
            if request is None:
                break
            response = self._handle(request)
            self._deliver(response)

    def _handle(self, request: DetectionRequest) -> DetectionResponse:
        try:
            if request.data_type == "video":
                if request.path is None:
                    raise ValidationError("Video request without a path.")
                probe = self.reader.probe(request.path)
                rois = self.detector.detect(request.path, request.fs, self.reader, probe)
                detections = to_absolute(rois, probe)
            elif request.data_type == "frame":
                if request.frame is None:
                    raise ValidationError("Frame request without frame data.")
                frame = Frame.from_transferable(request.frame)
                probe = VideoProbeResult(
                    fps=0.0,
                    total_frames=1,
                    width=frame.shape[1],
                    height=frame.shape[0],
                    codec="raw",
                )
                rois = self.detector.detect(frame, request.fs)
                # a zero box on a single frame means no face
                detections = [r for r in to_absolute(rois, probe) if is_roi_valid(r)]
            else:
                raise ValidationError(f"Unknown data type: {request.data_type}")
        except Exception as e:
            logger.exception("Face detection failed (id: %s)", request.id)
            return DetectionResponse(id=request.id, timestamp=request.timestamp, error=str(e))
        return DetectionResponse(
            id=request.id, detections=detections, probe=probe, timestamp=request.timestamp
        )

    def _deliver(self, response: DetectionResponse) -> None:
        with self._lock:
            fut = self._pending.pop(response.id, None)
        if fut is not None:
            if response.error is not None:
                fut.set_exception(RuntimeError(f"Face detection error: {response.error}"))
            else:
                fut.set_result(response)
            return
        if self.on_message is not None:
            try:
                self.on_message(response)
            except Exception:
                logger.exception("Detection message handler failed")
