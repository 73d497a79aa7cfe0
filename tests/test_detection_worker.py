from __future__ import annotations

from typing import List, Tuple

import numpy as np
import pytest

from vitalcam.detection_worker import DetectionResponse, DetectionWorker, to_absolute
from vitalcam.detector import FaceDetector
from vitalcam.errors import ValidationError
from vitalcam.frame import Frame
from vitalcam.roi import ROI
from vitalcam.video import VideoProbeResult, VideoProcessingOptions


class FixedModel:
    def __init__(self, found: bool = True) -> None:
        self.found = found

    def __call__(self, inputs: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
        if not self.found:
            return [(np.zeros((0, 4)), np.zeros(0)) for _ in inputs]
        return [(np.array([[0.1, 0.1, 0.4, 0.5]]), np.array([0.9])) for _ in inputs]


class FakeReader:
    def probe(self, path: str) -> VideoProbeResult:
        return VideoProbeResult(fps=30.0, total_frames=60, width=640, height=480)

    def read_frames(self, path: str, options: VideoProcessingOptions, probe: VideoProbeResult) -> bytes:
        start, end = options.trim
        n = len(range(start, end, int(round(probe.fps / options.fps_target))))
        return bytes(n * 240 * 320 * 3)


def test_to_absolute_handles_rotation() -> None:
    rois = [ROI(0.1, 0.2, 0.5, 0.6)]
    probe = VideoProbeResult(fps=30.0, total_frames=1, width=200, height=100)
    assert to_absolute(rois, probe) == [ROI(20, 20, 100, 60)]
    probe.rotation = 90
    assert to_absolute(rois, probe) == [ROI(10, 40, 50, 120)]
    probe.rotation = 180
    with pytest.raises(ValidationError):
        to_absolute(rois, probe)


def test_worker_video_request() -> None:
    worker = DetectionWorker(FaceDetector(model=FixedModel()), FakeReader())
    try:
        response = worker.detect_faces("video", 1.0, path="clip.mp4").result(timeout=5)
        assert response.probe is not None and response.probe.total_frames == 60
        assert len(response.detections) == 60
        assert response.detections[0] == ROI(64, 48, 256, 240)
    finally:
        worker.terminate()
    assert not worker.alive


def test_worker_frame_request_and_no_face() -> None:
    frame = Frame.from_array(np.zeros((240, 320, 3), dtype=np.uint8), keep_array=True, timestamp=[1.0])
    worker = DetectionWorker(FaceDetector(model=FixedModel()), FakeReader())
    empty = DetectionWorker(FaceDetector(model=FixedModel(found=False)), FakeReader())
    try:
        response = worker.detect_faces("frame", 1.0, frame=frame, timestamp=1.0).result(timeout=5)
        assert response.detections == [ROI(32, 24, 128, 120)]
        assert response.timestamp == 1.0
        # the caller's frame is untouched by the worker
        assert frame.has_array()
        none = empty.detect_faces("frame", 1.0, frame=frame).result(timeout=5)
        assert none.detections == []
    finally:
        worker.terminate()
        empty.terminate()


def test_worker_errors_fail_the_future() -> None:
    worker = DetectionWorker(FaceDetector(model=FixedModel()), FakeReader())
    try:
        fut = worker.detect_faces("video", 1.0)
        with pytest.raises(RuntimeError):
            fut.result(timeout=5)
    finally:
        worker.terminate()
    with pytest.raises(RuntimeError):
        worker.detect_faces("video", 1.0, path="clip.mp4")


def test_unsolicited_responses_go_to_callback() -> None:
    received: List[DetectionResponse] = []
    worker = DetectionWorker(FaceDetector(model=FixedModel()), FakeReader(), on_message=received.append)
    try:
        worker._deliver(DetectionResponse(id=999, detections=[ROI(1, 1, 2, 2)]))
    finally:
        worker.terminate()
    assert [r.id for r in received] == [999]
