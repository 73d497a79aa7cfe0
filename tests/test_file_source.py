from __future__ import annotations

import asyncio
import dataclasses
from concurrent.futures import Future
from typing import List, Optional

import numpy as np
import pytest

from vitalcam.config import METHODS_CONFIG, VitalsOptions
from vitalcam.detection_worker import DetectionResponse
from vitalcam.errors import ConfigError, ValidationError
from vitalcam.file_source import FileFrameSource, FileRGBSource
from vitalcam.roi import ROI
from vitalcam.video import VideoProbeResult, VideoProcessingOptions, downsample_factor


class FakeReader:
    """Frame ``i`` is filled with ``(i % 256, 2 * i % 256, 50)``."""

    def __init__(self, fps: float = 30.0, total: int = 100, short: bool = False) -> None:
        self.fps = fps
        self.total = total
        self.short = short
        self.calls: List[VideoProcessingOptions] = []

    def probe(self, path: str) -> VideoProbeResult:
        return VideoProbeResult(fps=self.fps, total_frames=self.total, width=640, height=480)

    def read_frames(self, path: str, options: VideoProcessingOptions, probe: VideoProbeResult) -> bytes:
        self.calls.append(options)
        start, end = options.trim
        ds = downsample_factor(probe.fps, options.fps_target)
        if options.scale is not None:
            w, h = options.scale
        else:
            w, h = int(options.crop.width), int(options.crop.height)
        idx = list(range(start, end, ds))
        if self.short:
            idx = idx[:-1]
        frames = np.zeros((len(idx), h, w, 3), dtype=np.uint8)
        for k, i in enumerate(idx):
            frames[k] = (i % 256, 2 * i % 256, 50)
        return frames.tobytes()


class FakeWorker:
    def __init__(self, probe: VideoProbeResult, det: ROI) -> None:
        self.probe = probe
        self.det = det
        self.requests: List[tuple] = []

    def detect_faces(self, data_type: str, fs: float, frame=None, path: Optional[str] = None, timestamp=None):
        self.requests.append((data_type, fs, path))
        fut: Future = Future()
        fut.set_result(
            DetectionResponse(id=1, detections=[self.det] * self.probe.total_frames, probe=self.probe)
        )
        return fut


GLOBAL_ROI = ROI(10, 10, 50, 60)


def _collect(source) -> list:
    async def run() -> list:
        await source.start()
        out = []
        while True:
            frame = await source.next()
            if frame is None:
                return out
            out.append(frame)

    return asyncio.run(run())


def test_frame_source_overlapping_windows() -> None:
    cfg = dataclasses.replace(METHODS_CONFIG["vitallens"], max_window_length=40)
    opts = VitalsOptions(method="vitallens", global_roi=GLOBAL_ROI)
    reader = FakeReader()
    frames = _collect(FileFrameSource("clip.mp4", opts, cfg, None, reader))
    assert [c.trim for c in reader.calls] == [(0, 40), (24, 64), (48, 88), (72, 100)]
    assert [f.shape for f in frames] == [
        [40, 40, 40, 3],
        [40, 40, 40, 3],
        [40, 40, 40, 3],
        [28, 40, 40, 3],
    ]
    assert reader.calls[0].scale == (40, 40)
    assert reader.calls[0].crop == GLOBAL_ROI
    assert frames[1].timestamp[0] == pytest.approx(24 / 30)
    assert frames[1].roi[0] == GLOBAL_ROI


def test_frame_source_downsampled_timestamps() -> None:
    cfg = dataclasses.replace(METHODS_CONFIG["vitallens"], max_window_length=40)
    opts = VitalsOptions(method="vitallens", global_roi=GLOBAL_ROI)
    reader = FakeReader(fps=60.0, total=100)
    frames = _collect(FileFrameSource("clip.mp4", opts, cfg, None, reader))
    assert reader.calls[0].trim == (0, 80)
    assert frames[0].shape[0] == 40
    assert frames[0].timestamp[:3] == pytest.approx([0.0, 2 / 60, 4 / 60])
    # second window starts min_window_length downsampled frames back
    assert reader.calls[1].trim == (48, 100)
    assert frames[1].shape[0] == 26


def test_frame_source_rejects_short_read() -> None:
    opts = VitalsOptions(method="vitallens", global_roi=GLOBAL_ROI)
    source = FileFrameSource("clip.mp4", opts, opts.method_config, None, FakeReader(short=True))
    with pytest.raises(ValidationError):
        _collect(source)


def test_rgb_source_windows_and_means() -> None:
    opts = VitalsOptions(method="pos", global_roi=GLOBAL_ROI)
    source = FileRGBSource("clip.mp4", opts, opts.method_config, None, FakeReader())
    windows = _collect(source)
    # pos: 48-sample windows advancing by one sample over 100 frames
    assert len(windows) == 53
    first, last = windows[0].get_array(), windows[-1].get_array()
    assert first.shape == (48, 3) and first.dtype == np.float32
    assert first[5] == pytest.approx([5, 10, 50])
    assert last[0] == pytest.approx([52, 104, 50])
    assert windows[-1].timestamp[-1] == pytest.approx(99 / 30)
    assert windows[0].roi[0] == GLOBAL_ROI


def test_rgb_source_uses_worker_rois() -> None:
    probe = VideoProbeResult(fps=30.0, total_frames=64, width=640, height=480)
    worker = FakeWorker(probe, ROI(100, 100, 200, 200))
    reader = FakeReader(total=64)
    opts = VitalsOptions(method="g", fdet_fs=2.0)
    source = FileRGBSource("clip.mp4", opts, opts.method_config, worker, reader)
    windows = _collect(source)
    assert worker.requests == [("video", 2.0, "clip.mp4")]
    assert len(windows) == 1
    assert windows[0].roi[0] == ROI(120, 110, 180, 190)
    assert reader.calls[0].crop == ROI(120, 110, 180, 190)


def test_file_source_needs_worker_or_roi() -> None:
    opts = VitalsOptions(method="pos")
    source = FileRGBSource("clip.mp4", opts, opts.method_config, None, FakeReader())
    with pytest.raises(ConfigError):
        asyncio.run(source.start())


def test_next_before_start_raises() -> None:
    opts = VitalsOptions(method="pos", global_roi=GLOBAL_ROI)
    source = FileRGBSource("clip.mp4", opts, opts.method_config, None, FakeReader())
    with pytest.raises(RuntimeError):
        asyncio.run(source.next())
