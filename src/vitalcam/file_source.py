"""Frame sources over video files.

``FileFrameSource`` yields overlapping windows of cropped, scaled frames for
the stateful API method. ``FileRGBSource`` precomputes one mean RGB sample
per frame and yields overlapping ``[n, 3]`` windows for the local methods.
Both obtain per-frame ROIs from whole-video face detection, or use the
configured global ROI when no detection worker is given.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import List, Optional

import numpy as np

from .capture import FrameSource
from .config import FDET_DEFAULT_FS_FILE, MethodConfig, VitalsOptions
from .detection_worker import DetectionWorker
from .errors import ConfigError, ValidationError
from .frame import Frame
from .roi import ROI, mean_rgb, representative_roi, roi_for_method, union_roi
from .video import VideoProbeResult, VideoProcessingOptions, VideoReader, downsample_factor

logger = logging.getLogger(__name__)

MAX_CHUNK_BYTES = 2 * 1024 ** 3
MAX_FACE_SHARE = 0.2


class _FileSourceBase(FrameSource):
    def __init__(
        self,
        path: str,
        options: VitalsOptions,
        method_config: MethodConfig,
        detection_worker: Optional[DetectionWorker],
        reader: VideoReader,
    ) -> None:
        super().__init__()
        self.path = path
        self.options = options
        self.method_config = method_config
        self.detection_worker = detection_worker
        self.reader = reader
        self.probe: Optional[VideoProbeResult] = None
        self.rois: List[ROI] = []
        self.fps_target = 0.0
        self.ds_factor = 1
        self._current = 0

    async def _load_rois(self) -> None:
        """Probe the video and assign one ROI per native frame."""
        if self.detection_worker is not None:
            fs = self.options.fdet_fs or FDET_DEFAULT_FS_FILE
            fut = self.detection_worker.detect_faces("video", fs, path=self.path)
            response = await asyncio.wrap_future(fut)
            if response.probe is None:
                raise ValidationError(f"Face detection returned no probe info for {self.path}")
            self.probe = response.probe
            dims = (self.probe.width, self.probe.height)
            self.rois = [
                roi_for_method(det, self.method_config.roi_method, dims, force_even_dims=True)
                for det in response.detections
            ]
        else:
            if self.options.global_roi is None:
                raise ConfigError("File processing needs a detection worker or a global ROI.")
            self.probe = await asyncio.to_thread(self.reader.probe, self.path)
            self.rois = [self.options.global_roi] * self.probe.total_frames
        if self.probe.total_frames <= 0 or self.probe.fps <= 0:
            raise ValidationError(f"Video has no readable frames: {self.path}")

        self.fps_target = self.options.fps_target()
        self.ds_factor = downsample_factor(self.probe.fps, self.fps_target)
        logger.info(
            "Loaded %s: %d frames at %.2f fps, downsampling by %d",
            self.path,
            self.probe.total_frames,
            self.probe.fps,
            self.ds_factor,
        )

    def _require_probe(self) -> VideoProbeResult:
        if self.probe is None:
            raise RuntimeError("start() must be awaited before next()")
        return self.probe


class FileFrameSource(_FileSourceBase):
    """Overlapping ``[n, h, w, 3]`` uint8 windows cropped to the chunk ROI."""

    async def start(self) -> None:
        await self._load_rois()

    async def next(self) -> Optional[Frame]:
        probe = self._require_probe()
        cfg = self.method_config
        if self.closed or self._current >= probe.total_frames:
            return None

        ds = self.ds_factor
        start = max(0, self._current - cfg.min_window_length * ds)
        frames_to_read = min(cfg.max_window_length * ds, probe.total_frames - start)
        roi = representative_roi(self.rois[start : start + frames_to_read])
        scale = (cfg.input_size, cfg.input_size) if cfg.input_size else None

        data = await asyncio.to_thread(
            self.reader.read_frames,
            self.path,
            VideoProcessingOptions(
                fps_target=self.fps_target,
                crop=roi,
                scale=scale,
                trim=(start, start + frames_to_read),
            ),
            probe,
        )
        if not data:
            self.stop()
            return None
        self._current = start + frames_to_read

        width = cfg.input_size or int(roi.width)
        height = cfg.input_size or int(roi.height)
        n = math.ceil(frames_to_read / ds)
        expected = n * width * height * 3
        if len(data) != expected:
            raise ValidationError(
                f"Buffer length mismatch. Expected {expected}, but received {len(data)}."
            )
        timestamps = [(start + i * ds) / probe.fps for i in range(n)]
        return Frame.from_bytes(data, [n, height, width, 3], "uint8", timestamps, [roi] * n)


class FileRGBSource(_FileSourceBase):
    """Overlapping ``[n, 3]`` float32 windows of per-frame mean RGB."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.rgb: Optional[np.ndarray] = None

    @property
    def total_frames_ds(self) -> int:
        return math.ceil(self._require_probe().total_frames / self.ds_factor)

    async def start(self) -> None:
        await self._load_rois()
        self.rgb = await asyncio.to_thread(self._extract_rgb)

    def _extract_rgb(self) -> np.ndarray:
        """Mean RGB per downsampled frame, read in memory-bounded chunks."""
        probe = self._require_probe()
        ds = self.ds_factor
        total = probe.total_frames
        total_ds = self.total_frames_ds
        est_bytes = total_ds * probe.height * probe.width * 3 * MAX_FACE_SHARE
        n_chunks = max(math.ceil(est_bytes / MAX_CHUNK_BYTES), 1)
        per_chunk_ds = math.ceil(total_ds / n_chunks)

        rgb = np.zeros((total_ds, 3), dtype=np.float32)
        for chunk in range(n_chunks):
            start = chunk * per_chunk_ds * ds
            end = min((chunk + 1) * per_chunk_ds * ds, total)
            if start >= end:
                break
            count_ds = math.ceil((end - start) / ds)
            crop = union_roi(self.rois[start:end])
            w, h = int(crop.width), int(crop.height)
            data = self.reader.read_frames(
                self.path,
                VideoProcessingOptions(fps_target=self.fps_target, crop=crop, trim=(start, end)),
                probe,
            )
            expected = count_ds * w * h * 3
            if len(data) != expected:
                raise ValidationError(
                    f"Buffer length mismatch in chunk {chunk}: expected {expected}, got {len(data)}"
                )
            frames = np.frombuffer(data, dtype=np.uint8).reshape(count_ds, h, w, 3)
            offset_ds = chunk * per_chunk_ds
            for i in range(count_ds):
                local = self.rois[start + i * ds].shifted(-crop.x0, -crop.y0)
                rgb[offset_ds + i] = mean_rgb(frames[i], local)
            logger.debug("Extracted RGB for chunk %d/%d", chunk + 1, n_chunks)
        return rgb

    async def next(self) -> Optional[Frame]:
        probe = self._require_probe()
        if self.rgb is None:
            raise RuntimeError("RGB data not available; start() has not completed")
        cfg = self.method_config
        total_ds = self.total_frames_ds
        # stop once a window would contain no frames beyond the previous one
        if self.closed or self._current + cfg.min_window_length - 1 >= total_ds:
            return None

        n = min(cfg.max_window_length, total_ds - self._current)
        idx = range(self._current, self._current + n)
        fps_ds = probe.fps / self.ds_factor
        timestamps = [i / fps_ds for i in idx]
        rois = [self.rois[min(i * self.ds_factor, len(self.rois) - 1)] for i in idx]
        window = self.rgb[self._current : self._current + n]
        self._current += cfg.max_window_length - cfg.min_window_length + 1
        return Frame.from_array(window, timestamp=timestamps, roi=rois)
