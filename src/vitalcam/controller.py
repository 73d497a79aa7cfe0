"""Top-level controller wiring sources, buffers, handlers and aggregation."""

from __future__ import annotations

import logging
import time
from typing import Callable, Generic, List, Optional, TypeVar

import numpy as np

from .buffer import BufferManager
from .buffered_results import BufferedResultsConsumer
from .capture import FrameSource
from .config import VitalsOptions
from .detection_worker import DetectionWorker
from .estimates import EstimateAggregator
from .file_source import FileFrameSource, FileRGBSource
from .methods import MethodHandler, create_method_handler
from .rest_client import RestClient
from .result import VitalsResult
from .stream_processor import StreamProcessor
from .video import OpenCVVideoReader, VideoReader

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventChannel(Generic[T]):
    """Publish/subscribe for one kind of event."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register ``listener``; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Callable[[T], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear(self) -> None:
        self._listeners.clear()

    def emit(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Listener for '%s' failed", self.name)

    def __len__(self) -> int:
        return len(self._listeners)


class VitalsController:
    def __init__(
        self,
        options: VitalsOptions,
        rest_client: Optional[RestClient] = None,
        detection_worker: Optional[DetectionWorker] = None,
        video_reader: Optional[VideoReader] = None,
        method_handler: Optional[MethodHandler] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.options = options
        self.method_config = options.method_config
        self._clock = clock
        self.buffer_manager = BufferManager()
        self.method_handler = method_handler or create_method_handler(options, rest_client)
        self.aggregator = EstimateAggregator(
            self.method_config, options, self.method_handler.postprocess, clock
        )
        self.video_reader: VideoReader = video_reader or OpenCVVideoReader()
        if detection_worker is None and options.global_roi is None:
            detection_worker = DetectionWorker(reader=self.video_reader)
        self.detection_worker = detection_worker
        self.stream_processor: Optional[StreamProcessor] = None

        self.vitals: EventChannel[VitalsResult] = EventChannel("vitals")
        self.file_progress: EventChannel[str] = EventChannel("file_progress")

    def is_processing(self) -> bool:
        return self.stream_processor is not None and self.stream_processor.is_processing()

    # live stream

    def set_video_stream(self, source: FrameSource) -> StreamProcessor:
        if self.stream_processor is not None:
            raise RuntimeError(
                "A video stream has already been set. Only one video stream is "
                "supported at a time; call stop_video_stream() to remove it."
            )
        consumer = BufferedResultsConsumer(self.vitals.emit, self._clock)

        def on_predict(incremental: VitalsResult) -> None:
            if not self.is_processing():
                return
            results = self.aggregator.produce_buffered_results(incremental, source.id, "windowed")
            if results:
                consumer.add_results(results)

        def on_no_face() -> None:
            self.aggregator.reset(source.id)
            self.vitals.emit(self.aggregator.empty_result())

        self.stream_processor = StreamProcessor(
            self.options,
            self.method_config,
            source,
            self.buffer_manager,
            self.method_handler,
            detection_worker=self.detection_worker,
            buffered_consumer=consumer,
            on_predict=on_predict,
            on_no_face=on_no_face,
            clock=self._clock,
        )
        self.stream_processor.init()
        return self.stream_processor

    async def start_video_stream(self) -> None:
        if self.stream_processor is None:
            raise RuntimeError("No video stream set; call set_video_stream() first")
        if not self.is_processing():
            await self.stream_processor.start()

    def pause_video_stream(self) -> None:
        if self.is_processing():
            self.stream_processor.pause()  # type: ignore[union-attr]
            self.aggregator.reset_all()

    def stop_video_stream(self) -> None:
        if self.stream_processor is not None:
            self.stream_processor.stop()
            self.stream_processor = None
        self.aggregator.reset_all()

    # files

    def _file_source(self, path: str) -> FrameSource:
        source_cls = FileFrameSource if self.method_config.method == "vitallens" else FileRGBSource
        return source_cls(
            path, self.options, self.method_config, self.detection_worker, self.video_reader
        )

    async def process_video_file(self, path: str) -> VitalsResult:
        """Estimate vitals over a whole video file, chunk by chunk.

        The first failing chunk aborts the job and its error propagates.
        """
        self.method_handler.init()
        source = self._file_source(path)
        state: Optional[np.ndarray] = None
        chunk = 1
        try:
            self.file_progress.emit("Detecting faces...")
            await source.start()
            while True:
                self.file_progress.emit(f"Loading video for chunk {chunk}...")
                frames = await source.next()
                if frames is None:
                    break
                self.file_progress.emit(f"Estimating vitals for chunk {chunk}...")
                incremental = await self.method_handler.process(frames, "file", state)
                if incremental is not None:
                    if incremental.state is not None:
                        state = np.asarray(incremental.state.data, dtype=np.float32)
                    self.aggregator.process_incremental_result(
                        incremental, source.id, "complete", True, False
                    )
                chunk += 1
            logger.info("Processed %d chunk(s) of %s", chunk - 1, path)
            return self.aggregator.get_result(source.id)
        finally:
            source.stop()
            self.method_handler.cleanup()
            self.aggregator.reset(source.id)

    def dispose(self) -> None:
        """Stop the worker and any stream, and drop all state."""
        if self.detection_worker is not None:
            self.detection_worker.terminate()
            self.detection_worker = None
        if self.stream_processor is not None:
            self.stream_processor.stop()
            self.stream_processor = None
        self.buffer_manager.cleanup()
        self.aggregator.reset_all()
