"""Live stream orchestration.

``StreamProcessor`` pulls frames at the target rate, feeds the buffer
manager, re-detects the face at a low rate and keeps at most one inference
call and one detection call in flight. Everything runs cooperatively on one
asyncio loop; the detection worker is reached through futures.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

import numpy as np

from .buffer import BufferManager
from .buffered_results import BufferedResultsConsumer
from .capture import FrameSource
from .config import FDET_DEFAULT_FS_STREAM, MethodConfig, VitalsOptions
from .detection_worker import DetectionWorker
from .errors import TransientFrameError
from .frame import Frame
from .methods import MethodHandler
from .result import VitalsResult
from .roi import ROI, check_face_in_roi, is_roi_valid, roi_for_method

logger = logging.getLogger(__name__)


class ProcessorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class StreamProcessor:
    def __init__(
        self,
        options: VitalsOptions,
        method_config: MethodConfig,
        frame_source: FrameSource,
        buffer_manager: BufferManager,
        method_handler: MethodHandler,
        detection_worker: Optional[DetectionWorker] = None,
        buffered_consumer: Optional[BufferedResultsConsumer] = None,
        on_predict: Optional[Callable[[VitalsResult], None]] = None,
        on_no_face: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.options = options
        self.method_config = method_config
        self.frame_source = frame_source
        self.buffer_manager = buffer_manager
        self.method_handler = method_handler
        self.detection_worker = detection_worker
        self.buffered_consumer = buffered_consumer
        self.on_predict = on_predict
        self.on_no_face = on_no_face
        self._clock = clock
        self._sleep = sleep

        self.state = ProcessorState.IDLE
        self.roi: Optional[ROI] = None
        self.pending_roi: Optional[ROI] = None
        self.is_predicting = False
        self.is_detecting = False
        self.last_detection_at = -math.inf
        self._last_tick: Optional[float] = None
        self._source_started = False
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def stateful(self) -> bool:
        return self.method_config.method == "vitallens"

    def init(self) -> None:
        """Seed a buffer from the global ROI when no detector runs."""
        if self.detection_worker is None and self.options.global_roi is not None:
            self.roi = self.options.global_roi
            self.buffer_manager.add_buffer(self.roi, self.method_config, 1)

    def is_processing(self) -> bool:
        return self.state is ProcessorState.RUNNING

    # lifecycle

    async def start(self) -> None:
        """Start or resume the loop. The source and handler are set up once."""
        if self.state is ProcessorState.STOPPED:
            raise RuntimeError("Stream processor is stopped")
        if self.state is ProcessorState.RUNNING:
            return
        if not self._source_started:
            self.method_handler.init()
            await self.frame_source.start()
            self._source_started = True
        # a paused loop may still be suspended in next() or sleep
        self._cancel_task()
        self.state = ProcessorState.RUNNING
        self._last_tick = None
        if self.buffered_consumer is not None:
            self.buffered_consumer.start()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Stream processing started (%s)", self.method_config.method)

    def pause(self) -> None:
        if self.state is ProcessorState.RUNNING:
            self.state = ProcessorState.PAUSED
            self._cancel_task(forget=False)
            logger.info("Stream processing paused")

    def stop(self) -> None:
        """Terminal stop. In-flight calls finish but their results are dropped."""
        if self.state is ProcessorState.STOPPED:
            return
        self.state = ProcessorState.STOPPED
        self.frame_source.stop()
        self.buffer_manager.cleanup()
        self.method_handler.cleanup()
        if self.buffered_consumer is not None:
            self.buffered_consumer.stop()
        self.roi = None
        self.pending_roi = None
        self._cancel_task()
        logger.info("Stream processing stopped")

    def _cancel_task(self, forget: bool = True) -> None:
        task = self._task
        if forget:
            self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def join(self) -> None:
        """Wait for the loop and any in-flight calls to finish."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # loop

    async def _run(self) -> None:
        interval = 1.0 / self.options.fps_target()
        while self.state is ProcessorState.RUNNING:
            now = self._clock()
            if self._last_tick is not None:
                remaining = interval - (now - self._last_tick)
                if remaining > 0:
                    await self._sleep(remaining)
                    continue
            self._last_tick = now
            try:
                more = await self.tick()
            except TransientFrameError:
                logger.exception("Frame processing failed; continuing")
                continue
            if not more:
                logger.info("Frame source exhausted")
                self.stop()

    async def tick(self) -> bool:
        """Process one frame. Returns False when the source has no more frames."""
        if self.pending_roi is not None:
            self.roi, self.pending_roi = self.pending_roi, None

        frame: Optional[Frame] = None
        handed_off = False
        try:
            frame = await self.frame_source.next()
            if frame is None:
                return False
            frame.retain()

            if not self.buffer_manager.is_empty():
                override = None if self.stateful else self.roi
                self.buffer_manager.add(frame, override)

            if (
                not self.is_predicting
                and self.method_handler.is_ready()
                and self.buffer_manager.is_ready()
            ):
                merged = self.buffer_manager.consume()
                if merged is not None:
                    self.is_predicting = True
                    self._spawn(self._predict(merged))

            if self._detection_due(frame):
                self.is_detecting = True
                handed_off = True
                self._spawn(self._detect(frame))
        except Exception as e:
            raise TransientFrameError(f"Failed to process frame: {e}") from e
        finally:
            if frame is not None and not handed_off:
                frame.release()
        return True

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    # inference

    async def _predict(self, merged: Frame) -> None:
        try:
            result = await self.method_handler.process(merged, "stream", self.buffer_manager.state)
            if self.state is ProcessorState.STOPPED:
                logger.debug("Discarding prediction after stop")
                return
            if result is None:
                return
            if result.state is not None:
                self.buffer_manager.set_state(np.asarray(result.state.data, dtype=np.float32))
            else:
                self.buffer_manager.reset_state()
            if self.on_predict is not None:
                self.on_predict(result)
        except Exception:
            logger.exception("Prediction failed")
        finally:
            self.is_predicting = False
            if not self.stateful:
                merged.release()

    # detection

    def _detection_due(self, frame: Frame) -> bool:
        if self.detection_worker is None or self.is_detecting:
            return False
        fs = self.options.fdet_fs or FDET_DEFAULT_FS_STREAM
        return frame.timestamp[0] - self.last_detection_at > 1.0 / fs

    async def _detect(self, frame: Frame) -> None:
        timestamp = frame.timestamp[0]
        try:
            fs = self.options.fdet_fs or FDET_DEFAULT_FS_STREAM
            fut = self.detection_worker.detect_faces(  # type: ignore[union-attr]
                "frame", fs, frame=frame, timestamp=timestamp
            )
            response = await asyncio.wrap_future(fut)
            if self.state is ProcessorState.STOPPED:
                return
            height, width = frame.shape[0], frame.shape[1]
            self.handle_detections(response.detections, width, height, timestamp)
        except Exception:
            logger.exception("Face detection request failed")
        finally:
            self.last_detection_at = timestamp
            self.is_detecting = False
            frame.release()

    def handle_detections(
        self, detections: List[ROI], width: int, height: int, timestamp: float
    ) -> None:
        """Apply one detection result to the active ROI and buffers."""
        if not detections:
            self.roi = None
            self.pending_roi = None
            self.buffer_manager.cleanup()
            if self.on_no_face is not None:
                self.on_no_face()
            return

        det = detections[0]
        if not is_roi_valid(det):
            return
        if (
            self.roi is None
            or not self.stateful
            or not check_face_in_roi(det, self.roi, self.options.reacquire_coverage)
        ):
            new_roi = roi_for_method(
                det, self.method_config.roi_method, (width, height), force_even_dims=True
            )
            self.pending_roi = new_roi
            if self.buffer_manager.is_empty() or self.stateful:
                self.buffer_manager.add_buffer(new_roi, self.method_config, timestamp)
