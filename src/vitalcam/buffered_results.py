"""Release single-sample results in step with capture time."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from .result import VitalsResult

logger = logging.getLogger(__name__)

DISPATCH_INTERVAL = 1 / 60


class BufferedResultsConsumer:
    """Queue of display-time-stamped results drained on a ~60 Hz loop.

    Each tick pops every result whose ``display_time`` has passed and
    dispatches only the latest of them.
    """

    def __init__(
        self,
        dispatch: Callable[[VitalsResult], None],
        clock: Callable[[], float] = time.perf_counter,
        interval: float = DISPATCH_INTERVAL,
    ) -> None:
        self.dispatch = dispatch
        self._clock = clock
        self.interval = interval
        self._queue: List[VitalsResult] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def __len__(self) -> int:
        return len(self._queue)

    def add_results(self, results: List[VitalsResult]) -> None:
        self._queue.extend(results)

    def drain(self) -> Optional[VitalsResult]:
        """Dispatch the latest due result, dropping older due ones."""
        now = self._clock()
        latest: Optional[VitalsResult] = None
        while self._queue and (self._queue[0].display_time or 0.0) <= now:
            latest = self._queue.pop(0)
        if latest is not None:
            try:
                self.dispatch(latest)
            except Exception:
                logger.exception("Result dispatch failed")
        return latest

    async def _run(self) -> None:
        while True:
            self.drain()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._queue.clear()
