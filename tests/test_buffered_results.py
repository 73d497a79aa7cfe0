from __future__ import annotations

import asyncio
from typing import List

from vitalcam.buffered_results import BufferedResultsConsumer
from vitalcam.result import VitalsResult


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _results(*times: float) -> List[VitalsResult]:
    return [VitalsResult(time=[t], display_time=t) for t in times]


def test_drain_dispatches_latest_due_result() -> None:
    clock = FakeClock()
    seen: List[VitalsResult] = []
    consumer = BufferedResultsConsumer(seen.append, clock)
    consumer.add_results(_results(1.0, 1.1, 1.2, 2.0))

    assert consumer.drain() is None
    assert seen == []

    clock.now = 1.15
    latest = consumer.drain()
    assert latest is not None and latest.time == [1.1]
    assert [r.time for r in seen] == [[1.1]]
    assert len(consumer) == 2

    clock.now = 5.0
    consumer.drain()
    assert [r.time for r in seen] == [[1.1], [2.0]]
    assert len(consumer) == 0


def test_dispatch_failure_is_logged_and_dropped() -> None:
    def broken(result: VitalsResult) -> None:
        raise RuntimeError("listener down")

    clock = FakeClock()
    clock.now = 10.0
    consumer = BufferedResultsConsumer(broken, clock)
    consumer.add_results(_results(1.0))
    assert consumer.drain() is not None
    assert len(consumer) == 0


def test_run_loop_start_and_stop() -> None:
    seen: List[VitalsResult] = []

    async def run() -> None:
        consumer = BufferedResultsConsumer(seen.append, lambda: 100.0, interval=0.001)
        consumer.add_results(_results(1.0, 2.0))
        consumer.start()
        assert consumer.running
        await asyncio.sleep(0.05)
        consumer.add_results(_results(3.0))
        consumer.stop()
        assert not consumer.running
        assert len(consumer) == 0

    asyncio.run(run())
    assert [r.time for r in seen] == [[2.0]]
