"""
Tests for the adaptive worker pool (cardsync/pipeline/pool.py).

Covers:
- Every group yields exactly one result
- In-flight work bounded by the AIMD target, growing and shrinking live
- Processor exceptions isolated to their group
- Cooperative cancellation and progress events
"""

from __future__ import annotations

import asyncio

import pytest

from cardsync.pipeline.pool import CancellationToken, GroupResult, ProgressEvent, WorkerPool


class Recorder:
    """Processor that tracks how many groups run at once."""

    def __init__(self, delay: float = 0.01):
        self.delay = delay
        self.in_flight = 0
        self.peak = 0
        self.seen: list[int] = []

    async def __call__(self, group_id: int) -> GroupResult:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            self.seen.append(group_id)
            return GroupResult(group_id=group_id, fetched=1, upserted=1)
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_every_group_gets_one_result(make_throttle) -> None:
    recorder = Recorder()
    pool = WorkerPool(recorder, make_throttle(max_concurrency=4), reevaluate_seconds=0.01)

    results = await pool.run(range(1, 11))

    assert sorted(r.group_id for r in results) == list(range(1, 11))
    assert all(r.ok for r in results)
    assert all(r.ms >= 0 for r in results)


@pytest.mark.asyncio
async def test_empty_queue_returns_immediately(throttle) -> None:
    assert await WorkerPool(Recorder(), throttle).run([]) == []


@pytest.mark.asyncio
async def test_in_flight_bounded_by_target(make_throttle) -> None:
    recorder = Recorder()
    pool = WorkerPool(recorder, make_throttle(min_concurrency=1, max_concurrency=3), reevaluate_seconds=0.01)

    await pool.run(range(12))

    assert recorder.peak <= 3
    assert pool.peak_workers == 3


@pytest.mark.asyncio
async def test_pool_grows_when_target_rises(make_throttle) -> None:
    throttle = make_throttle(min_concurrency=1, max_concurrency=4)
    throttle.concurrency.current = 1

    async def process(group_id: int) -> GroupResult:
        throttle.concurrency.current = 4
        await asyncio.sleep(0.02)
        return GroupResult(group_id=group_id)

    pool = WorkerPool(process, throttle, reevaluate_seconds=0.005)
    results = await pool.run(range(20))

    assert len(results) == 20
    assert pool.peak_workers > 1


@pytest.mark.asyncio
async def test_pool_shrinks_without_losing_groups(make_throttle) -> None:
    throttle = make_throttle(min_concurrency=1, max_concurrency=8)
    recorder = Recorder()

    async def process(group_id: int) -> GroupResult:
        if group_id == 0:
            throttle.concurrency.current = 1
        return await recorder(group_id)

    pool = WorkerPool(process, throttle, reevaluate_seconds=0.005)
    results = await pool.run(range(30))

    assert sorted(r.group_id for r in results) == list(range(30))
    assert throttle.concurrency.current == 1


@pytest.mark.asyncio
async def test_processor_exception_becomes_group_error(make_throttle) -> None:
    async def process(group_id: int) -> GroupResult:
        if group_id == 2:
            raise RuntimeError("boom")
        return GroupResult(group_id=group_id)

    results = await WorkerPool(process, make_throttle(max_concurrency=2)).run([1, 2, 3])

    by_id = {r.group_id: r for r in results}
    assert by_id[2].error == "boom"
    assert by_id[2].ok is False
    assert by_id[1].ok and by_id[3].ok


@pytest.mark.asyncio
async def test_cancellation_returns_unstarted_groups(throttle) -> None:
    token = CancellationToken()

    async def process(group_id: int) -> GroupResult:
        if group_id == 2:
            token.cancel("user")
        return GroupResult(group_id=group_id)

    results = await WorkerPool(process, throttle, token=token).run([1, 2, 3, 4])

    assert [(r.group_id, r.cancelled) for r in results] == [
        (1, False),
        (2, False),
        (3, True),
        (4, True),
    ]
    assert token.reason == "user"


@pytest.mark.asyncio
async def test_progress_events_published(throttle) -> None:
    progress: asyncio.Queue[ProgressEvent] = asyncio.Queue()

    await WorkerPool(Recorder(delay=0), throttle, progress=progress).run([10, 20, 30])

    events = [progress.get_nowait() for _ in range(progress.qsize())]
    assert [e.completed for e in events] == [1, 2, 3]
    assert {e.group_id for e in events} == {10, 20, 30}
    assert all(e.total == 3 and e.ok for e in events)
    assert "concurrency" in events[0].throttle


@pytest.mark.asyncio
async def test_full_progress_queue_drops_events(throttle) -> None:
    progress: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=1)

    results = await WorkerPool(Recorder(delay=0), throttle, progress=progress).run([1, 2, 3])

    assert len(results) == 3
    assert progress.qsize() == 1
