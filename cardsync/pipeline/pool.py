"""
Card Catalog Sync — Adaptive Worker Pool

Drains a FIFO queue of catalog group ids with a variable number of
concurrent worker loops (asyncio tasks, not threads).

- The target worker count is the throttle's AIMD permit value.
- A supervisor re-evaluates the target every `reevaluate_seconds` and spawns
  workers when it has grown. Workers are never cancelled; they shrink the
  pool by exiting after their current group when there are more of them
  than the target.
- Progress is published as ProgressEvent objects on an asyncio.Queue.
- A CancellationToken is checked before each pop. Unstarted groups come
  back as cancelled results.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Iterable

import structlog
from pydantic import BaseModel, Field

from cardsync.config import settings
from cardsync.pipeline.rate import ThrottleContext

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class GroupResult(BaseModel):
    """Outcome of processing one catalog group."""

    group_id: int
    fetched: int = 0
    upserted: int = 0
    skipped: int = 0
    error: str | None = None
    cancelled: bool = False
    source: str | None = None
    ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


class ProgressEvent(BaseModel):
    completed: int
    total: int
    in_flight: int
    group_id: int
    ok: bool
    throttle: dict[str, Any] = Field(default_factory=dict)


class CancellationToken:
    """Cooperative cancel flag shared down the call chain."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._cancelled:
            logger.info("cancellation_requested", reason=reason)
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


GroupProcessor = Callable[[int], Awaitable[GroupResult]]


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class WorkerPool:
    """
    Usage:
        pool = WorkerPool(process_group, throttle, progress=queue)
        results = await pool.run([1938, 1939, 2001])
    """

    def __init__(
        self,
        process: GroupProcessor,
        throttle: ThrottleContext,
        progress: asyncio.Queue[ProgressEvent] | None = None,
        token: CancellationToken | None = None,
        reevaluate_seconds: float | None = None,
    ):
        self._process = process
        self.throttle = throttle
        self._progress = progress
        self.token = token or CancellationToken()
        self._reevaluate_seconds = (
            reevaluate_seconds
            if reevaluate_seconds is not None
            else settings.POOL_REEVALUATE_SECONDS
        )

        self._queue: deque[int] = deque()
        self._workers: set[asyncio.Task[None]] = set()
        self._results: list[GroupResult] = []
        self._active = 0
        self._in_flight = 0
        self._total = 0
        self.peak_workers = 0

    def _target(self) -> int:
        return max(1, self.throttle.concurrency.current)

    def _spawn(self) -> None:
        wanted = min(self._target() - self._active, len(self._queue))
        for _ in range(max(0, wanted)):
            self._active += 1
            self.peak_workers = max(self.peak_workers, self._active)
            self._workers.add(asyncio.create_task(self._worker()))
        if wanted > 0:
            logger.debug("pool_workers_spawned", spawned=wanted, active=self._active)

    async def _process_one(self, group_id: int) -> GroupResult:
        started = time.monotonic()
        try:
            result = await self._process(group_id)
        except Exception as e:
            logger.error(
                "pool_group_failed",
                group_id=group_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            result = GroupResult(group_id=group_id, error=str(e) or type(e).__name__)
        if not result.ms:
            result.ms = int((time.monotonic() - started) * 1000)
        return result

    def _publish(self, result: GroupResult) -> None:
        if self._progress is None:
            return
        event = ProgressEvent(
            completed=len(self._results),
            total=self._total,
            in_flight=self._in_flight,
            group_id=result.group_id,
            ok=result.ok,
            throttle=self.throttle.stats(),
        )
        try:
            self._progress.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug("pool_progress_dropped", group_id=result.group_id)

    async def _worker(self) -> None:
        try:
            while True:
                if self.token.cancelled or not self._queue:
                    return
                # This worker is counted in _active; leave if over target.
                if self._active > self._target():
                    return
                group_id = self._queue.popleft()
                self._in_flight += 1
                try:
                    result = await self._process_one(group_id)
                finally:
                    self._in_flight -= 1
                self._results.append(result)
                self._publish(result)
        finally:
            self._active -= 1

    async def run(self, group_ids: Iterable[int]) -> list[GroupResult]:
        """
        Process every group id and return one GroupResult per id, in
        completion order followed by any cancelled ids.
        """
        self._queue = deque(group_ids)
        self._results = []
        self._total = len(self._queue)
        if not self._queue:
            return []

        logger.info("pool_started", total=self._total, target=self._target())

        while True:
            if self._queue and not self.token.cancelled:
                self._spawn()
            if not self._workers:
                break
            done, _ = await asyncio.wait(self._workers, timeout=self._reevaluate_seconds)
            for task in done:
                self._workers.discard(task)
                task.result()

        cancelled = [GroupResult(group_id=g, cancelled=True) for g in self._queue]
        self._queue.clear()

        logger.info(
            "pool_finished",
            total=self._total,
            completed=len(self._results),
            failed=sum(1 for r in self._results if r.error),
            cancelled=len(cancelled),
            peak_workers=self.peak_workers,
        )
        return self._results + cancelled
