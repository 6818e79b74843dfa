"""Bounded asyncio worker pool with reject-on-full backpressure."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from metricguard.monitor.exceptions import PoolSaturatedError

logger = structlog.stdlib.get_logger()

T = TypeVar("T")


class WorkerPool:
    """Runs submitted coroutine jobs with at most ``max_workers`` in flight.

    At most ``max_pending`` jobs (running plus waiting) are held; further
    submissions raise ``PoolSaturatedError`` instead of queueing without
    bound. ``submit`` returns the job's task, which callers may await or
    ignore.
    """

    def __init__(self, max_workers: int = 4, max_pending: int = 100) -> None:
        if max_workers < 1 or max_pending < 1:
            raise ValueError("max_workers and max_pending must be >= 1")
        self._max_workers = max_workers
        self._max_pending = max_pending
        self._semaphore: asyncio.Semaphore | None = None
        self._pending: set[asyncio.Task[object]] = set()
        self._rejected = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def rejected(self) -> int:
        return self._rejected

    def submit(self, job: Callable[[], Awaitable[T]]) -> asyncio.Task[T]:
        """Schedule ``job`` on the running loop.

        Raises:
            PoolSaturatedError: If ``max_pending`` jobs are already held.
        """
        if len(self._pending) >= self._max_pending:
            self._rejected += 1
            logger.warning(
                "worker_pool_saturated",
                pending=len(self._pending),
                max_pending=self._max_pending,
            )
            raise PoolSaturatedError(f"{len(self._pending)} jobs pending")

        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_workers)

        task: asyncio.Task[T] = asyncio.create_task(self._run(job))
        self._pending.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._pending.discard)  # type: ignore[arg-type]
        return task

    async def drain(self) -> None:
        """Wait until every submitted job (including ones submitted meanwhile) finishes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding jobs."""
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    async def _run(self, job: Callable[[], Awaitable[T]]) -> T:
        assert self._semaphore is not None
        async with self._semaphore:
            return await job()
