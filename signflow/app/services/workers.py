"""
Bounded async worker pool for the completion pipeline.

Sizing follows a core/max/queue model:

- ``core_workers`` run for the lifetime of the pool.
- Submissions queue up to ``queue_capacity``.
- With the queue full, extra workers are started (up to ``max_workers``);
  each extra worker runs the submission that triggered it first and
  retires after ``idle_seconds`` without work.
- With the queue full and every worker slot taken, ``submit`` raises
  PoolSaturated. The submitting callback leaves its job untouched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from signflow.app.core.errors import PoolSaturated

logger = logging.getLogger("signflow.workers")

Task = Tuple[str, Callable[[], Awaitable[object]]]


class CompletionWorkerPool:
    def __init__(
        self,
        *,
        core_workers: int = 4,
        max_workers: int = 8,
        queue_capacity: int = 50,
        idle_seconds: float = 60.0,
    ) -> None:
        if core_workers < 1 or max_workers < core_workers:
            raise ValueError("Pool needs 1 <= core_workers <= max_workers")

        self.core_workers = core_workers
        self.max_workers = max_workers
        self.queue_capacity = queue_capacity
        self.idle_seconds = idle_seconds

        self._queue: Optional[asyncio.Queue[Task]] = None
        self._workers: List[asyncio.Task] = []
        self._running = 0
        self._settled: Optional[asyncio.Condition] = None
        self._closed = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self._closed:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_capacity)
        self._settled = asyncio.Condition()
        self._closed = False
        for _ in range(self.core_workers):
            self._spawn(permanent=True)
        logger.info(
            "worker_pool_started",
            extra={
                "core_workers": self.core_workers,
                "max_workers": self.max_workers,
                "queue_capacity": self.queue_capacity,
            },
        )

    async def shutdown(self, *, drain: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        if drain:
            await self.drain()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("worker_pool_stopped")

    async def drain(self) -> None:
        """Wait until every queued and running submission has finished."""
        if self._queue is None or self._settled is None:
            return
        await self._queue.join()
        async with self._settled:
            await self._settled.wait_for(lambda: self._running == 0)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def worker_count(self) -> int:
        return len(self._workers)

    @property
    def queued(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def running(self) -> int:
        return self._running

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, label: str, factory: Callable[[], Awaitable[object]]) -> None:
        if self._closed or self._queue is None:
            raise PoolSaturated("Completion pool is not accepting work")

        try:
            self._queue.put_nowait((label, factory))
            return
        except asyncio.QueueFull:
            pass

        if len(self._workers) < self.max_workers:
            self._spawn(permanent=False, first=(label, factory))
            logger.info(
                "worker_pool_scaled_up",
                extra={"workers": len(self._workers), "label": label},
            )
            return

        logger.error(
            "worker_pool_rejected",
            extra={
                "label": label,
                "workers": len(self._workers),
                "queued": self._queue.qsize(),
            },
        )
        raise PoolSaturated("Completion capacity exhausted. Please try again later.")

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _spawn(self, *, permanent: bool, first: Optional[Task] = None) -> None:
        if first is not None:
            # Counted before the task is scheduled so drain() sees it.
            self._running += 1
        task = asyncio.create_task(self._work(permanent=permanent, first=first))
        self._workers.append(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        if task in self._workers:
            self._workers.remove(task)

    async def _work(self, *, permanent: bool, first: Optional[Task]) -> None:
        assert self._queue is not None

        if first is not None:
            await self._run(first)

        while True:
            try:
                if permanent:
                    item = await self._queue.get()
                else:
                    item = await asyncio.wait_for(
                        self._queue.get(), timeout=self.idle_seconds
                    )
            except asyncio.TimeoutError:
                logger.info("worker_retired", extra={"workers": len(self._workers) - 1})
                return

            self._running += 1
            try:
                await self._run(item)
            finally:
                self._queue.task_done()

    async def _run(self, item: Task) -> None:
        label, factory = item
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("worker_task_failed", extra={"label": label})
        finally:
            await self._settle()

    async def _settle(self) -> None:
        assert self._settled is not None
        async with self._settled:
            self._running -= 1
            self._settled.notify_all()
