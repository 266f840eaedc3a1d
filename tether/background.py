"""Best-effort background jobs (conversation persistence).

Jobs are queued and run one at a time, in submission order, by a
background asyncio task. A failing job is logged and never propagates,
so the agent loop can hand work off without awaiting it. Tests call
join() to wait for everything submitted so far.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class Job:
    label: str
    fn: Callable[..., Awaitable[Any]]
    args: tuple[Any, ...] = ()


class BackgroundWorker:
    def __init__(self, max_queue: int = 1000) -> None:
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self.failures = 0

    def submit(self, label: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """Queue a job. Never blocks; drops the job if the queue is full."""
        try:
            self._queue.put_nowait(Job(label, fn, args))
        except asyncio.QueueFull:
            logger.warning("Background queue full, dropping job: %s", label)
            return
        if self._task is None:
            self._start()

    def _start(self) -> None:
        self._task = asyncio.create_task(self._process_loop(), name="background-worker")

    async def start(self) -> None:
        if self._task is None:
            self._start()
            logger.info("Background worker started")

    async def stop(self) -> None:
        """Cancel the worker, then run whatever is still queued."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                await self._safe_run(job)
            finally:
                self._queue.task_done()
        logger.info("Background worker stopped")

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        await self._queue.join()

    async def _process_loop(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._safe_run(job)
            finally:
                self._queue.task_done()

    async def _safe_run(self, job: Job) -> None:
        try:
            await job.fn(*job.args)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.warning("Background job %s failed", job.label, exc_info=True)

    @property
    def pending(self) -> int:
        return self._queue.qsize()
