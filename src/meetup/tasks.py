"""In-process job queue for deferred side effects.

Callers ``enqueue`` a coroutine factory and return without waiting. One
worker task drains the queue; a failing job is logged and never reaches
the caller. ``join`` lets tests and shutdown wait for pending jobs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()

Job = Callable[[], Awaitable[object]]


@dataclass
class _Entry:
    name: str
    job: Job
    delay: float


class TaskQueue:
    """Single-consumer queue of named async jobs."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[_Entry] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self.completed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run())
            logger.info("task_queue_started")

    async def stop(self) -> None:
        """Cancel the worker; jobs still queued are dropped."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("task_queue_stopped", pending=self._queue.qsize())

    def enqueue(self, name: str, job: Job, *, delay: float = 0.0) -> None:
        """Schedule ``job``; starts the worker lazily on a running loop."""
        self._queue.put_nowait(_Entry(name, job, delay))
        self.start()

    async def join(self) -> None:
        """Wait until every enqueued job has finished."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                if entry.delay:
                    await asyncio.sleep(entry.delay)
                await entry.job()
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.warning("task_failed", task=entry.name, exc_info=True)
            finally:
                self._queue.task_done()
