"""Background delivery of notification jobs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

NotificationJob = Callable[[], Awaitable[Any]]


class JobScheduler(Protocol):
    def enqueue(self, name: str, job: NotificationJob) -> bool:
        ...


@dataclass(slots=True)
class _QueuedJob:
    name: str
    job: NotificationJob


class NotificationWorker:
    """Run notification jobs on a single background task.

    ``enqueue`` never blocks and never raises: when the worker is stopped or
    the queue is full the job is dropped and logged. Jobs run detached from
    the request that queued them.
    """

    def __init__(self, *, max_queue_size: int = 1000, drain_timeout: float = 10.0) -> None:
        self._queue: asyncio.Queue[_QueuedJob] = asyncio.Queue(maxsize=max_queue_size)
        self._drain_timeout = drain_timeout
        self._task: asyncio.Task[None] | None = None
        self._accepting = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self.running:
            return
        self._accepting = True
        self._task = asyncio.create_task(self._run(), name="notification-worker")
        logger.info("Notification worker started")

    def enqueue(self, name: str, job: NotificationJob) -> bool:
        if not self._accepting:
            logger.error("Notification worker is not running; dropping job %s", name)
            return False
        try:
            self._queue.put_nowait(_QueuedJob(name=name, job=job))
        except asyncio.QueueFull:
            logger.error("Notification queue is full; dropping job %s", name)
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued job has been processed."""

        await self._queue.join()

    async def stop(self) -> None:
        """Stop accepting jobs, drain the queue within the timeout, then exit."""

        self._accepting = False
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=self._drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Notification worker stopped with %d job(s) still queued", self._queue.qsize()
            )
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Notification worker stopped")

    async def _run(self) -> None:
        while True:
            queued = await self._queue.get()
            try:
                await queued.job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Notification job %s failed", queued.name)
            finally:
                self._queue.task_done()
