"""Bounded-concurrency worker that drains one queue."""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from leadflow.core.exceptions import is_retryable, public_error_message
from leadflow.core.logging import job_id_var
from leadflow.services.queue.exceptions import QueueError
from leadflow.services.queue.models import Job, JobState
from leadflow.services.queue.queue import Queue

Processor = Callable[[Job], Awaitable[Any]]
FailedHandler = Callable[[Job, BaseException], Awaitable[Any]]


async def _wait(event: asyncio.Event, timeout: float) -> None:
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        pass


class Worker:
    """Runs ``processor`` for jobs claimed from ``queue``.

    ``concurrency`` slots poll the queue independently. A failed attempt is
    retried with backoff unless the error is terminal or attempts are used
    up, in which case the job ends ``failed`` and ``on_failed`` is called.
    """

    def __init__(
        self,
        queue: Queue,
        processor: Processor,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        stalled_after: float = 300.0,
        on_failed: Optional[FailedHandler] = None,
        describe_error: Callable[[BaseException], str] = public_error_message,
    ):
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.stalled_after = stalled_after
        self.on_failed = on_failed
        self.describe_error = describe_error
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._closed = False

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._closed

    def start(self):
        if self._tasks or self._closed:
            return
        self._tasks = [
            asyncio.create_task(self._slot(i), name=f"{self.queue.name}-slot-{i}")
            for i in range(self.concurrency)
        ]
        self._tasks.append(
            asyncio.create_task(self._watch_stalled(), name=f"{self.queue.name}-stalled")
        )
        logger.info(f"[{self.queue.name}] worker started with concurrency {self.concurrency}")

    async def close(self):
        """Stop claiming new jobs and wait for in-flight ones. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"[{self.queue.name}] worker closed")

    async def _slot(self, index: int):
        while not self._stopping.is_set():
            try:
                job = await self.queue.claim()
            except QueueError:
                break
            except Exception as e:
                logger.error(f"[{self.queue.name}] slot {index} failed to claim a job: {e}")
                await _wait(self._stopping, self.poll_interval)
                continue

            if job is None:
                await _wait(self._stopping, self.poll_interval)
                continue

            await self.process(job)

    async def recover_stalled(self) -> tuple[list[Job], list[Job]]:
        """Re-queue jobs active longer than ``stalled_after``; fail exhausted ones.

        Jobs that end ``failed`` are passed to ``on_failed`` like any other
        final failure.
        """
        requeued, failed = await self.queue.recover_stalled(int(self.stalled_after * 1000))
        for job in failed:
            await self._notify_failed(
                job, QueueError(job.failed_reason or "job stalled", retryable=False)
            )
        return requeued, failed

    async def _watch_stalled(self):
        interval = max(min(self.stalled_after / 2, 30.0), self.poll_interval)
        while not self._stopping.is_set():
            try:
                await self.recover_stalled()
            except Exception as e:
                logger.error(f"[{self.queue.name}] stalled job check failed: {e}")
            await _wait(self._stopping, interval)

    async def process(self, job: Job) -> Optional[Job]:
        """Run one claimed job to completion or to its next failure state."""
        token = job_id_var.set(job.id)
        try:
            try:
                result = await self.processor(job)
            except Exception as e:
                return await self._handle_failure(job, e)

            try:
                return await self.queue.complete(job, result)
            except Exception as e:
                logger.error(f"[{self.queue.name}] failed to mark job {job.id} completed: {e}")
                return None
        finally:
            job_id_var.reset(token)

    async def _handle_failure(self, job: Job, error: BaseException) -> Optional[Job]:
        logger.error(
            f"[{self.queue.name}] job {job.id} failed on attempt "
            f"{job.attempts_made}/{job.max_attempts}: {error!r}"
        )
        try:
            updated = await self.queue.fail(
                job, self.describe_error(error), retry=is_retryable(error)
            )
        except Exception as e:
            logger.error(f"[{self.queue.name}] failed to record failure for job {job.id}: {e}")
            return None

        if updated is not None and updated.state == JobState.FAILED:
            await self._notify_failed(updated, error)
        return updated

    async def _notify_failed(self, job: Job, error: BaseException):
        if self.on_failed is None:
            return
        try:
            await self.on_failed(job, error)
        except Exception as e:
            logger.error(f"[{self.queue.name}] failure handler raised for job {job.id}: {e}")
