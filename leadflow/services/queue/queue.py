"""A named queue over a shared backend."""

from typing import Any, Optional

from loguru import logger

from leadflow.services.queue.backend import QueueBackend
from leadflow.services.queue.exceptions import QueueClosedError
from leadflow.services.queue.models import Job, JobOptions, JobStatus, backoff_delay_ms


class Queue:
    """Producer and consumer handle for one queue name."""

    def __init__(
        self,
        name: str,
        backend: QueueBackend,
        default_options: Optional[JobOptions] = None,
    ):
        self.name = name
        self.backend = backend
        self.default_options = default_options or JobOptions()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self):
        if self._closed:
            raise QueueClosedError(f"Queue {self.name} is closed")

    async def add(self, job_name: str, payload: Any, options: Optional[JobOptions] = None) -> Job:
        self._ensure_open()
        job = await self.backend.add(self.name, job_name, payload, options or self.default_options)
        logger.debug(f"[{self.name}] enqueued {job_name} job {job.id}")
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.backend.get(self.name, job_id)

    async def get_status(self, job_id: str) -> JobStatus:
        job = await self.get_job(job_id)
        return JobStatus.from_job(job) if job else JobStatus.not_found()

    async def claim(self) -> Optional[Job]:
        self._ensure_open()
        return await self.backend.claim(self.name)

    async def complete(self, job: Job, return_value: Any) -> Optional[Job]:
        return await self.backend.complete(job.id, return_value)

    async def fail(self, job: Job, reason: str, retry: bool = True) -> Optional[Job]:
        """Record a failed attempt.

        Re-queues with exponential backoff while attempts remain and ``retry``
        is set; otherwise the job ends in ``failed``. Returns the updated job.
        """
        if retry and job.attempts_made < job.max_attempts:
            delay_ms = backoff_delay_ms(job.attempts_made, job.backoff_ms)
            logger.info(
                f"[{self.name}] job {job.id} attempt {job.attempts_made}/{job.max_attempts} "
                f"failed, retrying in {delay_ms}ms"
            )
            return await self.backend.retry(job.id, reason, delay_ms)
        return await self.backend.fail(job.id, reason)

    async def recover_stalled(self, stalled_after_ms: int) -> tuple[list[Job], list[Job]]:
        return await self.backend.recover_stalled(self.name, stalled_after_ms)

    async def list_jobs(self, limit: int = 50) -> list[Job]:
        return await self.backend.list_jobs(self.name, limit=limit)

    async def close(self):
        self._closed = True
