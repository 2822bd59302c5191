"""Shared fixtures for queue tests: an in-memory QueueBackend."""

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from pydantic_core import to_jsonable_python

from leadflow.services.queue.backend import QueueBackend
from leadflow.services.queue.models import Job, JobOptions, JobState


class InMemoryQueueBackend(QueueBackend):
    """Mirrors the SQL state machine without a database."""

    def __init__(self):
        self.jobs: dict[str, Job] = {}
        self._ids = itertools.count(1)
        self.closed = False
        self.fail_on_add: set[str] = set()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def add(self, queue_name: str, name: str, payload: Any, options: JobOptions) -> Job:
        if queue_name in self.fail_on_add:
            raise ConnectionError(f"cannot reach {queue_name}")
        job = Job(
            id=str(next(self._ids)),
            queue_name=queue_name,
            name=name,
            payload=to_jsonable_python(payload),
            max_attempts=options.attempts,
            backoff_ms=options.backoff_ms,
            run_at=self._now(),
            created_at=self._now(),
        )
        self.jobs[job.id] = job
        return job.model_copy()

    async def claim(self, queue_name: str) -> Optional[Job]:
        now = self._now()
        due = [
            job
            for job in self.jobs.values()
            if job.queue_name == queue_name and job.state == JobState.QUEUED and job.run_at <= now
        ]
        if not due:
            return None
        job = min(due, key=lambda j: (j.run_at, int(j.id)))
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.started_at = now
        return job.model_copy()

    def _active(self, job_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        if job is None or job.state != JobState.ACTIVE:
            return None
        return job

    async def complete(self, job_id: str, return_value: Any) -> Optional[Job]:
        job = self._active(job_id)
        if job is None:
            return None
        job.state = JobState.COMPLETED
        job.return_value = to_jsonable_python(return_value)
        job.failed_reason = None
        job.finished_at = self._now()
        return job.model_copy()

    async def retry(self, job_id: str, failed_reason: str, delay_ms: int) -> Optional[Job]:
        job = self._active(job_id)
        if job is None:
            return None
        job.state = JobState.QUEUED
        job.failed_reason = failed_reason
        job.run_at = self._now() + timedelta(milliseconds=delay_ms)
        return job.model_copy()

    async def fail(self, job_id: str, failed_reason: str) -> Optional[Job]:
        job = self._active(job_id)
        if job is None:
            return None
        job.state = JobState.FAILED
        job.failed_reason = failed_reason
        job.finished_at = self._now()
        return job.model_copy()

    async def get(self, queue_name: str, job_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        if job is None or job.queue_name != queue_name:
            return None
        return job.model_copy()

    async def recover_stalled(self, queue_name: str, stalled_after_ms: int):
        cutoff = self._now() - timedelta(milliseconds=stalled_after_ms)
        requeued, failed = [], []
        for job in self.jobs.values():
            if job.queue_name != queue_name or job.state != JobState.ACTIVE:
                continue
            if job.started_at is None or job.started_at >= cutoff:
                continue
            if job.attempts_made < job.max_attempts:
                job.state = JobState.QUEUED
                job.run_at = self._now()
                job.failed_reason = "job stalled"
                requeued.append(job.model_copy())
            else:
                job.state = JobState.FAILED
                job.failed_reason = "job stalled more than allowable limit"
                job.finished_at = self._now()
                failed.append(job.model_copy())
        return requeued, failed

    async def list_jobs(self, queue_name: str, limit: int = 50) -> list[Job]:
        jobs = [j for j in self.jobs.values() if j.queue_name == queue_name]
        jobs.sort(key=lambda j: int(j.id), reverse=True)
        return [j.model_copy() for j in jobs[:limit]]

    async def close(self) -> None:
        self.closed = True

    def in_queue(self, queue_name: str) -> list[Job]:
        return [j for j in self.jobs.values() if j.queue_name == queue_name]


@pytest.fixture
def backend():
    return InMemoryQueueBackend()
