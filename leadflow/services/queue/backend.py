"""Durable storage for queued jobs."""

import json
from abc import ABC, abstractmethod
from typing import Any, Optional

from loguru import logger
from pydantic_core import to_jsonable_python

from leadflow.db.db import Database
from leadflow.db.sql_loader import queue_queries
from leadflow.services.queue.models import Job, JobOptions


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(to_jsonable_python(value))


def _job_or_none(record) -> Optional[Job]:
    return Job.model_validate(dict(record)) if record else None


def _parse_id(job_id: str) -> Optional[int]:
    try:
        return int(job_id)
    except (TypeError, ValueError):
        return None


class QueueBackend(ABC):
    """Job storage shared by every queue.

    State machine: queued -> active -> completed | failed, with a failed
    attempt that still has attempts left going back to queued.
    """

    @abstractmethod
    async def add(self, queue_name: str, name: str, payload: Any, options: JobOptions) -> Job:
        ...

    @abstractmethod
    async def claim(self, queue_name: str) -> Optional[Job]:
        """Atomically move the oldest due job to active and return it."""
        ...

    @abstractmethod
    async def complete(self, job_id: str, return_value: Any) -> Optional[Job]:
        ...

    @abstractmethod
    async def retry(self, job_id: str, failed_reason: str, delay_ms: int) -> Optional[Job]:
        ...

    @abstractmethod
    async def fail(self, job_id: str, failed_reason: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def get(self, queue_name: str, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def recover_stalled(self, queue_name: str, stalled_after_ms: int) -> tuple[list[Job], list[Job]]:
        """Re-queue stalled active jobs. Returns (requeued, failed)."""
        ...

    @abstractmethod
    async def list_jobs(self, queue_name: str, limit: int = 50) -> list[Job]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class PostgresQueueBackend(QueueBackend):
    """Jobs live in the ``queue_jobs`` table; claims use SKIP LOCKED."""

    def __init__(self, db: Database, owns_db: bool = True):
        self.db = db
        self.owns_db = owns_db

    async def _conn(self):
        return await self.db.get_pool()

    async def add(self, queue_name: str, name: str, payload: Any, options: JobOptions) -> Job:
        record = await queue_queries.insert_job(
            await self._conn(),
            queue_name=queue_name,
            name=name,
            payload=_dumps(payload) or "null",
            max_attempts=options.attempts,
            backoff_ms=options.backoff_ms,
        )
        return Job.model_validate(dict(record))

    async def claim(self, queue_name: str) -> Optional[Job]:
        record = await queue_queries.claim_next_job(await self._conn(), queue_name=queue_name)
        return _job_or_none(record)

    async def complete(self, job_id: str, return_value: Any) -> Optional[Job]:
        record = await queue_queries.complete_job(
            await self._conn(), job_id=int(job_id), return_value=_dumps(return_value)
        )
        return _job_or_none(record)

    async def retry(self, job_id: str, failed_reason: str, delay_ms: int) -> Optional[Job]:
        record = await queue_queries.retry_job(
            await self._conn(),
            job_id=int(job_id),
            failed_reason=failed_reason,
            delay_ms=delay_ms,
        )
        return _job_or_none(record)

    async def fail(self, job_id: str, failed_reason: str) -> Optional[Job]:
        record = await queue_queries.fail_job(
            await self._conn(), job_id=int(job_id), failed_reason=failed_reason
        )
        return _job_or_none(record)

    async def get(self, queue_name: str, job_id: str) -> Optional[Job]:
        parsed = _parse_id(job_id)
        if parsed is None:
            return None
        record = await queue_queries.get_job(
            await self._conn(), job_id=parsed, queue_name=queue_name
        )
        return _job_or_none(record)

    async def recover_stalled(self, queue_name: str, stalled_after_ms: int) -> tuple[list[Job], list[Job]]:
        conn = await self._conn()
        requeued = await queue_queries.requeue_stalled_jobs(
            conn, queue_name=queue_name, stalled_after_ms=stalled_after_ms
        )
        failed = await queue_queries.fail_stalled_jobs(
            conn, queue_name=queue_name, stalled_after_ms=stalled_after_ms
        )
        if requeued or failed:
            logger.warning(
                f"[{queue_name}] recovered stalled jobs: "
                f"{len(requeued)} re-queued, {len(failed)} failed"
            )
        return (
            [Job.model_validate(dict(r)) for r in requeued],
            [Job.model_validate(dict(r)) for r in failed],
        )

    async def list_jobs(self, queue_name: str, limit: int = 50) -> list[Job]:
        records = await queue_queries.list_jobs(
            await self._conn(), queue_name=queue_name, limit=limit
        )
        return [Job.model_validate(dict(r)) for r in records]

    async def close(self) -> None:
        if self.owns_db:
            await self.db.close()
