"""Pydantic models for the durable job queue."""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobOptions(BaseModel):
    attempts: int = Field(default=3, ge=1)
    backoff_ms: int = Field(default=2000, ge=0)


def backoff_delay_ms(attempts_made: int, base_ms: int) -> int:
    """Exponential backoff: base, 2*base, 4*base, ... for attempts 1, 2, 3, ..."""
    return base_ms * 2 ** max(attempts_made - 1, 0)


class Job(BaseModel):
    """One row of ``queue_jobs``."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    queue_name: str
    name: str
    payload: Any = None
    state: JobState = JobState.QUEUED
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_ms: int = 2000
    return_value: Any = None
    failed_reason: Optional[str] = None
    run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    @field_validator("payload", "return_value", mode="before")
    @classmethod
    def decode_json(cls, v):
        # asyncpg hands jsonb columns back as text
        if isinstance(v, str):
            return json.loads(v)
        return v

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempts_made, 0)


class JobStatus(BaseModel):
    state: Literal["queued", "active", "completed", "failed", "not_found"]
    progress: int = 0
    result: Any = None
    failed_reason: Optional[str] = None

    @classmethod
    def not_found(cls) -> "JobStatus":
        return cls(state="not_found")

    @classmethod
    def from_job(cls, job: Job) -> "JobStatus":
        return cls(
            state=job.state.value,
            progress=100 if job.state == JobState.COMPLETED else 0,
            result=job.return_value,
            failed_reason=job.failed_reason,
        )


class DeadLetterPayload(BaseModel):
    stage: str
    failed_at: datetime
    payload: Any = None
    message: str


class BestEffortResult(BaseModel):
    """Outcome of a side effect that must never fail its caller."""

    delivered: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "BestEffortResult":
        return cls(delivered=True)

    @classmethod
    def failed(cls, error: BaseException) -> "BestEffortResult":
        return cls(delivered=False, error=str(error))
