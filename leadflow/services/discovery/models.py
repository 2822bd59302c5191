"""Pydantic models for discovery runs and their read views."""

import json
import math
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from leadflow.services.pipeline.models import Lead, LeadStatus, QualityMeta


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})

SORTABLE_LEAD_COLUMNS = (
    "created_at",
    "business_name",
    "google_rating",
    "review_count",
    "city",
    "state",
)


class DiscoveryRun(BaseModel):
    """One user-initiated discovery request and its lifecycle.

    Status only moves forward and the counts are written once, at
    completion. Both rules are enforced by status guards in the SQL.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    query: str
    city: Optional[str] = None
    business_category: Optional[str] = None
    provider: str = "google_maps"
    requested_limit: int = 60
    status: RunStatus = RunStatus.QUEUED
    job_id: Optional[str] = None
    discovered_count: Optional[int] = None
    persisted_count: Optional[int] = None
    quality_meta: Optional[QualityMeta] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("job_id", mode="before")
    @classmethod
    def _job_id_as_str(cls, v):
        return str(v) if v is not None else None

    @field_validator("quality_meta", mode="before")
    @classmethod
    def _decode_quality_meta(cls, v):
        # asyncpg hands jsonb back as text unless a codec is registered
        if isinstance(v, str):
            return json.loads(v)
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class QuotaSnapshot(BaseModel):
    tier: str
    today_count: int
    daily_limit: int
    max_results_per_run: int

    @property
    def remaining(self) -> int:
        return max(self.daily_limit - self.today_count, 0)


class StartDiscoveryResult(BaseModel):
    run_id: int
    job_id: Optional[str] = None
    queued: bool
    quota: QuotaSnapshot


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if limit else 0,
        )


class DiscoveryResults(BaseModel):
    run: DiscoveryRun
    leads: list[Lead]
    pagination: Pagination


class LeadFilters(BaseModel):
    """Optional filters for a user's discovered leads. Unset fields are ignored."""

    city: Optional[str] = None
    state: Optional[str] = None
    business_category: Optional[str] = None
    status: Optional[LeadStatus] = None
    has_website: Optional[bool] = None
    min_rating: Optional[float] = None
    max_rating: Optional[float] = None
    business_status: Optional[str] = None
    has_phone: Optional[bool] = None
    price_level: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None


class LeadPage(BaseModel):
    leads: list[Lead]
    pagination: Pagination


class UserStats(BaseModel):
    total_runs: int = 0
    today_runs: int = 0
    total_leads: int = 0
    leads_no_website: int = 0
