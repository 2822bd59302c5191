"""Shared fixtures for discovery tests: an in-memory run repository."""

import itertools
from datetime import datetime, timezone
from typing import Optional, Sequence

import pytest

from leadflow.services.discovery.models import DiscoveryRun, LeadFilters, RunStatus, UserStats
from leadflow.services.discovery.repo import IRunRepository
from leadflow.services.pipeline.models import Lead, QualityMeta


class InMemoryRunRepository(IRunRepository):
    """Applies the same forward-only status guards as the SQL."""

    def __init__(self, tier: Optional[str] = "free_trial", today_count: int = 0):
        self.tier = tier
        self.today_count = today_count
        self.runs: dict[int, DiscoveryRun] = {}
        self.links: set[tuple[int, int]] = set()
        self.leads: dict[int, Lead] = {}
        self.fail_links = False
        self._ids = itertools.count(1)

    async def create_run(self, user_id, query, city, business_category, requested_limit, provider="google_maps"):
        run = DiscoveryRun(
            id=next(self._ids),
            user_id=user_id,
            query=query,
            city=city,
            business_category=business_category,
            requested_limit=requested_limit,
            provider=provider,
            created_at=datetime.now(timezone.utc),
        )
        self.runs[run.id] = run
        self.today_count += 1
        return run.model_copy()

    async def attach_job(self, run_id, job_id):
        self.runs[run_id].job_id = job_id
        return True

    async def get_run(self, run_id, user_id=None):
        run = self.runs.get(run_id)
        if run is None or (user_id is not None and run.user_id != user_id):
            return None
        return run.model_copy()

    async def mark_running(self, run_id):
        run = self.runs[run_id]
        if run.status != RunStatus.QUEUED:
            return False
        run.status = RunStatus.RUNNING
        return True

    async def mark_completed(self, run_id, discovered_count, persisted_count, quality_meta: Optional[QualityMeta] = None):
        run = self.runs[run_id]
        if run.is_terminal:
            return False
        run.status = RunStatus.COMPLETED
        run.discovered_count = discovered_count
        run.persisted_count = persisted_count
        run.quality_meta = quality_meta
        return True

    async def mark_failed(self, run_id, error_message):
        run = self.runs[run_id]
        if run.is_terminal:
            return False
        run.status = RunStatus.FAILED
        run.error_message = error_message
        return True

    async def count_runs_since(self, user_id, since):
        return self.today_count

    async def get_subscription_tier(self, user_id):
        return self.tier

    async def upsert_run_leads(self, run_id, lead_ids: Sequence[int]):
        if self.fail_links:
            raise ConnectionError("links table unavailable")
        for lead_id in lead_ids:
            self.links.add((run_id, lead_id))
        return len(lead_ids)

    async def get_run_leads(self, run_id, limit, offset):
        ids = sorted(lead_id for r, lead_id in self.links if r == run_id)
        page = [self.leads[i] for i in ids[offset:offset + limit] if i in self.leads]
        return page, len(ids)

    async def get_user_leads(self, user_id, filters: LeadFilters, limit, offset, sort_by="created_at", sort_order="desc"):
        ids = sorted({lead_id for r, lead_id in self.links if self.runs[r].user_id == user_id})
        leads = [self.leads[i] for i in ids if i in self.leads]
        return leads[offset:offset + limit], len(leads)

    async def get_user_stats(self, user_id, since):
        runs = [r for r in self.runs.values() if r.user_id == user_id]
        return UserStats(total_runs=len(runs), today_runs=self.today_count)

    async def get_unmapped_completed_runs(self, user_id):
        linked = {r for r, _ in self.links}
        return [
            run.model_copy()
            for run in self.runs.values()
            if run.user_id == user_id
            and run.status == RunStatus.COMPLETED
            and (run.persisted_count or 0) > 0
            and run.id not in linked
        ]

    def links_for(self, run_id: int) -> list[int]:
        return sorted(lead_id for r, lead_id in self.links if r == run_id)


@pytest.fixture
def runs():
    return InMemoryRunRepository()
