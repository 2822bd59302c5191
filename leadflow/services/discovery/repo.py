"""Repository for discovery runs and their run -> lead links.

Error Handling Contract:
- Status transitions return False when the run is already past that state
- Database errors are logged and raised as DiscoveryStorageError with a
  stable code; the raw driver message stays in the logs
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg
from loguru import logger

from leadflow.db.db import Database
from leadflow.db.sql_loader import discovery_queries as queries
from leadflow.services.discovery.exceptions import DiscoveryStorageError
from leadflow.services.discovery.models import (
    SORTABLE_LEAD_COLUMNS,
    DiscoveryRun,
    LeadFilters,
    UserStats,
)
from leadflow.services.pipeline.models import Lead, QualityMeta

DB_ERRORS = (asyncpg.PostgresError, OSError)


def build_lead_filter_clause(filters: LeadFilters, first_param: int) -> tuple[list[str], list[Any]]:
    """Translate filters into SQL conditions on ``l`` plus positional params."""
    conditions: list[str] = []
    params: list[Any] = []

    def add(template: str, value: Any):
        params.append(value)
        conditions.append(template.format(p=f"${first_param + len(params) - 1}"))

    for column in ("city", "state", "business_category"):
        value = getattr(filters, column)
        if value:
            add(f"l.{column} ILIKE {{p}}", f"%{value}%")

    if filters.status is not None:
        add("l.status = {p}", filters.status.value)
    if filters.has_website is not None:
        add("l.has_website = {p}", filters.has_website)
    if filters.min_rating is not None:
        add("l.google_rating >= {p}", filters.min_rating)
    if filters.max_rating is not None:
        add("l.google_rating <= {p}", filters.max_rating)
    if filters.business_status:
        add("l.business_status = {p}", filters.business_status)
    if filters.has_phone is True:
        conditions.append(
            "(NULLIF(l.phone, '') IS NOT NULL OR NULLIF(l.international_phone_number, '') IS NOT NULL)"
        )
    elif filters.has_phone is False:
        conditions.append("(l.phone IS NULL AND l.international_phone_number IS NULL)")
    if filters.price_level:
        add("l.price_level = {p}", filters.price_level)
    if filters.created_after is not None:
        add("l.created_at >= {p}", filters.created_after)
    if filters.created_before is not None:
        add("l.created_at <= {p}", filters.created_before)

    return conditions, params


def build_user_leads_sql(
    filters: LeadFilters, sort_by: str, sort_order: str
) -> tuple[str, str, list[Any]]:
    """Return (page_sql, count_sql, params) for a user's discovered leads.

    ``$1`` is the user id; filter params follow; the page query takes LIMIT
    and OFFSET as the last two params.
    """
    if sort_by not in SORTABLE_LEAD_COLUMNS:
        sort_by = "created_at"
    direction = "ASC" if sort_order == "asc" else "DESC"

    conditions, params = build_lead_filter_clause(filters, first_param=2)
    where = " AND ".join(["TRUE", *conditions])

    base = f"""
        FROM leads l
        WHERE l.id IN (
            SELECT m.lead_id
            FROM lead_discovery_leads m
            JOIN lead_discovery_runs r ON r.id = m.discovery_run_id
            WHERE r.user_id = $1 AND r.status = 'completed'
        )
        AND {where}
    """
    limit_param = len(params) + 2
    page_sql = (
        f"SELECT l.* {base} ORDER BY l.{sort_by} {direction} NULLS LAST, l.id "
        f"LIMIT ${limit_param} OFFSET ${limit_param + 1}"
    )
    count_sql = f"SELECT count(*) {base}"
    return page_sql, count_sql, params


class IRunRepository(ABC):
    """Storage for discovery runs."""

    @abstractmethod
    async def create_run(
        self,
        user_id: str,
        query: str,
        city: Optional[str],
        business_category: Optional[str],
        requested_limit: int,
        provider: str = "google_maps",
    ) -> DiscoveryRun:
        ...

    @abstractmethod
    async def attach_job(self, run_id: int, job_id: str) -> bool:
        ...

    @abstractmethod
    async def get_run(self, run_id: int, user_id: Optional[str] = None) -> Optional[DiscoveryRun]:
        ...

    @abstractmethod
    async def mark_running(self, run_id: int) -> bool:
        ...

    @abstractmethod
    async def mark_completed(
        self,
        run_id: int,
        discovered_count: int,
        persisted_count: int,
        quality_meta: Optional[QualityMeta] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def mark_failed(self, run_id: int, error_message: str) -> bool:
        ...

    @abstractmethod
    async def count_runs_since(self, user_id: str, since: datetime) -> int:
        ...

    @abstractmethod
    async def get_subscription_tier(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def upsert_run_leads(self, run_id: int, lead_ids: Sequence[int]) -> int:
        """Link leads to a run. Existing links are left as they are."""
        ...

    @abstractmethod
    async def get_run_leads(self, run_id: int, limit: int, offset: int) -> tuple[list[Lead], int]:
        """One page of a run's leads plus the total number linked."""
        ...

    @abstractmethod
    async def get_user_leads(
        self,
        user_id: str,
        filters: LeadFilters,
        limit: int,
        offset: int,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[Lead], int]:
        ...

    @abstractmethod
    async def get_user_stats(self, user_id: str, since: datetime) -> UserStats:
        ...

    @abstractmethod
    async def get_unmapped_completed_runs(self, user_id: str) -> list[DiscoveryRun]:
        ...


class RunRepository(IRunRepository):
    def __init__(self, db: Database):
        self.db = db

    async def _conn(self):
        return await self.db.get_pool()

    async def create_run(
        self,
        user_id: str,
        query: str,
        city: Optional[str],
        business_category: Optional[str],
        requested_limit: int,
        provider: str = "google_maps",
    ) -> DiscoveryRun:
        try:
            record = await queries.insert_discovery_run(
                await self._conn(),
                user_id=user_id,
                query=query,
                city=city,
                business_category=business_category,
                requested_limit=requested_limit,
                provider=provider,
            )
        except DB_ERRORS as e:
            logger.error(f"Failed to create discovery run for user {user_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to create discovery run", code="DISCOVERY_RUN_CREATE_FAILED"
            ) from e
        return DiscoveryRun.model_validate(dict(record))

    async def attach_job(self, run_id: int, job_id: str) -> bool:
        try:
            record = await queries.attach_job_to_run(await self._conn(), run_id=run_id, job_id=job_id)
        except DB_ERRORS as e:
            logger.error(f"Failed to attach job {job_id} to run {run_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to attach job to discovery run", code="DISCOVERY_JOB_ATTACH_FAILED"
            ) from e
        return record is not None

    async def get_run(self, run_id: int, user_id: Optional[str] = None) -> Optional[DiscoveryRun]:
        try:
            record = await queries.get_discovery_run(await self._conn(), run_id=run_id, user_id=user_id)
        except DB_ERRORS as e:
            logger.error(f"Failed to load discovery run {run_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to load discovery run", code="DISCOVERY_RUN_FETCH_FAILED"
            ) from e
        return DiscoveryRun.model_validate(dict(record)) if record else None

    async def mark_running(self, run_id: int) -> bool:
        try:
            record = await queries.mark_run_running(await self._conn(), run_id=run_id)
        except DB_ERRORS as e:
            logger.error(f"Failed to mark run {run_id} running: {e}")
            raise DiscoveryStorageError(
                "Failed to update discovery run", code="DISCOVERY_RUN_UPDATE_FAILED"
            ) from e
        return record is not None

    async def mark_completed(
        self,
        run_id: int,
        discovered_count: int,
        persisted_count: int,
        quality_meta: Optional[QualityMeta] = None,
    ) -> bool:
        try:
            record = await queries.mark_run_completed(
                await self._conn(),
                run_id=run_id,
                discovered_count=discovered_count,
                persisted_count=persisted_count,
                quality_meta=quality_meta.model_dump_json() if quality_meta else None,
            )
        except DB_ERRORS as e:
            logger.error(f"Failed to mark run {run_id} completed: {e}")
            raise DiscoveryStorageError(
                "Failed to complete discovery run", code="DISCOVERY_RUN_COMPLETE_FAILED"
            ) from e
        return record is not None

    async def mark_failed(self, run_id: int, error_message: str) -> bool:
        try:
            record = await queries.mark_run_failed(
                await self._conn(), run_id=run_id, error_message=error_message
            )
        except DB_ERRORS as e:
            logger.error(f"Failed to mark run {run_id} failed: {e}")
            raise DiscoveryStorageError(
                "Failed to update discovery run", code="DISCOVERY_RUN_UPDATE_FAILED"
            ) from e
        return record is not None

    async def count_runs_since(self, user_id: str, since: datetime) -> int:
        try:
            count = await queries.count_runs_since(await self._conn(), user_id=user_id, since=since)
        except DB_ERRORS as e:
            logger.error(f"Failed to count discovery runs for user {user_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to check discovery quota", code="DISCOVERY_QUOTA_CHECK_FAILED"
            ) from e
        return int(count or 0)

    async def get_subscription_tier(self, user_id: str) -> Optional[str]:
        try:
            return await queries.get_user_subscription_tier(await self._conn(), user_id=user_id)
        except DB_ERRORS as e:
            logger.error(f"Failed to load subscription tier for user {user_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to check discovery quota", code="DISCOVERY_QUOTA_CHECK_FAILED"
            ) from e

    async def upsert_run_leads(self, run_id: int, lead_ids: Sequence[int]) -> int:
        ids = sorted({int(i) for i in lead_ids if i is not None})
        if not ids:
            return 0
        try:
            await queries.upsert_run_leads(await self._conn(), run_id=run_id, lead_ids=ids)
        except DB_ERRORS as e:
            logger.error(f"Failed to link {len(ids)} leads to run {run_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to save discovery run leads", code="DISCOVERY_RUN_LEADS_SAVE_FAILED"
            ) from e
        return len(ids)

    async def get_run_leads(self, run_id: int, limit: int, offset: int) -> tuple[list[Lead], int]:
        try:
            conn = await self._conn()
            records = await queries.get_run_leads(conn, run_id=run_id, limit=limit, offset=offset)
            total = await queries.count_run_leads(conn, run_id=run_id)
        except DB_ERRORS as e:
            logger.error(f"Failed to load leads for run {run_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to fetch discovery results", code="DISCOVERY_RESULTS_FETCH_FAILED"
            ) from e
        return [Lead.model_validate(dict(r)) for r in records], int(total or 0)

    async def get_user_leads(
        self,
        user_id: str,
        filters: LeadFilters,
        limit: int,
        offset: int,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[Lead], int]:
        page_sql, count_sql, params = build_user_leads_sql(filters, sort_by, sort_order)
        try:
            records = await self.db.fetch(page_sql, user_id, *params, limit, offset)
            total = await self.db.fetchval(count_sql, user_id, *params)
        except DB_ERRORS as e:
            logger.error(f"Failed to load discovered leads for user {user_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to fetch leads", code="MY_LEADS_FETCH_FAILED"
            ) from e
        return [Lead.model_validate(dict(r)) for r in records], int(total or 0)

    async def get_user_stats(self, user_id: str, since: datetime) -> UserStats:
        try:
            record = await queries.get_user_stats(await self._conn(), user_id=user_id, since=since)
        except DB_ERRORS as e:
            logger.error(f"Failed to load discovery stats for user {user_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to fetch discovery stats", code="DISCOVERY_STATS_FETCH_FAILED"
            ) from e
        return UserStats.model_validate(dict(record)) if record else UserStats()

    async def get_unmapped_completed_runs(self, user_id: str) -> list[DiscoveryRun]:
        try:
            records = await queries.get_unmapped_completed_runs(await self._conn(), user_id=user_id)
        except DB_ERRORS as e:
            logger.error(f"Failed to list unmapped runs for user {user_id}: {e}")
            raise DiscoveryStorageError(
                "Failed to list discovery runs", code="DISCOVERY_RUNS_FETCH_FAILED"
            ) from e
        return [DiscoveryRun.model_validate(dict(r)) for r in records]
