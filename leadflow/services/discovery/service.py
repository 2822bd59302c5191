"""Discovery run service.

Turns a user's "find {category} in {city}" request into a tracked run:

    quota check -> create run (queued) -> discover job or inline pipeline
                -> poll job status -> reconcile (filter, complete, link leads)

Run status is only ever advanced by ``start_discovery`` (inline path) and
``sync_run_with_queue`` (queued path). Status is pulled by callers, never
pushed by workers.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional, Sequence

from loguru import logger

from leadflow.core.exceptions import public_error_message
from leadflow.core.logging import run_id_var, structured_logger as log, user_id_var
from leadflow.services.discovery.exceptions import RunNotFoundError
from leadflow.services.discovery.models import (
    DiscoveryResults,
    DiscoveryRun,
    LeadFilters,
    LeadPage,
    Pagination,
    RunStatus,
    StartDiscoveryResult,
    UserStats,
)
from leadflow.services.discovery.quota import QuotaEnforcer, start_of_local_day
from leadflow.services.discovery.repo import IRunRepository
from leadflow.services.pipeline import stages
from leadflow.services.pipeline.base import LeadRepository, ProviderClient
from leadflow.services.pipeline.models import FetchPayload, Lead, PipelineResult
from leadflow.services.queue.models import BestEffortResult
from leadflow.services.queue.orchestrator import QueueOrchestrator

DEFAULT_DISCOVERY_LIMIT = 60
RESULTS_PAGE_MAX = 200
MY_LEADS_PAGE_MAX = 100
JOB_FAILED_MESSAGE = "Discovery job failed"


# ============================================================================
# HELPERS
# ============================================================================


def clamp_limit(limit, maximum: int, default: int = DEFAULT_DISCOVERY_LIMIT) -> int:
    """Missing, zero or unparseable limits fall back to ``default``."""
    try:
        value = int(limit) if limit else default
    except (TypeError, ValueError):
        value = default
    return min(max(value, 1), maximum)


def clamp_page(page, limit, max_limit: int, default_limit: int = 20) -> tuple[int, int]:
    try:
        page = max(int(page or 1), 1)
    except (TypeError, ValueError):
        page = 1
    return page, clamp_limit(limit, max_limit, default=default_limit)


def build_discovery_query(business_category: Optional[str], city: Optional[str]) -> str:
    return f"{business_category or ''} in {city or ''}".strip()


def _contains(value: Optional[str], target: Optional[str]) -> bool:
    if not value or not target:
        return False
    return target.lower() in value.lower()


def filter_discovered_leads(
    leads: Iterable[Lead],
    city: Optional[str],
    business_category: Optional[str],
    requested_limit: Optional[int],
) -> list[Lead]:
    """Keep leads that plausibly belong to the requested city and category.

    A lead with a blank city (or category) is kept; the provider still found
    it for this query. A requested limit of 0 or None means no cap.
    """
    kept = []
    for lead in leads:
        city_match = (
            not city
            or not lead.city
            or _contains(lead.city, city)
            or _contains(lead.address, city)
        )
        category_match = (
            not business_category
            or not lead.business_category
            or _contains(lead.business_category, business_category)
        )
        if city_match and category_match:
            kept.append(lead)
    return kept[:requested_limit] if requested_limit else kept


# ============================================================================
# SERVICE INTERFACE
# ============================================================================


class IService(ABC):
    """Service interface for lead discovery runs."""

    @abstractmethod
    async def start_discovery(
        self,
        user_id: str,
        city: str,
        business_category: str,
        limit: Optional[int] = None,
    ) -> StartDiscoveryResult:
        """Admit, create and dispatch a discovery run."""
        pass

    @abstractmethod
    async def sync_run_with_queue(self, run_id: int, user_id: Optional[str] = None) -> DiscoveryRun:
        """Mirror the run's job state onto the run. Safe to call repeatedly."""
        pass

    @abstractmethod
    async def get_discovery_status(self, run_id: int, user_id: Optional[str] = None) -> DiscoveryRun:
        pass

    @abstractmethod
    async def get_discovery_results(
        self, run_id: int, user_id: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> DiscoveryResults:
        pass

    @abstractmethod
    async def get_my_discovered_leads(
        self,
        user_id: str,
        filters: Optional[LeadFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> LeadPage:
        pass

    @abstractmethod
    async def get_user_stats(self, user_id: str) -> UserStats:
        pass

    @abstractmethod
    async def repair_orphaned_runs(self, user_id: str) -> int:
        """Re-link leads for completed runs whose links were never written."""
        pass


# ============================================================================
# SERVICE IMPLEMENTATION
# ============================================================================


class Service(IService):
    """Discovery run service.

    ``queue`` is optional. Without it runs execute inline, inside the
    ``start_discovery`` call, and are terminal before it returns.
    """

    def __init__(
        self,
        runs: IRunRepository,
        provider: ProviderClient,
        leads: LeadRepository,
        queue: Optional[QueueOrchestrator] = None,
        default_limit: int = DEFAULT_DISCOVERY_LIMIT,
    ):
        self.runs = runs
        self.provider = provider
        self.leads = leads
        self.queue = queue
        self.default_limit = default_limit
        self.quota = QuotaEnforcer(runs)

    # -------------------------------------------------------------------------
    # START
    # -------------------------------------------------------------------------

    async def start_discovery(
        self,
        user_id: str,
        city: str,
        business_category: str,
        limit: Optional[int] = None,
    ) -> StartDiscoveryResult:
        user_id_var.set(user_id)
        quota = await self.quota.enforce(user_id)
        safe_limit = clamp_limit(limit, quota.max_results_per_run, default=self.default_limit)
        query = build_discovery_query(business_category, city)

        run = await self.runs.create_run(
            user_id=user_id,
            query=query,
            city=city,
            business_category=business_category,
            requested_limit=safe_limit,
        )
        run_id_var.set(run.id)
        log.info("Discovery run created", query=query, limit=safe_limit, tier=quota.tier)

        if self.queue is None:
            await self._run_inline(run, query, safe_limit)
            return StartDiscoveryResult(run_id=run.id, job_id=None, queued=False, quota=quota)

        try:
            job_id = await self.queue.enqueue_discovery_job({"query": query, "limit": safe_limit})
        except Exception as e:
            log.error("Failed to enqueue discovery job", error=str(e))
            await self.runs.mark_failed(run.id, public_error_message(e))
            raise

        await self.runs.attach_job(run.id, job_id)
        log.info("Discovery job queued", job_id=job_id)
        return StartDiscoveryResult(run_id=run.id, job_id=job_id, queued=True, quota=quota)

    async def _run_inline(self, run: DiscoveryRun, query: str, limit: int) -> None:
        logger.warning(
            f"Lead pipeline queue disabled; processing discovery run {run.id} synchronously"
        )
        await self.runs.mark_running(run.id)
        try:
            result = await stages.run_full(
                FetchPayload(query=query, limit=limit), self.provider, self.leads
            )
            await self.reconcile(run, result)
        except Exception as e:
            log.error("Inline discovery run failed", error=str(e))
            await self.runs.mark_failed(run.id, public_error_message(e))
            raise

    # -------------------------------------------------------------------------
    # SYNC / READ
    # -------------------------------------------------------------------------

    async def _get_run(self, run_id: int, user_id: Optional[str]) -> DiscoveryRun:
        run = await self.runs.get_run(run_id, user_id)
        if run is None:
            raise RunNotFoundError()
        return run

    async def sync_run_with_queue(self, run_id: int, user_id: Optional[str] = None) -> DiscoveryRun:
        run = await self._get_run(run_id, user_id)
        if not run.job_id or run.is_terminal:
            return run
        if self.queue is None:
            logger.warning(f"Run {run.id} has job {run.job_id} but no queue is configured")
            return run

        status = await self.queue.get_discovery_job_status(run.job_id)

        if status.state == "active" and run.status != RunStatus.RUNNING:
            await self.runs.mark_running(run.id)
        elif status.state == "completed" and status.result:
            await self.reconcile(run, PipelineResult.model_validate(status.result))
        elif status.state == "failed":
            await self.runs.mark_failed(run.id, status.failed_reason or JOB_FAILED_MESSAGE)
        else:
            return run

        return await self._get_run(run_id, user_id)

    async def get_discovery_status(self, run_id: int, user_id: Optional[str] = None) -> DiscoveryRun:
        return await self.sync_run_with_queue(run_id, user_id)

    async def get_discovery_results(
        self, run_id: int, user_id: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> DiscoveryResults:
        run = await self.sync_run_with_queue(run_id, user_id)
        page, limit = clamp_page(page, limit, RESULTS_PAGE_MAX)
        leads, total = await self.runs.get_run_leads(run.id, limit=limit, offset=(page - 1) * limit)
        return DiscoveryResults(
            run=run,
            leads=leads,
            pagination=Pagination.build(page, limit, total),
        )

    # -------------------------------------------------------------------------
    # RECONCILIATION
    # -------------------------------------------------------------------------

    async def reconcile(self, run: DiscoveryRun, result: PipelineResult) -> BestEffortResult:
        """Complete a run from its pipeline result and link its leads.

        Returns the outcome of the link write. A failed link write leaves the
        run completed but unlinked.
        """
        filtered = filter_discovered_leads(
            result.persisted_rows, run.city, run.business_category, run.requested_limit
        )
        completed = await self.runs.mark_completed(
            run.id,
            discovered_count=len(filtered),
            persisted_count=result.persisted_count or len(filtered),
            quality_meta=result.quality_meta,
        )
        if not completed:
            logger.info(f"Run {run.id} already terminal; skipping reconciliation")
            return BestEffortResult.ok()

        logger.info(
            f"Discovery run {run.id} completed: {len(filtered)} leads kept "
            f"of {len(result.persisted_rows)} persisted"
        )
        return await self._link_leads(run.id, [lead.id for lead in filtered])

    async def _link_leads(self, run_id: int, lead_ids: Sequence[int]) -> BestEffortResult:
        try:
            await self.runs.upsert_run_leads(run_id, lead_ids)
            return BestEffortResult.ok()
        except Exception as e:
            logger.error(f"Failed to link {len(lead_ids)} leads to discovery run {run_id}: {e}")
            return BestEffortResult.failed(e)

    async def repair_orphaned_runs(self, user_id: str) -> int:
        """Re-link completed runs that have no lead links, from their job result.

        Only queued runs can be repaired: the job keeps the persisted rows.
        Inline runs have no retained result and stay unlinked.
        """
        orphans = await self.runs.get_unmapped_completed_runs(user_id)
        repaired = 0
        for run in orphans:
            if not run.job_id or self.queue is None:
                logger.warning(f"Cannot repair discovery run {run.id}: no retained job result")
                continue

            status = await self.queue.get_discovery_job_status(run.job_id)
            if status.state != "completed" or not status.result:
                logger.warning(f"Cannot repair discovery run {run.id}: job is {status.state}")
                continue

            result = PipelineResult.model_validate(status.result)
            filtered = filter_discovered_leads(
                result.persisted_rows, run.city, run.business_category, run.requested_limit
            )
            linked = await self._link_leads(run.id, [lead.id for lead in filtered])
            if linked.delivered:
                repaired += 1

        if repaired:
            logger.info(f"Repaired {repaired} orphaned discovery runs for user {user_id}")
        return repaired

    async def _repair_quietly(self, user_id: str) -> None:
        try:
            await self.repair_orphaned_runs(user_id)
        except Exception as e:
            logger.warning(f"Repair of orphaned discovery runs skipped: {e}")

    # -------------------------------------------------------------------------
    # USER VIEWS
    # -------------------------------------------------------------------------

    async def get_my_discovered_leads(
        self,
        user_id: str,
        filters: Optional[LeadFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> LeadPage:
        await self._repair_quietly(user_id)
        page, limit = clamp_page(page, limit, MY_LEADS_PAGE_MAX)
        leads, total = await self.runs.get_user_leads(
            user_id,
            filters or LeadFilters(),
            limit=limit,
            offset=(page - 1) * limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return LeadPage(leads=leads, pagination=Pagination.build(page, limit, total))

    async def get_user_stats(self, user_id: str) -> UserStats:
        await self._repair_quietly(user_id)
        return await self.runs.get_user_stats(user_id, start_of_local_day())
