"""Queue orchestrator for the lead pipeline.

    discover ──→ run_full (one job does all four stages)

    fetch ──→ clean ──→ enrich ──→ persist   (one queue per stage)

    any stage, out of attempts ──→ dead-letter

Each stage worker, on success, enqueues the next stage with its full output.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from leadflow.config import Settings
from leadflow.services.pipeline import stages
from leadflow.services.pipeline.base import LeadRepository, ProviderClient
from leadflow.services.pipeline.models import utcnow
from leadflow.services.queue.backend import QueueBackend
from leadflow.services.queue.models import (
    BestEffortResult,
    DeadLetterPayload,
    Job,
    JobOptions,
    JobStatus,
)
from leadflow.services.queue.queue import Queue
from leadflow.services.queue.worker import Worker


class Stage(str, Enum):
    DISCOVER = "discover"
    FETCH = "fetch"
    CLEAN = "clean"
    ENRICH = "enrich"
    PERSIST = "persist"


QUEUE_NAMES = {
    Stage.DISCOVER: "lead-discovery-queue",
    Stage.FETCH: "lead-fetch-queue",
    Stage.CLEAN: "lead-clean-queue",
    Stage.ENRICH: "lead-enrich-queue",
    Stage.PERSIST: "lead-persist-queue",
}
DEAD_LETTER_QUEUE = "lead-dead-letter-queue"

JOB_NAMES = {
    Stage.DISCOVER: "discover-leads",
    Stage.FETCH: "fetch-leads",
    Stage.CLEAN: "clean-leads",
    Stage.ENRICH: "enrich-leads",
    Stage.PERSIST: "persist-leads",
}

NEXT_STAGE = {
    Stage.FETCH: Stage.CLEAN,
    Stage.CLEAN: Stage.ENRICH,
    Stage.ENRICH: Stage.PERSIST,
}


@dataclass
class QueuePolicy:
    attempts: int = 3
    backoff_ms: int = 2000
    concurrency: int = 2
    poll_interval: float = 1.0
    stalled_after: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueuePolicy":
        return cls(
            attempts=settings.lead_pipeline_max_attempts,
            backoff_ms=settings.lead_pipeline_backoff_ms,
            concurrency=settings.lead_pipeline_concurrency,
            poll_interval=settings.lead_pipeline_poll_interval,
            stalled_after=settings.lead_pipeline_stalled_after,
        )

    @property
    def job_options(self) -> JobOptions:
        return JobOptions(attempts=self.attempts, backoff_ms=self.backoff_ms)


class QueueOrchestrator:
    """Owns the stage queues, their workers and the dead-letter queue.

    Constructed explicitly and started either with ``start()`` or lazily by
    the first enqueue/status call. ``shutdown()`` closes workers, then
    queues, then the backend; it is idempotent and safe before ``start()``.
    """

    def __init__(
        self,
        backend: QueueBackend,
        provider: ProviderClient,
        repository: LeadRepository,
        policy: Optional[QueuePolicy] = None,
        run_workers: bool = True,
    ):
        self.backend = backend
        self.provider = provider
        self.repository = repository
        self.policy = policy or QueuePolicy()
        self.run_workers = run_workers
        self.queues: dict[Stage, Queue] = {}
        self.dead_letter_queue: Optional[Queue] = None
        self.workers: dict[Stage, Worker] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> "QueueOrchestrator":
        if self._started:
            return self

        options = self.policy.job_options
        self.queues = {
            stage: Queue(name, self.backend, options) for stage, name in QUEUE_NAMES.items()
        }
        self.dead_letter_queue = Queue(
            DEAD_LETTER_QUEUE, self.backend, JobOptions(attempts=1, backoff_ms=0)
        )

        if self.run_workers:
            for stage in Stage:
                worker = Worker(
                    self.queues[stage],
                    self._processor_for(stage),
                    concurrency=self.policy.concurrency,
                    poll_interval=self.policy.poll_interval,
                    stalled_after=self.policy.stalled_after,
                    on_failed=self._failure_handler_for(stage),
                )
                worker.start()
                self.workers[stage] = worker

        self._started = True
        logger.info("Lead ingestion queue started")
        return self

    async def shutdown(self):
        if not self._started:
            return
        self._started = False

        for worker in self.workers.values():
            await worker.close()
        for queue in [*self.queues.values(), self.dead_letter_queue]:
            if queue is not None:
                await queue.close()
        await self.backend.close()

        self.workers = {}
        self.queues = {}
        self.dead_letter_queue = None
        logger.info("Lead ingestion queue shut down")

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def enqueue_discovery_job(self, payload: dict) -> str:
        self.start()
        job = await self.queues[Stage.DISCOVER].add(JOB_NAMES[Stage.DISCOVER], payload)
        return job.id

    async def enqueue_fetch_job(self, payload: dict) -> str:
        self.start()
        job = await self.queues[Stage.FETCH].add(JOB_NAMES[Stage.FETCH], payload)
        return job.id

    async def get_discovery_job_status(self, job_id: str) -> JobStatus:
        self.start()
        return await self.queues[Stage.DISCOVER].get_status(job_id)

    async def get_dead_letters(self, limit: int = 50) -> list[DeadLetterPayload]:
        self.start()
        jobs = await self.dead_letter_queue.list_jobs(limit=limit)
        return [DeadLetterPayload.model_validate(job.payload) for job in jobs]

    # ------------------------------------------------------------------
    # Stage processors
    # ------------------------------------------------------------------

    def _processor_for(self, stage: Stage) -> Callable[[Job], Awaitable[Any]]:
        async def process(job: Job) -> Any:
            return await self._run_stage(stage, job.payload)

        return process

    async def _run_stage(self, stage: Stage, payload: Any) -> Any:
        if stage == Stage.DISCOVER:
            result = await stages.run_full(payload, self.provider, self.repository)
            return result.model_dump(mode="json")

        if stage == Stage.FETCH:
            output = await stages.fetch(payload, self.provider)
        elif stage == Stage.CLEAN:
            output = await stages.clean(payload)
        elif stage == Stage.ENRICH:
            output = await stages.enrich(payload)
        else:
            output = await stages.persist(payload, self.repository)

        data = output.model_dump(mode="json")
        next_stage = NEXT_STAGE.get(stage)
        if next_stage is not None:
            await self.queues[next_stage].add(JOB_NAMES[next_stage], data)
        return data

    # ------------------------------------------------------------------
    # Dead-lettering
    # ------------------------------------------------------------------

    def _failure_handler_for(self, stage: Stage) -> Callable[[Job, BaseException], Awaitable[Any]]:
        async def on_failed(job: Job, error: BaseException) -> BestEffortResult:
            logger.error(f"Lead pipeline stage {stage.value} failed: {error}")
            return await self.forward_to_dead_letter(stage, job, error)

        return on_failed

    async def forward_to_dead_letter(
        self, stage: Stage, job: Job, error: BaseException
    ) -> BestEffortResult:
        """Copy a failed job to the dead-letter queue. Never raises."""
        try:
            entry = DeadLetterPayload(
                stage=stage.value,
                failed_at=utcnow(),
                payload=job.payload,
                message=str(error),
            )
            await self.dead_letter_queue.add("dead-letter", entry.model_dump(mode="json"))
            return BestEffortResult.ok()
        except Exception as e:
            logger.error(f"Failed to forward job {job.id} to dead-letter queue: {e}")
            return BestEffortResult.failed(e)
