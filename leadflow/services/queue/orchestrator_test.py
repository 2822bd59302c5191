"""Unit tests for the queue orchestrator over the in-memory backend."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from leadflow.services.pipeline.base import LeadRepository, ProviderClient
from leadflow.services.pipeline.models import Lead, PersistenceResult, RawRecord
from leadflow.services.places.exceptions import (
    PlacesRequestDeniedError,
    PlacesUpstreamError,
)
from leadflow.services.queue.models import JobState, JobStatus
from leadflow.services.queue.orchestrator import (
    DEAD_LETTER_QUEUE,
    QUEUE_NAMES,
    QueueOrchestrator,
    QueuePolicy,
    Stage,
)


RAW = [
    RawRecord(
        business_name="Joe's Plumbing",
        address="123 Main St, Austin, TX 78701, USA",
        phone="5125551234",
        external_place_id="place-1",
    ),
    RawRecord(business_name="No Address", external_place_id="place-2"),
]


class FakeProvider(ProviderClient):
    def __init__(self, records=None, error=None):
        self.records = records if records is not None else RAW
        self.error = error
        self.calls = 0

    async def search(self, query, max_results):
        self.calls += 1
        if self.error:
            raise self.error
        return self.records[:max_results]


class FakeRepository(LeadRepository):
    def __init__(self):
        self.saved = []

    async def upsert_leads(self, leads):
        self.saved.extend(leads)
        rows = [Lead(id=i + 1, **lead.model_dump()) for i, lead in enumerate(leads)]
        return PersistenceResult(persisted_count=len(rows), rows=rows)


POLICY = QueuePolicy(attempts=2, backoff_ms=0, concurrency=2, poll_interval=0.01)


async def _wait_for_status(orchestrator, job_id, states=("completed", "failed"), timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        status = await orchestrator.get_discovery_job_status(job_id)
        if status.state in states:
            return status
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {status.state}")
        await asyncio.sleep(0.01)


async def _wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def orchestrator_factory(backend):
    created = []

    def make(provider=None, repository=None, policy=POLICY):
        orchestrator = QueueOrchestrator(
            backend,
            provider or FakeProvider(),
            repository or FakeRepository(),
            policy=policy,
        )
        created.append(orchestrator)
        return orchestrator

    yield make

    for orchestrator in created:
        await orchestrator.shutdown()


# ---------------------------------------------------------------------------
# policy
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestQueuePolicy:
    def test_defaults(self):
        policy = QueuePolicy()
        assert (policy.attempts, policy.backoff_ms, policy.concurrency) == (3, 2000, 2)

    def test_from_settings(self):
        from leadflow.config import Settings

        settings = Settings(
            _env_file=None,
            lead_pipeline_max_attempts=5,
            lead_pipeline_backoff_ms=100,
            lead_pipeline_concurrency=4,
        )
        policy = QueuePolicy.from_settings(settings)
        assert policy.job_options.attempts == 5
        assert policy.job_options.backoff_ms == 100
        assert policy.concurrency == 4

    def test_queue_names(self):
        assert QUEUE_NAMES[Stage.DISCOVER] == "lead-discovery-queue"
        assert QUEUE_NAMES[Stage.PERSIST] == "lead-persist-queue"
        assert DEAD_LETTER_QUEUE == "lead-dead-letter-queue"


# ---------------------------------------------------------------------------
# discover jobs
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestDiscoveryJobs:
    @pytest.mark.asyncio
    async def test_enqueue_starts_lazily_and_runs_full_pipeline(self, orchestrator_factory):
        repository = FakeRepository()
        orchestrator = orchestrator_factory(repository=repository)
        assert orchestrator.started is False

        job_id = await orchestrator.enqueue_discovery_job({"query": "plumbers in Austin", "limit": 60})

        assert orchestrator.started is True
        status = await _wait_for_status(orchestrator, job_id)
        assert status.state == "completed"
        assert status.result["query"] == "plumbers in Austin"
        assert status.result["persisted_count"] == 1
        assert status.result["rejected_count"] == 1
        assert status.result["persisted_rows"][0]["external_place_id"] == "place-1"
        assert len(repository.saved) == 1

    @pytest.mark.asyncio
    async def test_unknown_job_is_not_found(self, orchestrator_factory):
        orchestrator = orchestrator_factory()
        status = await orchestrator.get_discovery_job_status("999")
        assert status == JobStatus(state="not_found")

    @pytest.mark.asyncio
    async def test_retryable_failure_exhausts_attempts_then_dead_letters(
        self, orchestrator_factory, backend
    ):
        provider = FakeProvider(error=PlacesUpstreamError("Google Maps API upstream error"))
        orchestrator = orchestrator_factory(provider=provider)

        job_id = await orchestrator.enqueue_discovery_job({"query": "plumbers in Austin", "limit": 10})
        status = await _wait_for_status(orchestrator, job_id)

        assert status.state == "failed"
        assert status.failed_reason == "Google Maps API upstream error"
        assert provider.calls == 2

        await _wait_for(lambda: backend.in_queue(DEAD_LETTER_QUEUE))
        letters = await orchestrator.get_dead_letters()
        assert len(letters) == 1
        assert letters[0].stage == "discover"
        assert letters[0].payload == {"query": "plumbers in Austin", "limit": 10}
        assert letters[0].message == "Google Maps API upstream error"

    @pytest.mark.asyncio
    async def test_terminal_failure_is_not_retried(self, orchestrator_factory):
        provider = FakeProvider(error=PlacesRequestDeniedError("Google Maps API request denied"))
        orchestrator = orchestrator_factory(provider=provider)

        job_id = await orchestrator.enqueue_discovery_job({"query": "plumbers in Austin"})
        status = await _wait_for_status(orchestrator, job_id)

        assert status.state == "failed"
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_exhausted_stalled_job_is_dead_lettered(self, orchestrator_factory, backend):
        orchestrator = orchestrator_factory().start()
        payload = {"query": "plumbers in Austin", "limit": 10}
        job = await backend.add(QUEUE_NAMES[Stage.DISCOVER], "discover-leads", payload, POLICY.job_options)
        stalled = backend.jobs[job.id]
        stalled.state = JobState.ACTIVE
        stalled.attempts_made = POLICY.attempts
        stalled.started_at = datetime.now(timezone.utc) - timedelta(hours=1)

        _, failed = await orchestrator.workers[Stage.DISCOVER].recover_stalled()

        assert [j.id for j in failed] == [job.id]
        status = await orchestrator.get_discovery_job_status(job.id)
        assert status.state == "failed"
        letters = await orchestrator.get_dead_letters()
        assert len(letters) == 1
        assert letters[0].stage == "discover"
        assert letters[0].payload == payload
        assert letters[0].message == "job stalled more than allowable limit"

    @pytest.mark.asyncio
    async def test_dead_letter_failure_is_reported_not_raised(self, orchestrator_factory, backend):
        backend.fail_on_add.add(DEAD_LETTER_QUEUE)
        orchestrator = orchestrator_factory(
            provider=FakeProvider(error=PlacesRequestDeniedError("denied"))
        )
        orchestrator.start()
        job = await orchestrator.queues[Stage.DISCOVER].add("discover-leads", {"query": "x"})

        result = await orchestrator.forward_to_dead_letter(Stage.DISCOVER, job, RuntimeError("boom"))

        assert result.delivered is False
        assert "cannot reach" in result.error


# ---------------------------------------------------------------------------
# staged jobs
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestStagedJobs:
    @pytest.mark.asyncio
    async def test_fetch_job_hands_off_through_every_stage(self, orchestrator_factory, backend):
        repository = FakeRepository()
        orchestrator = orchestrator_factory(repository=repository)

        await orchestrator.enqueue_fetch_job({"query": "plumbers in Austin", "limit": 60})

        persist_queue = QUEUE_NAMES[Stage.PERSIST]
        await _wait_for(
            lambda: any(j.state == JobState.COMPLETED for j in backend.in_queue(persist_queue))
        )

        for stage in (Stage.FETCH, Stage.CLEAN, Stage.ENRICH, Stage.PERSIST):
            jobs = backend.in_queue(QUEUE_NAMES[stage])
            assert len(jobs) == 1, stage
            assert jobs[0].state == JobState.COMPLETED

        enrich_job = backend.in_queue(QUEUE_NAMES[Stage.ENRICH])[0]
        assert enrich_job.payload["quality_meta"]["valid_count"] == 1
        assert [lead.external_place_id for lead in repository.saved] == ["place-1"]
        assert backend.in_queue(QUEUE_NAMES[Stage.DISCOVER]) == []


# ---------------------------------------------------------------------------
# lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_shutdown_before_start_is_safe(self, backend):
        orchestrator = QueueOrchestrator(backend, FakeProvider(), FakeRepository(), policy=POLICY)
        await orchestrator.shutdown()
        assert backend.closed is False

    @pytest.mark.asyncio
    async def test_shutdown_closes_workers_queues_backend_once(self, backend):
        orchestrator = QueueOrchestrator(backend, FakeProvider(), FakeRepository(), policy=POLICY)
        orchestrator.start()
        workers = list(orchestrator.workers.values())
        queues = list(orchestrator.queues.values())

        await orchestrator.shutdown()
        await orchestrator.shutdown()

        assert all(not w.running for w in workers)
        assert all(q.closed for q in queues)
        assert backend.closed is True
        assert orchestrator.started is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, backend):
        orchestrator = QueueOrchestrator(backend, FakeProvider(), FakeRepository(), policy=POLICY)
        orchestrator.start()
        workers = dict(orchestrator.workers)
        orchestrator.start()
        assert orchestrator.workers == workers
        assert set(workers) == set(Stage)
        await orchestrator.shutdown()
