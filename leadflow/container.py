"""Process-level wiring.

Builds the long-lived objects one process needs (database pool, Places
client, repositories, the optional queue orchestrator and the discovery
service) and tears them down in reverse order.

Usage:
    async with build_container() as container:
        await container.discovery.start_discovery("user-1", "Austin", "plumbers")
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from loguru import logger

from leadflow.config import Settings, settings as default_settings
from leadflow.db.db import Database
from leadflow.services.discovery.repo import RunRepository
from leadflow.services.discovery.service import Service as DiscoveryService
from leadflow.services.pipeline.repo import PostgresLeadRepository
from leadflow.services.places.client import GooglePlacesClient
from leadflow.services.queue.backend import PostgresQueueBackend
from leadflow.services.queue.orchestrator import QueueOrchestrator, QueuePolicy


@dataclass
class Container:
    settings: Settings
    db: Database
    places: GooglePlacesClient
    leads: PostgresLeadRepository
    runs: RunRepository
    queue: Optional[QueueOrchestrator]
    discovery: DiscoveryService


def build_queue(
    settings: Settings,
    places: GooglePlacesClient,
    leads: PostgresLeadRepository,
    run_workers: bool = True,
) -> QueueOrchestrator:
    # Separate pool, closed by the backend on shutdown
    backend = PostgresQueueBackend(Database(settings))
    return QueueOrchestrator(
        backend,
        places,
        leads,
        policy=QueuePolicy.from_settings(settings),
        run_workers=run_workers,
    )


@asynccontextmanager
async def build_container(
    settings: Optional[Settings] = None,
    run_workers: bool = True,
) -> AsyncIterator[Container]:
    """Yield a wired Container.

    ``run_workers=False`` gives a producer-only queue: jobs can be enqueued
    and polled but this process never executes them.
    """
    settings = settings or default_settings
    db = Database(settings)
    places = GooglePlacesClient.from_settings(settings)
    leads = PostgresLeadRepository(db)
    runs = RunRepository(db)

    queue = None
    if settings.lead_pipeline_queue_enabled:
        queue = build_queue(settings, places, leads, run_workers=run_workers)
    else:
        logger.info("Lead pipeline queue disabled; discovery runs execute inline")

    discovery = DiscoveryService(
        runs,
        places,
        leads,
        queue=queue,
        default_limit=settings.discovery_default_limit,
    )

    try:
        yield Container(
            settings=settings,
            db=db,
            places=places,
            leads=leads,
            runs=runs,
            queue=queue,
            discovery=discovery,
        )
    finally:
        if queue is not None:
            await queue.shutdown()
        await places.aclose()
        await db.close()
