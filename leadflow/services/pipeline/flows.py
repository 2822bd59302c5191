"""Prefect flow for one-shot lead ingestion.

    fetch ──→ clean ──→ enrich ──→ persist

Runs the same stage functions the queue workers run, as Prefect tasks, for
ad-hoc ingestion outside the discovery product.
"""

from loguru import logger
from prefect import flow, task

from leadflow.config import settings
from leadflow.db.db import Database
from leadflow.services.pipeline import stages
from leadflow.services.pipeline.repo import PostgresLeadRepository
from leadflow.services.places.client import GooglePlacesClient


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@task(retries=2, retry_delay_seconds=[2, 4], log_prints=True)
async def fetch_task(query: str, limit: int) -> dict:
    """Pull raw listings from Google Places."""
    async with GooglePlacesClient.from_settings(settings) as client:
        fetched = await stages.fetch({"query": query, "limit": limit}, client)
    return fetched.model_dump(mode="json")


@task(log_prints=True)
async def clean_task(payload: dict) -> dict:
    cleaned = await stages.clean(payload)
    return cleaned.model_dump(mode="json")


@task(log_prints=True)
async def enrich_task(payload: dict) -> dict:
    enriched = await stages.enrich(payload)
    return enriched.model_dump(mode="json")


@task(retries=2, retry_delay_seconds=[2, 4], log_prints=True)
async def persist_task(payload: dict) -> dict:
    """Upsert enriched leads into Postgres."""
    db = Database(settings)
    try:
        persisted = await stages.persist(payload, PostgresLeadRepository(db))
        return persisted.model_dump(mode="json")
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------


@flow(name="lead-ingestion", log_prints=True)
async def lead_ingestion_flow(query: str, limit: int = 60) -> dict:
    """Fetch, clean, enrich and persist leads for a free-text query.

    Args:
        query: Text search, e.g. "dentists in Austin".
        limit: Maximum listings to pull from the provider.
    """
    fetched = await fetch_task(query=query, limit=limit)
    cleaned = await clean_task(fetched)
    enriched = await enrich_task(cleaned)
    persisted = await persist_task(enriched)

    summary = {
        "query": persisted["query"],
        "quality_meta": persisted["quality_meta"],
        "persisted_count": persisted["persistence"]["persisted_count"],
        "rejected_count": len(persisted["rejected_leads"]),
    }
    logger.info(f"Lead ingestion complete: {summary}")
    return summary
