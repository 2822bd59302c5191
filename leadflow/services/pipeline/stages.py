"""The four pipeline stages and their sequential composition.

Each stage takes the previous stage's envelope (a model or its JSON dict,
as it comes off a queue) and returns a new envelope carrying everything
forward.
"""

from typing import Union

from loguru import logger

from leadflow.core.logging import log_execution_time
from leadflow.services.pipeline import quality
from leadflow.services.pipeline.base import LeadRepository, ProviderClient
from leadflow.services.pipeline.models import (
    CleanEnvelope,
    EnrichEnvelope,
    FetchEnvelope,
    FetchPayload,
    LeadStatus,
    PersistEnvelope,
    PipelineResult,
    QualityMeta,
    RejectedLead,
    utcnow,
)


def _carry(payload, envelope_type) -> dict:
    """Fields of ``payload`` declared on ``envelope_type``, models left intact."""
    return {name: getattr(payload, name) for name in envelope_type.model_fields}


async def fetch(
    payload: Union[FetchPayload, dict], provider: ProviderClient
) -> FetchEnvelope:
    """Pull raw listings from the provider. Provider errors propagate as-is."""
    payload = FetchPayload.model_validate(payload, from_attributes=True)
    raw_leads = await provider.search(payload.query, max_results=payload.limit)
    logger.info(f"[fetch] '{payload.query}' returned {len(raw_leads)} raw listings")
    return FetchEnvelope(
        query=payload.query,
        limit=payload.limit,
        raw_leads=raw_leads,
        source_updated_at=utcnow(),
    )


async def clean(payload: Union[FetchEnvelope, dict]) -> CleanEnvelope:
    """Normalize, deduplicate and validate. Invalid leads go to ``rejected_leads``."""
    payload = FetchEnvelope.model_validate(payload, from_attributes=True)

    normalized = [quality.normalize(raw) for raw in payload.raw_leads]
    deduped = quality.deduplicate(normalized)

    valid_leads = []
    rejected_leads = []
    for lead in deduped:
        result = quality.validate(lead)
        if result.is_valid:
            valid_leads.append(lead)
        else:
            rejected_leads.append(RejectedLead(lead=lead, errors=result.errors))

    quality_meta = QualityMeta(
        input_count=len(payload.raw_leads),
        deduped_count=len(deduped),
        valid_count=len(valid_leads),
        rejected_count=len(rejected_leads),
    )
    if rejected_leads:
        logger.debug(
            f"[clean] '{payload.query}' rejected {len(rejected_leads)} leads: "
            f"{[r.errors for r in rejected_leads[:5]]}"
        )

    return CleanEnvelope(
        **_carry(payload, FetchEnvelope),
        valid_leads=valid_leads,
        rejected_leads=rejected_leads,
        quality_meta=quality_meta,
    )


async def enrich(payload: Union[CleanEnvelope, dict]) -> EnrichEnvelope:
    payload = CleanEnvelope.model_validate(payload, from_attributes=True)
    now = utcnow()

    enriched_leads = []
    for lead in payload.valid_leads:
        metadata = quality.derive_metadata(lead)
        enriched_leads.append(
            quality.enrich(
                lead,
                {
                    **metadata.model_dump(),
                    "source_updated_at": payload.source_updated_at or now,
                    "last_synced_at": now,
                    "status": LeadStatus.ENRICHED,
                },
            )
        )

    return EnrichEnvelope(**_carry(payload, CleanEnvelope), enriched_leads=enriched_leads)


async def persist(
    payload: Union[EnrichEnvelope, dict], repository: LeadRepository
) -> PersistEnvelope:
    payload = EnrichEnvelope.model_validate(payload, from_attributes=True)
    persistence = await repository.upsert_leads(payload.enriched_leads)
    logger.info(
        f"[persist] '{payload.query}' upserted {persistence.persisted_count} leads"
    )
    return PersistEnvelope(**_carry(payload, EnrichEnvelope), persistence=persistence)


@log_execution_time
async def run_full(
    payload: Union[FetchPayload, dict],
    provider: ProviderClient,
    repository: LeadRepository,
) -> PipelineResult:
    """Run fetch -> clean -> enrich -> persist in one call."""
    fetched = await fetch(payload, provider)
    cleaned = await clean(fetched)
    enriched = await enrich(cleaned)
    persisted = await persist(enriched, repository)

    return PipelineResult(
        query=persisted.query,
        quality_meta=persisted.quality_meta,
        persisted_count=persisted.persistence.persisted_count,
        rejected_count=len(persisted.rejected_leads),
        persisted_rows=persisted.persistence.rows,
    )
