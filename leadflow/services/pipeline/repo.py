"""Postgres storage for leads."""

import json
from typing import Any, Sequence

import asyncpg
from loguru import logger

from leadflow.db.db import Database
from leadflow.services.pipeline.base import LeadRepository
from leadflow.services.pipeline.exceptions import PersistenceError
from leadflow.services.pipeline.models import EnrichedLead, Lead, PersistenceResult

LEAD_COLUMNS = (
    "business_name",
    "address",
    "city",
    "state",
    "zip_code",
    "phone",
    "international_phone_number",
    "website_url",
    "website_host",
    "has_website",
    "has_contact_channel",
    "quality_score",
    "business_category",
    "primary_type_display_name",
    "types",
    "business_status",
    "pure_service_area_business",
    "google_maps_uri",
    "google_rating",
    "review_count",
    "price_level",
    "regular_opening_hours",
    "latitude",
    "longitude",
    "status",
    "source",
    "external_place_id",
    "source_updated_at",
    "last_synced_at",
    "freshness_score",
)

# Column casts so asyncpg can infer parameter types inside a VALUES list
_CASTS = {
    "types": "::text[]",
    "regular_opening_hours": "::jsonb",
}


def _row_values(lead: EnrichedLead) -> list[Any]:
    data = lead.model_dump(mode="python")
    values = []
    for column in LEAD_COLUMNS:
        value = data.get(column)
        if column == "regular_opening_hours" and value is not None:
            value = json.dumps(value)
        elif column == "status":
            value = lead.status.value
        values.append(value)
    return values


def dedupe_by_conflict_key(leads: Sequence[EnrichedLead]) -> list[EnrichedLead]:
    """Collapse repeated (source, external_place_id) keys, keeping the last.

    Postgres rejects an ON CONFLICT upsert that touches the same row twice.
    Leads without a place id never conflict and are all kept.
    """
    keyed: dict[tuple[str, str], int] = {}
    result: list[EnrichedLead] = []
    for lead in leads:
        if not lead.external_place_id:
            result.append(lead)
            continue
        key = (lead.source, lead.external_place_id)
        if key in keyed:
            result[keyed[key]] = lead
        else:
            keyed[key] = len(result)
            result.append(lead)
    return result


def build_upsert_sql(row_count: int) -> str:
    width = len(LEAD_COLUMNS)
    values_parts = []
    for row in range(row_count):
        base = row * width
        placeholders = ", ".join(
            f"${base + i + 1}{_CASTS.get(column, '')}"
            for i, column in enumerate(LEAD_COLUMNS)
        )
        values_parts.append(f"({placeholders})")

    updates = ",\n            ".join(
        f"{column} = EXCLUDED.{column}"
        for column in LEAD_COLUMNS
        if column not in ("source", "external_place_id")
    )

    return f"""
        INSERT INTO leads ({", ".join(LEAD_COLUMNS)})
        VALUES {", ".join(values_parts)}
        ON CONFLICT ON CONSTRAINT leads_source_external_place_id_key DO UPDATE SET
            {updates},
            updated_at = now()
        RETURNING *
    """


class PostgresLeadRepository(LeadRepository):
    """Upserts leads in a single multi-row statement."""

    def __init__(self, db: Database):
        self.db = db

    async def upsert_leads(self, leads: Sequence[EnrichedLead]) -> PersistenceResult:
        if not leads:
            return PersistenceResult(persisted_count=0, rows=[])

        batch = dedupe_by_conflict_key(leads)
        params: list[Any] = []
        for lead in batch:
            params.extend(_row_values(lead))

        try:
            records = await self.db.fetch(build_upsert_sql(len(batch)), *params)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Lead upsert failed for {len(batch)} leads: {e}")
            raise PersistenceError("Failed to save discovered leads") from e

        rows = [Lead.model_validate(dict(record)) for record in records]
        logger.info(f"Upserted {len(rows)} leads")
        return PersistenceResult(persisted_count=len(rows), rows=rows)
