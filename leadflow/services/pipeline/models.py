"""Pydantic models for the lead ingestion pipeline."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeadStatus(str, Enum):
    NEW = "new"
    VALIDATED = "validated"
    ENRICHED = "enriched"
    ARCHIVED = "archived"


class RawRecord(BaseModel):
    """A provider-shaped listing. Lives only inside a pipeline run."""

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    business_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    international_phone_number: Optional[str] = None
    website_url: Optional[str] = None
    business_category: Optional[str] = None
    google_rating: Optional[float] = None
    review_count: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    source: Optional[str] = None
    external_place_id: Optional[str] = None
    source_updated_at: Optional[datetime] = None
    freshness_score: Optional[float] = None
    google_maps_uri: Optional[str] = None
    types: Optional[list[str]] = None
    business_status: Optional[str] = None
    primary_type_display_name: Optional[str] = None
    pure_service_area_business: Optional[bool] = None
    price_level: Optional[str] = None
    regular_opening_hours: Optional[dict[str, Any]] = None


class NormalizedLead(BaseModel):
    """A listing mapped onto the fixed lead schema.

    ``business_name`` may still be empty here; validation rejects it later.
    ``(source, external_place_id)`` is the conflict key used for upserts.
    """

    model_config = ConfigDict(from_attributes=True)

    business_name: str = ""
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    international_phone_number: Optional[str] = None
    website_url: Optional[str] = None
    has_website: bool = False
    business_category: Optional[str] = None
    google_rating: Optional[float] = None
    review_count: int = 0
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    source: str = "google_maps"
    external_place_id: Optional[str] = None
    source_updated_at: datetime = Field(default_factory=utcnow)
    last_synced_at: datetime = Field(default_factory=utcnow)
    freshness_score: float = Field(default=100.0, ge=0, le=100)
    google_maps_uri: Optional[str] = None
    types: Optional[list[str]] = None
    business_status: Optional[str] = None
    primary_type_display_name: Optional[str] = None
    pure_service_area_business: bool = False
    price_level: Optional[str] = None
    regular_opening_hours: Optional[dict[str, Any]] = None

    @field_validator("regular_opening_hours", mode="before")
    @classmethod
    def decode_opening_hours(cls, v):
        # asyncpg hands jsonb columns back as text
        if isinstance(v, str):
            return json.loads(v)
        return v


# A lead that passed validation has the same shape.
ValidatedLead = NormalizedLead


class EnrichedLead(NormalizedLead):
    website_host: Optional[str] = None
    has_contact_channel: bool = False
    quality_score: float = 0.0
    status: LeadStatus = LeadStatus.VALIDATED


class Lead(EnrichedLead):
    """A persisted lead row."""

    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = []


class LeadMetadata(BaseModel):
    website_host: Optional[str] = None
    has_contact_channel: bool = False
    quality_score: float = 0.0


class QualityMeta(BaseModel):
    """Counts produced by the clean stage."""

    input_count: int = 0
    deduped_count: int = 0
    valid_count: int = 0
    rejected_count: int = 0


class RejectedLead(BaseModel):
    lead: NormalizedLead
    errors: list[str]


class PersistenceResult(BaseModel):
    persisted_count: int = 0
    rows: list[Lead] = []


# ---------------------------------------------------------------------------
# Stage envelopes. Each stage returns its input plus its own output so the
# next stage (possibly in another worker) gets everything it needs.
# ---------------------------------------------------------------------------


class FetchPayload(BaseModel):
    query: str
    limit: int = 60


class FetchEnvelope(FetchPayload):
    raw_leads: list[RawRecord] = []
    source_updated_at: datetime = Field(default_factory=utcnow)


class CleanEnvelope(FetchEnvelope):
    valid_leads: list[NormalizedLead] = []
    rejected_leads: list[RejectedLead] = []
    quality_meta: QualityMeta = Field(default_factory=QualityMeta)


class EnrichEnvelope(CleanEnvelope):
    enriched_leads: list[EnrichedLead] = []


class PersistEnvelope(EnrichEnvelope):
    persistence: PersistenceResult = Field(default_factory=PersistenceResult)


class PipelineResult(BaseModel):
    """Summary returned by a full fetch -> persist run."""

    query: str
    quality_meta: QualityMeta
    persisted_count: int = 0
    rejected_count: int = 0
    persisted_rows: list[Lead] = []
