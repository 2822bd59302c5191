"""Pure lead quality transforms: normalize, deduplicate, validate, enrich.

Nothing in here does I/O, so every function is safe to call from any
worker concurrently.
"""

import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union
from urllib.parse import urlparse

from pydantic import TypeAdapter

from leadflow.services.pipeline.models import (
    EnrichedLead,
    LeadMetadata,
    LeadStatus,
    NormalizedLead,
    RawRecord,
    ValidationResult,
    utcnow,
)

PHONE_DIGITS_MIN = 10
FRESHNESS_DECAY_PER_DAY = 2.0

SOCIAL_OR_DIRECTORY_DOMAINS = (
    "facebook.com",
    "instagram.com",
    "linkedin.com",
    "twitter.com",
    "x.com",
    "tiktok.com",
    "yelp.com",
    "yellowpages.com",
    "linktr.ee",
    "pinterest.com",
    "youtube.com",
    "foursquare.com",
    "bbb.org",
)

QUALITY_WEIGHTS = {
    "business_name": 30,
    "address": 20,
    "phone": 20,
    "website_url": 20,
    "google_rating": 10,
}

_WEBSITE_PATTERN = re.compile(r"^https?://.+", re.IGNORECASE)
_SCHEME_PATTERN = re.compile(r"^https?://", re.IGNORECASE)

_datetime_adapter = TypeAdapter(datetime)


def _as_utc(value: Union[datetime, str]) -> datetime:
    if isinstance(value, str):
        value = _datetime_adapter.validate_python(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _clean_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    trimmed = str(value).strip()
    return trimmed or None


def _normalize_phone(value: Any) -> Optional[str]:
    phone = _clean_string(value)
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if not digits:
        return None
    return f"+{digits}" if phone.startswith("+") else digits


def _normalize_website(value: Any) -> Optional[str]:
    url = _clean_string(value)
    if not url:
        return None
    if _SCHEME_PATTERN.match(url):
        return url
    return f"https://{url}"


def calculate_freshness_score(
    source_updated_at: Optional[Union[datetime, str]], now: Optional[datetime] = None
) -> float:
    """100 for fresh data, minus 2 points per day of age, clamped to [0, 100]."""
    now = _as_utc(now) if now else utcnow()
    source_date = _as_utc(source_updated_at) if source_updated_at else now
    age_days = max((now - source_date).total_seconds() / 86400, 0)
    score = round(100 - age_days * FRESHNESS_DECAY_PER_DAY, 2)
    return max(min(score, 100.0), 0.0)


def is_social_or_directory_url(url: Optional[str]) -> bool:
    if not url:
        return False
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return False
    if not hostname:
        return False
    hostname = hostname.lower()
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return any(
        hostname == domain or hostname.endswith(f".{domain}")
        for domain in SOCIAL_OR_DIRECTORY_DOMAINS
    )


def normalize(raw: Union[RawRecord, dict]) -> NormalizedLead:
    if isinstance(raw, dict):
        raw = RawRecord.model_validate(raw)

    now = utcnow()
    website_url = _normalize_website(raw.website_url)
    source_updated_at = _as_utc(raw.source_updated_at) if raw.source_updated_at else now

    if raw.freshness_score is not None:
        freshness = max(min(float(raw.freshness_score), 100.0), 0.0)
    else:
        freshness = calculate_freshness_score(source_updated_at, now)

    return NormalizedLead(
        business_name=_clean_string(raw.business_name or raw.name) or "",
        address=_clean_string(raw.address),
        city=_clean_string(raw.city),
        state=_clean_string(raw.state),
        zip_code=_clean_string(raw.zip_code),
        phone=_normalize_phone(raw.phone),
        international_phone_number=_clean_string(raw.international_phone_number),
        website_url=website_url,
        has_website=bool(website_url) and not is_social_or_directory_url(website_url),
        business_category=_clean_string(raw.business_category),
        google_rating=raw.google_rating,
        review_count=raw.review_count or 0,
        latitude=raw.latitude,
        longitude=raw.longitude,
        source=_clean_string(raw.source) or "google_maps",
        external_place_id=_clean_string(raw.external_place_id),
        source_updated_at=source_updated_at,
        last_synced_at=now,
        freshness_score=freshness,
        google_maps_uri=_clean_string(raw.google_maps_uri),
        types=list(raw.types) if raw.types is not None else None,
        business_status=_clean_string(raw.business_status),
        primary_type_display_name=_clean_string(raw.primary_type_display_name),
        pure_service_area_business=bool(raw.pure_service_area_business),
        price_level=_clean_string(raw.price_level),
        regular_opening_hours=raw.regular_opening_hours or None,
    )


def dedupe_key(lead: NormalizedLead) -> str:
    if lead.external_place_id:
        return lead.external_place_id
    return f"{(lead.business_name or '').lower()}|{(lead.address or '').lower()}"


def deduplicate(leads: Iterable[NormalizedLead]) -> list[NormalizedLead]:
    """Drop repeats in one stable pass. The first occurrence wins."""
    seen: set[str] = set()
    deduped = []
    for lead in leads:
        key = dedupe_key(lead)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(lead)
    return deduped


def validate(lead: NormalizedLead) -> ValidationResult:
    """Check every rule and report all violations. Never raises."""
    errors = []

    if not lead.business_name:
        errors.append("business_name is required")
    if not lead.address:
        errors.append("address is required")

    if lead.google_rating is not None and not 0 <= lead.google_rating <= 5:
        errors.append("google_rating must be between 0 and 5")

    if lead.phone and len(re.sub(r"\D", "", lead.phone)) < PHONE_DIGITS_MIN:
        errors.append(f"phone must contain at least {PHONE_DIGITS_MIN} digits")

    if lead.website_url and not _WEBSITE_PATTERN.match(lead.website_url):
        errors.append("website_url must be a valid URL")

    return ValidationResult(is_valid=not errors, errors=errors)


def derive_metadata(lead: NormalizedLead) -> LeadMetadata:
    website_host = None
    if lead.website_url:
        website_host = _SCHEME_PATTERN.sub("", lead.website_url).split("/")[0] or None

    # full credit or nothing per field
    score = sum(
        weight
        for field, weight in QUALITY_WEIGHTS.items()
        if getattr(lead, field) not in (None, "")
    )

    return LeadMetadata(
        website_host=website_host,
        has_contact_channel=bool(lead.phone or lead.website_url),
        quality_score=round(float(score), 2),
    )


def enrich(lead: NormalizedLead, patch: Optional[dict[str, Any]] = None) -> EnrichedLead:
    """Merge ``patch`` over ``lead``; values in ``patch`` win.

    ``last_synced_at`` is always refreshed. ``freshness_score`` is recomputed
    when ``source_updated_at`` moves, unless the patch sets it explicitly.
    """
    patch = {k: v for k, v in (patch or {}).items() if v is not None}
    now = utcnow()

    merged = {**lead.model_dump(), **patch}
    merged["last_synced_at"] = patch.get("last_synced_at", now)

    previous = _as_utc(lead.source_updated_at)
    current = _as_utc(patch.get("source_updated_at", previous))
    merged["source_updated_at"] = current

    if "freshness_score" not in patch and current != previous:
        merged["freshness_score"] = calculate_freshness_score(current, now)

    merged["status"] = patch.get("status") or getattr(lead, "status", None) or LeadStatus.VALIDATED
    return EnrichedLead.model_validate(merged)
