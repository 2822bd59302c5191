"""Map Places API (New) place objects onto RawRecord."""

import math
import re
from typing import Any, Optional

from leadflow.services.pipeline.models import RawRecord, utcnow

_STATE_ZIP = re.compile(r"^([A-Z]{2})\s+(\d{5}(?:-\d{4})?)")
_STATE_ONLY = re.compile(r"^([A-Z]{2})$")


def _safe_string(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    return None


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _localized_text(value: Any) -> Optional[str]:
    """Places returns names as {"text": ..., "languageCode": ...}."""
    if isinstance(value, dict):
        return _safe_string(value.get("text"))
    return _safe_string(value)


def parse_formatted_address(formatted_address: Optional[str]) -> dict[str, Optional[str]]:
    """Pull city, state and zip out of "123 Main St, Austin, TX 78701, USA"."""
    empty = {"city": None, "state": None, "zip_code": None}
    if not formatted_address or not isinstance(formatted_address, str):
        return empty

    parts = [p.strip() for p in formatted_address.split(",")]
    if len(parts) < 3:
        return empty

    city = parts[-3] or None
    state_zip = parts[-2]
    state = zip_code = None

    match = _STATE_ZIP.match(state_zip)
    if match:
        state, zip_code = match.group(1), match.group(2)
    else:
        state_only = _STATE_ONLY.match(state_zip)
        if state_only:
            state = state_only.group(1)

    return {"city": city, "state": state, "zip_code": zip_code}


def extract_address_parts(components: list[dict]) -> dict[str, Optional[str]]:
    parts: dict[str, Optional[str]] = {"city": None, "state": None, "zip_code": None}
    for component in components or []:
        types = component.get("types") or []
        long_text = component.get("longText") or component.get("long_name")
        short_text = component.get("shortText") or component.get("short_name")
        if "locality" in types and not parts["city"]:
            parts["city"] = _safe_string(long_text)
        elif "postal_town" in types and not parts["city"]:
            parts["city"] = _safe_string(long_text)
        elif "administrative_area_level_1" in types:
            parts["state"] = _safe_string(short_text or long_text)
        elif "postal_code" in types:
            parts["zip_code"] = _safe_string(long_text or short_text)
    return parts


def parse_place(place: dict) -> RawRecord:
    place = place or {}
    location = place.get("location") or {}
    components = extract_address_parts(place.get("addressComponents") or [])
    fallback = parse_formatted_address(place.get("formattedAddress"))
    types = place.get("types")

    rating = _finite_number(place.get("rating"))
    review_count = _finite_number(place.get("userRatingCount"))

    return RawRecord(
        business_name=_localized_text(place.get("displayName")),
        address=_safe_string(place.get("formattedAddress")),
        city=components["city"] or fallback["city"],
        state=components["state"] or fallback["state"],
        zip_code=components["zip_code"] or fallback["zip_code"],
        latitude=_finite_number(location.get("latitude")),
        longitude=_finite_number(location.get("longitude")),
        external_place_id=_safe_string(place.get("id")),
        types=types if isinstance(types, list) else None,
        google_maps_uri=_safe_string(place.get("googleMapsUri")),
        business_category=_safe_string(place.get("primaryType"))
        or (_safe_string(types[0]) if isinstance(types, list) and types else None),
        primary_type_display_name=_localized_text(place.get("primaryTypeDisplayName")),
        business_status=_safe_string(place.get("businessStatus")),
        pure_service_area_business=bool(place.get("pureServiceAreaBusiness")),
        phone=_safe_string(place.get("nationalPhoneNumber")),
        international_phone_number=_safe_string(place.get("internationalPhoneNumber")),
        website_url=_safe_string(place.get("websiteUri")),
        google_rating=rating,
        review_count=int(review_count) if review_count is not None else 0,
        price_level=_safe_string(place.get("priceLevel")),
        regular_opening_hours=place.get("regularOpeningHours") or None,
        source="google_maps",
        source_updated_at=utcnow(),
    )
