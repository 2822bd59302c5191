"""Google Places (New) text search client.

Docs: https://developers.google.com/maps/documentation/places/web-service/text-search

One text search pulls up to ``max_pages`` pages of 20 places, following
``nextPageToken``, and maps each place onto a RawRecord.
"""

import asyncio
import time
from typing import Optional

import httpx
from loguru import logger

from leadflow.config import Settings
from leadflow.core.logging import log_provider_call
from leadflow.services.pipeline.base import ProviderClient
from leadflow.services.pipeline.models import RawRecord
from leadflow.services.places.exceptions import (
    PlacesConfigError,
    PlacesInvalidQueryError,
    map_places_api_error,
)
from leadflow.services.places.parser import parse_place

SEARCH_TEXT_ENDPOINT = "/places:searchText"
PAGE_SIZE_MAX = 20
PAGE_DELAY_SECONDS = 0.1

SEARCH_FIELD_MASK = ",".join(
    [
        # Essentials
        "places.id",
        "places.formattedAddress",
        "places.addressComponents",
        "places.types",
        # Pro
        "places.displayName",
        "places.businessStatus",
        "places.primaryType",
        "places.primaryTypeDisplayName",
        "places.pureServiceAreaBusiness",
        "places.googleMapsUri",
        "places.location",
        # Enterprise
        "places.internationalPhoneNumber",
        "places.nationalPhoneNumber",
        "places.websiteUri",
        "places.rating",
        "places.userRatingCount",
        "places.regularOpeningHours",
        "places.priceLevel",
        "nextPageToken",
    ]
)


class GooglePlacesClient(ProviderClient):
    """Places text search over a shared httpx.AsyncClient.

    Usage:
        async with GooglePlacesClient.from_settings(settings) as client:
            records = await client.search("plumbers in Austin", max_results=60)
    """

    provider_name = "google_maps"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://places.googleapis.com/v1",
        timeout_ms: int = 8000,
        max_pages: int = 3,
        max_results: int = 60,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_ms = timeout_ms
        self.max_pages = max_pages
        self.max_results = max_results
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings) -> "GooglePlacesClient":
        return cls(
            api_key=settings.google_maps_api_key,
            base_url=settings.google_maps_places_api_base_url,
            timeout_ms=settings.google_maps_timeout_ms,
            max_pages=settings.google_maps_max_pages,
            max_results=settings.google_maps_max_results,
        )

    async def __aenter__(self) -> "GooglePlacesClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_ms / 1000)
            self._owns_client = True
        return self._client

    async def _fetch_pages(self, query: str, max_results: int) -> list[dict]:
        places: list[dict] = []
        page_token: Optional[str] = None
        url = f"{self.base_url}{SEARCH_TEXT_ENDPOINT}"
        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key or "",
            "X-Goog-FieldMask": SEARCH_FIELD_MASK,
        }

        for _ in range(self.max_pages):
            body: dict = {
                "textQuery": query,
                "pageSize": min(PAGE_SIZE_MAX, max(1, max_results - len(places))),
            }
            if page_token:
                body["pageToken"] = page_token

            response = await self._http().post(
                url, json=body, headers=headers, timeout=self.timeout_ms / 1000
            )
            response.raise_for_status()
            data = response.json() or {}
            places.extend(data.get("places") or [])

            page_token = data.get("nextPageToken")
            if not page_token or len(places) >= max_results:
                break
            await asyncio.sleep(PAGE_DELAY_SECONDS)

        return places[:max_results]

    async def search(self, query: str, max_results: Optional[int] = None) -> list[RawRecord]:
        max_results = max_results or self.max_results
        started = time.monotonic()

        try:
            if not self.api_key:
                raise PlacesConfigError("GOOGLE_MAPS_API_KEY is not configured")
            if not query or len(query.strip()) < 2:
                raise PlacesInvalidQueryError("query is required for Google Maps text search")

            logger.info(
                f"Google Maps text search started: '{query}' "
                f"(max_pages={self.max_pages}, max_results={max_results})"
            )
            places = await self._fetch_pages(query.strip(), max_results)
            records = [parse_place(place) for place in places]
        except Exception as e:
            mapped = map_places_api_error(e)
            logger.debug(f"Google Maps raw error for '{query}': {e!r}")
            log_provider_call(
                self.provider_name,
                query,
                duration=time.monotonic() - started,
                error_code=mapped.code,
            )
            raise mapped from e

        log_provider_call(
            self.provider_name,
            query,
            duration=time.monotonic() - started,
            result_count=len(records),
        )
        return records
