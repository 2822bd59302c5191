"""Abstract collaborators the pipeline stages depend on."""

from abc import ABC, abstractmethod
from typing import Sequence

from leadflow.services.pipeline.models import (
    EnrichedLead,
    PersistenceResult,
    RawRecord,
)


class ProviderClient(ABC):
    """A places provider that turns a free-text query into raw listings.

    Implementations: GooglePlacesClient.
    """

    provider_name: str = "google_maps"

    @abstractmethod
    async def search(self, query: str, max_results: int) -> list[RawRecord]:
        """Return at most ``max_results`` listings for ``query``.

        Raises a ProviderError subclass on failure.
        """
        ...


class LeadRepository(ABC):
    @abstractmethod
    async def upsert_leads(self, leads: Sequence[EnrichedLead]) -> PersistenceResult:
        """Insert or update leads on the (source, external_place_id) key."""
        ...
