# casamatch/adapters/ingestion/base.py
from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

from ...domain.types import Listing, PartialListing
from ...schemas import SearchCriteria

# One explicit mapping function per source: raw portal payload -> Listing (None = skip item)
ListingMapper = Callable[[dict[str, Any], SearchCriteria], "Listing | None"]


class SourceAdapter(Protocol):
    """
    One external listing source. Each adapter is its own failure domain: it may raise,
    and the orchestrator records the error against this source only.

    Re-running a search is safe: downstream import is keyed by external id
    and by (address, price).
    """

    name: str

    async def search(self, criteria: SearchCriteria) -> list[Listing]:
        raise NotImplementedError

    async def fetch_details(self, external_id: str) -> PartialListing | None:
        raise NotImplementedError

    async def is_available(self) -> bool:
        raise NotImplementedError


@runtime_checkable
class ResumableSource(Protocol):
    """
    Sources whose searches produce a run id that can be re-read later, so a resumed
    job sees the same result set it was checkpointed against.
    """

    last_run_id: str | None

    async def load_run(self, run_id: str, criteria: SearchCriteria) -> list[Listing]:
        raise NotImplementedError
