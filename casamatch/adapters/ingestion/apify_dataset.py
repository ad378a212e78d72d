# casamatch/adapters/ingestion/apify_dataset.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ...config import settings
from ...domain.types import Listing, PartialListing
from ...schemas import SearchCriteria
from ..clients.http_resilience import resilient_request
from .base import ListingMapper
from .mappers import PORTAL_MAPPERS

log = logging.getLogger(__name__)


def _actor_input(criteria: SearchCriteria) -> dict[str, Any]:
    body: dict[str, Any] = {
        "municipality": criteria.city or settings.SWEEP_CITY,
        "operation": "vendita",
        "maxItems": criteria.max_items or 1000,
    }
    if criteria.max_price is not None:
        body["maxPrice"] = int(criteria.max_price)
    if criteria.min_price is not None:
        body["minPrice"] = int(criteria.min_price)
    if criteria.min_size is not None:
        body["minSize"] = int(criteria.min_size)
    if criteria.min_rooms is not None:
        body["minRooms"] = criteria.min_rooms
    return body


@dataclass
class ApifyDatasetAdapter:
    """
    Runs an Apify actor for one portal and maps its dataset through the portal's mapper.

    The run id of the last search is kept so a resumed job can re-read the same dataset
    (load_run) instead of scraping again and getting a differently ordered result set.
    """

    name: str
    actor_id: str
    token: str
    mapper: ListingMapper
    base_url: str = "https://api.apify.com/v2"
    wait_s: int = 240
    last_run_id: str | None = field(default=None, init=False)

    @classmethod
    def from_settings(cls, name: str) -> "ApifyDatasetAdapter":
        if not settings.APIFY_TOKEN:
            raise RuntimeError("APIFY_TOKEN is not set")
        actor = settings.APIFY_ACTORS.get(name)
        mapper = PORTAL_MAPPERS.get(name)
        if not actor or mapper is None:
            raise ValueError(f"No Apify actor/mapper configured for source {name!r}")
        return cls(
            name=name,
            actor_id=actor,
            token=settings.APIFY_TOKEN,
            mapper=mapper,
            base_url=settings.APIFY_BASE_URL.rstrip("/"),
            wait_s=settings.APIFY_WAIT_S,
        )

    def _params(self, **extra: Any) -> dict[str, Any]:
        return {"token": self.token, **extra}

    async def is_available(self) -> bool:
        resp = await resilient_request(
            "GET", f"{self.base_url}/acts/{self.actor_id}", params=self._params(), max_retries=0
        )
        return resp.status_code == 200

    async def _start_run(self, criteria: SearchCriteria) -> dict[str, Any]:
        resp = await resilient_request(
            "POST",
            f"{self.base_url}/acts/{self.actor_id}/runs",
            params=self._params(waitForFinish=self.wait_s),
            json=_actor_input(criteria),
            timeout_s=float(self.wait_s) + 30.0,
        )
        return (resp.json() or {}).get("data") or {}

    async def _get_run(self, run_id: str) -> dict[str, Any]:
        resp = await resilient_request(
            "GET", f"{self.base_url}/actor-runs/{run_id}", params=self._params()
        )
        return (resp.json() or {}).get("data") or {}

    async def _dataset_items(self, dataset_id: str) -> list[dict[str, Any]]:
        resp = await resilient_request(
            "GET",
            f"{self.base_url}/datasets/{dataset_id}/items",
            params=self._params(clean="true", format="json"),
        )
        data = resp.json()
        return [x for x in data if isinstance(x, dict)] if isinstance(data, list) else []

    def _map_all(self, items: list[dict[str, Any]], criteria: SearchCriteria) -> list[Listing]:
        out: list[Listing] = []
        dropped = 0
        for it in items:
            listing = self.mapper(it, criteria)
            if listing is None:
                dropped += 1
                continue
            out.append(listing)
        if dropped:
            log.info("%s: %d/%d dataset items not mappable", self.name, dropped, len(items))
        return out

    async def _items_of_run(self, run: dict[str, Any]) -> list[dict[str, Any]]:
        status = run.get("status")
        if status != "SUCCEEDED":
            raise RuntimeError(f"{self.name}: actor run {run.get('id')} ended with status {status}")
        dataset_id = run.get("defaultDatasetId")
        if not dataset_id:
            raise RuntimeError(f"{self.name}: actor run {run.get('id')} has no dataset")
        return await self._dataset_items(dataset_id)

    async def search(self, criteria: SearchCriteria) -> list[Listing]:
        run = await self._start_run(criteria)
        self.last_run_id = run.get("id")
        items = await self._items_of_run(run)
        log.info("%s: run %s returned %d items", self.name, self.last_run_id, len(items))
        return self._map_all(items, criteria)

    async def load_run(self, run_id: str, criteria: SearchCriteria) -> list[Listing]:
        run = await self._get_run(run_id)
        self.last_run_id = run_id
        return self._map_all(await self._items_of_run(run), criteria)

    async def fetch_details(self, external_id: str) -> PartialListing | None:
        # Actor datasets already carry the detail fields.
        return None
