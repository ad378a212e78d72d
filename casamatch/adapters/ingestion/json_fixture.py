# casamatch/adapters/ingestion/json_fixture.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ...config import settings
from ...domain.normalize import normalize_property_type
from ...domain.types import Listing, PartialListing, SellerType
from ...schemas import SearchCriteria
from .mappers import map_fixture_item

log = logging.getLogger(__name__)


def _as_list_of_dicts(payload: Any) -> list[dict[str, Any]]:
    """
    Accept either:
      - list[dict]
      - {"items": list[dict]} (dataset export shape)
    """
    if isinstance(payload, list):
        return [x for x in payload if isinstance(x, dict)]
    if isinstance(payload, dict):
        v = payload.get("items")
        if isinstance(v, list):
            return [x for x in v if isinstance(x, dict)]
    return []


def _matches(listing: Listing, criteria: SearchCriteria) -> bool:
    if criteria.city and listing.city.strip().lower() != criteria.city.strip().lower():
        return False
    if criteria.max_price is not None and listing.price > criteria.max_price:
        return False
    if criteria.min_price is not None and listing.price < criteria.min_price:
        return False
    if criteria.min_size is not None and listing.size is not None and listing.size < criteria.min_size:
        return False
    if criteria.property_types:
        have = normalize_property_type(listing.property_type)
        wanted = {normalize_property_type(t) for t in criteria.property_types}
        if have is not None and have not in wanted:
            return False
    return True


@dataclass
class JsonFixtureAdapter:
    """
    Offline source for development/testing.

    Reads listing payloads from fixtures:
      data/listings/<name>.json
    """

    name: str
    fixtures_dir: Path

    @classmethod
    def from_settings(cls, name: str) -> "JsonFixtureAdapter":
        return cls(name=name, fixtures_dir=Path(settings.LISTINGS_FIXTURES_DIR))

    @property
    def path(self) -> Path:
        return self.fixtures_dir / f"{self.name}.json"

    def _load(self) -> list[dict[str, Any]]:
        return _as_list_of_dicts(json.loads(self.path.read_text(encoding="utf-8")))

    async def is_available(self) -> bool:
        return self.path.exists()

    async def search(self, criteria: SearchCriteria) -> list[Listing]:
        out: list[Listing] = []
        skipped = 0
        for it in self._load():
            listing = map_fixture_item(it, criteria, source=self.name)
            if listing is None:
                skipped += 1
                continue
            if _matches(listing, criteria):
                out.append(listing)
            if criteria.max_items and len(out) >= criteria.max_items:
                break
        if skipped:
            log.info("fixture %s: skipped %d unmappable items", self.name, skipped)
        return out

    async def fetch_details(self, external_id: str) -> PartialListing | None:
        for it in self._load():
            if str(it.get("externalId") or it.get("id") or "") != external_id:
                continue
            listing = map_fixture_item(it, SearchCriteria(), source=self.name)
            if listing is None:
                return None
            return PartialListing(
                external_id=external_id,
                description=listing.description,
                size=listing.size,
                rooms=listing.rooms,
                bathrooms=listing.bathrooms,
                floor=listing.floor,
                image_urls=listing.image_urls,
                coordinates=listing.coordinates,
                seller_type=None if listing.seller_type == SellerType.unknown else listing.seller_type,
                agency_name=listing.agency_name,
                owner_name=listing.owner_name,
                owner_phone=listing.owner_phone,
                owner_email=listing.owner_email,
            )
        return None
