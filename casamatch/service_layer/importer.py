# casamatch/service_layer/importer.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from ..adapters.repos.properties import PropertyRepository, load_json_list
from ..config import settings
from ..domain.classification import classify
from ..domain.types import Coordinates, Listing
from ..models import CanonicalProperty, GeocodeStatus
from .outbox import LISTING_IMPORTED, enqueue_event

log = logging.getLogger(__name__)


class Geocoder(Protocol):
    async def geocode(self, address: str, city: str) -> Coordinates | None:
        raise NotImplementedError


@dataclass(frozen=True)
class ImportOutcome:
    property_id: int
    created: bool


def reclassify(prop: CanonicalProperty, *, multi_agency_min: int) -> None:
    prop.classification = classify(
        prop.seller_type,
        load_json_list(prop.agencies_json),
        multi_agency_min=multi_agency_min,
    )


class ListingImporter:
    """
    One normalized listing -> one canonical property row (created or updated).

    Runs inside the caller's session and never commits; the orchestrator owns the
    transaction so an item and its outbox event land together.
    """

    def __init__(self, geocoder: Geocoder | None = None, *, multi_agency_min: int | None = None) -> None:
        self.geocoder = geocoder
        self.multi_agency_min = int(
            settings.MULTI_AGENCY_MIN_AGENCIES if multi_agency_min is None else multi_agency_min
        )

    async def _lookup(self, listing: Listing) -> tuple[bool, Coordinates | None]:
        # the cache writes through its own session; asking before this session
        # writes keeps the two off each other's SQLite lock
        if self.geocoder is None or listing.coordinates is not None:
            return False, None
        if not (listing.address or "").strip() or not (listing.city or "").strip():
            return False, None
        return True, await self.geocoder.geocode(listing.address, listing.city)

    async def import_listing(self, session: AsyncSession, listing: Listing, *, now: datetime) -> ImportOutcome:
        asked, coords = await self._lookup(listing)

        prop, created = await PropertyRepository(session).upsert_listing(listing, now=now)
        reclassify(prop, multi_agency_min=self.multi_agency_min)
        if asked and prop.lat is None:
            if coords is None:
                prop.geocode_status = GeocodeStatus.failed
            else:
                prop.lat, prop.lon = coords.lat, coords.lon
                prop.geocode_status = GeocodeStatus.success

        if created:
            await enqueue_event(
                session,
                LISTING_IMPORTED,
                {
                    "property_id": prop.id,
                    "source": listing.source,
                    "external_id": listing.external_id,
                    "city": prop.city,
                    "price": prop.price,
                },
            )
        await session.flush()
        return ImportOutcome(property_id=prop.id, created=created)
