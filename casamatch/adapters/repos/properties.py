# casamatch/adapters/repos/properties.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...domain.address import address_key
from ...domain.errors import ListingRejected
from ...domain.types import Coordinates, Listing, SellerType
from ...models import CanonicalProperty, GeocodeStatus, PropertySource


def load_json_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    try:
        v = json.loads(raw)
    except ValueError:
        return []
    return v if isinstance(v, list) else []


def merge_unique(existing: list[str], extra: list[str] | tuple[str, ...]) -> list[str]:
    out = list(existing)
    for x in extra:
        if x and x not in out:
            out.append(x)
    return out


def coordinates_of(prop: CanonicalProperty) -> Coordinates | None:
    if prop.lat is None or prop.lon is None:
        return None
    return Coordinates(lat=prop.lat, lon=prop.lon)


class PropertyRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, property_id: int) -> CanonicalProperty | None:
        return await self.session.get(CanonicalProperty, property_id)

    async def find_by_source_ref(self, source: str, external_id: str) -> CanonicalProperty | None:
        q = (
            select(CanonicalProperty)
            .join(PropertySource, PropertySource.property_id == CanonicalProperty.id)
            .where(PropertySource.source == source, PropertySource.external_id == external_id)
        )
        return (await self.session.execute(q)).scalars().first()

    async def find_by_address_price(self, key: str, price: float) -> CanonicalProperty | None:
        q = select(CanonicalProperty).where(
            CanonicalProperty.address_key == key,
            CanonicalProperty.price == price,
        )
        return (await self.session.execute(q)).scalars().first()

    async def list_canonical(
        self, *, city: str | None = None, cities: list[str] | None = None
    ) -> list[CanonicalProperty]:
        """Every property that is not marked as somebody else's duplicate."""
        q = select(CanonicalProperty).where(CanonicalProperty.duplicate_of_id.is_(None))
        if city:
            q = q.where(CanonicalProperty.city == city)
        if cities is not None:
            q = q.where(CanonicalProperty.city.in_(cities))
        q = q.order_by(CanonicalProperty.id.asc())
        return list((await self.session.execute(q)).scalars().all())

    async def cities_of(self, ids: Iterable[int]) -> list[str]:
        ids = list(ids)
        if not ids:
            return []
        q = select(CanonicalProperty.city).where(CanonicalProperty.id.in_(ids)).distinct()
        return sorted(c for c in (await self.session.execute(q)).scalars().all() if c)

    async def list_pending_geocode(self, limit: int) -> list[CanonicalProperty]:
        q = (
            select(CanonicalProperty)
            .where(CanonicalProperty.geocode_status == GeocodeStatus.pending)
            .order_by(CanonicalProperty.id.asc())
            .limit(limit)
        )
        return list((await self.session.execute(q)).scalars().all())

    async def _link_source(self, prop: CanonicalProperty, listing: Listing, now: datetime) -> None:
        q = select(PropertySource).where(
            PropertySource.source == listing.source,
            PropertySource.external_id == listing.external_id,
        )
        link = (await self.session.execute(q)).scalars().first()
        if link is None:
            link = PropertySource(source=listing.source, external_id=listing.external_id)
            self.session.add(link)
        link.property_id = prop.id
        link.url = listing.url or link.url
        link.last_seen_at = now

    async def upsert_listing(self, listing: Listing, *, now: datetime) -> tuple[CanonicalProperty, bool]:
        """
        Upsert using:
          1) (source, external_id) if seen before
          2) (address_key, price) fallback

        Returns (property, created).
        """
        address = (listing.address or "").strip()
        city = (listing.city or "").strip()
        if not (address and city):
            raise ListingRejected(f"missing address fields: {address=}, {city=}")
        if not listing.price or listing.price <= 0:
            raise ListingRejected(f"missing price for {listing.source}:{listing.external_id}")
        if not listing.external_id:
            raise ListingRejected(f"missing external id for listing at {address!r}")

        key = address_key(address, city)

        # 1) Match on provider id
        prop = await self.find_by_source_ref(listing.source, listing.external_id)

        # 2) Fallback match on normalized address + price
        if prop is None:
            prop = await self.find_by_address_price(key, listing.price)

        created = prop is None
        if prop is None:
            prop = CanonicalProperty(
                address=address,
                city=city,
                address_key=key,
                price=listing.price,
                geocode_status=GeocodeStatus.pending,
                created_at=now,
            )
            self.session.add(prop)
        elif prop.price != listing.price:
            clash = await self.find_by_address_price(prop.address_key, listing.price)
            if clash is None or clash.id == prop.id:
                prop.price = listing.price

        # Mutable fields: only overwrite with real values
        prop.size = listing.size if listing.size is not None else prop.size
        prop.rooms = listing.rooms if listing.rooms is not None else prop.rooms
        prop.bathrooms = listing.bathrooms if listing.bathrooms is not None else prop.bathrooms
        prop.floor = listing.floor or prop.floor
        prop.property_type = listing.property_type or prop.property_type
        prop.title = listing.title or prop.title
        prop.description = listing.description or prop.description
        prop.url = prop.url or listing.url

        prop.owner_name = listing.owner_name or prop.owner_name
        prop.owner_phone = listing.owner_phone or prop.owner_phone
        prop.owner_email = listing.owner_email or prop.owner_email

        if listing.seller_type != SellerType.unknown:
            # a private signal never downgrades a record an agency already carries
            if not (listing.seller_type == SellerType.private and prop.seller_type == SellerType.agency):
                prop.seller_type = listing.seller_type
        if listing.agency_name:
            prop.agencies_json = json.dumps(merge_unique(load_json_list(prop.agencies_json), [listing.agency_name]))

        if listing.image_urls:
            prop.image_urls_json = json.dumps(merge_unique(load_json_list(prop.image_urls_json), listing.image_urls))

        if listing.coordinates is not None and prop.lat is None:
            prop.lat = listing.coordinates.lat
            prop.lon = listing.coordinates.lon
            prop.geocode_status = GeocodeStatus.success

        prop.updated_at = now
        await self.session.flush()

        await self._link_source(prop, listing, now)
        await self.session.flush()
        return prop, created
