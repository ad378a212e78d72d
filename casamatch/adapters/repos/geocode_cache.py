# casamatch/adapters/repos/geocode_cache.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ...domain.types import Coordinates
from ...models import GeocodeCacheEntry, GeocodeStatus


class GeocodeCacheRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> GeocodeCacheEntry | None:
        q = select(GeocodeCacheEntry).where(GeocodeCacheEntry.key == key)
        return (await self.session.execute(q)).scalars().first()

    async def put(
        self,
        key: str,
        coords: Coordinates | None,
        *,
        error: str | None = None,
        now: datetime,
    ) -> GeocodeCacheEntry:
        row = await self.get(key)
        if row is None:
            row = GeocodeCacheEntry(key=key)
            self.session.add(row)

        if coords is not None:
            row.status = GeocodeStatus.success
            row.lat = coords.lat
            row.lon = coords.lon
            row.error = None
        else:
            row.status = GeocodeStatus.failed
            row.lat = None
            row.lon = None
            row.error = (error or "No results found")[:1000]
        row.created_at = now

        await self.session.flush()
        return row

    async def delete(self, key: str) -> bool:
        res = await self.session.execute(delete(GeocodeCacheEntry).where(GeocodeCacheEntry.key == key))
        return res.rowcount > 0

    async def clear(self) -> int:
        res = await self.session.execute(delete(GeocodeCacheEntry))
        return int(res.rowcount or 0)
