# casamatch/service_layer/geocoding.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..adapters.clients.nominatim import GeocodingProvider
from ..adapters.repos.geocode_cache import GeocodeCacheRepository
from ..adapters.repos.properties import PropertyRepository
from ..config import settings
from ..domain.address import cache_key
from ..domain.clock import Clock, utcnow
from ..domain.types import Coordinates
from ..models import GeocodeStatus

log = logging.getLogger(__name__)

Monotonic = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class GeocodeStats:
    """Per-process counters."""
    hits: int = 0
    negative_hits: int = 0
    lookups: int = 0
    lookup_failures: int = 0
    coalesced: int = 0

    def snapshot(self) -> dict[str, int]:
        return {
            "hits": self.hits,
            "negative_hits": self.negative_hits,
            "lookups": self.lookups,
            "lookup_failures": self.lookup_failures,
            "coalesced": self.coalesced,
        }


@dataclass
class _Request:
    key: str
    query: str
    future: asyncio.Future


class GeocodingCache:
    """
    address -> coordinates with persistent memoization and one global rate limit.

    Hits (positive or negative) never leave the process. Misses go onto a FIFO queue
    drained by a single consumer task that keeps at least min_interval_s between
    provider calls, no matter how many callers are waiting. A result is written to the
    cache before the caller sees it.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        provider: GeocodingProvider,
        *,
        min_interval_s: float | None = None,
        country: str | None = None,
        monotonic: Monotonic = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
        clock: Clock = utcnow,
    ) -> None:
        self.session_maker = session_maker
        self.provider = provider
        self.min_interval_s = float(settings.GEOCODE_MIN_INTERVAL_S if min_interval_s is None else min_interval_s)
        self.country = settings.GEOCODE_COUNTRY if country is None else country
        self._monotonic = monotonic
        self._sleep = sleep
        self._clock = clock

        self._queue: asyncio.Queue[_Request] = asyncio.Queue()
        self._inflight: dict[str, asyncio.Future] = {}
        self._consumer: asyncio.Task | None = None
        self._last_call: float | None = None
        self.stats = GeocodeStats()

    def _query(self, address: str, city: str) -> str:
        parts = [address.strip(), city.strip()]
        if self.country:
            parts.append(self.country)
        return ", ".join(p for p in parts if p)

    async def _cached(self, key: str) -> tuple[bool, Coordinates | None]:
        async with self.session_maker() as session:
            row = await GeocodeCacheRepository(session).get(key)
        if row is None:
            return False, None
        if row.status == GeocodeStatus.success and row.lat is not None and row.lon is not None:
            return True, Coordinates(lat=row.lat, lon=row.lon)
        return True, None

    async def geocode(self, address: str, city: str) -> Coordinates | None:
        key = cache_key(address, city)

        found, coords = await self._cached(key)
        if found:
            if coords is None:
                self.stats.negative_hits += 1
            else:
                self.stats.hits += 1
            return coords

        fut = self._inflight.get(key)
        if fut is not None:
            self.stats.coalesced += 1
            return await asyncio.shield(fut)

        fut = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        self._queue.put_nowait(_Request(key=key, query=self._query(address, city), future=fut))
        self._ensure_consumer()
        return await asyncio.shield(fut)

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._drain(), name="geocode-consumer")

    async def _wait_turn(self) -> None:
        if self._last_call is None:
            return
        wait = (self._last_call + self.min_interval_s) - self._monotonic()
        if wait > 0:
            await self._sleep(wait)

    async def _drain(self) -> None:
        # Exits when the queue is empty; geocode() restarts it. _last_call survives restarts.
        while not self._queue.empty():
            req = self._queue.get_nowait()
            try:
                result = await self._resolve(req)
            except Exception as e:
                log.exception("geocode cache write failed for %r", req.key)
                if not req.future.done():
                    req.future.set_exception(e)
            else:
                if not req.future.done():
                    req.future.set_result(result)
            finally:
                self._inflight.pop(req.key, None)
                self._queue.task_done()

    async def _resolve(self, req: _Request) -> Coordinates | None:
        # another process (or an earlier request) may have filled it meanwhile
        found, coords = await self._cached(req.key)
        if found:
            return coords

        await self._wait_turn()
        self._last_call = self._monotonic()
        self.stats.lookups += 1

        error: str | None = None
        try:
            coords = await self.provider.lookup(req.query)
            if coords is None:
                error = "No results found"
        except Exception as e:
            # negative-memoized like "not found"; invalidate() to retry
            self.stats.lookup_failures += 1
            coords = None
            error = f"{type(e).__name__}: {e}"
            log.warning("geocode lookup failed for %r: %s", req.query, error)

        async with self.session_maker() as session:
            await GeocodeCacheRepository(session).put(req.key, coords, error=error, now=self._clock())
            await session.commit()
        return coords

    async def invalidate(self, address: str, city: str) -> bool:
        async with self.session_maker() as session:
            deleted = await GeocodeCacheRepository(session).delete(cache_key(address, city))
            await session.commit()
        return deleted

    async def clear(self) -> int:
        async with self.session_maker() as session:
            n = await GeocodeCacheRepository(session).clear()
            await session.commit()
        return n

    async def aclose(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        for fut in self._inflight.values():
            if not fut.done():
                fut.cancel()
        self._inflight.clear()


async def geocode_pending_properties(
    session: AsyncSession,
    cache: GeocodingCache,
    *,
    limit: int = 100,
) -> dict[str, int]:
    """
    Geocode canonical properties still marked pending. Sequential on purpose:
    the cache serializes provider calls anyway.
    """
    repo = PropertyRepository(session)
    props = await repo.list_pending_geocode(limit)

    ok = failed = 0
    for p in props:
        coords = await cache.geocode(p.address, p.city)
        if coords is None:
            p.geocode_status = GeocodeStatus.failed
            failed += 1
        else:
            p.lat, p.lon = coords.lat, coords.lon
            p.geocode_status = GeocodeStatus.success
            ok += 1
    await session.flush()
    return {"scanned": len(props), "success": ok, "failed": failed}
