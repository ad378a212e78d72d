# casamatch/service_layer/dedup.py
from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..adapters.repos.properties import PropertyRepository, coordinates_of, load_json_list, merge_unique
from ..config import settings
from ..domain.clock import Clock, ensure_aware_utc, utcnow
from ..domain.disjoint_set import DisjointSet
from ..domain.phone import normalize_phone
from ..domain.similarity import PropertySnapshot, property_similarity
from ..domain.types import SellerType
from ..models import CanonicalProperty
from .images import ImageHasher, cluster_similar
from .importer import reclassify
from .outbox import DUPLICATES_DETECTED, enqueue_event

log = logging.getLogger(__name__)

_IMAGE_SELLERS = (SellerType.private, SellerType.unknown)


def _snapshot(p: CanonicalProperty) -> PropertySnapshot:
    return PropertySnapshot(
        id=p.id,
        address=p.address,
        price=p.price,
        size=p.size,
        floor=p.floor,
        rooms=p.rooms,
        coordinates=coordinates_of(p),
    )


def _price_close(a: float | None, b: float | None, tolerance: float = 0.05) -> bool:
    if not a or not b:
        return False
    return abs(a - b) / max(a, b) <= tolerance


def _age_key(p: CanonicalProperty) -> tuple:
    created = ensure_aware_utc(p.created_at) if p.created_at is not None else None
    return (created is None, created, p.id)


def _in_focus(focus: set[int] | None, *ids: int) -> bool:
    return focus is None or any(i in focus for i in ids)


class DeduplicationService:
    """
    Finds canonical properties that describe the same physical listing and folds them
    onto the oldest one. Three independent signals feed one disjoint set:

      * pairwise similarity score >= score_threshold
      * similar photos (private/unknown sellers only, when a hasher is configured)
      * same owner phone with price within 5%
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        hasher: ImageHasher | None = None,
        score_threshold: float | None = None,
        distance_m: float | None = None,
        address_min_ratio: float | None = None,
        image_threshold: int | None = None,
        multi_agency_min: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session_maker = session_maker
        self.hasher = hasher
        self.score_threshold = float(settings.DEDUP_SCORE_THRESHOLD if score_threshold is None else score_threshold)
        self.distance_m = float(settings.DEDUP_DISTANCE_M if distance_m is None else distance_m)
        ratio = settings.DEDUP_ADDRESS_MIN_RATIO if address_min_ratio is None else address_min_ratio
        # settings carry a 0..100 ratio like rapidfuzz does
        self.address_min_ratio = float(ratio) / 100.0 if ratio > 1 else float(ratio)
        self.image_threshold = int(settings.IMAGE_HASH_THRESHOLD if image_threshold is None else image_threshold)
        self.multi_agency_min = int(
            settings.MULTI_AGENCY_MIN_AGENCIES if multi_agency_min is None else multi_agency_min
        )
        self._clock = clock
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run_scan(self, *, city: str | None = None, focus: Iterable[int] | None = None) -> dict[str, int]:
        """
        Whole store (or one city) by default. With focus, only the city buckets of those
        properties are loaded and only unions that involve one of them are made.
        """
        if self._running:
            log.info("dedup scan already running; skipping")
            return {"skipped": 1}
        self._running = True
        try:
            async with self.session_maker() as session:
                summary = await self._scan(session, city=city, focus=focus)
                await session.commit()
            log.info("dedup scan: %s", summary)
            return summary
        finally:
            self._running = False

    def _score_pairs(self, props: list[CanonicalProperty], ds: DisjointSet[int], focus: set[int] | None) -> int:
        snaps = [_snapshot(p) for p in props]
        hits = 0
        for i in range(len(snaps)):
            for j in range(i + 1, len(snaps)):
                if not _in_focus(focus, snaps[i].id, snaps[j].id):
                    continue
                sim = property_similarity(
                    snaps[i],
                    snaps[j],
                    max_distance_m=self.distance_m,
                    min_address_ratio=self.address_min_ratio,
                )
                if sim.score >= self.score_threshold:
                    ds.union(snaps[i].id, snaps[j].id)
                    hits += 1
                    log.debug("dup %s~%s score=%.0f (%s)", snaps[i].id, snaps[j].id, sim.score, ", ".join(sim.reasons))
        return hits

    async def _image_pairs(
        self, props: list[CanonicalProperty], ds: DisjointSet[int], focus: set[int] | None
    ) -> tuple[int, int]:
        if self.hasher is None:
            return 0, 0
        if focus is not None and not any(p.id in focus and p.seller_type in _IMAGE_SELLERS for p in props):
            return 0, 0

        owners: dict[str, set[int]] = defaultdict(set)
        for p in props:
            if p.seller_type not in _IMAGE_SELLERS:
                continue
            for url in load_json_list(p.image_urls_json):
                if isinstance(url, str) and url:
                    owners[url].add(p.id)
        if not owners:
            return 0, 0

        batch = await self.hasher.hash_many(list(owners))
        groups = [c.urls for c in cluster_similar(batch.records, self.image_threshold)]
        # one photo url shared by several listings
        groups += [(r.url,) for r in batch.records if len(owners[r.url]) > 1]

        unions = 0
        for urls in groups:
            ids = sorted({pid for url in urls for pid in owners[url]})
            if not _in_focus(focus, *ids):
                continue
            for other in ids[1:]:
                if ds.union(ids[0], other):
                    unions += 1
        return unions, len(batch.failures)

    def _contact_pairs(self, props: list[CanonicalProperty], ds: DisjointSet[int], focus: set[int] | None) -> int:
        by_phone: dict[str, list[CanonicalProperty]] = defaultdict(list)
        for p in props:
            key = normalize_phone(
                p.owner_phone,
                country_code=settings.PHONE_COUNTRY_CODE,
                local_digits=settings.PHONE_LOCAL_DIGITS,
            )
            if key:
                by_phone[key].append(p)

        unions = 0
        for group in by_phone.values():
            for i in range(len(group)):
                for j in range(i + 1, len(group)):
                    if not _in_focus(focus, group[i].id, group[j].id):
                        continue
                    if _price_close(group[i].price, group[j].price) and ds.union(group[i].id, group[j].id):
                        unions += 1
        return unions

    def _merge(self, canonical: CanonicalProperty, members: Iterable[CanonicalProperty]) -> int:
        agencies = load_json_list(canonical.agencies_json)
        images = load_json_list(canonical.image_urls_json)
        marked = 0
        for dup in members:
            dup.duplicate_of_id = canonical.id
            agencies = merge_unique(agencies, load_json_list(dup.agencies_json))
            images = merge_unique(images, load_json_list(dup.image_urls_json))
            if dup.seller_type == SellerType.agency or canonical.seller_type == SellerType.unknown:
                if dup.seller_type != SellerType.unknown:
                    canonical.seller_type = dup.seller_type
            if canonical.lat is None and dup.lat is not None:
                canonical.lat, canonical.lon = dup.lat, dup.lon
                canonical.geocode_status = dup.geocode_status
            canonical.owner_phone = canonical.owner_phone or dup.owner_phone
            canonical.owner_name = canonical.owner_name or dup.owner_name
            dup.updated_at = self._clock()
            marked += 1

        canonical.agencies_json = json.dumps(agencies)
        canonical.image_urls_json = json.dumps(images)
        reclassify(canonical, multi_agency_min=self.multi_agency_min)
        canonical.updated_at = self._clock()
        return marked

    async def _scan(
        self, session: AsyncSession, *, city: str | None, focus: Iterable[int] | None
    ) -> dict[str, int]:
        repo = PropertyRepository(session)
        scope: set[int] | None = None
        if focus is None:
            props = await repo.list_canonical(city=city)
        else:
            scope = set(focus)
            cities = await repo.cities_of(scope)
            if city:
                cities = [c for c in cities if c == city]
            props = await repo.list_canonical(cities=cities) if cities else []
        by_id = {p.id: p for p in props}
        ds: DisjointSet[int] = DisjointSet(by_id)

        score_hits = self._score_pairs(props, ds, scope)
        image_unions, image_failures = await self._image_pairs(props, ds, scope)
        contact_unions = self._contact_pairs(props, ds, scope)

        clusters = 0
        marked = 0
        for group in ds.groups():
            if len(group) < 2:
                continue
            members = sorted((by_id[i] for i in group), key=_age_key)
            canonical, rest = members[0], members[1:]
            marked += self._merge(canonical, rest)
            clusters += 1
            await enqueue_event(
                session,
                DUPLICATES_DETECTED,
                {
                    "canonical_id": canonical.id,
                    "duplicate_ids": [p.id for p in rest],
                    "classification": canonical.classification.value,
                },
            )

        await session.flush()
        return {
            "scanned": len(props),
            "score_pairs": score_hits,
            "image_unions": image_unions,
            "image_failures": image_failures,
            "contact_unions": contact_unions,
            "clusters": clusters,
            "duplicates_marked": marked,
        }
