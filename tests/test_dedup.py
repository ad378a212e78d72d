import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from casamatch.domain.types import Classification, SellerType
from casamatch.models import CanonicalProperty, OutboxEvent
from casamatch.service_layer.dedup import DeduplicationService
from casamatch.service_layer.images import HashBatch, ImageHashRecord
from casamatch.service_layer.outbox import DUPLICATES_DETECTED


class FakeHasher:
    def __init__(self, hashes: dict[str, str], *, gate: asyncio.Event | None = None):
        self.hashes = hashes
        self.gate = gate
        self.entered = asyncio.Event()
        self.asked: list[str] = []

    async def hash_many(self, urls):
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        self.asked.extend(urls)
        batch = HashBatch()
        for url in urls:
            if url in self.hashes:
                batch.records.append(ImageHashRecord(url=url, hash=self.hashes[url]))
            else:
                batch.failures[url] = "UnidentifiedImageError: cannot identify image"
        return batch


def _prop(clock, address: str, price: float, **kw) -> CanonicalProperty:
    base = dict(
        address=address,
        city="Milano",
        address_key=address.lower(),
        price=price,
        size=80.0,
        rooms=3,
        created_at=clock(),
    )
    base.update(kw)
    return CanonicalProperty(**base)


async def _seed(async_session_maker, *props: CanonicalProperty) -> list[int]:
    async with async_session_maker() as session:
        session.add_all(props)
        await session.commit()
    return [p.id for p in props]


async def _load(async_session_maker) -> dict[int, CanonicalProperty]:
    async with async_session_maker() as session:
        rows = (await session.execute(select(CanonicalProperty))).scalars().all()
    return {p.id: p for p in rows}


@pytest.mark.asyncio
async def test_similar_records_fold_onto_the_oldest(async_session_maker, clock):
    newer, older, other = await _seed(
        async_session_maker,
        _prop(clock, "Via Paolo Sarpi 12", 420_000, floor="2", agencies_json='["Sarpi Casa"]',
              seller_type=SellerType.agency),
        _prop(clock, "V. Paolo Sarpi, 12", 425_000, size=82.0, floor="2", agencies_json='["Nord Immobili"]',
              seller_type=SellerType.agency, created_at=clock() - timedelta(days=3)),
        _prop(clock, "Corso Buenos Aires 45", 300_000, size=55.0, rooms=2),
    )

    summary = await DeduplicationService(async_session_maker, multi_agency_min=2).run_scan()

    assert summary["scanned"] == 3
    assert summary["clusters"] == 1
    assert summary["duplicates_marked"] == 1

    rows = await _load(async_session_maker)
    assert rows[newer].duplicate_of_id == older
    assert rows[older].duplicate_of_id is None
    assert rows[other].duplicate_of_id is None
    assert json.loads(rows[older].agencies_json) == ["Nord Immobili", "Sarpi Casa"]
    # two agencies reach the (lowered) multi-agency bar
    assert rows[older].classification == Classification.multi_agency

    async with async_session_maker() as session:
        events = (await session.execute(select(OutboxEvent))).scalars().all()
    assert [e.event_type for e in events] == [DUPLICATES_DETECTED]
    payload = json.loads(events[0].payload_json)
    assert payload == {"canonical_id": older, "duplicate_ids": [newer], "classification": "multi_agency"}


@pytest.mark.asyncio
async def test_second_scan_does_not_touch_marked_duplicates(async_session_maker, clock):
    await _seed(
        async_session_maker,
        _prop(clock, "Via Paolo Sarpi 12", 420_000),
        _prop(clock, "V. Paolo Sarpi, 12", 421_000),
    )
    svc = DeduplicationService(async_session_maker)

    assert (await svc.run_scan())["duplicates_marked"] == 1
    again = await svc.run_scan()
    assert again["scanned"] == 1
    assert again["clusters"] == 0


@pytest.mark.asyncio
async def test_generic_addresses_never_match(async_session_maker, clock):
    a, b = await _seed(
        async_session_maker,
        _prop(clock, "Milano", 300_000),
        _prop(clock, "Via Roma", 300_000),
    )
    summary = await DeduplicationService(async_session_maker).run_scan()

    assert summary["score_pairs"] == 0
    rows = await _load(async_session_maker)
    assert rows[a].duplicate_of_id is None
    assert rows[b].duplicate_of_id is None


@pytest.mark.asyncio
async def test_same_owner_phone_within_five_percent(async_session_maker, clock):
    first, close, far = await _seed(
        async_session_maker,
        _prop(clock, "Via Roma 1", 200_000, size=50.0, rooms=2, owner_phone="+39 333 123 4567",
              created_at=clock() - timedelta(days=1)),
        _prop(clock, "Piazza Napoli 3", 205_000, size=120.0, rooms=5, owner_phone="333-1234567"),
        _prop(clock, "Via Garibaldi 50", 260_000, size=200.0, rooms=6, owner_phone="0039 3331234567"),
    )

    summary = await DeduplicationService(async_session_maker).run_scan()

    assert summary["score_pairs"] == 0
    assert summary["contact_unions"] == 1
    rows = await _load(async_session_maker)
    assert rows[close].duplicate_of_id == first
    assert rows[far].duplicate_of_id is None


@pytest.mark.asyncio
async def test_image_clusters_only_for_private_or_unknown_sellers(async_session_maker, clock):
    hasher = FakeHasher(
        {
            "http://img/1.jpg": "ffff0000ffff0000",
            "http://img/2.jpg": "ffff0000ffff0001",
            "http://img/3.jpg": "ffff0000ffff0000",
        }
    )
    private, unknown, agency = await _seed(
        async_session_maker,
        _prop(clock, "Via Tortona 33", 350_000, size=70.0, rooms=2, seller_type=SellerType.private,
              image_urls_json='["http://img/1.jpg", "http://img/broken.jpg"]',
              created_at=clock() - timedelta(days=2)),
        _prop(clock, "Viale Certosa 140", 520_000, size=150.0, rooms=5,
              image_urls_json='["http://img/2.jpg"]'),
        _prop(clock, "Piazzale Loreto 1", 900_000, size=300.0, rooms=8, seller_type=SellerType.agency,
              image_urls_json='["http://img/3.jpg"]'),
    )

    summary = await DeduplicationService(async_session_maker, hasher=hasher, image_threshold=5).run_scan()

    assert sorted(hasher.asked) == ["http://img/1.jpg", "http://img/2.jpg", "http://img/broken.jpg"]
    assert summary["image_unions"] == 1
    assert summary["image_failures"] == 1
    rows = await _load(async_session_maker)
    assert rows[unknown].duplicate_of_id == private
    assert rows[agency].duplicate_of_id is None
    assert json.loads(rows[private].image_urls_json) == [
        "http://img/1.jpg",
        "http://img/broken.jpg",
        "http://img/2.jpg",
    ]
    assert rows[private].classification == Classification.private


@pytest.mark.asyncio
async def test_scan_is_single_flight(async_session_maker, clock):
    await _seed(
        async_session_maker,
        _prop(clock, "Via Tortona 33", 350_000, seller_type=SellerType.private, image_urls_json='["http://img/1.jpg"]'),
    )
    gate = asyncio.Event()
    hasher = FakeHasher({"http://img/1.jpg": "00ff00ff00ff00ff"}, gate=gate)
    svc = DeduplicationService(async_session_maker, hasher=hasher)

    first = asyncio.create_task(svc.run_scan())
    await asyncio.wait_for(hasher.entered.wait(), timeout=5)
    assert svc.running
    assert await svc.run_scan() == {"skipped": 1}
    gate.set()
    assert (await first)["scanned"] == 1
    assert not svc.running


@pytest.mark.asyncio
async def test_focused_scan_stays_in_the_focus_city_buckets(async_session_maker, clock):
    older, newer, torino = await _seed(
        async_session_maker,
        _prop(clock, "Via Paolo Sarpi 12", 420_000, created_at=clock() - timedelta(days=1)),
        _prop(clock, "V. Paolo Sarpi, 12", 421_000),
        _prop(clock, "Via Po 7", 300_000, city="Torino"),
    )
    svc = DeduplicationService(async_session_maker)

    elsewhere = await svc.run_scan(focus=[torino])
    assert elsewhere["scanned"] == 1
    assert elsewhere["clusters"] == 0
    assert (await _load(async_session_maker))[newer].duplicate_of_id is None

    assert (await svc.run_scan(focus=[]))["scanned"] == 0

    here = await svc.run_scan(focus=[newer])
    assert here["scanned"] == 2
    assert here["duplicates_marked"] == 1
    assert (await _load(async_session_maker))[newer].duplicate_of_id == older
