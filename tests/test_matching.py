import json

import pytest
from sqlalchemy import select

from casamatch.domain.errors import ScorerError
from casamatch.domain.geo import haversine_m, point_in_area, within_radius
from casamatch.domain.matching import BuyerCriteria, PropertyFacts, QuickScore, clamp_score, quick_score
from casamatch.domain.types import Coordinates
from casamatch.adapters.clients.llm_scorer import ScorerVerdict, parse_verdict
from casamatch.models import Buyer, CanonicalProperty, Match, OutboxEvent
from casamatch.service_layer.matching import MatchingEngine
from casamatch.service_layer.outbox import MATCH_CREATED

DUOMO = Coordinates(lat=45.4642, lon=9.1900)

# rough box around central Milano, [lon, lat]
CENTRO = {
    "type": "Polygon",
    "coordinates": [[[9.15, 45.44], [9.23, 45.44], [9.23, 45.49], [9.15, 45.49], [9.15, 45.44]]],
}


def _criteria(**kw) -> BuyerCriteria:
    base = dict(buyer_id=1, max_price=300_000, min_size=70, min_rooms=3, city="Milano")
    base.update(kw)
    return BuyerCriteria(**base)


def _facts(**kw) -> PropertyFacts:
    base = dict(property_id=1, price=280_000, size=80, rooms=3, property_type="Appartamento", city="Milano")
    base.update(kw)
    return PropertyFacts(**base)


# -----------------------------
# quick_score
# -----------------------------
def test_perfect_fit_scores_100():
    q = quick_score(_criteria(), _facts())
    assert q.score == 100
    assert q.explain() == "all criteria met"


def test_quick_score_never_increases_as_price_rises():
    prev = 101
    for price in range(250_000, 345_000, 5_000):
        s = quick_score(_criteria(), _facts(price=price)).score
        assert s <= prev
        prev = s
    assert quick_score(_criteria(), _facts(price=340_000)).score == 0


def test_quick_score_never_increases_as_size_shrinks():
    prev = 101
    for size in range(90, 55, -1):
        s = quick_score(_criteria(), _facts(size=size)).score
        assert s <= prev
        prev = s
    assert quick_score(_criteria(), _facts(size=60)).score == 0


def test_penalties_within_tolerance():
    # 5% over budget -> -10
    assert quick_score(_criteria(), _facts(price=315_000)).score == 90
    # 10% under min size -> -10
    assert quick_score(_criteria(), _facts(size=63)).score == 90
    # one room short -> -5
    assert quick_score(_criteria(), _facts(rooms=2)).score == 95


def test_hard_rejects():
    assert quick_score(_criteria(property_types=("loft",)), _facts()).rejected
    assert quick_score(_criteria(city="Roma"), _facts()).rejected
    assert quick_score(_criteria(search_area=CENTRO), _facts(coordinates=Coordinates(45.60, 9.30))).rejected


def test_area_inside_and_missing_coordinates():
    assert quick_score(_criteria(search_area=CENTRO), _facts(coordinates=DUOMO)).score == 100
    # no coordinates: the check is skipped, not failed
    assert quick_score(_criteria(search_area=CENTRO), _facts(coordinates=None)).score == 100


def test_unknown_property_type_is_not_rejected():
    assert quick_score(_criteria(property_types=("apartment",)), _facts(property_type=None)).score == 100
    assert quick_score(_criteria(property_types=("Trilocale",)), _facts(property_type="flat")).score == 100


def test_clamp_score():
    assert clamp_score(150) == 100
    assert clamp_score(-3) == 0
    assert clamp_score("72.6") == 73
    assert clamp_score(None) == 0
    assert clamp_score(float("nan")) == 0


# -----------------------------
# geo
# -----------------------------
def test_haversine_and_radius():
    castello = Coordinates(lat=45.4705, lon=9.1793)
    d = haversine_m(DUOMO, castello)
    assert 1000 < d < 1200
    assert within_radius([DUOMO, castello], DUOMO, 500, lambda c: c) == [DUOMO]


def test_point_in_area_shapes():
    hole = [[9.18, 45.46], [9.20, 45.46], [9.20, 45.47], [9.18, 45.47], [9.18, 45.46]]
    with_hole = {"type": "Polygon", "coordinates": CENTRO["coordinates"] + [hole]}
    assert point_in_area(DUOMO, CENTRO, 2000)
    assert not point_in_area(DUOMO, with_hole, 2000)

    multi = {"type": "MultiPolygon", "coordinates": [[hole], CENTRO["coordinates"]]}
    assert point_in_area(Coordinates(45.48, 9.16), multi, 2000)

    point = {"type": "Point", "coordinates": [9.19, 45.4642]}
    assert point_in_area(DUOMO, point, 100)
    assert not point_in_area(Coordinates(45.50, 9.19), point, 2000)

    feature = {"type": "Feature", "geometry": point, "properties": {"radius": 5000}}
    assert point_in_area(Coordinates(45.50, 9.19), feature, 2000)

    fc = {"type": "FeatureCollection", "features": [{"type": "Feature", "geometry": CENTRO, "properties": {}}]}
    assert point_in_area(DUOMO, fc, 2000)
    assert not point_in_area(DUOMO, {"type": "LineString", "coordinates": []}, 2000)


# -----------------------------
# scorer contract
# -----------------------------
def test_parse_verdict():
    v = parse_verdict('{"score": 140, "reasoning": "ottimo"}')
    assert v == ScorerVerdict(score=100, reasoning="ottimo")
    with pytest.raises(ScorerError):
        parse_verdict("not json")
    with pytest.raises(ScorerError):
        parse_verdict('{"reasoning": "no score"}')


# -----------------------------
# engine
# -----------------------------
class RecordingScorer:
    def __init__(self, score: int = 85, fail: bool = False):
        self.value = score
        self.fail = fail
        self.calls = 0

    async def score(self, buyer_context, property_context, history):
        self.calls += 1
        if self.fail:
            raise ScorerError("model unavailable")
        return ScorerVerdict(score=self.value, reasoning="scored externally")


def fixed(score: int):
    def _quick(criteria, facts, **kw):
        return QuickScore(score=score, reasons=(f"fixed {score}",))

    return _quick


async def _seed(async_session_maker, *, rating: int = 5, active: bool = True) -> tuple[int, int]:
    async with async_session_maker() as session:
        b = Buyer(
            name="Marco",
            phone="3331112222",
            rating=rating,
            active=active,
            city="Milano",
            max_price=300_000,
            min_size=70,
            min_rooms=3,
            property_types_json=json.dumps(["appartamento"]),
        )
        p = CanonicalProperty(
            address="Via Paolo Sarpi 12",
            city="Milano",
            address_key="v paolo sarpi 12|milano",
            price=280_000,
            size=80,
            rooms=3,
            property_type="Trilocale",
        )
        session.add_all([b, p])
        await session.commit()
        return b.id, p.id


async def _matches(async_session_maker) -> list[Match]:
    async with async_session_maker() as session:
        return list((await session.execute(select(Match))).scalars().all())


@pytest.mark.asyncio
async def test_below_threshold_without_scorer_is_not_persisted(async_session_maker):
    _, pid = await _seed(async_session_maker)
    engine = MatchingEngine(async_session_maker, quick_scorer=fixed(40))

    summary = await engine.match_property(pid)

    assert summary.candidates == 1
    assert summary.persisted == 0
    assert await _matches(async_session_maker) == []


@pytest.mark.asyncio
async def test_failing_scorer_falls_back_to_quick_score(async_session_maker):
    bid, pid = await _seed(async_session_maker)
    scorer = RecordingScorer(fail=True)
    engine = MatchingEngine(async_session_maker, scorer, quick_scorer=fixed(65), ai_enabled=True)

    summary = await engine.match_property(pid)

    assert scorer.calls == 1
    assert summary.ai_failures == 1
    rows = await _matches(async_session_maker)
    assert len(rows) == 1
    assert (rows[0].buyer_id, rows[0].property_id) == (bid, pid)
    assert rows[0].score == 65
    assert rows[0].is_ai_generated is False


@pytest.mark.asyncio
async def test_scorer_only_runs_above_gate(async_session_maker):
    _, pid = await _seed(async_session_maker)
    scorer = RecordingScorer(score=90)
    engine = MatchingEngine(async_session_maker, scorer, quick_scorer=fixed(55), ai_gate=60)

    await engine.match_property(pid)

    assert scorer.calls == 0
    rows = await _matches(async_session_maker)
    assert [r.score for r in rows] == [55]
    assert rows[0].is_ai_generated is False


@pytest.mark.asyncio
async def test_scorer_verdict_replaces_quick_score(async_session_maker):
    _, pid = await _seed(async_session_maker)
    scorer = RecordingScorer(score=30)
    engine = MatchingEngine(async_session_maker, scorer, quick_scorer=fixed(80))

    summary = await engine.match_property(pid)

    # the external verdict decides, even when it drops below the threshold
    assert summary.ai_scored == 1
    assert await _matches(async_session_maker) == []


@pytest.mark.asyncio
async def test_match_emits_outbox_event_and_is_upserted(async_session_maker):
    bid, pid = await _seed(async_session_maker)
    engine = MatchingEngine(async_session_maker)

    first = await engine.match_property(pid)
    second = await engine.match_property(pid)

    assert (first.created, second.created) == (1, 0)
    rows = await _matches(async_session_maker)
    assert len(rows) == 1
    assert rows[0].score == 100

    async with async_session_maker() as session:
        events = (await session.execute(select(OutboxEvent))).scalars().all()
    # only the first run created the match
    assert [e.event_type for e in events] == [MATCH_CREATED]
    assert json.loads(events[0].payload_json)["buyer_id"] == bid


@pytest.mark.asyncio
async def test_ineligible_buyers_are_not_scanned(async_session_maker):
    _, pid = await _seed(async_session_maker, rating=3)
    engine = MatchingEngine(async_session_maker)
    assert (await engine.match_property(pid)).candidates == 0


@pytest.mark.asyncio
async def test_match_buyer_replaces_existing_matches(async_session_maker):
    bid, pid = await _seed(async_session_maker)
    async with async_session_maker() as session:
        session.add(Match(buyer_id=bid, property_id=999, score=77, reasoning="stale"))
        session.add(
            CanonicalProperty(
                address="Via Roma 1", city="Roma", address_key="v roma 1|roma", price=100_000, size=90, rooms=3
            )
        )
        await session.commit()

    summary = await MatchingEngine(async_session_maker).match_buyer(bid)

    assert summary.replaced == 1
    assert summary.candidates == 2
    assert summary.rejected == 1  # wrong city
    rows = await _matches(async_session_maker)
    assert [r.property_id for r in rows] == [pid]


@pytest.mark.asyncio
async def test_one_failing_candidate_does_not_block_others(async_session_maker):
    _, pid = await _seed(async_session_maker)
    async with async_session_maker() as session:
        session.add(Buyer(name="Second", rating=5, active=True, city="Milano"))
        await session.commit()

    calls = {"n": 0}

    def flaky(criteria, facts, **kw):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("bad criteria")
        return QuickScore(score=70)

    summary = await MatchingEngine(async_session_maker, quick_scorer=flaky).match_property(pid)

    assert summary.failed == 1
    assert summary.persisted == 1
