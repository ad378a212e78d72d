# casamatch/service_layer/matching.py
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..adapters.clients.llm_scorer import LlmMatchScorer, MatchScorer
from ..adapters.repos.buyers import BuyerRepository
from ..adapters.repos.matches import MatchRepository
from ..adapters.repos.properties import PropertyRepository, coordinates_of, load_json_list
from ..config import settings
from ..domain.clock import Clock, utcnow
from ..domain.matching import BuyerCriteria, PropertyFacts, QuickScore, clamp_score, quick_score
from ..models import Buyer, CanonicalProperty
from .outbox import MATCH_CREATED, enqueue_event

log = logging.getLogger(__name__)

QuickScorer = Callable[..., QuickScore]


def criteria_of(buyer: Buyer) -> BuyerCriteria:
    area: dict[str, Any] | None = None
    if buyer.search_area_json:
        try:
            raw = json.loads(buyer.search_area_json)
        except ValueError:
            log.warning("buyer %s has unreadable search area; ignoring it", buyer.id)
            raw = None
        area = raw if isinstance(raw, dict) else None
    return BuyerCriteria(
        buyer_id=buyer.id,
        max_price=buyer.max_price,
        min_size=buyer.min_size,
        min_rooms=buyer.min_rooms,
        property_types=tuple(str(t) for t in load_json_list(buyer.property_types_json)),
        city=buyer.city,
        search_area=area,
    )


def facts_of(prop: CanonicalProperty) -> PropertyFacts:
    return PropertyFacts(
        property_id=prop.id,
        price=prop.price,
        size=prop.size,
        rooms=prop.rooms,
        property_type=prop.property_type,
        city=prop.city,
        coordinates=coordinates_of(prop),
    )


def buyer_context(buyer: Buyer) -> dict[str, Any]:
    return {
        "name": buyer.name,
        "city": buyer.city,
        "min_price": buyer.min_price,
        "max_price": buyer.max_price,
        "min_size": buyer.min_size,
        "max_size": buyer.max_size,
        "min_rooms": buyer.min_rooms,
        "property_types": load_json_list(buyer.property_types_json),
        "has_search_area": bool(buyer.search_area_json),
    }


def property_context(prop: CanonicalProperty) -> dict[str, Any]:
    return {
        "address": prop.address,
        "city": prop.city,
        "price": prop.price,
        "size": prop.size,
        "rooms": prop.rooms,
        "bathrooms": prop.bathrooms,
        "floor": prop.floor,
        "property_type": prop.property_type,
        "title": prop.title,
        "description": (prop.description or "")[:500],
    }


@dataclass(frozen=True)
class MatchDecision:
    quick: QuickScore
    score: int
    reasoning: str
    is_ai_generated: bool
    accepted: bool


@dataclass
class MatchRunSummary:
    candidates: int = 0
    rejected: int = 0
    ai_scored: int = 0
    ai_failures: int = 0
    persisted: int = 0
    created: int = 0
    failed: int = 0
    replaced: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class _Candidate:
    buyer_id: int
    property_id: int
    criteria: BuyerCriteria
    facts: PropertyFacts
    buyer_ctx: dict[str, Any]
    property_ctx: dict[str, Any]
    history: list[dict[str, Any]]


class MatchingEngine:
    """
    Two stages per (buyer, property) pair:

      1) quick_score: deterministic, cheap, applied to every candidate
      2) the external scorer, only when enabled and quick >= ai_gate

    A failing scorer never loses the candidate: the quick score stands and the match
    is flagged as not AI generated. Only final >= score_threshold is persisted.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        scorer: MatchScorer | None = None,
        *,
        quick_scorer: QuickScorer = quick_score,
        score_threshold: int | None = None,
        ai_gate: int | None = None,
        ai_enabled: bool | None = None,
        min_buyer_rating: int | None = None,
        price_tolerance: float | None = None,
        size_tolerance: float | None = None,
        point_radius_m: float | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session_maker = session_maker
        self.scorer = scorer
        self.quick_scorer = quick_scorer
        self.score_threshold = int(settings.MATCH_SCORE_THRESHOLD if score_threshold is None else score_threshold)
        self.ai_gate = int(settings.MATCH_AI_GATE if ai_gate is None else ai_gate)
        self.ai_enabled = (scorer is not None) if ai_enabled is None else bool(ai_enabled)
        self.min_buyer_rating = int(settings.MATCH_MIN_BUYER_RATING if min_buyer_rating is None else min_buyer_rating)
        self.price_tolerance = float(settings.MATCH_PRICE_TOLERANCE if price_tolerance is None else price_tolerance)
        self.size_tolerance = float(settings.MATCH_SIZE_TOLERANCE if size_tolerance is None else size_tolerance)
        self.point_radius_m = float(settings.MATCH_POINT_RADIUS_M if point_radius_m is None else point_radius_m)
        self._clock = clock

    @classmethod
    def from_settings(cls, session_maker: async_sessionmaker[AsyncSession]) -> "MatchingEngine":
        scorer: MatchScorer | None = None
        if settings.MATCH_AI_ENABLED and settings.SCORER_API_KEY:
            scorer = LlmMatchScorer.from_settings()
        return cls(session_maker, scorer, ai_enabled=settings.MATCH_AI_ENABLED)

    async def evaluate(
        self,
        criteria: BuyerCriteria,
        facts: PropertyFacts,
        *,
        buyer_ctx: dict[str, Any] | None = None,
        property_ctx: dict[str, Any] | None = None,
        history: list[dict[str, Any]] | None = None,
    ) -> MatchDecision:
        quick = self.quick_scorer(
            criteria,
            facts,
            price_tolerance=self.price_tolerance,
            size_tolerance=self.size_tolerance,
            point_radius_m=self.point_radius_m,
        )
        score = clamp_score(quick.score)
        reasoning = quick.explain()
        is_ai = False

        if not quick.rejected and self.ai_enabled and self.scorer is not None and score >= self.ai_gate:
            try:
                verdict = await self.scorer.score(buyer_ctx or {}, property_ctx or {}, history or [])
            except Exception as e:
                log.warning(
                    "scorer failed for buyer=%s property=%s, keeping quick score %s: %s",
                    criteria.buyer_id,
                    facts.property_id,
                    score,
                    e,
                )
            else:
                score = clamp_score(verdict.score)
                reasoning = verdict.reasoning
                is_ai = True

        return MatchDecision(
            quick=quick,
            score=score,
            reasoning=reasoning,
            is_ai_generated=is_ai,
            accepted=score >= self.score_threshold,
        )

    async def _history(self, session: AsyncSession, buyer_id: int) -> list[dict[str, Any]]:
        rows = await MatchRepository(session).list_for_buyer(buyer_id, limit=5)
        return [{"property_id": m.property_id, "score": m.score} for m in rows]

    async def _run(self, candidates: list[_Candidate], summary: MatchRunSummary) -> MatchRunSummary:
        for c in candidates:
            summary.candidates += 1
            try:
                decision = await self.evaluate(
                    c.criteria,
                    c.facts,
                    buyer_ctx=c.buyer_ctx,
                    property_ctx=c.property_ctx,
                    history=c.history,
                )
                if decision.quick.rejected:
                    summary.rejected += 1
                if decision.is_ai_generated:
                    summary.ai_scored += 1
                elif not decision.quick.rejected and self.ai_enabled and decision.quick.score >= self.ai_gate:
                    summary.ai_failures += 1
                if not decision.accepted:
                    continue

                async with self.session_maker() as session:
                    row, created = await MatchRepository(session).upsert(
                        buyer_id=c.buyer_id,
                        property_id=c.property_id,
                        score=decision.score,
                        reasoning=decision.reasoning,
                        is_ai_generated=decision.is_ai_generated,
                        now=self._clock(),
                    )
                    if created:
                        await enqueue_event(
                            session,
                            MATCH_CREATED,
                            {
                                "match_id": row.id,
                                "buyer_id": c.buyer_id,
                                "property_id": c.property_id,
                                "score": decision.score,
                                "is_ai_generated": decision.is_ai_generated,
                            },
                        )
                    await session.commit()
                summary.persisted += 1
                if created:
                    summary.created += 1
            except Exception:
                summary.failed += 1
                log.exception("matching failed for buyer=%s property=%s", c.buyer_id, c.property_id)
        return summary

    async def match_property(self, property_id: int) -> MatchRunSummary:
        """Score one property against every eligible buyer."""
        async with self.session_maker() as session:
            prop = await PropertyRepository(session).get(property_id)
            if prop is None:
                raise ValueError(f"property {property_id} not found")
            if prop.duplicate_of_id is not None:
                log.info("property %s is a duplicate of %s; not matching", prop.id, prop.duplicate_of_id)
                return MatchRunSummary()

            buyers = await BuyerRepository(session).list_eligible(min_rating=self.min_buyer_rating)
            facts, pctx = facts_of(prop), property_context(prop)
            candidates = [
                _Candidate(
                    buyer_id=b.id,
                    property_id=prop.id,
                    criteria=criteria_of(b),
                    facts=facts,
                    buyer_ctx=buyer_context(b),
                    property_ctx=pctx,
                    history=await self._history(session, b.id),
                )
                for b in buyers
            ]

        summary = await self._run(candidates, MatchRunSummary())
        log.info("match_property %s: %s", property_id, summary.as_dict())
        return summary

    async def match_buyer(self, buyer_id: int) -> MatchRunSummary:
        """Replace the buyer's matches with a fresh scan of every canonical property."""
        summary = MatchRunSummary()
        async with self.session_maker() as session:
            buyer = await BuyerRepository(session).get(buyer_id)
            if buyer is None:
                raise ValueError(f"buyer {buyer_id} not found")

            summary.replaced = await MatchRepository(session).delete_for_buyer(buyer_id)
            await session.commit()

            props = await PropertyRepository(session).list_canonical()
            criteria, bctx = criteria_of(buyer), buyer_context(buyer)
            candidates = [
                _Candidate(
                    buyer_id=buyer.id,
                    property_id=p.id,
                    criteria=criteria,
                    facts=facts_of(p),
                    buyer_ctx=bctx,
                    property_ctx=property_context(p),
                    history=[],
                )
                for p in props
            ]

        await self._run(candidates, summary)
        log.info("match_buyer %s: %s", buyer_id, summary.as_dict())
        return summary
