# casamatch/domain/matching.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .geo import point_in_area
from .normalize import normalize_property_type
from .types import Coordinates


@dataclass(frozen=True)
class BuyerCriteria:
    buyer_id: int
    max_price: float | None = None
    min_size: float | None = None
    min_rooms: int | None = None
    property_types: tuple[str, ...] = ()
    city: str | None = None
    search_area: dict[str, Any] | None = None


@dataclass(frozen=True)
class PropertyFacts:
    property_id: int
    price: float
    size: float | None = None
    rooms: int | None = None
    property_type: str | None = None
    city: str | None = None
    coordinates: Coordinates | None = None


@dataclass(frozen=True)
class QuickScore:
    score: int
    reasons: tuple[str, ...] = field(default_factory=tuple)

    @property
    def rejected(self) -> bool:
        return self.score == 0

    def explain(self) -> str:
        return "; ".join(self.reasons) if self.reasons else "all criteria met"


def _reject(reason: str) -> QuickScore:
    return QuickScore(score=0, reasons=(reason,))


def quick_score(
    criteria: BuyerCriteria,
    facts: PropertyFacts,
    *,
    price_tolerance: float = 0.10,
    size_tolerance: float = 0.10,
    point_radius_m: float = 2000.0,
) -> QuickScore:
    """
    Cheap deterministic 0..100 score. Starts at 100 and subtracts:

      price over max_price   -> min(40, 2 * pct_over), reject beyond price_tolerance
      size under min_size    -> min(30, pct_under),    reject beyond size_tolerance
      rooms short            -> 5 per missing room

    Hard rejects (score 0): wrong property type, different city, coordinates outside
    the search area. Missing property data skips that check instead of penalizing.
    """
    reasons: list[str] = []
    score = 100.0

    if criteria.property_types:
        wanted = {normalize_property_type(t) or t.strip().lower() for t in criteria.property_types}
        have = normalize_property_type(facts.property_type)
        if have is not None and have not in wanted:
            return _reject(f"property type {have} not wanted")

    if criteria.city and facts.city and criteria.city.strip().lower() != facts.city.strip().lower():
        return _reject(f"city {facts.city} not wanted")

    if criteria.search_area and facts.coordinates is not None:
        if not point_in_area(facts.coordinates, criteria.search_area, point_radius_m):
            return _reject("outside search area")

    if criteria.max_price and facts.price > criteria.max_price:
        pct_over = (facts.price - criteria.max_price) / criteria.max_price * 100.0
        if pct_over > price_tolerance * 100.0:
            return _reject(f"price {pct_over:.1f}% over budget")
        penalty = min(40.0, pct_over * 2.0)
        score -= penalty
        reasons.append(f"price {pct_over:.1f}% over budget (-{penalty:.0f})")

    if criteria.min_size and facts.size is not None and facts.size < criteria.min_size:
        pct_under = (criteria.min_size - facts.size) / criteria.min_size * 100.0
        if pct_under > size_tolerance * 100.0:
            return _reject(f"size {pct_under:.1f}% under minimum")
        penalty = min(30.0, pct_under)
        score -= penalty
        reasons.append(f"size {pct_under:.1f}% under minimum (-{penalty:.0f})")

    if criteria.min_rooms and facts.rooms is not None and facts.rooms < criteria.min_rooms:
        missing = criteria.min_rooms - facts.rooms
        score -= 5 * missing
        reasons.append(f"{missing} room(s) short (-{5 * missing})")

    return QuickScore(score=int(round(max(0.0, min(100.0, score)))), reasons=tuple(reasons))


def clamp_score(value: Any) -> int:
    """External scores arrive as anything; pin them to an int in 0..100."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0
    if v != v:  # NaN
        return 0
    return int(round(max(0.0, min(100.0, v))))
