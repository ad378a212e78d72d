# casamatch/domain/similarity.py
from __future__ import annotations

from dataclasses import dataclass

from .address import address_similarity, is_generic_address
from .geo import haversine_m
from .types import Coordinates


@dataclass(frozen=True)
class PropertySnapshot:
    """What the pairwise duplicate score looks at."""
    id: int
    address: str
    price: float | None
    size: float | None = None
    floor: str | None = None
    rooms: int | None = None
    coordinates: Coordinates | None = None


@dataclass(frozen=True)
class Similarity:
    score: float  # 0..100, normalized by the signals both records have
    reasons: tuple[str, ...] = ()


def property_similarity(
    a: PropertySnapshot,
    b: PropertySnapshot,
    *,
    max_distance_m: float = 500.0,
    min_address_ratio: float = 0.65,
) -> Similarity:
    """
    Weighted similarity of two canonical properties. Each signal only counts
    toward the maximum when both sides have it:

      location  40  (linear in distance up to max_distance_m, else fuzzy street match)
      price     20  (<5% -> 20, <10% -> 15)
      size      20  (<=5 m2 -> 20, <=10 m2 -> 15)
      floor     10
      rooms     10

    Generic addresses (no house number, bare city) never match.
    """
    if is_generic_address(a.address) or is_generic_address(b.address):
        return Similarity(score=0.0, reasons=("generic address",))

    total = 0.0
    max_score = 0.0
    reasons: list[str] = []

    if a.coordinates is not None and b.coordinates is not None:
        max_score += 40
        dist = haversine_m(a.coordinates, b.coordinates)
        if dist <= max_distance_m:
            total += max(0.0, 40 * (1 - dist / max_distance_m))
            reasons.append(f"distance {dist:.0f}m")
    else:
        max_score += 40
        ratio = address_similarity(a.address, b.address)
        if ratio > min_address_ratio:
            total += ratio * 40
            reasons.append(f"address {ratio:.0%} similar")

    if a.price and b.price:
        max_score += 20
        diff = abs(a.price - b.price) / ((a.price + b.price) / 2)
        if diff < 0.05:
            total += 20
            reasons.append(f"price diff {diff:.1%}")
        elif diff < 0.10:
            total += 15
            reasons.append(f"price diff {diff:.1%}")

    if a.size and b.size:
        max_score += 20
        size_diff = abs(a.size - b.size)
        if size_diff <= 5:
            total += 20
            reasons.append("same size")
        elif size_diff <= 10:
            total += 15
            reasons.append("similar size")

    if a.floor is not None and b.floor is not None:
        max_score += 10
        if a.floor.strip().lower() == b.floor.strip().lower():
            total += 10
            reasons.append(f"same floor {a.floor}")

    if a.rooms and b.rooms:
        max_score += 10
        if a.rooms == b.rooms:
            total += 10
            reasons.append(f"same rooms {a.rooms}")

    score = (total / max_score) * 100 if max_score > 0 else 0.0
    return Similarity(score=score, reasons=tuple(reasons))
