# casamatch/domain/geo.py
from __future__ import annotations

import math
from typing import Any, Callable, Iterable, TypeVar

from .types import Coordinates

T = TypeVar("T")

EARTH_RADIUS_M = 6_371_000

Ring = list[list[float]]  # GeoJSON ring: [[lon, lat], ...]


def haversine_m(a: Coordinates, b: Coordinates) -> float:
    """Return haversine distance in meters."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lon - a.lon)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def within_radius(
    items: Iterable[T],
    center: Coordinates,
    radius_m: float,
    coords_of: Callable[[T], Coordinates | None],
) -> list[T]:
    """Keep items whose coordinates fall within radius_m of center. Items without coordinates are dropped."""
    out: list[T] = []
    for it in items:
        c = coords_of(it)
        if c is not None and haversine_m(center, c) <= radius_m:
            out.append(it)
    return out


def _point_in_ring(lon: float, lat: float, ring: Ring) -> bool:
    # ray casting
    inside = False
    n = len(ring)
    if n < 3:
        return False
    j = n - 1
    for i in range(n):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lon < x_cross:
                inside = not inside
        j = i
    return inside


def point_in_polygon(point: Coordinates, rings: list[Ring]) -> bool:
    """GeoJSON Polygon coordinates: outer ring first, holes after."""
    if not rings:
        return False
    if not _point_in_ring(point.lon, point.lat, rings[0]):
        return False
    return not any(_point_in_ring(point.lon, point.lat, hole) for hole in rings[1:])


def point_in_area(point: Coordinates, area: dict[str, Any], point_radius_m: float) -> bool:
    """
    Containment test against a buyer's GeoJSON search area.

    Supports Polygon, MultiPolygon, Point (treated as a circle of point_radius_m),
    Feature and FeatureCollection (any member containing the point counts).
    Unknown geometry types contain nothing.
    """
    kind = area.get("type")

    if kind == "FeatureCollection":
        return any(point_in_area(point, f, point_radius_m) for f in area.get("features") or [])
    if kind == "Feature":
        geom = area.get("geometry") or {}
        props = area.get("properties") or {}
        radius = props.get("radius") or point_radius_m
        return point_in_area(point, geom, float(radius))
    if kind == "Polygon":
        return point_in_polygon(point, area.get("coordinates") or [])
    if kind == "MultiPolygon":
        return any(point_in_polygon(point, poly) for poly in area.get("coordinates") or [])
    if kind == "Point":
        coords = area.get("coordinates") or []
        if len(coords) < 2:
            return False
        center = Coordinates(lat=float(coords[1]), lon=float(coords[0]))
        return haversine_m(center, point) <= point_radius_m
    return False
