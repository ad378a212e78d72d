# casamatch/adapters/clients/nominatim.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ...config import settings
from ...domain.parsing import to_float
from ...domain.types import Coordinates
from .http_resilience import resilient_request


class GeocodingProvider(Protocol):
    async def lookup(self, query: str) -> Coordinates | None:
        """Coordinates, or None for "not found". Transport problems raise."""
        raise NotImplementedError


@dataclass
class NominatimProvider:
    base_url: str
    user_agent: str

    @classmethod
    def from_settings(cls) -> "NominatimProvider":
        return cls(base_url=settings.NOMINATIM_BASE_URL.rstrip("/"), user_agent=settings.NOMINATIM_USER_AGENT)

    async def lookup(self, query: str) -> Coordinates | None:
        # Rate limiting is the GeocodingCache's job; keep retries at zero so one
        # logical lookup is exactly one request against the usage policy.
        resp = await resilient_request(
            "GET",
            f"{self.base_url}/search",
            params={"q": query, "format": "json", "limit": 1},
            headers={"User-Agent": self.user_agent},
            max_retries=0,
        )
        data = resp.json()
        if not isinstance(data, list) or not data:
            return None
        lat = to_float(data[0].get("lat"))
        lon = to_float(data[0].get("lon"))
        if lat is None or lon is None:
            return None
        return Coordinates(lat=lat, lon=lon)
