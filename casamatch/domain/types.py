# casamatch/domain/types.py
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class SellerType(str, Enum):
    private = "private"
    agency = "agency"
    unknown = "unknown"


class Classification(str, Enum):
    private = "private"
    single_agency = "single_agency"
    multi_agency = "multi_agency"
    unclassified = "unclassified"


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lon: float


@dataclass(frozen=True)
class Listing:
    """
    Normalized record from one source. Lives only for the duration of a job run;
    what survives is the CanonicalProperty it produces.
    """
    source: str
    external_id: str
    address: str
    city: str
    price: float
    title: str | None = None
    size: float | None = None
    rooms: int | None = None
    bathrooms: int | None = None
    floor: str | None = None
    property_type: str | None = None
    description: str | None = None
    url: str | None = None
    image_urls: tuple[str, ...] = ()
    coordinates: Coordinates | None = None
    seller_type: SellerType = SellerType.unknown
    agency_name: str | None = None
    owner_name: str | None = None
    owner_phone: str | None = None
    owner_email: str | None = None


@dataclass(frozen=True)
class PartialListing:
    """What fetch_details() can add on top of a search result. Every field is optional."""
    external_id: str
    description: str | None = None
    size: float | None = None
    rooms: int | None = None
    bathrooms: int | None = None
    floor: str | None = None
    image_urls: tuple[str, ...] = ()
    coordinates: Coordinates | None = None
    seller_type: SellerType | None = None
    agency_name: str | None = None
    owner_name: str | None = None
    owner_phone: str | None = None
    owner_email: str | None = None


_MERGE_FIELDS = (
    "description",
    "size",
    "rooms",
    "bathrooms",
    "floor",
    "coordinates",
    "seller_type",
    "agency_name",
    "owner_name",
    "owner_phone",
    "owner_email",
)


def merge_details(listing: Listing, partial: PartialListing | None) -> Listing:
    """Overlay non-empty detail fields onto a search result."""
    if partial is None or partial.external_id != listing.external_id:
        return listing

    changes: dict[str, object] = {}
    for name in _MERGE_FIELDS:
        v = getattr(partial, name)
        if v is not None and v != "":
            changes[name] = v

    if partial.image_urls:
        merged = list(listing.image_urls)
        for url in partial.image_urls:
            if url not in merged:
                merged.append(url)
        changes["image_urls"] = tuple(merged)

    return replace(listing, **changes) if changes else listing
