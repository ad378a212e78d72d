# casamatch/adapters/ingestion/mappers.py
"""
Boundary mapping from portal payloads into Listing.

Nothing past this module sees portal-specific keys.
"""
from __future__ import annotations

from typing import Any

from ...domain.classification import infer_seller_type
from ...domain.parsing import first_nested, get_first, to_float, to_int, to_price, to_str
from ...domain.types import Coordinates, Listing, SellerType
from ...schemas import SearchCriteria


def _coords(lat: Any, lon: Any) -> Coordinates | None:
    la = to_float(lat)
    lo = to_float(lon)
    if la is None or lo is None or (la == 0 and lo == 0):
        return None
    return Coordinates(lat=la, lon=lo)


def _image_urls(raw: Any) -> tuple[str, ...]:
    out: list[str] = []
    if not isinstance(raw, list):
        return ()
    for it in raw:
        url = it if isinstance(it, str) else (it.get("url") if isinstance(it, dict) else None)
        url = to_str(url)
        if url and url not in out:
            out.append(url)
    return tuple(out)


def _seller(raw: Any) -> SellerType:
    s = (to_str(raw) or "").lower()
    if s in ("private", "privato"):
        return SellerType.private
    if s in ("agency", "agenzia"):
        return SellerType.agency
    return SellerType.unknown


def map_fixture_item(it: dict[str, Any], criteria: SearchCriteria, *, source: str) -> Listing | None:
    """
    Fixture files use the internal vocabulary directly:
      externalId, address, city, price, size, rooms, bathrooms, floor, type, title, description,
      url, imageUrls, latitude, longitude, ownerType, agencyName, ownerName, ownerPhone, ownerEmail
    """
    external_id = to_str(get_first(it, "externalId", "id"))
    price = to_price(it.get("price"))
    address = to_str(it.get("address"))
    if not (external_id and price and address):
        return None

    return Listing(
        source=source,
        external_id=external_id,
        address=address,
        city=to_str(it.get("city")) or criteria.city or "",
        price=price,
        title=to_str(it.get("title")),
        size=to_float(it.get("size")),
        rooms=to_int(get_first(it, "rooms", "bedrooms")),
        bathrooms=to_int(it.get("bathrooms")),
        floor=to_str(it.get("floor")),
        property_type=to_str(get_first(it, "type", "propertyType")),
        description=to_str(it.get("description")),
        url=to_str(it.get("url")),
        image_urls=_image_urls(it.get("imageUrls")),
        coordinates=_coords(it.get("latitude"), it.get("longitude")),
        seller_type=_seller(it.get("ownerType")),
        agency_name=to_str(it.get("agencyName")),
        owner_name=to_str(it.get("ownerName")),
        owner_phone=to_str(it.get("ownerPhone")),
        owner_email=to_str(it.get("ownerEmail")),
    )


def map_immobiliare_item(it: dict[str, Any], criteria: SearchCriteria) -> Listing | None:
    """immobiliare.it actor output: price.raw, topology.*, geography.*, analytics.advertiser, contacts.*"""
    external_id = to_str(get_first(it, "id", "propertyId"))
    price = to_price(first_nested(it, "price.raw", "analytics.price", "price.value"))
    if not (external_id and price):
        return None

    street = to_str(first_nested(it, "geography.street"))
    micro = to_str(first_nested(it, "geography.microzone.name"))
    macro = to_str(first_nested(it, "geography.macrozone.name"))
    zipcode = to_str(first_nested(it, "geography.zipcode"))
    address = street or ", ".join(x for x in (micro, macro) if x) or zipcode
    if not address:
        return None

    description = first_nested(it, "description.description", "description")
    description = to_str(description) if not isinstance(description, dict) else None
    agency_name = to_str(first_nested(it, "analytics.agencyName", "contacts.agencyName"))
    seller = infer_seller_type(
        advertiser=to_str(first_nested(it, "analytics.advertiser", "contacts.type")),
        agency_name=agency_name,
        text=" ".join(x for x in (to_str(it.get("title")), description) if x),
    )

    return Listing(
        source="immobiliare",
        external_id=external_id,
        address=address,
        city=to_str(first_nested(it, "geography.municipality.name")) or criteria.city or "",
        price=price,
        title=to_str(it.get("title")),
        size=to_float(first_nested(it, "topology.surface.size", "surface")),
        rooms=to_int(first_nested(it, "topology.rooms", "rooms")),
        bathrooms=to_int(first_nested(it, "topology.bathrooms")),
        floor=to_str(first_nested(it, "topology.floor")),
        property_type=to_str(first_nested(it, "topology.typology.name")),
        description=description,
        url=f"https://www.immobiliare.it/annunci/{external_id}/",
        image_urls=_image_urls(first_nested(it, "media.images", "images")),
        coordinates=_coords(
            first_nested(it, "geography.geolocation.latitude", "geography.location.latitude", "lat"),
            first_nested(it, "geography.geolocation.longitude", "geography.location.longitude", "lng", "lon"),
        ),
        seller_type=seller,
        agency_name=agency_name if seller == SellerType.agency else None,
        owner_phone=to_str(first_nested(it, "contacts.phone")),
    )


def map_idealista_item(it: dict[str, Any], criteria: SearchCriteria) -> Listing | None:
    """idealista.it actor output: flat keys (propertyCode, price, size, rooms, address, contact, advertiser...)"""
    external_id = to_str(get_first(it, "propertyCode", "id"))
    price = to_price(it.get("price"))
    address = to_str(it.get("address"))
    if not (external_id and price and address):
        return None

    agency_name = to_str(get_first(it, "advertiser", "advertiserName"))
    contact = to_str(it.get("contact"))
    description = to_str(it.get("description"))
    seller = infer_seller_type(
        advertiser=to_str(it.get("advertiserType")),
        agency_name=agency_name,
        text=" ".join(x for x in (to_str(it.get("title")), description, contact) if x),
    )

    return Listing(
        source="idealista",
        external_id=external_id,
        address=address,
        city=to_str(get_first(it, "municipality", "city")) or criteria.city or "",
        price=price,
        title=to_str(it.get("title")),
        size=to_float(it.get("size")),
        rooms=to_int(it.get("rooms")),
        bathrooms=to_int(it.get("bathrooms")),
        floor=to_str(it.get("floor")),
        property_type=to_str(it.get("propertyType")),
        description=description,
        url=to_str(it.get("url")),
        image_urls=_image_urls(it.get("images")),
        coordinates=_coords(it.get("latitude"), it.get("longitude")),
        seller_type=seller,
        agency_name=agency_name if seller == SellerType.agency else None,
        owner_phone=to_str(it.get("phone")),
        owner_email=to_str(it.get("email")),
    )


PORTAL_MAPPERS = {
    "immobiliare": map_immobiliare_item,
    "idealista": map_idealista_item,
}
