# casamatch/domain/classification.py
from __future__ import annotations

from .types import Classification, SellerType

# Phrases only private sellers use; they outrank agency wording ("no agenzia").
PRIVATE_PHRASES = (
    "vendita diretta",
    "no agenzie",
    "no agenzia",
    "senza agenzie",
    "senza agenzia",
    "privato vende",
    "proprietario vende",
    "particolare vende",
)

PRIVATE_KEYWORDS = (
    "privat",
    "proprietari",
    "particolare",
)

# Agency boilerplate ("l'agenzia propone", "proponiamo in vendita", ...)
AGENCY_KEYWORDS = (
    "agenzia",
    "immobiliare",
    "real estate",
    "gruppo",
    "consulenza",
    "proponiamo",
    "disponiamo",
    "propone",
    "proposta",
)

_PRIVATE_ADVERTISERS = {"privato", "private", "owner", "proprietario", "particolare"}
_AGENCY_ADVERTISERS = {"agenzia", "agency", "professionista", "professional"}


def looks_like_agency_name(name: str | None) -> bool:
    if not name:
        return False
    s = name.strip().lower()
    if len(s) < 2:
        return False
    for indicator in _PRIVATE_ADVERTISERS:
        if s == indicator or s.startswith(indicator + " "):
            return False
    return True


def infer_seller_type(
    *,
    advertiser: str | None = None,
    agency_name: str | None = None,
    text: str | None = None,
) -> SellerType:
    """
    Signals in priority order:
      1) an explicit advertiser field ("privato" / "agenzia")
      2) a named agency
      3) keywords in title/description/contact text: explicit private phrases,
         then agency wording, then weaker private hints
    """
    if advertiser:
        a = advertiser.strip().lower()
        if a in _PRIVATE_ADVERTISERS:
            return SellerType.private
        if a in _AGENCY_ADVERTISERS:
            return SellerType.agency

    if looks_like_agency_name(agency_name):
        return SellerType.agency

    t = (text or "").lower()
    if not t:
        return SellerType.unknown
    if any(k in t for k in PRIVATE_PHRASES):
        return SellerType.private
    if any(k in t for k in AGENCY_KEYWORDS):
        return SellerType.agency
    if any(k in t for k in PRIVATE_KEYWORDS):
        return SellerType.private
    return SellerType.unknown


def classify(
    seller_type: SellerType,
    agencies: list[str] | tuple[str, ...],
    *,
    multi_agency_min: int = 7,
) -> Classification:
    """
    Listing classification from who is selling it and how many agencies carry it.
    multi_agency_min is an observed boundary, not a derived one, hence configurable.
    """
    n = len({a.strip().lower() for a in agencies if a and a.strip()})
    if n == 0:
        if seller_type == SellerType.private:
            return Classification.private
        # an agency listing without a named agency is still carried by one
        if seller_type == SellerType.agency:
            return Classification.single_agency
        return Classification.unclassified
    if n >= multi_agency_min:
        return Classification.multi_agency
    return Classification.single_agency
