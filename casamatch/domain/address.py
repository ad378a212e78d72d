# casamatch/domain/address.py
from __future__ import annotations

import re

from rapidfuzz import fuzz

# Bare city/country names that portals use when the street is hidden.
GENERIC_ADDRESSES = {
    "milano",
    "roma",
    "torino",
    "firenze",
    "bologna",
    "napoli",
    "genova",
    "venezia",
    "italy",
    "italia",
}

# Long form -> abbreviated form, so "Viale Monza 12" and "V.le Monza, 12" compare equal.
_STREET_ABBREVIATIONS = (
    (r"\bviale\s+", "vle "),
    (r"\bv\.le\s+", "vle "),
    (r"\bvia\s+", "v "),
    (r"\bv\.\s*", "v "),
    (r"\bcorso\s+", "cso "),
    (r"\bc\.so\s+", "cso "),
    (r"\bpiazza\s+", "pza "),
    (r"\bp\.za\s+", "pza "),
    (r"\bpiazzale\s+", "ple "),
    (r"\bp\.le\s+", "ple "),
)

_WS = re.compile(r"\s+")


def _squash(s: str) -> str:
    return _WS.sub(" ", s).strip()


def cache_key(address: str, city: str) -> str:
    """Geocode cache key: lower-cased, trimmed, comma-joined."""
    return f"{(address or '').strip().lower()}, {(city or '').strip().lower()}"


def normalize_street(address: str) -> str:
    s = (address or "").lower()
    for pattern, repl in _STREET_ABBREVIATIONS:
        s = re.sub(pattern, repl, s)
    s = re.sub(r"[,.;]", " ", s)
    return _squash(s)


def address_key(address: str, city: str) -> str:
    """
    Canonical identity for (address, price) dedup. Abbreviations and punctuation are
    folded so the same street written two ways lands on one key.
    """
    return f"{normalize_street(address)}|{_squash((city or '').lower())}"


def is_generic_address(address: str | None) -> bool:
    """
    True when the address cannot identify a building: empty, a bare city name,
    no house number, or too short.
    """
    if not address or not address.strip():
        return True
    s = address.strip().lower()
    if s in GENERIC_ADDRESSES:
        return True
    if not re.search(r"\d", s):
        return True
    return len(s) < 5


def address_similarity(a: str, b: str) -> float:
    """0..1 fuzzy similarity of two street addresses."""
    return fuzz.token_set_ratio(normalize_street(a), normalize_street(b)) / 100.0
