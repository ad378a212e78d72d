# casamatch/domain/normalize.py
from __future__ import annotations

import re


def normalize_property_type(raw: object) -> str | None:
    """
    Map messy upstream property type strings (Italian and English) into a small internal set.
    Unknown => None, so strict type matching skips rather than rejects.
    """
    if raw is None:
        return None

    s = str(raw).strip().lower()
    if not s:
        return None
    s = re.sub(r"[\s_/|-]+", " ", s)

    if any(k in s for k in ["attico", "penthouse"]):
        return "penthouse"
    if "loft" in s or "open space" in s:
        return "loft"
    if any(k in s for k in ["villa", "villetta", "casa indipendente", "detached", "house"]):
        return "house"
    if any(k in s for k in ["monolocale", "bilocale", "trilocale", "quadrilocale", "appartamento", "apartment", "flat"]):
        return "apartment"
    if any(k in s for k in ["ufficio", "negozio", "commerciale", "office", "retail"]):
        return "commercial"
    if any(k in s for k in ["box", "garage", "posto auto"]):
        return "garage"
    if any(k in s for k in ["terreno", "land"]):
        return "land"
    return None
