# casamatch/domain/parsing.py
from __future__ import annotations

import re
from typing import Any


def to_int(x: Any) -> int | None:
    if x is None or x == "":
        return None
    try:
        return int(float(x))
    except (TypeError, ValueError):
        return None


def to_float(x: Any) -> float | None:
    if x is None or x == "":
        return None
    try:
        return float(x)
    except (TypeError, ValueError):
        return None


def to_str(x: Any) -> str | None:
    if x is None:
        return None
    s = str(x).strip()
    return s or None


def to_price(x: Any) -> float | None:
    """
    Portals send either numbers or display strings like "€ 250.000".
    Italian formatting uses '.' as thousands separator, so strings keep digits only.
    """
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, (int, float)):
        return float(x) if x > 0 else None
    digits = re.sub(r"[^\d]", "", str(x).split(",")[0])
    if not digits:
        return None
    v = float(digits)
    return v if v > 0 else None


def get_first(payload: dict[str, Any], *keys: str) -> Any:
    """Return first non-empty key from payload."""
    for k in keys:
        v = payload.get(k)
        if v is None:
            continue
        if isinstance(v, str) and not v.strip():
            continue
        return v
    return None


def get_nested(payload: dict[str, Any], path: str) -> Any:
    """Tiny dot-path getter: 'geography.street' or 'price.raw'."""
    cur: Any = payload
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
        if cur is None:
            return None
    return cur


def first_nested(payload: dict[str, Any], *paths: str) -> Any:
    for p in paths:
        v = get_nested(payload, p)
        if v is None or (isinstance(v, str) and not v.strip()):
            continue
        return v
    return None
