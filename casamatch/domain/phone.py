# casamatch/domain/phone.py
from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D")

MIN_DIGITS = 6


def normalize_phone(
    raw: str | None,
    *,
    country_code: str = "39",
    local_digits: int = 10,
) -> str | None:
    """
    Ledger key for a phone number: digits only, international form without '+'/'00'.

      "+39 333 123 4567" -> "393331234567"
      "0039 333 1234567" -> "393331234567"
      "333-123-4567"     -> "393331234567"  (local mobile: 10 digits starting with 3)
      "02 1234 5678"     -> "390212345678"  (local landline: leading 0)

    Returns None when too few digits remain to be a phone number.
    """
    if not raw:
        return None

    s = raw.strip()
    international = s.startswith("+")
    digits = _NON_DIGITS.sub("", s)

    if not international and digits.startswith("00"):
        international = True
        digits = digits[2:]

    if not international:
        if len(digits) == local_digits and digits.startswith("3"):
            digits = country_code + digits
        elif digits.startswith("0"):
            digits = country_code + digits

    if len(digits) < MIN_DIGITS:
        return None
    return digits
