# casamatch/domain/policies.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .clock import ensure_aware_utc


@dataclass(frozen=True)
class RecontactDecision:
    allowed: bool
    reason: str
    days_since_last_contact: int | None = None


def recontact_decision(
    *,
    status: str | None,
    last_contacted_at: datetime | None,
    now: datetime,
    min_days: int,
) -> RecontactDecision:
    """
    do_not_contact always blocks. Otherwise whole elapsed days since the last
    contact must reach min_days. A phone never seen before is allowed.
    """
    if status == "do_not_contact":
        return RecontactDecision(allowed=False, reason="do_not_contact")

    if last_contacted_at is None:
        return RecontactDecision(allowed=True, reason="never_contacted")

    elapsed = ensure_aware_utc(now) - ensure_aware_utc(last_contacted_at)
    days = int(elapsed.total_seconds() // 86400)

    if days < min_days:
        return RecontactDecision(allowed=False, reason="contacted_recently", days_since_last_contact=days)
    return RecontactDecision(allowed=True, reason="cooldown_elapsed", days_since_last_contact=days)
