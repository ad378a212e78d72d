from __future__ import annotations

import json
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import OutboxEvent, OutboxStatus

LISTING_IMPORTED = "listing.imported"
MATCH_CREATED = "match.created"
DUPLICATES_DETECTED = "duplicates.detected"


async def enqueue_event(session: AsyncSession, event_type: str, payload: dict[str, Any]) -> OutboxEvent:
    """
    Record an event in the caller's transaction. Delivery (chat, SMS, webhooks)
    belongs to whoever drains the outbox.
    """
    ev = OutboxEvent(
        event_type=event_type,
        payload_json=json.dumps(payload, default=str),
        status=OutboxStatus.pending,
        attempts=0,
        last_error=None,
        next_attempt_at=None,
    )
    session.add(ev)
    await session.flush()
    return ev


async def list_pending(session: AsyncSession, event_type: str | None = None) -> list[OutboxEvent]:
    q = select(OutboxEvent).where(OutboxEvent.status == OutboxStatus.pending)
    if event_type:
        q = q.where(OutboxEvent.event_type == event_type)
    return list((await session.execute(q.order_by(OutboxEvent.id.asc()))).scalars().all())
