# casamatch/adapters/repos/matches.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ...models import Match


class MatchRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_for_buyer(self, buyer_id: int, limit: int = 20) -> list[Match]:
        q = (
            select(Match)
            .where(Match.buyer_id == buyer_id)
            .order_by(Match.created_at.desc(), Match.id.desc())
            .limit(limit)
        )
        return list((await self.session.execute(q)).scalars().all())

    async def delete_for_buyer(self, buyer_id: int) -> int:
        res = await self.session.execute(delete(Match).where(Match.buyer_id == buyer_id))
        return int(res.rowcount or 0)

    async def upsert(
        self,
        *,
        buyer_id: int,
        property_id: int,
        score: int,
        reasoning: str | None,
        is_ai_generated: bool,
        now: datetime,
    ) -> tuple[Match, bool]:
        q = select(Match).where(Match.buyer_id == buyer_id, Match.property_id == property_id)
        row = (await self.session.execute(q)).scalars().first()
        created = row is None
        if row is None:
            row = Match(buyer_id=buyer_id, property_id=property_id, created_at=now)
            self.session.add(row)
        row.score = score
        row.reasoning = reasoning
        row.is_ai_generated = is_ai_generated
        await self.session.flush()
        return row, created
