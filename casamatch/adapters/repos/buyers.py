# casamatch/adapters/repos/buyers.py
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...models import Buyer


class BuyerRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, buyer_id: int) -> Buyer | None:
        return await self.session.get(Buyer, buyer_id)

    async def list_eligible(self, *, min_rating: int) -> list[Buyer]:
        q = (
            select(Buyer)
            .where(Buyer.active == True)  # noqa: E712
            .where(Buyer.rating >= min_rating)
            .order_by(Buyer.id.asc())
        )
        return list((await self.session.execute(q)).scalars().all())
