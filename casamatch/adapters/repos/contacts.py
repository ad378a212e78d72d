# casamatch/adapters/repos/contacts.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...models import ContactStatus, ContactTracking


class ContactRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, phone: str) -> ContactTracking | None:
        q = select(ContactTracking).where(ContactTracking.phone == phone)
        return (await self.session.execute(q)).scalars().first()

    async def get_many(self, phones: list[str]) -> dict[str, ContactTracking]:
        if not phones:
            return {}
        q = select(ContactTracking).where(ContactTracking.phone.in_(phones))
        return {r.phone: r for r in (await self.session.execute(q)).scalars().all()}

    async def get_or_create(self, phone: str, *, now: datetime) -> ContactTracking:
        row = await self.get(phone)
        if row is None:
            row = ContactTracking(
                phone=phone,
                contact_count=0,
                status=ContactStatus.active,
                metadata_json="{}",
                created_at=now,
                updated_at=now,
            )
            self.session.add(row)
            await self.session.flush()
        return row
