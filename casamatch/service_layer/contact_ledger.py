# casamatch/service_layer/contact_ledger.py
from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Iterable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..adapters.repos.contacts import ContactRepository
from ..config import settings
from ..domain.clock import Clock, utcnow
from ..domain.phone import normalize_phone
from ..domain.policies import RecontactDecision, recontact_decision
from ..models import ContactStatus, ContactTracking

log = logging.getLogger(__name__)

T = TypeVar("T")


def _meta(row: ContactTracking) -> dict[str, Any]:
    try:
        m = json.loads(row.metadata_json or "{}")
    except ValueError:
        m = {}
    if not isinstance(m, dict):
        m = {}
    m.setdefault("property_ids", [])
    m.setdefault("campaign_ids", [])
    return m


def _append_unique(items: list[Any], value: Any) -> None:
    if value is not None and value not in items:
        items.append(value)


class ContactLedger:
    """
    Who has been contacted, when, and whether they may be contacted again.

    Keyed by normalized phone. Each mutation is a read-modify-write of one row in its
    own transaction, serialized per key in-process.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        min_days: int | None = None,
        country_code: str | None = None,
        local_digits: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session_maker = session_maker
        self.min_days = int(settings.CONTACT_MIN_DAYS if min_days is None else min_days)
        self.country_code = settings.PHONE_COUNTRY_CODE if country_code is None else country_code
        self.local_digits = int(settings.PHONE_LOCAL_DIGITS if local_digits is None else local_digits)
        self._clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def normalize(self, phone: str | None) -> str | None:
        return normalize_phone(phone, country_code=self.country_code, local_digits=self.local_digits)

    def _require(self, phone: str | None) -> str:
        key = self.normalize(phone)
        if key is None:
            raise ValueError(f"invalid phone number: {phone!r}")
        return key

    async def get(self, phone: str) -> ContactTracking | None:
        key = self.normalize(phone)
        if key is None:
            return None
        async with self.session_maker() as session:
            return await ContactRepository(session).get(key)

    async def can_recontact(self, phone: str | None, min_days: int | None = None) -> RecontactDecision:
        key = self.normalize(phone)
        if key is None:
            return RecontactDecision(allowed=False, reason="invalid_phone")

        async with self.session_maker() as session:
            row = await ContactRepository(session).get(key)

        return recontact_decision(
            status=row.status.value if row else None,
            last_contacted_at=row.last_contacted_at if row else None,
            now=self._clock(),
            min_days=self.min_days if min_days is None else min_days,
        )

    async def record_contact(
        self,
        phone: str,
        *,
        property_id: int | None = None,
        campaign_id: str | None = None,
    ) -> ContactTracking:
        """Create or update the entry. Ids already present are not appended twice."""
        key = self._require(phone)
        async with self._locks[key]:
            async with self.session_maker() as session:
                now = self._clock()
                row = await ContactRepository(session).get_or_create(key, now=now)

                meta = _meta(row)
                _append_unique(meta["property_ids"], property_id)
                _append_unique(meta["campaign_ids"], campaign_id)

                row.contact_count = (row.contact_count or 0) + 1
                row.first_contacted_at = row.first_contacted_at or now
                row.last_contacted_at = now
                if campaign_id is not None:
                    row.last_campaign_id = campaign_id
                row.metadata_json = json.dumps(meta)
                row.updated_at = now

                if row.status == ContactStatus.do_not_contact:
                    log.warning("contact recorded for do_not_contact phone %s", key)

                await session.commit()
                return row

    async def mark_do_not_contact(self, phone: str, notes: str | None = None) -> ContactTracking:
        """Terminal. Nothing in the ledger clears it; creates the entry if missing."""
        key = self._require(phone)
        async with self._locks[key]:
            async with self.session_maker() as session:
                now = self._clock()
                row = await ContactRepository(session).get_or_create(key, now=now)
                row.status = ContactStatus.do_not_contact
                if notes:
                    row.notes = notes
                row.updated_at = now
                await session.commit()
                return row

    async def mark_responded(self, phone: str, response: str | None = None) -> ContactTracking:
        key = self._require(phone)
        async with self._locks[key]:
            async with self.session_maker() as session:
                now = self._clock()
                row = await ContactRepository(session).get_or_create(key, now=now)
                meta = _meta(row)
                meta["responded_at"] = now.isoformat()
                if response is not None:
                    meta["last_response"] = response[:1000]
                row.metadata_json = json.dumps(meta)
                if row.status == ContactStatus.active:
                    row.status = ContactStatus.responded
                row.updated_at = now
                await session.commit()
                return row

    async def mark_converted(self, phone: str) -> ContactTracking:
        key = self._require(phone)
        async with self._locks[key]:
            async with self.session_maker() as session:
                now = self._clock()
                row = await ContactRepository(session).get_or_create(key, now=now)
                if row.status != ContactStatus.do_not_contact:
                    row.status = ContactStatus.converted
                row.updated_at = now
                await session.commit()
                return row

    async def filter_contactable(
        self,
        items: Iterable[T],
        phone_of: Any,
        min_days: int | None = None,
    ) -> list[T]:
        """
        Keep the items whose phone may be contacted now. Items without a usable phone
        are dropped: there is nobody to contact.
        """
        items = list(items)
        keyed: list[tuple[T, str]] = []
        for it in items:
            key = self.normalize(phone_of(it))
            if key is not None:
                keyed.append((it, key))

        async with self.session_maker() as session:
            rows = await ContactRepository(session).get_many(sorted({k for _, k in keyed}))

        now = self._clock()
        days = self.min_days if min_days is None else min_days
        out: list[T] = []
        for it, key in keyed:
            row = rows.get(key)
            decision = recontact_decision(
                status=row.status.value if row else None,
                last_contacted_at=row.last_contacted_at if row else None,
                now=now,
                min_days=days,
            )
            if decision.allowed:
                out.append(it)
        return out
