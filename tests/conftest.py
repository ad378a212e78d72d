# tests/conftest.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from casamatch.adapters.clients.http_resilience import reset_circuits
from casamatch.domain.types import Listing, PartialListing
from casamatch.models import Base
from casamatch.schemas import SearchCriteria


@pytest.fixture
async def engine():
    """
    Fresh in-memory DB per test. StaticPool makes all connections share the same
    in-memory database for the lifetime of this engine fixture.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def async_session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=True)


@pytest.fixture(autouse=True)
def _fresh_circuits():
    # breakers are per-process; one test tripping a host must not leak into the next
    reset_circuits()
    yield
    reset_circuits()


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> datetime:
        self.now = self.now + timedelta(**kw)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


def make_listing(source: str, n: int, **kw) -> Listing:
    base = dict(
        source=source,
        external_id=f"{source}-{n}",
        address=f"Via Test {n}",
        city="Milano",
        price=200_000.0 + n * 1_000,
        size=60.0 + n,
        rooms=2,
    )
    base.update(kw)
    return Listing(**base)


class FakeSource:
    """In-memory SourceAdapter. fail/available flip the failure modes."""

    def __init__(self, name: str, listings: list[Listing], *, fail: Exception | None = None, available: bool = True):
        self.name = name
        self.listings = list(listings)
        self.fail = fail
        self.available = available
        self.search_calls = 0

    async def is_available(self) -> bool:
        return self.available

    async def search(self, criteria: SearchCriteria) -> list[Listing]:
        self.search_calls += 1
        if self.fail is not None:
            raise self.fail
        return list(self.listings)

    async def fetch_details(self, external_id: str) -> PartialListing | None:
        return None


class FakeResumableSource(FakeSource):
    """Every search returns a differently ordered result set; load_run replays a previous one."""

    def __init__(self, name: str, listings: list[Listing]):
        super().__init__(name, listings)
        self.last_run_id: str | None = None
        self.runs: dict[str, list[Listing]] = {}
        self.loaded: list[str] = []

    async def search(self, criteria: SearchCriteria) -> list[Listing]:
        self.search_calls += 1
        run_id = f"run-{self.search_calls}"
        items = list(self.listings) if self.search_calls % 2 else list(reversed(self.listings))
        self.runs[run_id] = items
        self.last_run_id = run_id
        return list(items)

    async def load_run(self, run_id: str, criteria: SearchCriteria) -> list[Listing]:
        self.loaded.append(run_id)
        self.last_run_id = run_id
        return list(self.runs[run_id])
