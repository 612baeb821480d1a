"""
Test fixtures for PickCast tests.

Provides:
- Async SQL store fixture (SQLite in-memory, one database per test)
- In-memory record store
- Controllable clock for cache tests
- Pick record factory
"""

from typing import Iterable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pickcast.consensus.schemas import FactorCitation, PickSourceRecord
from pickcast.db import models  # noqa: F401 — register all models
from pickcast.db.engine import Base
from pickcast.store import InMemoryRecordStore, SqlRecordStore

# In-memory SQLite for fast, isolated tests
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine():
    """Create a test database engine with all tables."""
    eng = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    """Create a session factory bound to the test engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def sql_store(session_factory) -> SqlRecordStore:
    return SqlRecordStore(session_factory)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


# ── Clock ───────────────────────────────────────────────────────────────


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ── Pick factory ────────────────────────────────────────────────────────


@pytest.fixture
def make_pick():
    """Build a PickSourceRecord with sensible defaults."""

    def _make(
        source: str,
        selection: str = "OVER 220.5",
        entity_id: str = "G1",
        kind: str = "total",
        units: int = 2,
        confidence: float = 3.5,
        tier: str = "Rare",
        tier_score: float = 6.0,
        track_record: float = 5.0,
        factors: Iterable[tuple[str, float]] = (),
        line=None,
    ) -> PickSourceRecord:
        return PickSourceRecord(
            source=source,
            entity_id=entity_id,
            kind=kind,
            selection=selection,
            line=line,
            units=units,
            confidence=confidence,
            tier=tier,
            tier_score=tier_score,
            track_record=track_record,
            top_factors=[
                FactorCitation(key=key, name=key.replace("_", " ").title(), contribution=value)
                for key, value in factors
            ],
        )

    return _make
