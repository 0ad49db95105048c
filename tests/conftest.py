"""
Shared test fixtures.

The engine is wired to in-memory doubles (see ``tests/fakes.py``) and a
manually advanced clock, so every timeout path runs deterministically
without PostgreSQL / Redis.  SQL adapters are tested separately on an
in-memory SQLite database (via aiosqlite).
"""

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from booking_engine.api.app import create_app
from booking_engine.api.middleware import limiter
from booking_engine.engine import BookingEngine, build_engine
from booking_engine.infrastructure.database import Base
from booking_engine.infrastructure import models  # noqa: F401
from booking_engine.infrastructure.locks import LocalBookingLocks
from tests.fakes import (
    Factory,
    FakeClock,
    InMemoryStore,
    InMemoryUnitOfWork,
    RecordingDelivery,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── Engine on in-memory doubles ───────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def factory(store, clock) -> Factory:
    return Factory(store, clock)


@pytest_asyncio.fixture
async def engine(store, delivery, clock) -> AsyncGenerator[BookingEngine, None]:
    engine = build_engine(
        lambda: InMemoryUnitOfWork(store), LocalBookingLocks(), delivery, clock
    )
    yield engine
    await engine.shutdown()


@pytest_asyncio.fixture
async def client(engine) -> AsyncGenerator[AsyncClient, None]:
    limiter.reset()
    app = create_app(engine=engine, run_workers=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── Test DB (SQLite in-memory) ────────────────────────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create tables, yield a session factory, then drop everything."""
    test_engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
