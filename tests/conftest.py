"""
Card Catalog Sync — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- In-memory aiosqlite database built from the ORM metadata
- Deterministic clock and throttle contexts
- Async test support via pytest-asyncio
"""

from __future__ import annotations

from typing import AsyncGenerator, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cardsync.models import Base
from cardsync.pipeline.rate import (
    AdaptiveConcurrency,
    CircuitBreaker,
    ThrottleContext,
    TokenBucket,
)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Throttle
# ---------------------------------------------------------------------------


@pytest.fixture
def make_throttle() -> Callable[..., ThrottleContext]:
    """
    Build an isolated ThrottleContext. Defaults never block: a large bucket
    and a single worker so SQLite sees one writer at a time.
    """

    def _make(
        rate: float = 1000.0,
        burst: int = 1000,
        min_concurrency: int = 1,
        max_concurrency: int = 1,
        threshold: int = 5,
        open_seconds: float = 60.0,
        clock: Callable[[], float] | None = None,
    ) -> ThrottleContext:
        kwargs = {"clock": clock} if clock is not None else {}
        return ThrottleContext(
            bucket=TokenBucket(rate, burst, **kwargs),
            concurrency=AdaptiveConcurrency(min_concurrency, max_concurrency),
            circuit=CircuitBreaker(threshold, open_seconds, **kwargs),
        )

    return _make


@pytest.fixture
def throttle(make_throttle) -> ThrottleContext:
    return make_throttle()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps every session on the one connection that owns the
    in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
