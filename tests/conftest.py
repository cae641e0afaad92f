"""
Shared test fixtures for the Autopilot engine.

This module provides common fixtures used across all test modules:
- Environment setup (dev mode)
- Async session factory over in-memory SQLite (aiosqlite)
- A fixed evaluation clock
- Transaction and profile factories

Usage:
    All fixtures are automatically available to any test in the tests/ directory.
"""

from __future__ import annotations

import itertools
import os
from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# ---------------------------------------------------------------------------
# 1. Environment setup -- must run before any application imports
# ---------------------------------------------------------------------------

os.environ.setdefault("AUTOPILOT_DEV_MODE", "1")

# ---------------------------------------------------------------------------
# Application imports (after env vars are set)
# ---------------------------------------------------------------------------

from src.models.base import Base  # noqa: E402
from src.models.behavior import BehavioralProfile, Transaction  # noqa: E402

# Import the record models so they are registered with Base.metadata before
# create_all is called.
from src.models.behavior_records import (  # noqa: E402, F401
    BehavioralProfileRecord,
    InterventionRecord,
    StreakBreakRecord,
    WinRecord,
)

# Wednesday, mid-month, midday: outside every stress window and the month end.
FIXED_NOW = datetime(2024, 3, 13, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# 2. session_factory -- async sessions sharing one in-memory database
# ---------------------------------------------------------------------------

@pytest.fixture()
async def session_factory():
    """
    Provide an async_sessionmaker whose sessions all see the same in-memory database.

    StaticPool keeps a single connection so data survives across sessions.
    A fresh database is created for every test that requests this fixture.
    """
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


# ---------------------------------------------------------------------------
# 3. Clock and factories
# ---------------------------------------------------------------------------

@pytest.fixture()
def now() -> datetime:
    """Fixed evaluation time (2024-03-13 12:00 UTC, a Wednesday)."""
    return FIXED_NOW


@pytest.fixture()
def make_transaction():
    """
    Factory for transactions with unique ids.

    Example usage in a test::

        def test_coffee(make_transaction, now):
            t = make_transaction(-4.5, "coffee", now)
    """
    counter = itertools.count(1)

    def _make(
        amount: float,
        category: str = "coffee",
        at: datetime = FIXED_NOW,
        id: str | None = None,
        description: str = "",
    ) -> Transaction:
        return Transaction(
            amount=amount,
            category=category,
            timestamp=at,
            id=id or f"txn-{next(counter)}",
            description=description,
        )

    return _make


@pytest.fixture()
def make_profile():
    """Factory for BehavioralProfile with keyword overrides."""

    def _make(user_id: str = "user-1", **fields) -> BehavioralProfile:
        return BehavioralProfile(user_id=user_id, **fields)

    return _make
