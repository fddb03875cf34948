"""Test fixtures for the linking store and pass.

Provides:
- An in-memory SQLite engine (aiosqlite, StaticPool) with the CRM tables created
- A session factory in the shape LinkingService expects
- seed(): insert companies, contacts and deals in one committed transaction
- fetch(): read a row back through a fresh session
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from src.crm_linker.core.database import Base
from src.crm_linker.crm import models  # noqa: F401 -- registers tables on Base


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Async generator factory yielding sessions on the test engine."""

    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def seed(engine):
    """Insert ORM instances and commit them."""

    async def _seed(*instances: Any) -> None:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            session.add_all(instances)
            await session.commit()

    return _seed


@pytest.fixture
def fetch(engine):
    """Load a single row by primary key through a new session."""

    async def _fetch(model: type, pk: Any) -> Any:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            return await session.get(model, pk)

    return _fetch
