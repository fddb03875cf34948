"""Async SQLAlchemy engine and session plumbing for the linking job.

Provides:
- Base: Declarative base for the CRM tables the linker touches
- get_engine(): Lazily created engine singleton, optionally schema-remapped
- get_session(): Session factory used by LinkingService
- close_db(): Dispose of the engine at shutdown
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crm_linker.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def build_engine(database_url: str, schema: str = "", pool_size: int = 5) -> AsyncEngine:
    """Create an async engine for the given URL.

    Tables are declared without a schema. When ``schema`` is set, the
    unqualified tables are remapped onto it via schema_translate_map.
    """
    url = make_url(database_url)
    kwargs: dict[str, Any] = {"echo": False}
    if url.get_backend_name() == "postgresql":
        kwargs.update(pool_size=pool_size, max_overflow=0, pool_pre_ping=True)
    if schema:
        kwargs["execution_options"] = {"schema_translate_map": {None: schema}}
    return create_async_engine(url, **kwargs)


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(
            settings.DATABASE_URL,
            schema=settings.DB_SCHEMA,
            pool_size=settings.DB_POOL_SIZE,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for the CRM models (companies, contacts, deals)."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the configured engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
