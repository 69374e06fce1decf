"""Async SQLAlchemy engine, declarative base, and session factory.

Provides:
- Base: Declarative base for all CRM tables
- get_engine(): Lazily created async engine singleton
- get_session(): Session generator used as the services' session_factory
- init_db() / close_db(): Startup and shutdown hooks
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            echo=settings.DATABASE_ECHO,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for CRM models."""

    metadata = MetaData(naming_convention=naming_convention)


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the application engine.

    Sessions do not expire objects on commit so that read schemas can be
    built from models after the transaction ends.
    """
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


@asynccontextmanager
async def session_scope(session_factory: SessionFactory) -> AsyncIterator[AsyncSession]:
    """Open one session from ``session_factory`` and close it deterministically.

    Closing the generator explicitly releases the connection as soon as the
    caller is done, instead of when the generator is garbage collected.
    """
    sessions = session_factory()
    session = await anext(sessions)
    try:
        yield session
    finally:
        await sessions.aclose()


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Verify connectivity and create missing tables.

    Alembic owns the production schema; create_all only fills gaps in
    development databases and is a no-op for existing tables.
    """
    # Import models so every table is registered on Base.metadata
    from src.app.crm import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
