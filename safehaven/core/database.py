"""
Database layer — async SQL via SQLAlchemy 2.0.

Provides:
    • Async engine and session factory builders
    • Base model for the server-side record table
    • Table creation / disposal helpers

The same helpers back two databases:
    - the server record store (DATABASE_URL — PostgreSQL via asyncpg in
      production, SQLite via aiosqlite for development)
    - the field client's pending-update queue (QUEUE_DATABASE_URL, always
      a local SQLite file)

Usage:
    from safehaven.core.database import build_engine, build_session_factory

    engine = build_engine(settings.DATABASE_URL)
    sessions = build_session_factory(engine)
    async with sessions() as session:
        ...
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Type

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from safehaven.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for server-side ORM models."""
    pass


# ── Engine ──
def build_engine(url: str, *, echo: bool = settings.DATABASE_ECHO) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    Pool sizing only applies to server databases; SQLite files are
    single-writer and use SQLAlchemy's default pool for the dialect.
    """
    kwargs: Dict[str, Any] = {"echo": echo, "future": True}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
    return create_async_engine(url, **kwargs)


# ── Session Factory ──
def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: AsyncEngine, base: Type[DeclarativeBase] = Base) -> None:
    """Create all tables for ``base`` (dev/test only — use migrations in production)."""
    async with engine.begin() as conn:
        await conn.run_sync(base.metadata.create_all)
    logger.info("Database tables initialised (%s)", engine.url.render_as_string(hide_password=True))


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
