"""
ClipSync Backend — Database Session Management
===============================================

What:  Async SQLAlchemy engine, session factory, declarative base.
How:   One async engine with connection pooling. Services open their
       own short transactions through the session factory they are given.
When:  Engine is created at import time; sessions are created per unit of work.

Connection Pooling Strategy (PostgreSQL):
    pool_size=20, max_overflow=10 → at most 30 connections per process.
    pool_pre_ping validates a connection before use.
    pool_recycle=3600 recycles connections hourly.

    SQLite (tests, local experiments) gets no pool sizing: the aiosqlite
    dialect manages its own connections.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from clipsync.config import settings


def engine_options(database_url: str) -> Dict[str, Any]:
    """Keyword arguments for create_async_engine() for the given backend."""
    options: Dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_recycle=3600,
    )
    return options


# ── Engine Configuration ──────────────────────────────────────────────────
engine: AsyncEngine = create_async_engine(
    settings.database_url,
    **engine_options(settings.database_url),
)

# ── Session Factory ───────────────────────────────────────────────────────
# expire_on_commit=False: ORM objects returned by the store and the ledger
# are read after their transaction has committed.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── Base Model ────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    All models share this metadata object; Alembic reads it for
    --autogenerate and the test suite uses it for create_all().
    """
    pass


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def dispose_engine() -> None:
    """
    What:  Gracefully closes all connections in the pool.
    When:  Called during application shutdown (lifespan handler).
    """
    await engine.dispose()


def utcnow() -> datetime:
    """Timezone-aware current time in UTC. All timestamps are stored in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalizes a timestamp read back from the database to aware UTC.

    SQLite returns naive datetimes even for timezone=True columns; PostgreSQL
    returns aware ones. Values are always written in UTC, so a naive value is
    UTC by construction.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
