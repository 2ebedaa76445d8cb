"""
DoorCast Backend — Database Engine & Schema Helpers
=====================================================

What:  Async SQLAlchemy engine, session factory, declarative base and the
       column types shared by the ORM models.
Why:   Centralizes all database connection logic in one place.
How:   A module-level async engine with connection pooling. Sessions are
       opened by the EventStore itself, one per operation, so a commit is
       finished before anything is published about it.
Who:   EventStore (sessions), health route (engine), lifespan (schema/dispose).
When:  Engine is created at module import; sessions are created per store call.

Connection Pooling Strategy:
    pool_size=10:      Persistent connections for normal load
    max_overflow=10:   Temporary connections for bursts of uploads
    pool_pre_ping:     Validates connections before use (catches stale connections)
    pool_recycle=3600: Recycles connections every hour

    SQLite (tests, local runs) does not take pool sizing arguments, so they
    are only passed for server databases.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from app.config import settings


def _engine_options(database_url: str) -> Dict[str, Any]:
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
engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

# ── Session Factory ───────────────────────────────────────────────────────
# expire_on_commit=False: committed rows are converted to pydantic models
# after the session closes
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── Base Model ────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Shares one metadata object between the models, create_schema() and
    Alembic's autogenerate.
    """
    pass


# ── Column Types ──────────────────────────────────────────────────────────
class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp column.

    What:  Stores datetimes as UTC and always returns aware UTC datetimes.
    Why:   PostgreSQL hands back aware values but SQLite drops the offset.
           Keyset pagination compares created_at values across both, so
           every value leaving this type must be comparable.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("UTCDateTime requires a timezone-aware datetime")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def create_schema() -> None:
    """
    What:  Creates all tables that do not exist yet.
    When:  Startup, when DB_CREATE_ALL is enabled. Production runs Alembic.
    """
    # Model modules register themselves on Base.metadata when imported
    import app.models.event  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """
    What:  Gracefully closes all connections in the pool.
    When:  Called during application shutdown (lifespan handler).
    """
    await engine.dispose()
