# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Async SQLAlchemy engine backing the SQL implementation of the key-value
# persistence port (services/store.py). Only created when
# `store_backend = "sql"`; the in-memory backend never touches it.
#
# DESIGN DECISION: Lazy initialization (not module-level).
# Creating the engine imports the DB driver (asyncpg for PostgreSQL,
# aiosqlite for SQLite). Deferring it keeps imports working in contexts
# that never use SQL, and lets Celery workers build a fresh engine inside
# their own event loop.
#
# SESSION LIFECYCLE:
# The store opens one short session per operation and commits explicitly.
# No session outlives a single get/put/delete.
# =============================================================================

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from marginalia.config import settings
from marginalia.db.models import Base

_async_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_for(url: str) -> AsyncEngine:
    """
    Build an async engine for `url`.

    - echo (debug mode): logs all SQL statements.
    - pool_size / max_overflow only apply to server databases; SQLite
      uses its own pool class.
    """
    kwargs: dict = {"echo": settings.debug}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10)
    return create_async_engine(url, **kwargs)


def get_async_engine() -> AsyncEngine:
    """Lazily create and cache the process-wide async engine."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_engine_for(settings.database_url)
    return _async_engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to `engine`.

    expire_on_commit=False: attribute access after commit must not trigger
    a lazy reload, which fails outside a session in async code.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Lazily create and cache the session factory for the default engine."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = make_session_factory(get_async_engine())
    return _async_session_factory


async def init_models(engine: AsyncEngine) -> None:
    """Create missing tables. Idempotent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
