# =============================================================================
# Persistence Port — Pluggable Key-Value Store
# =============================================================================
#
# Papers, paragraph conversations and cached prefilter results are all
# persisted through one small async interface. Core logic (prompting,
# prefiltering, orchestration) never knows which backend is behind it.
#
# DESIGN DECISION: Protocol (structural typing) over ABC, matching
# services/llm.py. Two implementations:
#   - InMemoryStore     — dict-backed; development and tests
#   - SqlKeyValueStore  — SQLAlchemy async ORM over `kv_entries`
#
# CONTRACT:
#   get(key)         → JSON-compatible value, or None when absent
#   put(key, value)  → insert or overwrite (last write wins)
#   delete(key)      → no-op when absent
#   keys(prefix)     → sorted keys starting with prefix
#
# Values are JSON-compatible (dicts, lists, str, numbers). Callers dump
# pydantic models with `mode="json"` before writing. No transactional
# guarantees beyond a single operation.
# =============================================================================

from __future__ import annotations

import copy
import logging
from typing import Any, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marginalia.config import settings
from marginalia.db.models import KVEntry

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Protocol for the persistence collaborator."""

    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str = "") -> list[str]: ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


class InMemoryStore:
    """
    Dict-backed store.

    Values are deep-copied on the way in and out so callers can never
    mutate stored state by holding on to a reference, which is how a
    real serialising backend behaves.
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value)

    async def put(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


# ---------------------------------------------------------------------------
# Implementation 2: SQLAlchemy
# ---------------------------------------------------------------------------


# Dialects with a native upsert.
_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SqlKeyValueStore:
    """
    Key-value store over the `kv_entries` table.

    One session per operation, committed before returning. `put` is a
    single INSERT ... ON CONFLICT DO UPDATE on PostgreSQL and SQLite, so
    two first writes to the same key cannot collide on the primary key.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> Any | None:
        async with self._session_factory() as session:
            entry = await session.get(KVEntry, key)
            return entry.value if entry is not None else None

    async def put(self, key: str, value: Any) -> None:
        async with self._session_factory() as session:
            insert = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
            if insert is None:
                await session.merge(KVEntry(key=key, value=value))
            else:
                stmt = insert(KVEntry).values(key=key, value=value)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[KVEntry.key],
                    set_={"value": stmt.excluded.value, "updated_at": func.now()},
                )
                await session.execute(stmt)
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(KVEntry).where(KVEntry.key == key))
            await session.commit()

    async def keys(self, prefix: str = "") -> list[str]:
        async with self._session_factory() as session:
            stmt = select(KVEntry.key).order_by(KVEntry.key)
            if prefix:
                stmt = stmt.where(KVEntry.key.startswith(prefix, autoescape=True))
            result = await session.execute(stmt)
            return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_store: KeyValueStore | None = None


def get_store() -> KeyValueStore:
    """
    Factory that returns the configured store.

    Reads `store_backend` from settings:
    - "memory" → InMemoryStore (process-local, lost on restart)
    - "sql" → SqlKeyValueStore over the configured database
    """
    global _store
    if _store is None:
        if settings.store_backend == "sql":
            from marginalia.db.engine import get_session_factory

            _store = SqlKeyValueStore(get_session_factory())
            logger.info("Using SQL key-value store")
        else:
            _store = InMemoryStore()
            logger.info("Using in-memory key-value store")
    return _store
