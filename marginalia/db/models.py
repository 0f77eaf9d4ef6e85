# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# The persistence port is a plain key-value store, so the schema is one
# table. Keys are composite strings built by the services:
#
#   papers:{paper_id}
#   conversations:{workspace_id}:{active_paper_id}:{paragraph_index}:paragraph
#   conversations:...:{paragraph_index}:exchange:{exchange_id}
#   conversations:...:{paragraph_index}:response:{exchange_id}:{paper_id}
#   engagements:{workspace_id}:{active_paper_id}:{paragraph_index}
#
# ┌───────────────────────────┐
# │  kv_entries               │
# ├───────────────────────────┤
# │ key (PK, varchar 512)     │
# │ value (JSON)              │
# │ updated_at                │
# └───────────────────────────┘
#
# DESIGN DECISION: Generic `JSON` type, not PostgreSQL `JSONB`.
# The same table works on PostgreSQL in production and SQLite in tests.
# No query ever filters inside the value; lookups are by key or key prefix.
# =============================================================================

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class KVEntry(Base):
    """One stored value. Writes are last-write-wins."""

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<KVEntry(key='{self.key}')>"
