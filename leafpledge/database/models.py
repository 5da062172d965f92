"""
leafpledge.database.models — SQLAlchemy 2.0 Data Models
========================================================

The pipeline only needs get/set/delete-by-key semantics, so the whole
schema is one table of JSON documents.

Tables:
- kv_entries — tenant-namespaced JSON documents with an optimistic-lock
  version counter
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Leafpledge ORM models."""


# ---------------------------------------------------------------------------
# KvEntry — one row per storage key
# ---------------------------------------------------------------------------
class KvEntry(Base):
    """A single key-value document.

    ``version`` starts at 1 on insert and is bumped on every write, so
    read-modify-write callers can detect concurrent updates with a
    conditional ``UPDATE … WHERE version = :seen``.
    """
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[object] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<KvEntry key={self.key!r} version={self.version}>"
