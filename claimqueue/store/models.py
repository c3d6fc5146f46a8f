"""
SQLAlchemy database models.
Defines the table backing every queue collection.
"""

from typing import Any

from sqlalchemy import JSON, BigInteger, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class QueueEntry(Base):
    """
    One record of one collection.

    Key constraints:
    - (collection, key) is unique
    - seq is assigned on insert and never changes, so it identifies one
      incarnation of a key (a key deleted and written again gets a new seq)
    - version increments on every write and guards conditional transforms
    """

    __tablename__ = "queue_entries"

    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    collection: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # C collation keeps push keys in byte order on PostgreSQL
    key: Mapped[str] = mapped_column(
        String(255).with_variant(String(255, collation="C"), "postgresql"),
        nullable=False,
    )

    value: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=dict,
    )

    # Copied out of value so the database can order by it
    priority: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    __table_args__ = (
        UniqueConstraint("collection", "key", name="uq_queue_entries_collection_key"),
        # Index for first-item lookups
        Index("ix_queue_entries_order", "collection", "priority", "key"),
    )

    def __repr__(self) -> str:
        return (
            f"QueueEntry(collection={self.collection}, key={self.key}, "
            f"seq={self.seq}, version={self.version})"
        )
