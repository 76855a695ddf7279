"""SQLAlchemy declarative base and common column mixins for Switchyard.

Every persisted record is an *element*: it has an opaque ``el-`` identifier,
creation and update timestamps, a creator, a tag list and a free-form
metadata map. ElementMixin provides those columns.

Column types are kept portable (JSON, String, DateTime) so the same models
run against PostgreSQL in production and SQLite in tests.

Example:
    >>> class MyModel(ElementMixin, Base):
    ...     __tablename__ = "my_table"
    ...     name: Mapped[str] = mapped_column(Text, nullable=False)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from switchyard.ids import generate_id


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy 2.0 declarative base for all Switchyard models."""

    pass


class ElementMixin:
    """Mixin providing the shared element columns.

    Attributes:
        id: ``el-`` prefixed string primary key, generated client side.
        created_at: Timestamp set on row creation.
        updated_at: Timestamp refreshed on each modification.
        created_by: Identifier of the actor that created the element.
        tags: List of free-form tags.
        metadata_: Free-form JSON map, stored in the ``metadata`` column.
    """

    id: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        default=generate_id,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )
