"""Dependency edge model for Switchyard.

A dependency is a directed, typed edge between two elements. The composite
primary key ``(source_id, target_id, type)`` lets the same pair carry
several different edge types while rejecting exact duplicates.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from switchyard.database.models.base import Base, utcnow


class DependencyType(str, enum.Enum):
    """All supported edge types."""

    # Blocking
    BLOCKS = "blocks"
    PARENT_CHILD = "parent-child"
    AWAITS = "awaits"
    # Associative
    RELATES_TO = "relates-to"
    REFERENCES = "references"
    SUPERSEDES = "supersedes"
    DUPLICATES = "duplicates"
    CAUSED_BY = "caused-by"
    VALIDATES = "validates"
    # Attribution
    AUTHORED_BY = "authored-by"
    ASSIGNED_TO = "assigned-to"
    APPROVED_BY = "approved-by"
    # Threading
    REPLIES_TO = "replies-to"


BLOCKING_TYPES = frozenset(
    {DependencyType.BLOCKS, DependencyType.PARENT_CHILD, DependencyType.AWAITS}
)
ASSOCIATIVE_TYPES = frozenset(
    {
        DependencyType.RELATES_TO,
        DependencyType.REFERENCES,
        DependencyType.SUPERSEDES,
        DependencyType.DUPLICATES,
        DependencyType.CAUSED_BY,
        DependencyType.VALIDATES,
    }
)
ATTRIBUTION_TYPES = frozenset(
    {
        DependencyType.AUTHORED_BY,
        DependencyType.ASSIGNED_TO,
        DependencyType.APPROVED_BY,
    }
)
THREADING_TYPES = frozenset({DependencyType.REPLIES_TO})


class Dependency(Base):
    """A typed edge ``source --type--> target``.

    For blocking types the source waits on the target: ``A --blocks--> B``
    means A cannot proceed until B is closed.

    Attributes:
        source_id: Element the edge starts from.
        target_id: Element the edge points at.
        type: Edge type value (see DependencyType).
        created_at: Timestamp of edge creation.
        created_by: Actor that created the edge.
        metadata_: Type-specific metadata (gate or validation details).
    """

    __tablename__ = "dependencies"

    source_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_dependencies_target", "target_id", "type"),
        Index("ix_dependencies_source_created", "source_id", "created_at"),
    )
