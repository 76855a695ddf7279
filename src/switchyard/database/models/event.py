"""Audit event model for Switchyard.

Mutations of the dependency graph and of task assignments are recorded
here so an external event log can reconstruct who changed what.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from switchyard.database.models.base import Base, utcnow


class Event(Base):
    """One audit record.

    Attributes:
        id: Autoincrement primary key.
        element_id: Element the event concerns.
        event_type: Event name (e.g. ``dependency_added``).
        actor: Entity id that performed the change.
        old_value: State before the change, if any.
        new_value: State after the change, if any.
        created_at: When the event was recorded.
    """

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_id: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (Index("ix_events_element", "element_id", "created_at"),)
