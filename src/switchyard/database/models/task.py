"""Task model for Switchyard.

Defines the Task table together with the status, priority and complexity
levels used throughout the dispatch engine. Tasks are never hard-deleted;
they are retired by moving to the tombstone status.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from switchyard.database.models.base import Base, ElementMixin


class TaskStatus(str, enum.Enum):
    """Lifecycle states of a task."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    REVIEW = "review"
    CLOSED = "closed"
    TOMBSTONE = "tombstone"


# Statuses that no longer count against an agent's capacity.
TERMINAL_STATUSES = frozenset({TaskStatus.CLOSED, TaskStatus.TOMBSTONE})


class Priority(enum.IntEnum):
    """Task priority levels. A lower number is more urgent."""

    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4
    MINIMAL = 5


class Complexity(enum.IntEnum):
    """Task complexity levels used for load estimation."""

    TRIVIAL = 1
    SIMPLE = 2
    MEDIUM = 3
    COMPLEX = 4
    VERY_COMPLEX = 5


class Task(ElementMixin, Base):
    """A unit of work dispatched to an agent.

    Attributes:
        id: Element identifier (from ElementMixin).
        title: Short description of the task.
        description: Optional detailed instructions.
        status: Current lifecycle state.
        priority: Priority level, see Priority.
        complexity: Complexity level, see Complexity.
        assignee: Entity id of the assigned agent, if any.
        closed_at: Timestamp when the task was closed.
        metadata_: Free-form map (from ElementMixin). Holds the
            ``capabilityRequirements`` block and the ``orchestrator``
            assignment block.
    """

    __tablename__ = "tasks"

    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        Enum(
            TaskStatus,
            native_enum=False,
            length=32,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=TaskStatus.OPEN,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        default=int(Priority.MEDIUM),
        nullable=False,
    )
    complexity: Mapped[int] = mapped_column(
        Integer,
        default=int(Complexity.MEDIUM),
        nullable=False,
    )
    assignee: Mapped[str | None] = mapped_column(String(32), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_tasks_status", "status"),
        Index("ix_tasks_assignee", "assignee"),
    )
