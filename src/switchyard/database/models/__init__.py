"""SQLAlchemy ORM models for Switchyard.

This module defines the database schema: tasks, agents, dependency edges,
the messaging transport (channels, documents, messages, inbox items) and
the audit event log.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from switchyard.database.models.agent import Agent
from switchyard.database.models.base import Base, ElementMixin
from switchyard.database.models.channel import (
    Channel,
    ChannelType,
    Document,
    InboxItem,
    InboxStatus,
    Message,
)
from switchyard.database.models.dependency import (
    ASSOCIATIVE_TYPES,
    ATTRIBUTION_TYPES,
    BLOCKING_TYPES,
    THREADING_TYPES,
    Dependency,
    DependencyType,
)
from switchyard.database.models.event import Event
from switchyard.database.models.task import (
    TERMINAL_STATUSES,
    Complexity,
    Priority,
    Task,
    TaskStatus,
)

__all__ = [
    "Base",
    "ElementMixin",
    "Task",
    "TaskStatus",
    "TERMINAL_STATUSES",
    "Priority",
    "Complexity",
    "Agent",
    "Dependency",
    "DependencyType",
    "BLOCKING_TYPES",
    "ASSOCIATIVE_TYPES",
    "ATTRIBUTION_TYPES",
    "THREADING_TYPES",
    "Channel",
    "ChannelType",
    "Document",
    "Message",
    "InboxItem",
    "InboxStatus",
    "Event",
]
