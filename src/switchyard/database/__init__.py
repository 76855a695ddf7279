"""Database layer for Switchyard.

This module handles database connections, session management, and exposes
the ORM models shared by every orchestrator service.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from switchyard.database.connection import get_engine, get_session_factory
from switchyard.database.models import (
    Agent,
    Base,
    Channel,
    Dependency,
    DependencyType,
    Document,
    ElementMixin,
    Event,
    InboxItem,
    Message,
    Task,
    TaskStatus,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "Base",
    "ElementMixin",
    "Task",
    "TaskStatus",
    "Agent",
    "Dependency",
    "DependencyType",
    "Channel",
    "Document",
    "Message",
    "InboxItem",
    "Event",
]
