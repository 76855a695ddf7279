"""Agent model for Switchyard.

Agents are entities: named actors with a role-specific metadata block.
The block is stored as JSON in ``agent_metadata`` and parsed into the typed
DirectorMetadata / WorkerMetadata / StewardMetadata union by the registry.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from switchyard.database.models.base import Base, ElementMixin


class Agent(ElementMixin, Base):
    """A registered director, worker or steward.

    Attributes:
        id: Entity identifier (from ElementMixin).
        name: Unique, human-readable agent name.
        entity_type: Kind of entity, always ``agent`` for this table.
        reports_to: Entity id of the agent this one reports to.
        agent_metadata: Serialized role metadata (agent_role, session
            status, capabilities, channel id and role-specific fields).
    """

    __tablename__ = "agents"

    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), default="agent", nullable=False)
    reports_to: Mapped[str | None] = mapped_column(String(32), nullable=True)
    agent_metadata: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
