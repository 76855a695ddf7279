"""Initial schema for Switchyard.

Creates the element tables (tasks, agents, channels, documents, messages),
the typed dependency edge table, inbox delivery records and the audit
event log.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _element_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
    ]


def upgrade() -> None:
    # Tasks table
    op.create_table(
        "tasks",
        *_element_columns(),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("complexity", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("assignee", sa.String(32), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_assignee", "tasks", ["assignee"])

    # Agents table
    op.create_table(
        "agents",
        *_element_columns(),
        sa.Column("name", sa.String(128), nullable=False, unique=True),
        sa.Column("entity_type", sa.String(32), nullable=False, server_default="agent"),
        sa.Column("reports_to", sa.String(32), nullable=True),
        sa.Column("agent_metadata", sa.JSON(), nullable=False),
    )

    # Dependency edges
    op.create_table(
        "dependencies",
        sa.Column("source_id", sa.String(32), primary_key=True),
        sa.Column("target_id", sa.String(32), primary_key=True),
        sa.Column("type", sa.String(32), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
    )
    op.create_index("ix_dependencies_target", "dependencies", ["target_id", "type"])
    op.create_index(
        "ix_dependencies_source_created", "dependencies", ["source_id", "created_at"]
    )

    # Messaging tables
    op.create_table(
        "channels",
        *_element_columns(),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("channel_type", sa.String(16), nullable=False, server_default="group"),
        sa.Column("members", sa.JSON(), nullable=False),
        sa.Column("visibility", sa.String(16), nullable=False, server_default="private"),
        sa.Column(
            "join_policy", sa.String(16), nullable=False, server_default="invite-only"
        ),
        sa.Column("description", sa.Text(), nullable=True),
    )
    op.create_index("ix_channels_name", "channels", ["name"])

    op.create_table(
        "documents",
        *_element_columns(),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("content_type", sa.String(32), nullable=False, server_default="text"),
    )

    op.create_table(
        "messages",
        *_element_columns(),
        sa.Column("channel_id", sa.String(32), sa.ForeignKey("channels.id"), nullable=False),
        sa.Column("sender", sa.String(32), nullable=False),
        sa.Column(
            "content_ref", sa.String(32), sa.ForeignKey("documents.id"), nullable=False
        ),
        sa.Column("thread_id", sa.String(32), nullable=True),
    )
    op.create_index("ix_messages_channel", "messages", ["channel_id", "created_at"])

    op.create_table(
        "inbox_items",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("recipient_id", sa.String(32), nullable=False),
        sa.Column("message_id", sa.String(32), sa.ForeignKey("messages.id"), nullable=False),
        sa.Column("channel_id", sa.String(32), sa.ForeignKey("channels.id"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="unread"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_inbox_items_recipient_status", "inbox_items", ["recipient_id", "status"]
    )

    # Audit log
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("element_id", sa.String(32), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_events_element", "events", ["element_id", "created_at"])


def downgrade() -> None:
    op.drop_table("events")
    op.drop_table("inbox_items")
    op.drop_table("messages")
    op.drop_table("documents")
    op.drop_table("channels")
    op.drop_table("dependencies")
    op.drop_table("agents")
    op.drop_table("tasks")
