"""Messaging models for Switchyard.

Channels, documents and messages form the notification transport used to
tell agents about dispatched work. Sending a message fans out one InboxItem
per channel member other than the sender; the dispatch daemon drains those
items and routes them into running agent sessions.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from switchyard.database.models.base import Base, ElementMixin, utcnow
from switchyard.ids import generate_id


class ChannelType(str, enum.Enum):
    """Kinds of channel."""

    GROUP = "group"
    DIRECT = "direct"


class InboxStatus(str, enum.Enum):
    """Read state of an inbox item."""

    UNREAD = "unread"
    READ = "read"
    ARCHIVED = "archived"


class Channel(ElementMixin, Base):
    """A messaging destination.

    Attributes:
        name: Channel name, unique per channel type.
        channel_type: group or direct.
        members: Entity ids allowed to read and post.
        visibility: ``private`` or ``public``.
        join_policy: ``invite-only`` or ``open``.
        description: Optional free text.
    """

    __tablename__ = "channels"

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    channel_type: Mapped[ChannelType] = mapped_column(
        Enum(
            ChannelType,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=ChannelType.GROUP,
        nullable=False,
    )
    members: Mapped[list[str]] = mapped_column(
        JSON, default=list, nullable=False
    )
    visibility: Mapped[str] = mapped_column(String(16), default="private", nullable=False)
    join_policy: Mapped[str] = mapped_column(
        String(16), default="invite-only", nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_channels_name", "name"),)


class Document(ElementMixin, Base):
    """A stored message body.

    Attributes:
        content: Text content.
        content_type: MIME-like content type, ``text`` by default.
    """

    __tablename__ = "documents"

    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(32), default="text", nullable=False)


class Message(ElementMixin, Base):
    """A message posted to a channel.

    Attributes:
        channel_id: Channel the message was posted to.
        sender: Entity id of the sender.
        content_ref: Document id holding the message body.
        thread_id: Optional parent message for threaded replies.
    """

    __tablename__ = "messages"

    channel_id: Mapped[str] = mapped_column(
        ForeignKey("channels.id"),
        nullable=False,
    )
    sender: Mapped[str] = mapped_column(String(32), nullable=False)
    content_ref: Mapped[str] = mapped_column(
        ForeignKey("documents.id"),
        nullable=False,
    )
    thread_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    __table_args__ = (Index("ix_messages_channel", "channel_id", "created_at"),)


class InboxItem(Base):
    """Delivery record of a message to one recipient.

    Attributes:
        id: Generated identifier.
        recipient_id: Entity id the message is delivered to.
        message_id: Delivered message.
        channel_id: Channel the message was posted to.
        status: unread, read or archived.
        created_at: Delivery timestamp.
        read_at: Timestamp the item was marked read.
    """

    __tablename__ = "inbox_items"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    recipient_id: Mapped[str] = mapped_column(String(32), nullable=False)
    message_id: Mapped[str] = mapped_column(ForeignKey("messages.id"), nullable=False)
    channel_id: Mapped[str] = mapped_column(ForeignKey("channels.id"), nullable=False)
    status: Mapped[InboxStatus] = mapped_column(
        Enum(
            InboxStatus,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=InboxStatus.UNREAD,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    read_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_inbox_items_recipient_status", "recipient_id", "status"),
    )
