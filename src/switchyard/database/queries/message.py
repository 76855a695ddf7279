"""Channel, document, message and inbox query functions for Switchyard.

These functions implement the notification transport: a message posted to
a channel is stored as a Document (the body) plus a Message (the envelope),
and one InboxItem is created for every channel member except the sender.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.base import utcnow
from switchyard.database.models.channel import (
    Channel,
    ChannelType,
    Document,
    InboxItem,
    InboxStatus,
    Message,
)

logger = structlog.get_logger(__name__)


async def create_channel(
    session: AsyncSession,
    name: str,
    created_by: str,
    members: list[str],
    channel_type: ChannelType = ChannelType.GROUP,
    visibility: str = "private",
    join_policy: str = "invite-only",
    description: str | None = None,
    tags: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
) -> Channel:
    """Create a channel and commit.

    Args:
        session: Active async database session.
        name: Channel name.
        created_by: Entity id of the creator.
        members: Entity ids of the members (duplicates are dropped).
        channel_type: group or direct.
        visibility: private or public.
        join_policy: invite-only or open.
        description: Optional description.
        tags: Optional tags.
        metadata: Optional metadata map.

    Returns:
        The created Channel.
    """
    channel = Channel(
        name=name,
        created_by=created_by,
        members=list(dict.fromkeys(members)),
        channel_type=channel_type,
        visibility=visibility,
        join_policy=join_policy,
        description=description,
        tags=list(tags or []),
        metadata_=dict(metadata or {}),
    )
    session.add(channel)
    await session.commit()

    logger.info(
        "channel_created",
        channel_id=channel.id,
        name=name,
        member_count=len(channel.members),
    )
    return channel


async def get_channel(session: AsyncSession, channel_id: str) -> Channel | None:
    """Retrieve a channel by ID."""
    result = await session.execute(select(Channel).where(Channel.id == channel_id))
    return result.scalar_one_or_none()


async def find_channel_by_name(
    session: AsyncSession,
    name: str,
    channel_type: ChannelType | None = ChannelType.GROUP,
) -> Channel | None:
    """Return the oldest channel with the given name, if any."""
    stmt = select(Channel).where(Channel.name == name)
    if channel_type is not None:
        stmt = stmt.where(Channel.channel_type == channel_type)
    stmt = stmt.order_by(Channel.created_at.asc()).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_document(
    session: AsyncSession,
    content: str,
    created_by: str,
    content_type: str = "text",
    tags: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
) -> Document:
    """Store a message body and commit.

    Args:
        session: Active async database session.
        content: Body text.
        created_by: Entity id of the author.
        content_type: Content type, ``text`` by default.
        tags: Optional tags.
        metadata: Optional metadata map.

    Returns:
        The created Document.
    """
    document = Document(
        content=content,
        content_type=content_type,
        created_by=created_by,
        tags=list(tags or []),
        metadata_=dict(metadata or {}),
    )
    session.add(document)
    await session.commit()
    return document


async def get_document(session: AsyncSession, document_id: str) -> Document | None:
    """Retrieve a document by ID."""
    result = await session.execute(select(Document).where(Document.id == document_id))
    return result.scalar_one_or_none()


async def send_message(
    session: AsyncSession,
    channel: Channel,
    sender: str,
    content_ref: str,
    metadata: dict[str, Any] | None = None,
    thread_id: str | None = None,
    tags: list[str] | None = None,
) -> Message:
    """Post a message to a channel and deliver it to member inboxes.

    Args:
        session: Active async database session.
        channel: Destination channel.
        sender: Entity id of the sender.
        content_ref: Document id holding the message body.
        metadata: Optional structured payload.
        thread_id: Optional parent message id.
        tags: Optional tags.

    Returns:
        The created Message.
    """
    message = Message(
        channel_id=channel.id,
        sender=sender,
        content_ref=content_ref,
        thread_id=thread_id,
        created_by=sender,
        tags=list(tags or []),
        metadata_=dict(metadata or {}),
    )
    session.add(message)
    await session.flush()

    recipients = [member for member in channel.members if member != sender]
    for recipient in recipients:
        session.add(
            InboxItem(
                recipient_id=recipient,
                message_id=message.id,
                channel_id=channel.id,
            )
        )
    await session.commit()

    logger.info(
        "message_sent",
        message_id=message.id,
        channel_id=channel.id,
        sender=sender,
        recipient_count=len(recipients),
    )
    return message


async def get_message(session: AsyncSession, message_id: str) -> Message | None:
    """Retrieve a message by ID."""
    result = await session.execute(select(Message).where(Message.id == message_id))
    return result.scalar_one_or_none()


async def list_inbox(
    session: AsyncSession,
    recipient_id: str,
    status: InboxStatus | None = InboxStatus.UNREAD,
    limit: int | None = None,
) -> list[tuple[InboxItem, Message, Document]]:
    """List inbox items of a recipient together with message and body.

    Items are ordered oldest first so messages are routed in send order.

    Args:
        session: Active async database session.
        recipient_id: Entity whose inbox to read.
        status: Only items in this status, or all when None.
        limit: Maximum number of items to return.

    Returns:
        (InboxItem, Message, Document) tuples.
    """
    stmt = (
        select(InboxItem, Message, Document)
        .join(Message, InboxItem.message_id == Message.id)
        .join(Document, Message.content_ref == Document.id)
        .where(InboxItem.recipient_id == recipient_id)
    )
    if status is not None:
        stmt = stmt.where(InboxItem.status == status)
    stmt = stmt.order_by(InboxItem.created_at.asc(), InboxItem.id.asc())
    if limit is not None:
        stmt = stmt.limit(limit)

    result = await session.execute(stmt)
    return [(row[0], row[1], row[2]) for row in result.all()]


async def mark_inbox_read(session: AsyncSession, item_id: str) -> InboxItem | None:
    """Mark an inbox item as read and commit.

    Returns:
        The updated item, or None if it does not exist.
    """
    result = await session.execute(select(InboxItem).where(InboxItem.id == item_id))
    item = result.scalar_one_or_none()
    if item is None:
        return None
    item.status = InboxStatus.READ
    item.read_at = utcnow()
    await session.commit()
    return item
