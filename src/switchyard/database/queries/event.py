"""Audit event query functions for Switchyard."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.event import Event


def record_event(
    session: AsyncSession,
    element_id: str,
    event_type: str,
    actor: str,
    old_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
) -> Event:
    """Add an audit event to the session.

    The event is written in the caller's transaction, so it is committed
    or rolled back together with the change it describes.

    Args:
        session: Active async database session.
        element_id: Element the event concerns.
        event_type: Event name, e.g. ``dependency_added``.
        actor: Entity that made the change.
        old_value: State before the change.
        new_value: State after the change.

    Returns:
        The pending Event instance.
    """
    event = Event(
        element_id=element_id,
        event_type=event_type,
        actor=actor,
        old_value=old_value,
        new_value=new_value,
    )
    session.add(event)
    return event


async def list_events(
    session: AsyncSession,
    element_id: str | None = None,
    event_type: str | None = None,
) -> list[Event]:
    """List audit events, oldest first.

    Args:
        session: Active async database session.
        element_id: Optional element filter.
        event_type: Optional event name filter.

    Returns:
        Matching Event instances.
    """
    stmt = select(Event)
    if element_id is not None:
        stmt = stmt.where(Event.element_id == element_id)
    if event_type is not None:
        stmt = stmt.where(Event.event_type == event_type)
    stmt = stmt.order_by(Event.created_at.asc(), Event.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())
