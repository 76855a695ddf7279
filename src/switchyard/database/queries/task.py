"""Task query functions for Switchyard.

Provides async functions for creating, reading and updating Task records.
Assignment writes go through ``compare_and_set_assignee`` so that two
dispatchers racing for the same task cannot both win.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.base import utcnow
from switchyard.database.models.task import (
    TERMINAL_STATUSES,
    Complexity,
    Priority,
    Task,
    TaskStatus,
)

logger = structlog.get_logger(__name__)


async def create_task(
    session: AsyncSession,
    title: str,
    created_by: str,
    priority: Priority | int = Priority.MEDIUM,
    complexity: Complexity | int = Complexity.MEDIUM,
    status: TaskStatus = TaskStatus.OPEN,
    description: str | None = None,
    assignee: str | None = None,
    tags: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
) -> Task:
    """Create a new task.

    Args:
        session: Active async database session.
        title: Short task description.
        created_by: Entity id of the creator.
        priority: Priority level (lower = more urgent).
        complexity: Complexity level.
        status: Initial status.
        description: Detailed instructions.
        assignee: Optional initial assignee.
        tags: Optional tag list.
        metadata: Optional metadata map (capability requirements etc.).

    Returns:
        The newly created Task instance.
    """
    task = Task(
        title=title,
        description=description,
        created_by=created_by,
        priority=int(priority),
        complexity=int(complexity),
        status=status,
        assignee=assignee,
        tags=list(tags or []),
        metadata_=dict(metadata or {}),
    )
    session.add(task)
    await session.commit()

    logger.info(
        "task_created",
        task_id=task.id,
        title=title,
        priority=task.priority,
        status=task.status.value,
    )

    return task


async def get_task(session: AsyncSession, task_id: str) -> Task | None:
    """Retrieve a task by ID.

    Args:
        session: Active async database session.
        task_id: Identifier of the task.

    Returns:
        The Task instance if found, None otherwise.
    """
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


async def get_tasks(session: AsyncSession, task_ids: Iterable[str]) -> dict[str, Task]:
    """Retrieve several tasks keyed by id. Missing ids are omitted."""
    ids = list(dict.fromkeys(task_ids))
    if not ids:
        return {}
    result = await session.execute(select(Task).where(Task.id.in_(ids)))
    return {task.id: task for task in result.scalars().all()}


async def list_tasks(
    session: AsyncSession,
    statuses: Sequence[TaskStatus] | None = None,
    assignee: str | None = None,
    unassigned_only: bool = False,
    tags_any: Sequence[str] | None = None,
) -> list[Task]:
    """List tasks with optional filters.

    Results are ordered by priority (most urgent first), then creation time.

    Args:
        session: Active async database session.
        statuses: Only return tasks in one of these statuses.
        assignee: Only return tasks assigned to this agent.
        unassigned_only: Only return tasks without an assignee.
        tags_any: Only return tasks carrying at least one of these tags.

    Returns:
        List of matching Task instances.
    """
    stmt = select(Task)

    if statuses:
        stmt = stmt.where(Task.status.in_(list(statuses)))
    if assignee is not None:
        stmt = stmt.where(Task.assignee == assignee)
    if unassigned_only:
        stmt = stmt.where(Task.assignee.is_(None))

    stmt = stmt.order_by(Task.priority.asc(), Task.created_at.asc())
    result = await session.execute(stmt)
    tasks = list(result.scalars().all())

    # JSON containment is not portable across backends; filter tags here.
    if tags_any:
        wanted = set(tags_any)
        tasks = [t for t in tasks if wanted.intersection(t.tags or [])]

    return tasks


async def count_active_tasks_for_agent(session: AsyncSession, agent_id: str) -> int:
    """Count tasks assigned to an agent that are not closed or tombstoned."""
    stmt = (
        select(func.count())
        .select_from(Task)
        .where(Task.assignee == agent_id)
        .where(Task.status.not_in(list(TERMINAL_STATUSES)))
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def compare_and_set_assignee(
    session: AsyncSession,
    task_id: str,
    expected_assignee: str | None,
    values: dict[str, Any],
) -> bool:
    """Update a task only if its assignee still equals expected_assignee.

    The caller commits. A False return means another writer changed the
    assignee since it was read, and nothing was written.

    Args:
        session: Active async database session.
        task_id: Task to update.
        expected_assignee: Assignee value read before deciding to write.
        values: Column values to set (may include ``assignee``).

    Returns:
        True if exactly one row was updated.
    """
    stmt = update(Task).where(Task.id == task_id)
    if expected_assignee is None:
        stmt = stmt.where(Task.assignee.is_(None))
    else:
        stmt = stmt.where(Task.assignee == expected_assignee)

    result = await session.execute(
        stmt.values(updated_at=utcnow(), **values).execution_options(
            synchronize_session=False
        )
    )
    return result.rowcount == 1


async def update_task(
    session: AsyncSession,
    task_id: str,
    **changes: Any,
) -> Task:
    """Apply attribute changes to a task and commit.

    Args:
        session: Active async database session.
        task_id: Task to modify.
        **changes: Attribute names and new values. Use ``metadata_`` for
            the metadata map; pass a new dict so the change is detected.

    Returns:
        The updated Task instance.

    Raises:
        ValueError: If the task does not exist.
    """
    task = await get_task(session, task_id)
    if task is None:
        raise ValueError(f"Task {task_id} not found")
    for key, value in changes.items():
        setattr(task, key, value)
    if changes.get("status") == TaskStatus.CLOSED and task.closed_at is None:
        task.closed_at = utcnow()
    await session.commit()

    logger.debug("task_updated", task_id=task.id, fields=sorted(changes))
    return task
