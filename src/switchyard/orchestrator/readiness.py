"""Ready and blocked task resolution.

A task is blocked while any of its outgoing blocking edges is unresolved:

- ``blocks`` or ``parent-child`` to a task that is not closed or tombstoned
- ``awaits`` whose gate is not satisfied yet (timer in the future,
  too few approvals, external or webhook gate not marked satisfied)

Edges to elements that are not tasks do not block. A ready task is open,
unassigned and not blocked.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

import pydantic
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.dependency import Dependency, DependencyType
from switchyard.database.models.task import TERMINAL_STATUSES, Task, TaskStatus
from switchyard.database.queries.task import get_tasks, list_tasks
from switchyard.orchestrator.priority import PriorityService, sort_by_effective_priority
from switchyard.orchestrator.types import awaits_metadata_adapter

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

_TASK_BLOCKING_TYPES = (DependencyType.BLOCKS.value, DependencyType.PARENT_CHILD.value)
_BLOCKING_VALUES = (*_TASK_BLOCKING_TYPES, DependencyType.AWAITS.value)


@dataclass
class Blocker:
    """An unresolved blocking edge of a task."""

    dependency: Dependency
    reason: str


def _unresolved(
    dep: Dependency,
    targets: dict[str, Task],
    now: datetime,
) -> Blocker | None:
    if dep.type in _TASK_BLOCKING_TYPES:
        target = targets.get(dep.target_id)
        if target is None or target.status in TERMINAL_STATUSES:
            return None
        return Blocker(dep, f"{dep.target_id} is {target.status.value}")

    try:
        gate = awaits_metadata_adapter.validate_python(dep.metadata_ or {})
    except pydantic.ValidationError:
        return Blocker(dep, "awaits gate metadata is invalid")
    if gate.is_satisfied(now):
        return None
    return Blocker(dep, f"{gate.gate_type} gate not satisfied")


class ReadinessService:
    """Answers which tasks can be worked on now.

    Attributes:
        session_factory: Callable returning new AsyncSession instances.
        priority: Used to order ready tasks by effective priority.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        priority: PriorityService | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.priority = priority or PriorityService(session_factory)

    async def blockers_of(
        self,
        task_id: str,
        now: datetime | None = None,
    ) -> list[Blocker]:
        """Unresolved blocking edges of a task, oldest first."""
        blockers = await self._blockers_for_many([task_id], now)
        return blockers.get(task_id, [])

    async def is_blocked(self, task_id: str, now: datetime | None = None) -> bool:
        return bool(await self.blockers_of(task_id, now))

    async def ready_tasks(
        self,
        tags_any: Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> list[Task]:
        """Open, unassigned, unblocked tasks, most urgent first.

        Ordering is by effective priority, then base priority; ties keep
        the store order (priority, then creation time).

        Args:
            tags_any: Only tasks carrying at least one of these tags.
            now: Reference time for timer gates.
        """
        async with self.session_factory() as session:
            candidates = await list_tasks(
                session,
                statuses=[TaskStatus.OPEN],
                unassigned_only=True,
                tags_any=tags_any,
            )
        if not candidates:
            return []

        blockers = await self._blockers_for_many([t.id for t in candidates], now)
        ready = [t for t in candidates if not blockers.get(t.id)]

        enhanced = await self.priority.enhance_tasks_with_effective_priority(ready)
        ordered = [item.task for item in sort_by_effective_priority(enhanced)]
        logger.debug(
            "ready_tasks_resolved",
            candidates=len(candidates),
            ready=len(ordered),
        )
        return ordered

    async def _blockers_for_many(
        self,
        task_ids: Iterable[str],
        now: datetime | None,
    ) -> dict[str, list[Blocker]]:
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        now = now or datetime.now(timezone.utc)

        async with self.session_factory() as session:
            stmt = (
                select(Dependency)
                .where(Dependency.source_id.in_(ids))
                .where(Dependency.type.in_(_BLOCKING_VALUES))
                .order_by(Dependency.created_at.asc())
            )
            edges = list((await session.execute(stmt)).scalars().all())
            targets = await get_tasks(
                session,
                (e.target_id for e in edges if e.type in _TASK_BLOCKING_TYPES),
            )

        blockers: dict[str, list[Blocker]] = {}
        for edge in edges:
            blocker = _unresolved(edge, targets, now)
            if blocker is not None:
                blockers.setdefault(edge.source_id, []).append(blocker)
        return blockers
