"""Dependency-aware priority and complexity calculation.

A task that blocks urgent work inherits that urgency. For a task T, every
task S with an edge ``S --blocks--> T`` is waiting on T, so T's *effective*
priority is the most urgent of its own priority and the effective priority
of everything transitively waiting on it.

Traversals are breadth-first, bounded by ``max_depth`` hops and guarded by
a visited set, so they terminate on any graph including cycles. Only
``blocks`` edges take part; associative edges such as ``relates-to`` never
influence priority.

Priority numbers follow the Priority enum: a lower number is more urgent.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TypeVar

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.dependency import Dependency, DependencyType
from switchyard.database.models.task import Complexity, Priority, Task
from switchyard.database.queries.task import get_tasks

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

DEFAULT_MAX_DEPTH = 10


class EffectivePriorityResult(BaseModel):
    """Outcome of an effective priority calculation.

    Attributes:
        base_priority: The task's own priority.
        effective_priority: Most urgent priority among the task and
            everything transitively blocked on it.
        dependent_influencers: Tasks whose priority set the effective
            priority (empty when not influenced).
        is_influenced: Whether effective differs from base.
    """

    base_priority: Priority
    effective_priority: Priority
    dependent_influencers: list[str] = Field(default_factory=list)
    is_influenced: bool = False


class DependentComplexity(BaseModel):
    id: str
    complexity: Complexity


class AggregateComplexityResult(BaseModel):
    """Outcome of an aggregate complexity calculation.

    Attributes:
        base_complexity: The task's own complexity.
        aggregate_complexity: Own complexity plus that of every task it
            transitively waits on.
        dependent_count: Number of blocker tasks included.
        dependent_complexities: Per-blocker breakdown.
    """

    base_complexity: Complexity
    aggregate_complexity: int
    dependent_count: int = 0
    dependent_complexities: list[DependentComplexity] = Field(default_factory=list)


@dataclass
class TaskWithEffectivePriority:
    """A task paired with its computed effective priority."""

    task: Task
    effective_priority: Priority
    priority_influenced: bool = False

    @property
    def base_priority(self) -> int:
        return self.task.priority


_T = TypeVar("_T", bound=TaskWithEffectivePriority)


def sort_by_effective_priority(items: Iterable[_T]) -> list[_T]:
    """Order tasks most urgent first.

    Sorts by effective priority, then by base priority. The sort is stable,
    so tasks equal on both keys keep their input order.
    """
    return sorted(
        items,
        key=lambda item: (int(item.effective_priority), int(item.base_priority)),
    )


def _as_priority(value: int) -> Priority:
    try:
        return Priority(value)
    except ValueError:
        return Priority.MEDIUM


def _as_complexity(value: int) -> Complexity:
    try:
        return Complexity(value)
    except ValueError:
        return Complexity.MEDIUM


class PriorityService:
    """Computes effective priority and aggregate complexity.

    Attributes:
        session_factory: Callable returning new AsyncSession instances.
        max_depth: Default traversal depth bound.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.session_factory = session_factory
        self.max_depth = max_depth
        self._logger = logger.bind(component="PriorityService")

    async def effective_priority(
        self,
        task_id: str,
        max_depth: int | None = None,
    ) -> EffectivePriorityResult:
        """Calculate a task's effective priority.

        Unknown tasks resolve to MEDIUM rather than raising, so scheduling
        stays best-effort.

        Args:
            task_id: Task to evaluate.
            max_depth: Hop limit; defaults to the service's max_depth.

        Returns:
            EffectivePriorityResult for the task.
        """
        async with self.session_factory() as session:
            return await self._effective_priority(
                session, task_id, self.max_depth if max_depth is None else max_depth
            )

    async def calculate_effective_priorities(
        self,
        task_ids: Sequence[str],
        max_depth: int | None = None,
    ) -> dict[str, EffectivePriorityResult]:
        """Calculate effective priorities for several tasks.

        Returns:
            Mapping of task id to result.
        """
        depth = self.max_depth if max_depth is None else max_depth
        results: dict[str, EffectivePriorityResult] = {}
        async with self.session_factory() as session:
            for task_id in task_ids:
                results[task_id] = await self._effective_priority(session, task_id, depth)
        return results

    async def enhance_tasks_with_effective_priority(
        self,
        tasks: Sequence[Task],
        max_depth: int | None = None,
    ) -> list[TaskWithEffectivePriority]:
        """Pair each task with its effective priority, preserving order."""
        if not tasks:
            return []
        results = await self.calculate_effective_priorities(
            [t.id for t in tasks], max_depth
        )
        enhanced = []
        for task in tasks:
            result = results.get(task.id)
            enhanced.append(
                TaskWithEffectivePriority(
                    task=task,
                    effective_priority=(
                        result.effective_priority if result else _as_priority(task.priority)
                    ),
                    priority_influenced=result.is_influenced if result else False,
                )
            )
        return enhanced

    async def aggregate_complexity(
        self,
        task_id: str,
        max_depth: int | None = None,
    ) -> AggregateComplexityResult:
        """Sum a task's complexity with that of every task it waits on.

        Follows ``source --blocks--> target`` edges from the task as source.
        Unknown tasks resolve to MEDIUM.

        Args:
            task_id: Task to evaluate.
            max_depth: Hop limit; defaults to the service's max_depth.

        Returns:
            AggregateComplexityResult for the task.
        """
        depth_limit = self.max_depth if max_depth is None else max_depth
        async with self.session_factory() as session:
            root = (await get_tasks(session, [task_id])).get(task_id)
            if root is None:
                return AggregateComplexityResult(
                    base_complexity=Complexity.MEDIUM,
                    aggregate_complexity=int(Complexity.MEDIUM),
                )

            base = _as_complexity(root.complexity)
            blockers = await self._traverse(
                session, task_id, depth_limit, follow_dependents=False
            )

        breakdown = [
            DependentComplexity(id=t.id, complexity=_as_complexity(t.complexity))
            for t in blockers
        ]
        return AggregateComplexityResult(
            base_complexity=base,
            aggregate_complexity=int(base) + sum(int(b.complexity) for b in breakdown),
            dependent_count=len(breakdown),
            dependent_complexities=breakdown,
        )

    async def _effective_priority(
        self,
        session: AsyncSession,
        task_id: str,
        max_depth: int,
    ) -> EffectivePriorityResult:
        root = (await get_tasks(session, [task_id])).get(task_id)
        if root is None:
            return EffectivePriorityResult(
                base_priority=Priority.MEDIUM,
                effective_priority=Priority.MEDIUM,
            )

        base = _as_priority(root.priority)
        effective = base
        influencers: list[str] = []

        dependents = await self._traverse(session, task_id, max_depth, follow_dependents=True)
        for dependent in dependents:
            priority = _as_priority(dependent.priority)
            if priority < effective:
                effective = priority
                influencers = [dependent.id]
            elif priority == effective and priority < base:
                influencers.append(dependent.id)

        result = EffectivePriorityResult(
            base_priority=base,
            effective_priority=effective,
            dependent_influencers=influencers,
            is_influenced=effective != base,
        )
        if result.is_influenced:
            self._logger.debug(
                "priority_escalated",
                task_id=task_id,
                base_priority=int(base),
                effective_priority=int(effective),
                influencers=influencers,
            )
        return result

    async def _traverse(
        self,
        session: AsyncSession,
        task_id: str,
        max_depth: int,
        follow_dependents: bool,
    ) -> list[Task]:
        """Breadth-first walk over ``blocks`` edges.

        With follow_dependents=True the walk goes from target to source
        (tasks waiting on the current one); otherwise from source to target
        (tasks the current one waits on). Each task is visited once, so
        diamond-shaped graphs contribute every task exactly one time.
        """
        found: list[Task] = []
        visited = {task_id}
        queue: deque[tuple[str, int]] = deque([(task_id, 0)])

        while queue:
            current, depth = queue.popleft()
            if depth >= max_depth:
                continue

            stmt = select(Dependency).where(
                Dependency.type == DependencyType.BLOCKS.value
            )
            if follow_dependents:
                stmt = stmt.where(Dependency.target_id == current)
            else:
                stmt = stmt.where(Dependency.source_id == current)
            edges = (await session.execute(stmt)).scalars().all()

            neighbour_ids = [
                edge.source_id if follow_dependents else edge.target_id for edge in edges
            ]
            fresh = [n for n in dict.fromkeys(neighbour_ids) if n not in visited]
            if not fresh:
                continue

            tasks = await get_tasks(session, fresh)
            for neighbour_id in fresh:
                visited.add(neighbour_id)
                task = tasks.get(neighbour_id)
                # Edges may point at non-task elements; those end the walk.
                if task is None:
                    continue
                found.append(task)
                queue.append((neighbour_id, depth + 1))

        return found
