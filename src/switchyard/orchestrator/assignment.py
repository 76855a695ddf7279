"""Task assignment service for Switchyard.

Owns every change to a task's assignee and to the orchestrator block of
its metadata (branch, worktree, session, merge and handoff state).

Admission control: before a task is given to an agent, the agent's open
task count (assigned, not closed or tombstoned) is compared against its
``maxConcurrentTasks``. An agent at its limit is refused with
CapacityError and nothing is written. The assignee write itself is a
compare-and-set on the value read, so two writers racing for the same task
cannot both succeed.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.agent import Agent
from switchyard.database.models.task import TERMINAL_STATUSES, Task, TaskStatus
from switchyard.database.queries.event import record_event
from switchyard.database.queries.task import (
    compare_and_set_assignee,
    count_active_tasks_for_agent,
    get_task,
    list_tasks,
)
from switchyard.errors import CapacityError, ConflictError, NotFoundError, ValidationError
from switchyard.ids import EntityId, TaskId
from switchyard.orchestrator.capabilities import get_agent_capabilities
from switchyard.orchestrator.types import (
    AssignmentStatus,
    HandoffRecord,
    MergeStatus,
    OrchestratorTaskMetadata,
    get_orchestrator_metadata,
    with_orchestrator_metadata,
)
from switchyard.workspace.naming import (
    create_slug_from_title,
    generate_branch_name,
    generate_worktree_path,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

SYSTEM_ACTOR = "system"

AWAITING_MERGE_STATUSES = frozenset(
    {MergeStatus.PENDING, MergeStatus.TESTING, MergeStatus.MERGING}
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_assignment_status(task: Task) -> AssignmentStatus:
    """Derive the assignment state of a task."""
    meta = get_orchestrator_metadata(task.metadata_)
    if meta.merge_status == MergeStatus.MERGED:
        return AssignmentStatus.MERGED
    if task.status == TaskStatus.CLOSED:
        return AssignmentStatus.COMPLETED
    if task.assignee and task.status == TaskStatus.IN_PROGRESS:
        return AssignmentStatus.IN_PROGRESS
    if task.assignee:
        return AssignmentStatus.ASSIGNED
    return AssignmentStatus.UNASSIGNED


@dataclass
class TaskAssignment:
    """A task with its derived assignment state."""

    task: Task
    status: AssignmentStatus
    orchestrator: OrchestratorTaskMetadata


@dataclass
class AgentWorkload:
    """Open work held by one agent.

    Attributes:
        agent_id: The agent.
        total: Open (non-terminal) tasks assigned.
        in_progress: Tasks in progress.
        awaiting_start: Assigned tasks not started yet.
        max_concurrent_tasks: The agent's limit.
        by_status: Count of open tasks per status value.
    """

    agent_id: str
    total: int
    in_progress: int
    awaiting_start: int
    max_concurrent_tasks: int
    by_status: dict[str, int] = field(default_factory=dict)

    @property
    def has_capacity(self) -> bool:
        return self.total < self.max_concurrent_tasks


class TaskAssignmentService:
    """Assigns tasks to agents and tracks their orchestration state.

    Attributes:
        session_factory: Callable returning new AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory
        self._logger = logger.bind(component="TaskAssignmentService")

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def assign_to_agent(
        self,
        task_id: TaskId,
        agent_id: EntityId,
        branch: str | None = None,
        worktree: str | None = None,
        session_id: str | None = None,
        mark_as_started: bool = False,
        actor: str | None = None,
    ) -> Task:
        """Assign a task to an agent.

        Branch and worktree default to the task's handoff workspace if a
        previous agent left one, else to generated names.

        Args:
            task_id: Task to assign.
            agent_id: Receiving agent.
            branch: Branch to record.
            worktree: Worktree path to record.
            session_id: Agent session working on the task.
            mark_as_started: Also move the task to in_progress.
            actor: Entity performing the assignment (audit only).

        Returns:
            The updated Task.

        Raises:
            NotFoundError: Task or agent does not exist.
            ValidationError: Task is closed or tombstoned.
            CapacityError: Agent is at its concurrency limit.
            ConflictError: The task's assignee changed concurrently.
        """
        async with self.session_factory() as session:
            task = await self._require_task(session, task_id)
            agent = await self._require_agent(session, agent_id)

            if task.status in TERMINAL_STATUSES:
                raise ValidationError(
                    f"Cannot assign task {task_id} in status {task.status.value}",
                    details={"task_id": task_id, "status": task.status.value},
                )

            if task.assignee != agent_id:
                await self._check_capacity(session, agent)

            meta = get_orchestrator_metadata(task.metadata_)
            slug = create_slug_from_title(task.title)
            meta.assigned_agent = agent_id
            meta.branch = branch or meta.handoff_branch or generate_branch_name(
                agent.name, task.id, slug
            )
            meta.worktree = worktree or meta.handoff_worktree or generate_worktree_path(
                agent.name, slug
            )
            meta.session_id = session_id
            meta.merge_status = MergeStatus.PENDING

            values: dict[str, Any] = {"assignee": agent_id}
            if mark_as_started:
                meta.started_at = _now()
                values["status"] = TaskStatus.IN_PROGRESS
            values["metadata_"] = with_orchestrator_metadata(task.metadata_, meta)

            previous_assignee = task.assignee
            await self._compare_and_set(session, task, previous_assignee, values)
            record_event(
                session,
                element_id=task_id,
                event_type="task_assigned",
                actor=actor or SYSTEM_ACTOR,
                old_value={"assignee": previous_assignee},
                new_value={
                    "assignee": agent_id,
                    "branch": meta.branch,
                    "worktree": meta.worktree,
                },
            )
            await session.commit()
            await session.refresh(task)

        self._logger.info(
            "task_assigned",
            task_id=task_id,
            agent_id=agent_id,
            previous_assignee=previous_assignee,
            branch=meta.branch,
            started=mark_as_started,
        )
        return task

    async def unassign_task(self, task_id: TaskId, actor: str | None = None) -> Task:
        """Remove the assignee and return the task to open.

        Raises:
            NotFoundError: Task does not exist.
            ConflictError: The task's assignee changed concurrently.
        """
        async with self.session_factory() as session:
            task = await self._require_task(session, task_id)
            meta = get_orchestrator_metadata(task.metadata_)
            meta.assigned_agent = None
            meta.session_id = None

            values: dict[str, Any] = {
                "assignee": None,
                "metadata_": with_orchestrator_metadata(task.metadata_, meta),
            }
            if task.status == TaskStatus.IN_PROGRESS:
                values["status"] = TaskStatus.OPEN

            previous_assignee = task.assignee
            await self._compare_and_set(session, task, previous_assignee, values)
            record_event(
                session,
                element_id=task_id,
                event_type="task_unassigned",
                actor=actor or SYSTEM_ACTOR,
                old_value={"assignee": previous_assignee},
            )
            await session.commit()
            await session.refresh(task)

        self._logger.info("task_unassigned", task_id=task_id, previous_assignee=previous_assignee)
        return task

    async def start_task(self, task_id: TaskId, session_id: str | None = None) -> Task:
        """Move an assigned task to in_progress.

        Raises:
            NotFoundError: Task does not exist.
            ValidationError: Task has no assignee.
        """
        async with self.session_factory() as session:
            task = await self._require_task(session, task_id)
            if not task.assignee:
                raise ValidationError(
                    f"Task {task_id} has no assignee", details={"task_id": task_id}
                )
            meta = get_orchestrator_metadata(task.metadata_)
            meta.started_at = meta.started_at or _now()
            if session_id is not None:
                meta.session_id = session_id

            task.status = TaskStatus.IN_PROGRESS
            task.metadata_ = with_orchestrator_metadata(task.metadata_, meta)
            await session.commit()

        self._logger.info("task_started", task_id=task_id, session_id=session_id)
        return task

    async def complete_task(
        self,
        task_id: TaskId,
        summary: str | None = None,
        commit_hash: str | None = None,
        actor: str | None = None,
    ) -> Task:
        """Close a task and mark its branch as awaiting merge.

        Raises:
            NotFoundError: Task does not exist.
        """
        async with self.session_factory() as session:
            task = await self._require_task(session, task_id)
            meta = get_orchestrator_metadata(task.metadata_)
            meta.completed_at = _now()
            meta.merge_status = MergeStatus.PENDING
            if summary is not None:
                meta.completion_summary = summary
            if commit_hash is not None:
                meta.commit_hash = commit_hash

            previous_status = task.status
            task.status = TaskStatus.CLOSED
            task.closed_at = meta.completed_at
            task.metadata_ = with_orchestrator_metadata(task.metadata_, meta)
            record_event(
                session,
                element_id=task_id,
                event_type="task_completed",
                actor=actor or task.assignee or SYSTEM_ACTOR,
                old_value={"status": previous_status.value},
                new_value={"status": TaskStatus.CLOSED.value, "commitHash": commit_hash},
            )
            await session.commit()

        self._logger.info("task_completed", task_id=task_id, commit_hash=commit_hash)
        return task

    async def handoff_task(
        self,
        task_id: TaskId,
        session_id: str | None = None,
        message: str | None = None,
        actor: str | None = None,
    ) -> Task:
        """Release a task so another agent can resume it.

        The current branch and worktree are kept as the handoff workspace,
        which the next assignment reuses.

        Raises:
            NotFoundError: Task does not exist.
            ConflictError: The task's assignee changed concurrently.
        """
        async with self.session_factory() as session:
            task = await self._require_task(session, task_id)
            meta = get_orchestrator_metadata(task.metadata_)
            handoff_at = _now()
            previous_assignee = task.assignee

            meta.handoff_branch = meta.branch or meta.handoff_branch
            meta.handoff_worktree = meta.worktree or meta.handoff_worktree
            meta.last_session_id = session_id or meta.session_id
            meta.handoff_at = handoff_at
            meta.handoff_note = message
            meta.handoff_history = [
                *meta.handoff_history,
                HandoffRecord(
                    agent_id=previous_assignee,
                    session_id=meta.last_session_id,
                    branch=meta.handoff_branch,
                    worktree=meta.handoff_worktree,
                    message=message,
                    handoff_at=handoff_at,
                ),
            ]
            meta.assigned_agent = None
            meta.session_id = None

            values = {
                "assignee": None,
                "status": TaskStatus.OPEN,
                "metadata_": with_orchestrator_metadata(task.metadata_, meta),
            }
            await self._compare_and_set(session, task, previous_assignee, values)
            record_event(
                session,
                element_id=task_id,
                event_type="task_handoff",
                actor=actor or previous_assignee or SYSTEM_ACTOR,
                old_value={"assignee": previous_assignee},
                new_value={
                    "handoffBranch": meta.handoff_branch,
                    "handoffWorktree": meta.handoff_worktree,
                },
            )
            await session.commit()
            await session.refresh(task)

        self._logger.info(
            "task_handed_off",
            task_id=task_id,
            previous_assignee=previous_assignee,
            handoff_worktree=meta.handoff_worktree,
        )
        return task

    async def update_session_id(self, task_id: TaskId, session_id: str | None) -> Task:
        """Record the session currently working on a task.

        Raises:
            NotFoundError: Task does not exist.
        """
        async with self.session_factory() as session:
            task = await self._require_task(session, task_id)
            meta = get_orchestrator_metadata(task.metadata_)
            meta.session_id = session_id
            task.metadata_ = with_orchestrator_metadata(task.metadata_, meta)
            await session.commit()
        return task

    async def update_merge_status(self, task_id: TaskId, status: MergeStatus) -> Task:
        """Record the merge progress of a completed task.

        Raises:
            NotFoundError: Task does not exist.
        """
        async with self.session_factory() as session:
            task = await self._require_task(session, task_id)
            meta = get_orchestrator_metadata(task.metadata_)
            meta.merge_status = status
            task.metadata_ = with_orchestrator_metadata(task.metadata_, meta)
            await session.commit()

        self._logger.info("merge_status_updated", task_id=task_id, merge_status=status.value)
        return task

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def agent_has_capacity(self, agent_id: EntityId) -> bool:
        """Whether an agent can take another task. Unknown agents cannot."""
        async with self.session_factory() as session:
            agent = await self._get_agent(session, agent_id)
            if agent is None:
                return False
            active = await count_active_tasks_for_agent(session, agent_id)
        return active < get_agent_capabilities(agent).max_concurrent_tasks

    async def get_agent_tasks(
        self,
        agent_id: EntityId,
        include_closed: bool = False,
    ) -> list[Task]:
        """Tasks assigned to an agent, most urgent first."""
        async with self.session_factory() as session:
            tasks = await list_tasks(session, assignee=EntityId(agent_id))
        if include_closed:
            return tasks
        return [t for t in tasks if t.status not in TERMINAL_STATUSES]

    async def get_agent_workload(self, agent_id: EntityId) -> AgentWorkload:
        """Summarize the open work held by an agent.

        Raises:
            NotFoundError: Agent does not exist.
        """
        async with self.session_factory() as session:
            agent = await self._require_agent(session, agent_id)
            tasks = await list_tasks(session, assignee=agent_id)

        open_tasks = [t for t in tasks if t.status not in TERMINAL_STATUSES]
        by_status: dict[str, int] = {}
        for task in open_tasks:
            by_status[task.status.value] = by_status.get(task.status.value, 0) + 1
        in_progress = by_status.get(TaskStatus.IN_PROGRESS.value, 0)

        return AgentWorkload(
            agent_id=agent_id,
            total=len(open_tasks),
            in_progress=in_progress,
            awaiting_start=len(open_tasks) - in_progress,
            max_concurrent_tasks=get_agent_capabilities(agent).max_concurrent_tasks,
            by_status=by_status,
        )

    async def get_unassigned_tasks(self) -> list[Task]:
        """Open tasks without an assignee, most urgent first."""
        async with self.session_factory() as session:
            return await list_tasks(
                session, statuses=[TaskStatus.OPEN], unassigned_only=True
            )

    async def get_tasks_by_assignment_status(
        self, status: AssignmentStatus
    ) -> list[Task]:
        """Tasks whose derived assignment state equals status."""
        async with self.session_factory() as session:
            tasks = await list_tasks(session)
        return [
            t
            for t in tasks
            if t.status != TaskStatus.TOMBSTONE and get_assignment_status(t) == status
        ]

    async def list_assignments(
        self,
        agent_id: EntityId | None = None,
        statuses: list[AssignmentStatus] | None = None,
    ) -> list[TaskAssignment]:
        """Tasks that have been assigned at some point, with their state.

        Args:
            agent_id: Only tasks currently assigned to this agent.
            statuses: Only these assignment states.
        """
        if agent_id is not None:
            agent_id = EntityId(agent_id)
        async with self.session_factory() as session:
            tasks = await list_tasks(session, assignee=agent_id)

        assignments = []
        for task in tasks:
            if task.status == TaskStatus.TOMBSTONE:
                continue
            meta = get_orchestrator_metadata(task.metadata_)
            if not task.assignee and meta.assigned_agent is None and meta.branch is None:
                continue
            status = get_assignment_status(task)
            if statuses and status not in statuses:
                continue
            assignments.append(TaskAssignment(task=task, status=status, orchestrator=meta))
        return assignments

    async def get_tasks_awaiting_merge(self) -> list[Task]:
        """Closed tasks whose branch has not been merged yet."""
        async with self.session_factory() as session:
            tasks = await list_tasks(session, statuses=[TaskStatus.CLOSED])
        return [
            t
            for t in tasks
            if get_orchestrator_metadata(t.metadata_).merge_status in AWAITING_MERGE_STATUSES
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _check_capacity(self, session: AsyncSession, agent: Agent) -> None:
        maximum = get_agent_capabilities(agent).max_concurrent_tasks
        current = await count_active_tasks_for_agent(session, agent.id)
        if current >= maximum:
            self._logger.info(
                "assignment_refused_capacity",
                agent_id=agent.id,
                current=current,
                maximum=maximum,
            )
            raise CapacityError(agent.id, current, maximum)

    async def _compare_and_set(
        self,
        session: AsyncSession,
        task: Task,
        expected_assignee: str | None,
        values: dict[str, Any],
    ) -> None:
        updated = await compare_and_set_assignee(
            session, task.id, expected_assignee, values
        )
        if not updated:
            await session.rollback()
            raise ConflictError(
                f"Assignee of task {task.id} changed concurrently",
                details={"task_id": task.id, "expected_assignee": expected_assignee},
            )

    @staticmethod
    async def _get_agent(session: AsyncSession, agent_id: str) -> Agent | None:
        result = await session.execute(select(Agent).where(Agent.id == EntityId(agent_id)))
        return result.scalar_one_or_none()

    async def _require_agent(self, session: AsyncSession, agent_id: str) -> Agent:
        agent = await self._get_agent(session, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}", {"agent_id": agent_id})
        return agent

    @staticmethod
    async def _require_task(session: AsyncSession, task_id: str) -> Task:
        task = await get_task(session, TaskId(task_id))
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}", {"task_id": task_id})
        return task
