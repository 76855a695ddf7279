"""Dispatch service: assign a task to an agent and notify it.

Dispatching combines the task assignment service (which enforces capacity)
with the agent registry (which owns the agent's notification channel).
The notification body is stored as a Document and posted as a Message to
the agent's channel, which fans it out to the agent's inbox.

Smart dispatch picks the agent automatically: available workers with free
capacity are ranked by capability match and the best one receives the
task. When no agent qualifies, NoEligibleAgentError is raised; there is no
fallback to an arbitrary agent.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.agent import Agent
from switchyard.database.models.channel import Channel, Message
from switchyard.database.models.task import Task
from switchyard.database.queries.message import create_document, send_message
from switchyard.database.queries.task import get_task
from switchyard.errors import NoEligibleAgentError, NotFoundError
from switchyard.ids import EntityId, TaskId
from switchyard.logging import dispatch_context
from switchyard.orchestrator.agent_registry import AgentRegistry
from switchyard.orchestrator.assignment import SYSTEM_ACTOR, TaskAssignmentService
from switchyard.orchestrator.capabilities import (
    AgentMatch,
    find_agents_for_requirements,
    get_task_capability_requirements,
)
from switchyard.orchestrator.locks import AgentLocks
from switchyard.orchestrator.types import (
    CapabilityRequirements,
    get_orchestrator_metadata,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

TASK_ASSIGNMENT = "task-assignment"
TASK_REASSIGNMENT = "task-reassignment"
DISPATCH_NOTIFICATION_TAG = "dispatch-notification"


class DispatchOptions(BaseModel):
    """Options for a dispatch.

    Attributes:
        branch: Branch to record on the task.
        worktree: Worktree path to record on the task.
        session_id: Session already working on the task.
        mark_as_started: Move the task to in_progress on assignment.
        priority: Priority to mention in the notification.
        restart: Ask the agent to restart its session for this task.
        dispatched_by: Entity sending the notification.
        notification_metadata: Extra fields merged into the message metadata.
    """

    branch: str | None = None
    worktree: str | None = None
    session_id: str | None = None
    mark_as_started: bool = False
    priority: int | None = None
    restart: bool = False
    dispatched_by: str = SYSTEM_ACTOR
    notification_metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass
class DispatchResult:
    """Outcome of a dispatch."""

    task: Task
    agent: Agent
    notification: Message
    channel: Channel
    is_new_assignment: bool
    dispatched_at: datetime


@dataclass
class CandidatesResult:
    """Ranked agents able to take a task.

    Attributes:
        task: The task.
        candidates: Eligible agents with free capacity, best first.
        best_candidate: First entry of candidates, or None.
        has_requirements: Whether the task declares any capability
            requirement or preference. Callers use this to decide whether
            an unmatched task may fall back to plain round-robin.
        requirements: The task's requirements.
    """

    task: Task
    candidates: list[AgentMatch] = field(default_factory=list)
    best_candidate: AgentMatch | None = None
    has_requirements: bool = False
    requirements: CapabilityRequirements = field(default_factory=CapabilityRequirements)


def build_assignment_content(
    task: Task,
    priority: int | None = None,
    restart: bool = False,
) -> str:
    """Human-readable body of a dispatch notification."""
    content = f"Task assigned: {task.title}"
    if priority is not None:
        content += f" [Priority: {priority}]"
    if restart:
        content += " (restart requested)"
    return content


class DispatchService:
    """Assigns tasks to agents and notifies them.

    Attributes:
        session_factory: Callable returning new AsyncSession instances.
        registry: Agent registry (channels, available workers).
        assignment: Task assignment service (capacity, assignee writes).
        locks: Per-agent locks serializing assignment to one agent.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: AgentRegistry,
        assignment: TaskAssignmentService,
        locks: AgentLocks | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.assignment = assignment
        self.locks = locks or AgentLocks()
        self._logger = logger.bind(component="DispatchService")

    async def dispatch(
        self,
        task_id: TaskId,
        agent_id: EntityId,
        options: DispatchOptions | None = None,
    ) -> DispatchResult:
        """Assign a task to an agent and post a notification to its channel.

        Args:
            task_id: Task to dispatch.
            agent_id: Receiving agent.
            options: Assignment and notification options.

        Returns:
            DispatchResult with the updated task and the notification.

        Raises:
            NotFoundError: Task, agent or the agent's channel is missing.
            CapacityError: The agent is at its concurrency limit.
            ValidationError: The task cannot be assigned.
            ConflictError: The task's assignee changed concurrently.
        """
        options = options or DispatchOptions()

        async with self.session_factory() as session:
            task = await get_task(session, TaskId(task_id))
            if task is None:
                raise NotFoundError(f"Task not found: {task_id}", {"task_id": task_id})
        agent = await self.registry.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}", {"agent_id": agent_id})

        is_new_assignment = task.assignee is None
        with dispatch_context(task_id=task_id, agent_id=agent_id):
            async with self.locks.hold(agent_id):
                updated = await self.assignment.assign_to_agent(
                    task_id,
                    agent_id,
                    branch=options.branch,
                    worktree=options.worktree,
                    session_id=options.session_id,
                    mark_as_started=options.mark_as_started,
                    actor=options.dispatched_by,
                )

            channel = await self.registry.get_agent_channel(agent_id)
            if channel is None:
                raise NotFoundError(
                    f"Agent {agent_id} has no notification channel",
                    {"agent_id": agent_id, "task_id": task_id},
                )

            dispatched_at = datetime.now(timezone.utc)
            message_type = TASK_ASSIGNMENT if is_new_assignment else TASK_REASSIGNMENT
            orch = get_orchestrator_metadata(updated.metadata_)
            metadata = {
                "type": message_type,
                "taskId": task_id,
                "priority": options.priority,
                "restart": options.restart,
                "branch": orch.branch,
                "worktree": orch.worktree,
                "sessionId": options.session_id,
                "isNewAssignment": is_new_assignment,
                "dispatchedAt": dispatched_at.isoformat(),
                **options.notification_metadata,
            }
            notification = await self._post(
                channel,
                sender=options.dispatched_by,
                content=build_assignment_content(
                    updated, options.priority, options.restart
                ),
                metadata=metadata,
            )

            self._logger.info(
                "task_dispatched",
                message_type=message_type,
                is_new_assignment=is_new_assignment,
                channel_id=channel.id,
            )

        return DispatchResult(
            task=updated,
            agent=agent,
            notification=notification,
            channel=channel,
            is_new_assignment=is_new_assignment,
            dispatched_at=dispatched_at,
        )

    async def dispatch_batch(
        self,
        task_ids: Sequence[TaskId],
        agent_id: EntityId,
        options: DispatchOptions | None = None,
    ) -> list[DispatchResult]:
        """Dispatch several tasks to one agent, in order.

        Tasks already dispatched stay dispatched if a later one fails; the
        error is raised to the caller.
        """
        results = []
        for task_id in task_ids:
            results.append(await self.dispatch(task_id, agent_id, options))
        return results

    async def get_candidates(self, task_id: TaskId) -> CandidatesResult:
        """Rank available workers with free capacity for a task.

        Raises:
            NotFoundError: The task does not exist.
        """
        async with self.session_factory() as session:
            task = await get_task(session, TaskId(task_id))
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}", {"task_id": task_id})

        requirements = get_task_capability_requirements(task)
        workers = await self.registry.get_available_workers()
        with_capacity = [
            w for w in workers if await self.assignment.agent_has_capacity(w.id)
        ]
        ranked = find_agents_for_requirements(with_capacity, requirements)

        return CandidatesResult(
            task=task,
            candidates=ranked,
            best_candidate=ranked[0] if ranked else None,
            has_requirements=not requirements.is_empty,
            requirements=requirements,
        )

    async def get_best_agent(self, task_id: TaskId) -> AgentMatch | None:
        """Top-ranked candidate for a task, or None."""
        return (await self.get_candidates(task_id)).best_candidate

    async def smart_dispatch(
        self,
        task_id: TaskId,
        options: DispatchOptions | None = None,
    ) -> DispatchResult:
        """Dispatch a task to its best-matching available agent.

        Raises:
            NotFoundError: The task does not exist.
            NoEligibleAgentError: No available agent satisfies the task.
        """
        candidates = await self.get_candidates(task_id)
        if candidates.best_candidate is None:
            raise NoEligibleAgentError(
                task_id,
                details={
                    "has_requirements": candidates.has_requirements,
                    "requirements": candidates.requirements.to_json_dict(),
                },
            )

        best = candidates.best_candidate
        self._logger.info(
            "smart_dispatch_selected",
            task_id=task_id,
            agent_id=best.agent.id,
            score=best.match.score,
            candidate_count=len(candidates.candidates),
        )
        return await self.dispatch(task_id, best.agent.id, options)

    async def notify_agent(
        self,
        agent_id: EntityId,
        message_type: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        sender: str = SYSTEM_ACTOR,
    ) -> Message:
        """Post a notification to an agent's channel without assigning work.

        Raises:
            NotFoundError: The agent has no notification channel.
        """
        channel = await self.registry.get_agent_channel(agent_id)
        if channel is None:
            raise NotFoundError(
                f"Agent {agent_id} has no notification channel", {"agent_id": agent_id}
            )
        message = await self._post(
            channel,
            sender=sender,
            content=content,
            metadata={"type": message_type, **(metadata or {})},
        )
        self._logger.info("agent_notified", agent_id=agent_id, message_type=message_type)
        return message

    async def _post(
        self,
        channel: Channel,
        sender: str,
        content: str,
        metadata: dict[str, Any],
    ) -> Message:
        async with self.session_factory() as session:
            document = await create_document(
                session,
                content=content,
                created_by=sender,
                tags=[DISPATCH_NOTIFICATION_TAG],
            )
            return await send_message(
                session,
                channel,
                sender=sender,
                content_ref=document.id,
                metadata=metadata,
            )
