"""Integration tests for the dispatch service.

Tests cover:
- Dispatch assigns the task and notifies the agent's inbox
- New assignment vs reassignment notifications
- Capacity refusal leaves no notification behind
- Smart dispatch ranking and the no-eligible-agent error
- Batch dispatch and plain notifications
"""

from __future__ import annotations

from typing import Awaitable, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.agent import Agent
from switchyard.database.models.task import Task, TaskStatus
from switchyard.database.queries.message import list_inbox
from switchyard.database.queries.task import get_task
from switchyard.errors import (
    CapacityError,
    NoEligibleAgentError,
    NotFoundError,
    ValidationError,
)
from switchyard.orchestrator.agent_registry import AgentRegistry
from switchyard.orchestrator.dispatch import (
    TASK_ASSIGNMENT,
    TASK_REASSIGNMENT,
    DispatchOptions,
    DispatchService,
)
from switchyard.orchestrator.types import SessionStatus

MakeTask = Callable[..., Awaitable[Task]]
MakeWorker = Callable[..., Awaitable[Agent]]


def _requirements(**fields: list[str]) -> dict[str, dict[str, list[str]]]:
    return {"capabilityRequirements": fields}


class TestDispatch:
    """Test dispatching to an explicit agent."""

    @pytest.mark.asyncio
    async def test_dispatch_notifies_inbox(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
        db_session: AsyncSession,
    ) -> None:
        alice = await make_worker("alice")
        task = await make_task("Fix login bug")

        result = await dispatch_service.dispatch(
            task.id, alice.id, DispatchOptions(priority=1, restart=True)
        )

        assert result.is_new_assignment
        assert result.task.assignee == alice.id
        assert result.agent.id == alice.id
        assert result.channel.id == alice.agent_metadata["channelId"]
        meta = result.notification.metadata_
        assert meta["type"] == TASK_ASSIGNMENT
        assert meta["taskId"] == task.id
        assert meta["branch"] == f"agent/alice/{task.id}-fix-login-bug"

        ((item, message, document),) = await list_inbox(db_session, alice.id)
        assert message.id == result.notification.id
        assert item.channel_id == result.channel.id
        assert document.content == "Task assigned: Fix login bug [Priority: 1] (restart requested)"

    @pytest.mark.asyncio
    async def test_reassignment(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
    ) -> None:
        alice = await make_worker("alice")
        bob = await make_worker("bob")
        task = await make_task("Hot potato")
        await dispatch_service.dispatch(task.id, alice.id)

        result = await dispatch_service.dispatch(task.id, bob.id)

        assert not result.is_new_assignment
        assert result.notification.metadata_["type"] == TASK_REASSIGNMENT
        assert result.task.assignee == bob.id

    @pytest.mark.asyncio
    async def test_capacity_refusal_sends_nothing(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
        db_session: AsyncSession,
    ) -> None:
        bob = await make_worker("bob", max_concurrent_tasks=1)
        first = await make_task("First")
        second = await make_task("Second")
        await dispatch_service.dispatch(first.id, bob.id)

        with pytest.raises(CapacityError):
            await dispatch_service.dispatch(second.id, bob.id)

        assert len(await list_inbox(db_session, bob.id)) == 1

    @pytest.mark.asyncio
    async def test_missing_task_or_agent(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
    ) -> None:
        alice = await make_worker("alice")
        task = await make_task("Orphan")

        with pytest.raises(NotFoundError, match="Task not found"):
            await dispatch_service.dispatch("el-ghost1", alice.id)
        with pytest.raises(NotFoundError, match="Agent not found"):
            await dispatch_service.dispatch(task.id, "el-ghost1")

    @pytest.mark.asyncio
    async def test_malformed_ids_rejected(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        registry: AgentRegistry,
        dispatch_service: DispatchService,
        db_session: AsyncSession,
    ) -> None:
        alice = await make_worker("alice")
        task = await make_task("Typed ids")

        with pytest.raises(ValidationError, match="Invalid element id"):
            await dispatch_service.dispatch("task-42", alice.id)
        with pytest.raises(ValidationError, match="Invalid element id"):
            await dispatch_service.dispatch(task.id, "alice")
        with pytest.raises(ValidationError):
            await registry.get_agent("alice")

        assert (await get_task(db_session, task.id)).assignee is None
        assert await list_inbox(db_session, alice.id) == []

    @pytest.mark.asyncio
    async def test_dispatch_batch(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
    ) -> None:
        alice = await make_worker("alice", max_concurrent_tasks=2)
        tasks = [await make_task(f"Batch {i}") for i in range(3)]

        with pytest.raises(CapacityError):
            await dispatch_service.dispatch_batch([t.id for t in tasks], alice.id)

        workload = await dispatch_service.assignment.get_agent_workload(alice.id)
        assert workload.total == 2

    @pytest.mark.asyncio
    async def test_mark_as_started(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
    ) -> None:
        alice = await make_worker("alice")
        task = await make_task("Go")

        result = await dispatch_service.dispatch(
            task.id, alice.id, DispatchOptions(mark_as_started=True, session_id="sess-1")
        )

        assert result.task.status is TaskStatus.IN_PROGRESS
        assert result.notification.metadata_["sessionId"] == "sess-1"


class TestSmartDispatch:
    """Test capability-ranked dispatch."""

    @pytest.mark.asyncio
    async def test_picks_best_match(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
    ) -> None:
        await make_worker("alice", skills=["frontend"])
        bob = await make_worker("bob", skills=["frontend", "testing"])
        await make_worker("carol", skills=["backend"])
        task = await make_task(
            "Add UI tests",
            metadata=_requirements(requiredSkills=["frontend"], preferredSkills=["testing"]),
        )

        candidates = await dispatch_service.get_candidates(task.id)
        result = await dispatch_service.smart_dispatch(task.id)

        assert candidates.has_requirements
        assert [c.agent.name for c in candidates.candidates] == ["bob", "alice"]
        assert candidates.best_candidate.match.score == 100
        assert candidates.candidates[1].match.score == 75
        assert result.agent.id == bob.id

    @pytest.mark.asyncio
    async def test_skips_busy_agents(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
        registry: AgentRegistry,
    ) -> None:
        full = await make_worker("full", max_concurrent_tasks=1)
        running = await make_worker("running")
        free = await make_worker("free")
        await registry.update_agent_session(running.id, "sess-1", SessionStatus.RUNNING)
        await dispatch_service.dispatch((await make_task("Taken")).id, full.id)
        task = await make_task("Anything")

        best = await dispatch_service.get_best_agent(task.id)

        assert best.agent.id == free.id

    @pytest.mark.asyncio
    async def test_no_eligible_agent(
        self,
        make_task: MakeTask,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
    ) -> None:
        await make_worker("alice", skills=["frontend"])
        task = await make_task("Kernel work", metadata=_requirements(requiredSkills=["rust"]))

        with pytest.raises(NoEligibleAgentError) as exc_info:
            await dispatch_service.smart_dispatch(task.id)

        assert exc_info.value.task_id == task.id
        assert exc_info.value.details["has_requirements"] is True
        assert (await dispatch_service.assignment.get_unassigned_tasks())[0].id == task.id


class TestNotifyAgent:
    @pytest.mark.asyncio
    async def test_notify(
        self,
        make_worker: MakeWorker,
        dispatch_service: DispatchService,
        db_session: AsyncSession,
    ) -> None:
        alice = await make_worker("alice")

        message = await dispatch_service.notify_agent(
            alice.id, "status-check", "Are you alive?", {"urgent": True}
        )

        assert message.metadata_ == {"type": "status-check", "urgent": True}
        ((_, _, document),) = await list_inbox(db_session, alice.id)
        assert document.content == "Are you alive?"

    @pytest.mark.asyncio
    async def test_notify_unknown_agent(self, dispatch_service: DispatchService) -> None:
        with pytest.raises(NotFoundError):
            await dispatch_service.notify_agent("el-ghost1", "ping", "hello")
