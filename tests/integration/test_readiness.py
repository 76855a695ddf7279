"""Integration tests for ready and blocked task resolution.

Tests cover:
- blocks and parent-child edges to open and closed tasks
- awaits gates (timer, approval, external, invalid metadata)
- Associative edges never block
- Ready list filtering and ordering
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from switchyard.database.models.dependency import Dependency
from switchyard.database.models.task import Priority, Task, TaskStatus
from switchyard.database.queries.task import update_task
from switchyard.orchestrator.dependencies import DependencyStore
from switchyard.orchestrator.readiness import ReadinessService

MakeTask = Callable[..., Awaitable[Task]]
ACTOR = "el-admin1"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestBlockers:
    """Test blocker detection."""

    @pytest.mark.asyncio
    async def test_open_blocker_blocks(
        self,
        make_task: MakeTask,
        dependency_store: DependencyStore,
        readiness: ReadinessService,
    ) -> None:
        waiting = await make_task("Waiting")
        blocker = await make_task("Blocker")
        await dependency_store.add(waiting.id, blocker.id, "blocks", ACTOR)

        blockers = await readiness.blockers_of(waiting.id)

        assert len(blockers) == 1
        assert blockers[0].dependency.target_id == blocker.id
        assert blockers[0].reason == f"{blocker.id} is open"
        assert not await readiness.is_blocked(blocker.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [TaskStatus.CLOSED, TaskStatus.TOMBSTONE])
    async def test_terminal_blocker_resolves(
        self,
        status: TaskStatus,
        make_task: MakeTask,
        dependency_store: DependencyStore,
        readiness: ReadinessService,
        db_session: AsyncSession,
    ) -> None:
        waiting = await make_task("Waiting")
        blocker = await make_task("Blocker")
        await dependency_store.add(waiting.id, blocker.id, "parent-child", ACTOR)

        await update_task(db_session, blocker.id, status=status)

        assert not await readiness.is_blocked(waiting.id)

    @pytest.mark.asyncio
    async def test_non_task_target_does_not_block(
        self,
        make_task: MakeTask,
        dependency_store: DependencyStore,
        readiness: ReadinessService,
    ) -> None:
        task = await make_task("Task")
        await dependency_store.add(task.id, "el-doc1", "blocks", ACTOR)

        assert not await readiness.is_blocked(task.id)

    @pytest.mark.asyncio
    async def test_associative_edges_do_not_block(
        self,
        make_task: MakeTask,
        dependency_store: DependencyStore,
        readiness: ReadinessService,
    ) -> None:
        task = await make_task("Task")
        other = await make_task("Other")
        await dependency_store.add(task.id, other.id, "relates-to", ACTOR)
        await dependency_store.add(task.id, other.id, "references", ACTOR)

        assert not await readiness.is_blocked(task.id)


class TestAwaitsGates:
    """Test awaits gate evaluation."""

    @pytest.mark.asyncio
    async def test_timer_gate(
        self,
        make_task: MakeTask,
        dependency_store: DependencyStore,
        readiness: ReadinessService,
    ) -> None:
        task = await make_task("Scheduled")
        await dependency_store.add(
            task.id,
            "el-gate1",
            "awaits",
            ACTOR,
            metadata={"gateType": "timer", "waitUntil": NOW.isoformat()},
        )

        assert await readiness.is_blocked(task.id, now=NOW - timedelta(minutes=1))
        assert not await readiness.is_blocked(task.id, now=NOW)

    @pytest.mark.asyncio
    async def test_approval_gate(
        self,
        make_task: MakeTask,
        dependency_store: DependencyStore,
        readiness: ReadinessService,
    ) -> None:
        task = await make_task("Needs approval")
        pending = await make_task("Needs one approval")
        await dependency_store.add(
            task.id,
            "el-gate1",
            "awaits",
            ACTOR,
            metadata={
                "gateType": "approval",
                "requiredApprovers": ["el-usr1", "el-usr2"],
                "currentApprovers": ["el-usr1", "el-usr2"],
            },
        )
        await dependency_store.add(
            pending.id,
            "el-gate2",
            "awaits",
            ACTOR,
            metadata={
                "gateType": "approval",
                "requiredApprovers": ["el-usr1", "el-usr2"],
                "approvalCount": 1,
                "currentApprovers": [],
            },
        )

        assert not await readiness.is_blocked(task.id, now=NOW)
        blockers = await readiness.blockers_of(pending.id, now=NOW)
        assert [b.reason for b in blockers] == ["approval gate not satisfied"]

    @pytest.mark.asyncio
    async def test_external_gate(
        self,
        make_task: MakeTask,
        dependency_store: DependencyStore,
        readiness: ReadinessService,
    ) -> None:
        task = await make_task("Waits on CI")
        await dependency_store.add(
            task.id,
            "el-gate1",
            "awaits",
            ACTOR,
            metadata={"gateType": "external", "externalSystem": "ci", "externalId": "42"},
        )

        assert await readiness.is_blocked(task.id, now=NOW)

    @pytest.mark.asyncio
    async def test_invalid_gate_blocks(
        self,
        make_task: MakeTask,
        readiness: ReadinessService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        task = await make_task("Corrupt gate")
        async with session_factory() as session:
            session.add(
                Dependency(
                    source_id=task.id,
                    target_id="el-gate1",
                    type="awaits",
                    created_by=ACTOR,
                    metadata_={"gateType": "sundial"},
                )
            )
            await session.commit()

        blockers = await readiness.blockers_of(task.id, now=NOW)

        assert [b.reason for b in blockers] == ["awaits gate metadata is invalid"]


class TestReadyTasks:
    """Test the ready task list."""

    @pytest.mark.asyncio
    async def test_filters_and_orders(
        self,
        make_task: MakeTask,
        dependency_store: DependencyStore,
        readiness: ReadinessService,
    ) -> None:
        low = await make_task("Low", priority=Priority.LOW)
        medium = await make_task("Medium", priority=Priority.MEDIUM)
        blocked = await make_task("Blocked", priority=Priority.CRITICAL)
        await make_task("Assigned", priority=Priority.CRITICAL, assignee="el-agt1")
        await make_task("Closed", priority=Priority.CRITICAL, status=TaskStatus.CLOSED)
        await make_task("In progress", status=TaskStatus.IN_PROGRESS)
        await dependency_store.add(blocked.id, low.id, "blocks", ACTOR)

        ready = await readiness.ready_tasks()

        # low inherits CRITICAL from the blocked task waiting on it
        assert [t.id for t in ready] == [low.id, medium.id]

    @pytest.mark.asyncio
    async def test_tag_filter(self, make_task: MakeTask, readiness: ReadinessService) -> None:
        workflow = await make_task("Merge branch", tags=["workflow", "merge"])
        await make_task("Feature", tags=["frontend"])
        await make_task("Untagged")

        ready = await readiness.ready_tasks(tags_any=["merge", "steward-merge"])

        assert [t.id for t in ready] == [workflow.id]

    @pytest.mark.asyncio
    async def test_empty(self, readiness: ReadinessService) -> None:
        assert await readiness.ready_tasks() == []
