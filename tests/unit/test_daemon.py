"""Unit tests for the dispatch daemon with mocked collaborators.

Tests cover:
- Idempotent start and stop
- Poll cycle events and observers
- Isolation of a failing sub-poll
- Steward trigger poll accounting
- Bounded event queue
- Task prompt construction
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from switchyard.config import DispatchConfig
from switchyard.database.models.task import Task
from switchyard.orchestrator.daemon import (
    EVENT_QUEUE_SIZE,
    DaemonEvent,
    DispatchDaemon,
    build_task_prompt,
)
from switchyard.orchestrator.locks import AgentLocks
from switchyard.orchestrator.steward_scheduler import StewardExecution
from switchyard.orchestrator.types import CronTrigger, OrchestratorTaskMetadata


@pytest.fixture
def registry() -> MagicMock:
    registry = MagicMock()
    registry.get_available_workers = AsyncMock(return_value=[])
    registry.list_agents = AsyncMock(return_value=[])
    registry.get_stewards = AsyncMock(return_value=[])
    return registry


@pytest.fixture
def daemon(registry: MagicMock) -> DispatchDaemon:
    dispatch = MagicMock()
    dispatch.assignment = MagicMock()
    dispatch.locks = AgentLocks()
    readiness = MagicMock()
    readiness.ready_tasks = AsyncMock(return_value=[])

    return DispatchDaemon(
        session_factory=MagicMock(),
        registry=registry,
        dispatch=dispatch,
        readiness=readiness,
        session_manager=MagicMock(),
        worktree_manager=MagicMock(),
        config=DispatchConfig(poll_interval_ms=1000),
    )


def _drain(daemon: DispatchDaemon) -> list[DaemonEvent]:
    events = []
    while not daemon.events.empty():
        events.append(daemon.events.get_nowait())
    return events


class TestLifecycle:
    """Test daemon start/stop semantics."""

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, daemon: DispatchDaemon) -> None:
        await daemon.start()
        first_task = daemon._poll_task
        await daemon.start()

        assert daemon.is_running
        assert daemon._poll_task is first_task

        await daemon.stop()
        assert not daemon.is_running
        assert first_task.done()

        await daemon.stop()
        assert not daemon.is_running

    @pytest.mark.asyncio
    async def test_runs_a_cycle_after_start(self, daemon: DispatchDaemon) -> None:
        completed = asyncio.Event()
        daemon.add_observer(lambda e: completed.set() if e.type == "poll:complete" else None)

        await daemon.start()
        await asyncio.wait_for(completed.wait(), timeout=2)
        await daemon.stop()

    def test_poll_interval_in_seconds(self, daemon: DispatchDaemon) -> None:
        assert daemon.poll_interval == 1.0


class TestPollCycle:
    """Test one poll cycle."""

    @pytest.mark.asyncio
    async def test_emits_start_and_complete(self, daemon: DispatchDaemon) -> None:
        seen: list[str] = []
        daemon.add_observer(lambda e: seen.append(e.type))

        results = await daemon.poll_cycle()

        assert seen == ["poll:start", "poll:complete"]
        assert [r.poll_type for r in results] == [
            "worker-availability",
            "inbox",
            "steward-trigger",
            "workflow-task",
        ]
        start, complete = _drain(daemon)
        assert complete.data["processed"] == 0
        assert complete.data["errors"] == 0
        assert complete.data["cycle_id"] == start.data["cycle_id"]

    @pytest.mark.asyncio
    async def test_disabled_sub_polls_are_skipped(self, registry: MagicMock) -> None:
        daemon = DispatchDaemon(
            session_factory=MagicMock(),
            registry=registry,
            dispatch=MagicMock(assignment=MagicMock(), locks=AgentLocks()),
            readiness=MagicMock(),
            session_manager=MagicMock(),
            worktree_manager=MagicMock(),
            config=DispatchConfig(
                worker_availability_poll_enabled=False,
                steward_trigger_poll_enabled=False,
                workflow_task_poll_enabled=False,
            ),
        )

        results = await daemon.poll_cycle()

        assert [r.poll_type for r in results] == ["inbox"]

    @pytest.mark.asyncio
    async def test_failing_sub_poll_does_not_stop_cycle(
        self, daemon: DispatchDaemon, registry: MagicMock
    ) -> None:
        registry.get_available_workers.side_effect = RuntimeError("database unavailable")

        results = await daemon.poll_cycle()

        worker_result, inbox_result, *_ = results
        assert worker_result.errors == 1
        assert "database unavailable" in worker_result.error_messages[0]
        assert inbox_result.errors == 0
        registry.list_agents.assert_awaited_once()

        events = _drain(daemon)
        assert [e.type for e in events] == ["poll:start", "poll:error", "poll:complete"]
        assert events[1].data["poll_type"] == "worker-availability"
        assert events[2].data["errors"] == 1

    @pytest.mark.asyncio
    async def test_observer_errors_are_contained(self, daemon: DispatchDaemon) -> None:
        received: list[str] = []

        def broken(event: DaemonEvent) -> None:
            raise ValueError("observer bug")

        daemon.add_observer(broken)
        daemon.add_observer(lambda e: received.append(e.type))

        await daemon.poll_cycle()

        assert received == ["poll:start", "poll:complete"]

    @pytest.mark.asyncio
    async def test_remove_observer(self, daemon: DispatchDaemon) -> None:
        received: list[str] = []
        observer = received.append
        daemon.add_observer(observer)
        daemon.remove_observer(observer)
        daemon.remove_observer(observer)

        await daemon.poll_cycle()

        assert received == []

    @pytest.mark.asyncio
    async def test_event_queue_drops_oldest(self, daemon: DispatchDaemon) -> None:
        for i in range(EVENT_QUEUE_SIZE + 5):
            daemon._emit("test", index=i)

        assert daemon.events.qsize() == EVENT_QUEUE_SIZE
        assert daemon.events.get_nowait().data["index"] == 5


class TestStewardTriggerPoll:
    """Test steward trigger accounting."""

    @pytest.mark.asyncio
    async def test_counts_successes_and_failures(self, daemon: DispatchDaemon) -> None:
        now = datetime.now(timezone.utc)
        trigger = CronTrigger(schedule="* * * * *")
        scheduler = MagicMock()
        scheduler.is_running = False
        scheduler.evaluate = AsyncMock(
            return_value=[
                StewardExecution("el-stw1", "merger", trigger, now),
                StewardExecution("el-stw2", "health", trigger, now, success=False, error="no channel"),
            ]
        )
        daemon.steward_scheduler = scheduler

        result = await daemon.poll_steward_triggers()

        scheduler.start.assert_called_once()
        assert result.processed == 1
        assert result.errors == 1
        assert result.error_messages == ["el-stw2: no channel"]

    @pytest.mark.asyncio
    async def test_no_scheduler(self, daemon: DispatchDaemon) -> None:
        result = await daemon.poll_steward_triggers()
        assert result.processed == 0
        assert result.errors == 0


class TestBuildTaskPrompt:
    """Test the initial session prompt."""

    def test_basic_prompt(self) -> None:
        task = Task(id="el-task1", title="Fix login", priority=2, description="Users cannot log in")

        prompt = build_task_prompt(task)

        assert prompt.startswith("## Task Assignment")
        assert "**Task ID:** el-task1" in prompt
        assert "**Title:** Fix login" in prompt
        assert "**Priority:** 2" in prompt
        assert "Users cannot log in" in prompt
        assert "Handoff" not in prompt

    def test_handoff_prompt(self) -> None:
        task = Task(id="el-task1", title="Fix login", priority=3)
        handoff = OrchestratorTaskMetadata(
            handoff_worktree="/worktrees/prev/t-123", handoff_note="Tests are half done"
        )

        prompt = build_task_prompt(task, handoff)

        assert "### Handoff" in prompt
        assert "Handoff note: Tests are half done" in prompt
        assert "### Description" not in prompt

