"""Dispatch daemon: the polling scheduler of the dispatch engine.

While running, the daemon repeats a poll cycle every ``poll_interval_ms``.
A cycle runs up to four independent sub-polls, each enabled in
DispatchConfig:

1. Worker availability: every available worker with spare capacity and no
   active session gets the most urgent ready task it is eligible for, in a
   workspace that reuses a previous agent's handoff worktree when the task
   has one. A session is then started for it.
2. Inbox: unread messages are routed into running agent sessions.
3. Steward triggers: cron and event triggers of stewards are evaluated.
4. Workflow tasks: ready tasks tagged for a steward's focus area are handed
   to idle stewards.

An error in one sub-poll, or in one (task, agent) pair within a sub-poll,
is logged, counted in that sub-poll's PollResult and reported as a
``poll:error`` event; it never stops the cycle. Callers observe cycle
boundaries through ``add_observer`` or the ``events`` queue.

The capacity check, the active-session check and the assignment for one
agent run under that agent's lock, and the assignee write itself is a
compare-and-set, so two cycles or two daemons cannot double-book an agent.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.config import DispatchConfig
from switchyard.database.models.agent import Agent
from switchyard.database.models.channel import Document, InboxItem, InboxStatus, Message
from switchyard.database.models.task import Task
from switchyard.database.queries.message import list_inbox, mark_inbox_read
from switchyard.errors import SwitchyardError
from switchyard.logging import dispatch_context, poll_cycle_context
from switchyard.orchestrator.agent_registry import AgentRegistry, get_role_metadata
from switchyard.orchestrator.assignment import SYSTEM_ACTOR
from switchyard.orchestrator.capabilities import match_agent_to_task
from switchyard.orchestrator.dispatch import (
    TASK_ASSIGNMENT,
    TASK_REASSIGNMENT,
    DispatchOptions,
    DispatchService,
)
from switchyard.orchestrator.interfaces import (
    SessionInfo,
    SessionManager,
    StartSessionOptions,
    WorktreeManager,
)
from switchyard.orchestrator.readiness import ReadinessService
from switchyard.orchestrator.steward_scheduler import StewardScheduler
from switchyard.orchestrator.types import (
    OrchestratorTaskMetadata,
    SessionStatus,
    StewardMetadata,
    WorkerMetadata,
    WorkerMode,
    get_orchestrator_metadata,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

# Event types
POLL_START = "poll:start"
POLL_COMPLETE = "poll:complete"
POLL_ERROR = "poll:error"
TASK_DISPATCHED = "task:dispatched"
MESSAGE_FORWARDED = "message:forwarded"
AGENT_SPAWNED = "agent:spawned"

# Sub-poll names
WORKER_AVAILABILITY = "worker-availability"
INBOX = "inbox"
STEWARD_TRIGGER = "steward-trigger"
WORKFLOW_TASK = "workflow-task"

DISPATCH_MESSAGE_TYPES = frozenset({TASK_ASSIGNMENT, TASK_REASSIGNMENT})

EVENT_QUEUE_SIZE = 1000


@dataclass
class DaemonEvent:
    """A structured event emitted by the daemon."""

    type: str
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)


DaemonObserver = Callable[[DaemonEvent], None]


@dataclass
class PollResult:
    """Outcome of one sub-poll.

    Attributes:
        poll_type: Which sub-poll ran.
        started_at: When it started.
        duration_ms: Wall time it took.
        processed: Units of work done (dispatches, routed messages, fired
            triggers).
        errors: Number of failures caught.
        error_messages: One entry per failure, naming the pair processed.
    """

    poll_type: str
    started_at: datetime
    duration_ms: float = 0.0
    processed: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)


def build_task_prompt(
    task: Task,
    handoff: OrchestratorTaskMetadata | None = None,
) -> str:
    """Initial prompt given to a session started for a task.

    Args:
        task: The dispatched task.
        handoff: Orchestrator metadata of the task when its workspace was
            handed off by a previous agent.
    """
    parts = [
        "## Task Assignment",
        "",
        f"**Task ID:** {task.id}",
        f"**Title:** {task.title}",
        f"**Priority:** {task.priority}",
    ]
    if task.description:
        parts.append(f"\n### Description\n{task.description}")
    if handoff is not None:
        parts.append("\n### Handoff")
        parts.append(
            "You are resuming work left by a previous agent in the same "
            "branch and worktree."
        )
        if handoff.handoff_note:
            parts.append(f"Handoff note: {handoff.handoff_note}")
    return "\n".join(parts)


class DispatchDaemon:
    """Polls for dispatchable work and drives the dispatch service.

    Attributes:
        session_factory: Callable returning new AsyncSession instances.
        registry: Agent registry.
        dispatch: Dispatch service (owns the assignment service and locks).
        readiness: Ready task resolution.
        session_manager: External agent session manager.
        worktree_manager: External worktree manager.
        config: Dispatch configuration.
        steward_scheduler: Scheduler evaluated by the steward-trigger poll.
        working_directory: Directory steward sessions are started in.
        events: Queue of emitted DaemonEvent records. When it is full the
            oldest event is dropped.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: AgentRegistry,
        dispatch: DispatchService,
        readiness: ReadinessService,
        session_manager: SessionManager,
        worktree_manager: WorktreeManager,
        config: DispatchConfig | None = None,
        steward_scheduler: StewardScheduler | None = None,
        working_directory: str = ".",
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.dispatch = dispatch
        self.assignment = dispatch.assignment
        self.locks = dispatch.locks
        self.readiness = readiness
        self.session_manager = session_manager
        self.worktree_manager = worktree_manager
        self.config = config or DispatchConfig()
        self.steward_scheduler = steward_scheduler
        self.working_directory = working_directory

        self.events: asyncio.Queue[DaemonEvent] = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._observers: list[DaemonObserver] = []
        self._running = False
        self._stop_event = asyncio.Event()
        self._poll_task: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="DispatchDaemon")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def poll_interval(self) -> float:
        """Seconds between poll cycles."""
        return self.config.poll_interval_ms / 1000

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the poll loop. Does nothing if already running."""
        if self._running:
            self._logger.debug("daemon_start_noop", reason="already running")
            return

        self._running = True
        self._stop_event.clear()
        self._poll_task = asyncio.create_task(self._poll_loop(), name="dispatch-daemon")
        self._logger.info("daemon_started", poll_interval_ms=self.config.poll_interval_ms)

    async def stop(self) -> None:
        """Stop the poll loop after the in-flight cycle completes.

        Does nothing if the daemon is not running.
        """
        if not self._running:
            self._logger.debug("daemon_stop_noop", reason="not running")
            return

        self._logger.info("daemon_stopping")
        self._running = False
        self._stop_event.set()

        if self._poll_task is not None:
            try:
                await self._poll_task
            finally:
                self._poll_task = None

        if self.steward_scheduler is not None:
            self.steward_scheduler.stop()
        self._logger.info("daemon_stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_cycle()
            except Exception:
                self._logger.exception("poll_loop_error")

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        self._logger.info("poll_loop_exited")

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def add_observer(self, observer: DaemonObserver) -> None:
        """Register a callable invoked with every emitted event."""
        self._observers.append(observer)

    def remove_observer(self, observer: DaemonObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _emit(self, event_type: str, **data: Any) -> DaemonEvent:
        event = DaemonEvent(type=event_type, timestamp=datetime.now(timezone.utc), data=data)
        if self.events.full():
            self.events.get_nowait()
        self.events.put_nowait(event)

        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                self._logger.exception("daemon_observer_error", event_type=event_type)
        return event

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def poll_cycle(self) -> list[PollResult]:
        """Run every enabled sub-poll once.

        Returns:
            One PollResult per sub-poll that ran.
        """
        cycle_id = uuid.uuid4().hex[:12]
        with poll_cycle_context(cycle_id):
            return await self._run_cycle(cycle_id)

    async def _run_cycle(self, cycle_id: str) -> list[PollResult]:
        started = time.monotonic()
        self._emit(POLL_START, cycle_id=cycle_id)

        sub_polls: list[tuple[str, bool, Callable[[], Awaitable[PollResult]]]] = [
            (
                WORKER_AVAILABILITY,
                self.config.worker_availability_poll_enabled,
                self.poll_worker_availability,
            ),
            (INBOX, self.config.inbox_poll_enabled, self.poll_inbox),
            (
                STEWARD_TRIGGER,
                self.config.steward_trigger_poll_enabled,
                self.poll_steward_triggers,
            ),
            (WORKFLOW_TASK, self.config.workflow_task_poll_enabled, self.poll_workflow_tasks),
        ]

        results = []
        for poll_type, enabled, run in sub_polls:
            if enabled:
                results.append(await self._run_sub_poll(poll_type, run))

        processed = sum(r.processed for r in results)
        errors = sum(r.errors for r in results)
        self._emit(
            POLL_COMPLETE,
            cycle_id=cycle_id,
            processed=processed,
            errors=errors,
            results=results,
        )
        self._logger.info(
            "poll_cycle_complete",
            processed=processed,
            errors=errors,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return results

    async def _run_sub_poll(
        self,
        poll_type: str,
        run: Callable[[], Awaitable[PollResult]],
    ) -> PollResult:
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            return await run()
        except Exception as e:
            result = PollResult(poll_type=poll_type, started_at=started_at)
            self._record_error(result, e)
            result.duration_ms = (time.monotonic() - started) * 1000
            return result

    def _record_error(
        self,
        result: PollResult,
        error: Exception,
        task_id: str | None = None,
        agent_id: str | None = None,
        **context: Any,
    ) -> None:
        result.errors += 1
        subject = "/".join(s for s in (task_id, agent_id) if s) or result.poll_type
        result.error_messages.append(f"{subject}: {error}")

        fields = {"poll_type": result.poll_type, "task_id": task_id, "agent_id": agent_id}
        fields.update(context)
        if isinstance(error, SwitchyardError):
            self._logger.warning(
                "poll_item_failed",
                error=str(error),
                error_code=error.code.value,
                **fields,
            )
        else:
            self._logger.exception("poll_item_failed", error=str(error), **fields)
        self._emit(POLL_ERROR, error=str(error), **fields)

    @staticmethod
    def _finish(result: PollResult, started: float) -> PollResult:
        result.duration_ms = (time.monotonic() - started) * 1000
        return result

    # ------------------------------------------------------------------
    # Worker availability
    # ------------------------------------------------------------------

    async def poll_worker_availability(self) -> PollResult:
        """Give each available worker its most urgent eligible ready task.

        A worker receives at most one task per cycle and a task is offered
        to at most one worker per cycle.
        """
        result = PollResult(
            poll_type=WORKER_AVAILABILITY, started_at=datetime.now(timezone.utc)
        )
        started = time.monotonic()

        workers = await self.registry.get_available_workers()
        if not workers:
            return self._finish(result, started)
        ready = await self.readiness.ready_tasks()
        if not ready:
            return self._finish(result, started)

        taken: set[str] = set()
        for worker in workers:
            remaining = [t for t in ready if t.id not in taken]
            if not remaining:
                break
            try:
                task = await self._dispatch_to_worker(worker, remaining, result)
            except Exception as e:
                self._record_error(result, e, agent_id=worker.id)
                continue
            if task is not None:
                taken.add(task.id)

        return self._finish(result, started)

    async def _dispatch_to_worker(
        self,
        worker: Agent,
        tasks: Sequence[Task],
        result: PollResult,
    ) -> Task | None:
        async with self.locks.hold(worker.id):
            if not await self.assignment.agent_has_capacity(worker.id):
                return None
            if await self.session_manager.get_active_session(worker.id) is not None:
                self._logger.debug("worker_has_active_session", agent_id=worker.id)
                return None

            for task in tasks:
                try:
                    eligible = match_agent_to_task(worker, task).is_eligible
                except Exception as e:
                    self._record_error(result, e, task_id=task.id, agent_id=worker.id)
                    continue
                if not eligible:
                    continue
                try:
                    await self._start_task(worker, task)
                except Exception as e:
                    self._record_error(result, e, task_id=task.id, agent_id=worker.id)
                else:
                    result.processed += 1
                # One attempt per worker per cycle.
                return task
        return None

    async def _start_task(self, agent: Agent, task: Task) -> None:
        with dispatch_context(task_id=task.id, agent_id=agent.id):
            orch = get_orchestrator_metadata(task.metadata_)
            path, branch, reused = await self._resolve_workspace(agent, task, orch)

            await self.dispatch.dispatch(
                task.id,
                agent.id,
                DispatchOptions(
                    branch=branch,
                    worktree=path,
                    mark_as_started=True,
                    priority=task.priority,
                    dispatched_by=SYSTEM_ACTOR,
                ),
            )
            self._emit(TASK_DISPATCHED, task_id=task.id, agent_id=agent.id, worktree=path)

            await self._spawn(
                agent,
                task,
                working_directory=path,
                worktree=path,
                prompt=build_task_prompt(task, orch if reused else None),
            )

    async def _resolve_workspace(
        self,
        agent: Agent,
        task: Task,
        orch: OrchestratorTaskMetadata,
    ) -> tuple[str, str | None, bool]:
        """Workspace for a task: (path, branch, reused_handoff).

        Order: the handoff worktree of a previous agent (recreated on its
        branch if it is gone), the task's existing worktree, a new worktree.
        """
        if orch.handoff_worktree:
            path, branch = orch.handoff_worktree, orch.handoff_branch
            if not await self.worktree_manager.worktree_exists(path):
                created = await self.worktree_manager.create_worktree(
                    agent.name,
                    task.id,
                    task.title,
                    custom_branch=branch,
                    custom_path=path,
                )
                path, branch = created.path, created.branch
            self._logger.info("handoff_worktree_reused", worktree=path, branch=branch)
            return path, branch, True

        if orch.worktree and await self.worktree_manager.worktree_exists(orch.worktree):
            return orch.worktree, orch.branch, False

        created = await self.worktree_manager.create_worktree(
            agent.name, task.id, task.title, custom_branch=orch.branch
        )
        return created.path, created.branch, False

    async def _spawn(
        self,
        agent: Agent,
        task: Task,
        working_directory: str,
        worktree: str | None,
        prompt: str,
    ) -> None:
        session = await self.session_manager.start_session(
            agent.id,
            StartSessionOptions(
                working_directory=working_directory,
                worktree=worktree,
                initial_prompt=prompt,
            ),
        )
        await self.assignment.update_session_id(task.id, session.id)
        await self.registry.update_agent_session(agent.id, session.id, SessionStatus.RUNNING)
        self._emit(AGENT_SPAWNED, agent_id=agent.id, task_id=task.id, session_id=session.id)

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    async def poll_inbox(self) -> PollResult:
        """Route unread inbox messages of every agent."""
        result = PollResult(poll_type=INBOX, started_at=datetime.now(timezone.utc))
        started = time.monotonic()

        for agent in await self.registry.list_agents():
            try:
                items = await self._unread_items(agent.id)
                if not items:
                    continue
                active = await self.session_manager.get_active_session(agent.id)
            except Exception as e:
                self._record_error(result, e, agent_id=agent.id)
                continue

            for item, message, document in items:
                try:
                    if await self._route_message(agent, active, item, message, document):
                        result.processed += 1
                except Exception as e:
                    self._record_error(result, e, agent_id=agent.id, message_id=message.id)

        return self._finish(result, started)

    async def _unread_items(
        self, agent_id: str
    ) -> list[tuple[InboxItem, Message, Document]]:
        async with self.session_factory() as session:
            return await list_inbox(
                session,
                agent_id,
                status=InboxStatus.UNREAD,
                limit=self.config.inbox_batch_size,
            )

    async def _route_message(
        self,
        agent: Agent,
        active: SessionInfo | None,
        item: InboxItem,
        message: Message,
        document: Document,
    ) -> bool:
        """Route one inbox item. Returns True if it was consumed."""
        meta = get_role_metadata(agent)
        spawn_delivers = isinstance(meta, StewardMetadata) or (
            isinstance(meta, WorkerMetadata) and meta.worker_mode == WorkerMode.EPHEMERAL
        )
        is_dispatch = (message.metadata_ or {}).get("type") in DISPATCH_MESSAGE_TYPES

        if is_dispatch and spawn_delivers and active is None:
            # The spawned session receives the task in its initial prompt.
            await self._mark_read(item.id)
            return True

        if active is None:
            return False

        forwarded = await self.session_manager.message_session(
            active.id,
            f"[MESSAGE RECEIVED FROM {message.sender}]: {document.content}",
            sender_id=message.sender,
        )
        if not forwarded.success:
            raise RuntimeError(forwarded.error or "message_session failed")

        await self._mark_read(item.id)
        self._emit(
            MESSAGE_FORWARDED,
            agent_id=agent.id,
            session_id=active.id,
            message_id=message.id,
        )
        return True

    async def _mark_read(self, item_id: str) -> None:
        async with self.session_factory() as session:
            await mark_inbox_read(session, item_id)

    # ------------------------------------------------------------------
    # Steward triggers
    # ------------------------------------------------------------------

    async def poll_steward_triggers(self) -> PollResult:
        """Evaluate steward triggers, starting the scheduler if needed."""
        result = PollResult(poll_type=STEWARD_TRIGGER, started_at=datetime.now(timezone.utc))
        started = time.monotonic()
        if self.steward_scheduler is None:
            return self._finish(result, started)

        if not self.steward_scheduler.is_running:
            self.steward_scheduler.start()

        for execution in await self.steward_scheduler.evaluate():
            if execution.success:
                result.processed += 1
            else:
                result.errors += 1
                result.error_messages.append(
                    f"{execution.steward_id}: {execution.error}"
                )
        return self._finish(result, started)

    # ------------------------------------------------------------------
    # Workflow tasks
    # ------------------------------------------------------------------

    async def poll_workflow_tasks(self) -> PollResult:
        """Hand the most urgent ready task of its focus to each idle steward.

        A steward's tasks are those tagged with its focus, ``steward-{focus}``
        or one of the configured workflow tags.
        """
        result = PollResult(poll_type=WORKFLOW_TASK, started_at=datetime.now(timezone.utc))
        started = time.monotonic()

        taken: set[str] = set()
        for steward in await self.registry.get_stewards():
            try:
                task = await self._workflow_task_for(steward, taken, result)
            except Exception as e:
                self._record_error(result, e, agent_id=steward.id)
                continue
            if task is not None:
                taken.add(task.id)

        return self._finish(result, started)

    async def _workflow_task_for(
        self,
        steward: Agent,
        taken: set[str],
        result: PollResult,
    ) -> Task | None:
        meta = get_role_metadata(steward)
        if not isinstance(meta, StewardMetadata):
            return None
        focus = meta.steward_focus.value
        tags = [focus, f"steward-{focus}", *self.config.workflow_tags]
        ready = [
            t for t in await self.readiness.ready_tasks(tags_any=tags) if t.id not in taken
        ]
        if not ready:
            return None

        task = ready[0]
        async with self.locks.hold(steward.id):
            if await self.session_manager.get_active_session(steward.id) is not None:
                return None
            if not await self.assignment.agent_has_capacity(steward.id):
                return None
            try:
                await self._start_workflow_task(steward, task)
            except Exception as e:
                self._record_error(result, e, task_id=task.id, agent_id=steward.id)
            else:
                result.processed += 1
        return task

    async def _start_workflow_task(self, steward: Agent, task: Task) -> None:
        with dispatch_context(task_id=task.id, agent_id=steward.id):
            await self.dispatch.dispatch(
                task.id,
                steward.id,
                DispatchOptions(
                    mark_as_started=True,
                    priority=task.priority,
                    dispatched_by=SYSTEM_ACTOR,
                ),
            )
            self._emit(TASK_DISPATCHED, task_id=task.id, agent_id=steward.id)
            await self._spawn(
                steward,
                task,
                working_directory=self.working_directory,
                worktree=None,
                prompt=build_task_prompt(task),
            )
