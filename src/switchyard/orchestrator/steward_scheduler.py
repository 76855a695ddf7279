"""Steward trigger scheduler.

Stewards declare triggers in their metadata:

- ``cron`` triggers fire on a five-field schedule, at most once per
  matching minute.
- ``event`` triggers fire for each event published with a matching name
  since the previous evaluation. A trigger's ``condition`` is kept with the
  execution record but is not evaluated.

Firing a trigger posts a ``steward-trigger`` notification to the steward's
channel and stamps ``lastExecutedAt`` (and ``nextScheduledAt`` for cron
stewards) on its metadata. The dispatch daemon calls ``evaluate`` once per
poll cycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from switchyard.errors import SwitchyardError
from switchyard.orchestrator.agent_registry import AgentRegistry, get_role_metadata
from switchyard.orchestrator.cron import CronSchedule
from switchyard.orchestrator.dispatch import DispatchService
from switchyard.orchestrator.types import CronTrigger, EventTrigger, StewardMetadata

logger = structlog.get_logger(__name__)

STEWARD_TRIGGER = "steward-trigger"


@dataclass
class PublishedEvent:
    name: str
    payload: dict[str, Any]
    published_at: datetime


@dataclass
class StewardExecution:
    """One trigger firing.

    Attributes:
        steward_id: Steward the trigger belongs to.
        steward_name: Name of the steward.
        trigger: The trigger that fired.
        fired_at: Evaluation time.
        event: Published event for event triggers.
        success: Whether the steward was notified.
        error: Error message when notification failed.
    """

    steward_id: str
    steward_name: str
    trigger: CronTrigger | EventTrigger
    fired_at: datetime
    event: PublishedEvent | None = None
    success: bool = True
    error: str | None = None


@dataclass
class _Due:
    trigger: CronTrigger | EventTrigger
    event: PublishedEvent | None = None


@dataclass
class _StewardState:
    # Last minute each cron trigger fired, keyed by trigger index.
    cron_fired: dict[int, datetime] = field(default_factory=dict)


def _minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


class StewardScheduler:
    """Evaluates steward triggers and notifies the stewards they fire for.

    Attributes:
        registry: Agent registry used to find stewards and stamp metadata.
        dispatch: Dispatch service used to notify stewards.
    """

    def __init__(self, registry: AgentRegistry, dispatch: DispatchService) -> None:
        self.registry = registry
        self.dispatch = dispatch
        self._running = False
        self._events: list[PublishedEvent] = []
        self._state: dict[str, _StewardState] = {}
        self._logger = logger.bind(component="StewardScheduler")

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._logger.info("steward_scheduler_started")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._logger.info("steward_scheduler_stopped")

    def publish_event(self, name: str, payload: dict[str, Any] | None = None) -> None:
        """Queue an event for the next evaluation."""
        self._events.append(
            PublishedEvent(
                name=name,
                payload=dict(payload or {}),
                published_at=datetime.now(timezone.utc),
            )
        )
        self._logger.debug("steward_event_published", event_name=name)

    async def evaluate(self, now: datetime | None = None) -> list[StewardExecution]:
        """Fire every trigger that is due.

        Queued events are consumed. A steward whose notification fails is
        reported with ``success=False`` and does not stop the others.

        Args:
            now: Evaluation time, defaults to the current UTC time.

        Returns:
            One StewardExecution per fired trigger.
        """
        now = now or datetime.now(timezone.utc)
        events, self._events = self._events, []

        executions: list[StewardExecution] = []
        for steward in await self.registry.get_stewards():
            meta = get_role_metadata(steward)
            if not isinstance(meta, StewardMetadata) or not meta.triggers:
                continue

            due = self._due_triggers(steward.id, meta, now, events)
            if not due:
                continue

            fired = []
            for item in due:
                execution = StewardExecution(
                    steward_id=steward.id,
                    steward_name=steward.name,
                    trigger=item.trigger,
                    fired_at=now,
                    event=item.event,
                )
                try:
                    await self._notify(execution)
                except SwitchyardError as e:
                    execution.success = False
                    execution.error = str(e)
                    self._logger.warning(
                        "steward_trigger_failed",
                        steward_id=steward.id,
                        trigger_type=item.trigger.type,
                        error=str(e),
                    )
                fired.append(execution)

            if any(e.success for e in fired):
                await self.registry.update_agent_metadata(
                    steward.id,
                    {
                        "lastExecutedAt": now.isoformat(),
                        "nextScheduledAt": _next_scheduled(meta, now),
                    },
                )
            executions.extend(fired)

        if executions:
            self._logger.info(
                "steward_triggers_evaluated",
                fired=len(executions),
                failed=sum(1 for e in executions if not e.success),
            )
        return executions

    def _due_triggers(
        self,
        steward_id: str,
        meta: StewardMetadata,
        now: datetime,
        events: list[PublishedEvent],
    ) -> list[_Due]:
        state = self._state.setdefault(steward_id, _StewardState())
        minute = _minute(now)
        due: list[_Due] = []

        for index, trigger in enumerate(meta.triggers):
            if isinstance(trigger, CronTrigger):
                if state.cron_fired.get(index) == minute:
                    continue
                if not CronSchedule.parse(trigger.schedule).matches(minute):
                    continue
                state.cron_fired[index] = minute
                due.append(_Due(trigger))
            else:
                due.extend(_Due(trigger, event) for event in events if event.name == trigger.event)
        return due

    async def _notify(self, execution: StewardExecution) -> None:
        trigger = execution.trigger
        if isinstance(trigger, CronTrigger):
            content = f"Scheduled trigger fired: {trigger.schedule}"
        else:
            content = f"Event trigger fired: {trigger.event}"

        metadata: dict[str, Any] = {
            "trigger": trigger.to_json_dict(),
            "firedAt": execution.fired_at.isoformat(),
        }
        if execution.event is not None:
            metadata["event"] = execution.event.name
            metadata["payload"] = execution.event.payload
        await self.dispatch.notify_agent(
            execution.steward_id, STEWARD_TRIGGER, content, metadata
        )


def _next_scheduled(meta: StewardMetadata, now: datetime) -> str | None:
    upcoming = [
        CronSchedule.parse(t.schedule).next_after(now)
        for t in meta.triggers
        if isinstance(t, CronTrigger)
    ]
    upcoming = [u for u in upcoming if u is not None]
    return min(upcoming).isoformat() if upcoming else None
