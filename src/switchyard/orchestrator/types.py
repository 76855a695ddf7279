"""Typed metadata shared by the orchestrator services.

Tasks, agents and dependency edges carry JSON metadata. The models below
give that metadata a shape: each family is a discriminated union keyed by
one field (``agentRole`` for agents, ``gateType`` for awaits gates, ``type``
for steward triggers). Metadata is stored with camelCase keys; the models
accept either camelCase or snake_case on input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from switchyard.orchestrator.cron import CronSchedule

# Metadata keys on tasks
CAPABILITY_REQUIREMENTS_KEY = "capabilityRequirements"
ORCHESTRATOR_KEY = "orchestrator"


class AgentRole(str, Enum):
    """Role of a registered agent."""

    DIRECTOR = "director"
    WORKER = "worker"
    STEWARD = "steward"


class WorkerMode(str, Enum):
    """Ephemeral workers live for one task; persistent workers are long-lived."""

    EPHEMERAL = "ephemeral"
    PERSISTENT = "persistent"


class StewardFocus(str, Enum):
    """Maintenance area a steward is responsible for."""

    MERGE = "merge"
    HEALTH = "health"
    REMINDER = "reminder"
    OPS = "ops"


class SessionStatus(str, Enum):
    """Agent session state as reported by the session manager."""

    IDLE = "idle"
    RUNNING = "running"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


class MergeStatus(str, Enum):
    """Merge state of a completed task branch."""

    PENDING = "pending"
    TESTING = "testing"
    MERGING = "merging"
    MERGED = "merged"
    CONFLICT = "conflict"
    TEST_FAILED = "test_failed"
    FAILED = "failed"


class AssignmentStatus(str, Enum):
    """Derived assignment state of a task."""

    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    MERGED = "merged"


class CamelModel(BaseModel):
    """Base model for metadata persisted with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize for storage in a JSON column."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class AgentCapabilities(CamelModel):
    """Skills, languages and concurrency limit declared by an agent."""

    skills: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    max_concurrent_tasks: int = Field(default=1, ge=1)


class CapabilityRequirements(CamelModel):
    """Capability requirements declared by a task."""

    required_skills: list[str] = Field(default_factory=list)
    preferred_skills: list[str] = Field(default_factory=list)
    required_languages: list[str] = Field(default_factory=list)
    preferred_languages: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when no requirement or preference is declared."""
        return not (
            self.required_skills
            or self.preferred_skills
            or self.required_languages
            or self.preferred_languages
        )


# ---------------------------------------------------------------------------
# Steward triggers
# ---------------------------------------------------------------------------


class CronTrigger(CamelModel):
    """Fire a steward on a five-field cron schedule."""

    type: Literal["cron"] = "cron"
    schedule: str

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        CronSchedule.parse(v)
        return v


class EventTrigger(CamelModel):
    """Fire a steward when a named event is published."""

    type: Literal["event"] = "event"
    event: str = Field(min_length=1)
    condition: str | None = None


StewardTrigger = Annotated[Union[CronTrigger, EventTrigger], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Agent metadata
# ---------------------------------------------------------------------------


class BaseAgentMetadata(CamelModel):
    """Fields shared by every agent role."""

    channel_id: str | None = None
    session_id: str | None = None
    worktree: str | None = None
    session_status: SessionStatus | None = SessionStatus.IDLE
    last_activity_at: datetime | None = None
    capabilities: AgentCapabilities | None = None
    role_definition_ref: str | None = None


class DirectorMetadata(BaseAgentMetadata):
    agent_role: Literal["director"] = "director"


class WorkerMetadata(BaseAgentMetadata):
    agent_role: Literal["worker"] = "worker"
    worker_mode: WorkerMode = WorkerMode.EPHEMERAL
    branch: str | None = None


class StewardMetadata(BaseAgentMetadata):
    agent_role: Literal["steward"] = "steward"
    steward_focus: StewardFocus
    triggers: list[StewardTrigger] = Field(default_factory=list)
    last_executed_at: datetime | None = None
    next_scheduled_at: datetime | None = None


AgentMetadata = Annotated[
    Union[DirectorMetadata, WorkerMetadata, StewardMetadata],
    Field(discriminator="agent_role"),
]
agent_metadata_adapter: TypeAdapter[AgentMetadata] = TypeAdapter(AgentMetadata)


def parse_agent_metadata(data: dict[str, Any] | None) -> AgentMetadata | None:
    """Parse a stored agent metadata block, or None if it is empty."""
    if not data:
        return None
    return agent_metadata_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Task orchestration metadata
# ---------------------------------------------------------------------------


class HandoffRecord(CamelModel):
    """One entry of a task's handoff history."""

    agent_id: str | None = None
    session_id: str | None = None
    branch: str | None = None
    worktree: str | None = None
    message: str | None = None
    handoff_at: datetime


class OrchestratorTaskMetadata(CamelModel):
    """Assignment state stored under ``metadata["orchestrator"]`` on a task."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    assigned_agent: str | None = None
    branch: str | None = None
    worktree: str | None = None
    session_id: str | None = None
    merge_status: MergeStatus | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    completion_summary: str | None = None
    commit_hash: str | None = None
    handoff_branch: str | None = None
    handoff_worktree: str | None = None
    last_session_id: str | None = None
    handoff_at: datetime | None = None
    handoff_note: str | None = None
    handoff_history: list[HandoffRecord] = Field(default_factory=list)


def get_orchestrator_metadata(metadata: dict[str, Any] | None) -> OrchestratorTaskMetadata:
    """Read the orchestrator block from a task metadata map."""
    block = (metadata or {}).get(ORCHESTRATOR_KEY) or {}
    return OrchestratorTaskMetadata.model_validate(block)


def with_orchestrator_metadata(
    metadata: dict[str, Any] | None,
    orchestrator: OrchestratorTaskMetadata,
) -> dict[str, Any]:
    """Return a copy of metadata with the orchestrator block replaced."""
    updated = dict(metadata or {})
    updated[ORCHESTRATOR_KEY] = orchestrator.to_json_dict()
    return updated


# ---------------------------------------------------------------------------
# Dependency metadata
# ---------------------------------------------------------------------------


class TimerGate(CamelModel):
    """Satisfied once wait_until has passed."""

    gate_type: Literal["timer"] = "timer"
    wait_until: datetime

    @field_validator("wait_until")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)

    def is_satisfied(self, now: datetime) -> bool:
        return now >= self.wait_until


class ApprovalGate(CamelModel):
    """Satisfied once enough of the required approvers have approved."""

    gate_type: Literal["approval"] = "approval"
    required_approvers: list[str] = Field(min_length=1)
    approval_count: int | None = None
    current_approvers: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_approval_count(self) -> ApprovalGate:
        if self.approval_count is not None and not (
            1 <= self.approval_count <= len(self.required_approvers)
        ):
            raise ValueError(
                "approvalCount must be between 1 and the number of required approvers"
            )
        return self

    @property
    def required_count(self) -> int:
        return self.approval_count or len(self.required_approvers)

    def is_satisfied(self, now: datetime) -> bool:
        approved = set(self.current_approvers) & set(self.required_approvers)
        return len(approved) >= self.required_count


class ExternalGate(CamelModel):
    """Satisfied when an external system marks the gate done."""

    gate_type: Literal["external"] = "external"
    external_system: str = Field(min_length=1)
    external_id: str = Field(min_length=1)
    satisfied: bool = False
    satisfied_at: datetime | None = None
    satisfied_by: str | None = None

    def is_satisfied(self, now: datetime) -> bool:
        return self.satisfied


class WebhookGate(CamelModel):
    """Satisfied when a webhook callback marks the gate done."""

    gate_type: Literal["webhook"] = "webhook"
    webhook_url: str | None = None
    callback_id: str | None = None
    satisfied: bool = False
    satisfied_at: datetime | None = None
    satisfied_by: str | None = None

    def is_satisfied(self, now: datetime) -> bool:
        return self.satisfied


AwaitsMetadata = Annotated[
    Union[TimerGate, ApprovalGate, ExternalGate, WebhookGate],
    Field(discriminator="gate_type"),
]
awaits_metadata_adapter: TypeAdapter[AwaitsMetadata] = TypeAdapter(AwaitsMetadata)

KNOWN_TEST_TYPES = frozenset({"unit", "integration", "manual", "e2e", "property"})


class ValidatesMetadata(CamelModel):
    """Outcome of a test run that validates the target element."""

    test_type: str = Field(min_length=1)
    result: Literal["pass", "fail"]
    details: str | None = None

    @field_validator("test_type")
    @classmethod
    def strip_test_type(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("testType must not be blank")
        return v
