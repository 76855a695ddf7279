"""Error taxonomy for Switchyard.

Graph, registry, assignment and dispatch operations raise these errors
directly to their callers. The dispatch daemon is the one place that
catches them in bulk, counting each against the task/agent pair being
processed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION = "VALIDATION"
    CAPACITY = "CAPACITY"
    NO_ELIGIBLE_AGENT = "NO_ELIGIBLE_AGENT"


class SwitchyardError(Exception):
    """Base class for all Switchyard errors.

    Attributes:
        code: Machine-readable error code.
        message: Human-readable description.
        details: Structured context for logs and API callers.
    """

    code: ErrorCode = ErrorCode.VALIDATION

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for structured logging or API responses."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(SwitchyardError):
    """A task, agent, dependency or channel does not exist."""

    code = ErrorCode.NOT_FOUND


class ConflictError(SwitchyardError):
    """A uniqueness constraint would be violated (duplicate edge)."""

    code = ErrorCode.CONFLICT


class ValidationError(SwitchyardError):
    """Malformed identifier, unknown type, self-reference or bad metadata."""

    code = ErrorCode.VALIDATION


class CapacityError(SwitchyardError):
    """Agent already holds its maximum number of concurrent tasks.

    Attributes:
        agent_id: Agent that refused the assignment.
        current: Number of open tasks currently assigned.
        maximum: The agent's max_concurrent_tasks.
    """

    code = ErrorCode.CAPACITY

    def __init__(self, agent_id: str, current: int, maximum: int) -> None:
        self.agent_id = agent_id
        self.current = current
        self.maximum = maximum
        super().__init__(
            f"Agent {agent_id} is at capacity ({current}/{maximum} tasks)",
            details={"agent_id": agent_id, "current": current, "maximum": maximum},
        )


class NoEligibleAgentError(SwitchyardError):
    """Smart dispatch found no agent satisfying the task's requirements."""

    code = ErrorCode.NO_ELIGIBLE_AGENT

    def __init__(self, task_id: str, details: dict[str, Any] | None = None) -> None:
        self.task_id = task_id
        super().__init__(
            f"No eligible agent available for task {task_id}",
            details={"task_id": task_id, **(details or {})},
        )
