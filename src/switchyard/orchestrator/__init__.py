"""Orchestrator subsystem for Switchyard.

This module implements the dependency graph store, priority propagation,
capability matching, the agent registry, task assignment, dispatch, steward
trigger scheduling and the dispatch daemon that drives them.
"""

from __future__ import annotations

from switchyard.orchestrator.agent_registry import (
    AgentFilter,
    AgentRegistry,
    agent_channel_name,
    parse_agent_channel_name,
)
from switchyard.orchestrator.assignment import (
    AgentWorkload,
    TaskAssignment,
    TaskAssignmentService,
    get_assignment_status,
)
from switchyard.orchestrator.capabilities import (
    AgentMatch,
    CapabilityMatchResult,
    find_agents_for_requirements,
    find_agents_for_task,
    get_best_agent_for_task,
    match_agent_to_task,
    match_capabilities,
)
from switchyard.orchestrator.daemon import (
    DaemonEvent,
    DispatchDaemon,
    PollResult,
    build_task_prompt,
)
from switchyard.orchestrator.dependencies import DependencyStore
from switchyard.orchestrator.dispatch import (
    CandidatesResult,
    DispatchOptions,
    DispatchResult,
    DispatchService,
)
from switchyard.orchestrator.interfaces import (
    SessionInfo,
    SessionManager,
    StartSessionOptions,
    WorktreeManager,
    WorktreeResult,
)
from switchyard.orchestrator.locks import AgentLocks
from switchyard.orchestrator.priority import (
    AggregateComplexityResult,
    EffectivePriorityResult,
    PriorityService,
    TaskWithEffectivePriority,
    sort_by_effective_priority,
)
from switchyard.orchestrator.readiness import Blocker, ReadinessService
from switchyard.orchestrator.steward_scheduler import StewardExecution, StewardScheduler

__all__ = [
    # Dependency graph
    "DependencyStore",
    # Priority
    "PriorityService",
    "EffectivePriorityResult",
    "AggregateComplexityResult",
    "TaskWithEffectivePriority",
    "sort_by_effective_priority",
    # Readiness
    "ReadinessService",
    "Blocker",
    # Capabilities
    "AgentMatch",
    "CapabilityMatchResult",
    "match_capabilities",
    "match_agent_to_task",
    "find_agents_for_requirements",
    "find_agents_for_task",
    "get_best_agent_for_task",
    # Agents
    "AgentRegistry",
    "AgentFilter",
    "agent_channel_name",
    "parse_agent_channel_name",
    # Assignment
    "TaskAssignmentService",
    "TaskAssignment",
    "AgentWorkload",
    "get_assignment_status",
    # Dispatch
    "AgentLocks",
    "DispatchService",
    "DispatchOptions",
    "DispatchResult",
    "CandidatesResult",
    # Steward scheduling
    "StewardScheduler",
    "StewardExecution",
    # Daemon
    "DispatchDaemon",
    "DaemonEvent",
    "PollResult",
    "build_task_prompt",
    # External interfaces
    "SessionManager",
    "SessionInfo",
    "StartSessionOptions",
    "WorktreeManager",
    "WorktreeResult",
]
