"""Interfaces of the external collaborators driven by the dispatch engine.

The session manager spawns and talks to agent processes; the worktree
manager prepares isolated checkouts. The engine only depends on the
protocols below. ``switchyard.workspace.worktree.GitWorktreeManager`` is
the bundled worktree implementation; session managers are supplied by the
host application.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel


class SessionInfo(BaseModel):
    """A running agent session.

    Attributes:
        id: Session identifier.
        agent_id: Agent the session belongs to.
        status: Session state as reported by the manager.
        working_directory: Directory the agent process runs in.
        worktree: Worktree path, when the session runs in one.
        started_at: When the session was started.
    """

    id: str
    agent_id: str
    status: str = "running"
    working_directory: str | None = None
    worktree: str | None = None
    started_at: datetime | None = None


class StartSessionOptions(BaseModel):
    working_directory: str
    worktree: str | None = None
    initial_prompt: str | None = None


class MessageSessionResult(BaseModel):
    success: bool
    error: str | None = None


class WorktreeResult(BaseModel):
    """A prepared worktree.

    Attributes:
        path: Filesystem path of the worktree.
        branch: Branch checked out in it.
        head: Commit the branch points at.
    """

    path: str
    branch: str
    head: str | None = None


@runtime_checkable
class SessionManager(Protocol):
    """Starts, stops and messages agent sessions."""

    async def start_session(
        self, agent_id: str, options: StartSessionOptions
    ) -> SessionInfo: ...

    async def get_active_session(self, agent_id: str) -> SessionInfo | None: ...

    async def stop_session(
        self, session_id: str, graceful: bool = True, reason: str | None = None
    ) -> None: ...

    async def message_session(
        self, session_id: str, content: str, sender_id: str | None = None
    ) -> MessageSessionResult: ...


@runtime_checkable
class WorktreeManager(Protocol):
    """Creates and inspects isolated checkouts."""

    async def create_worktree(
        self,
        agent_name: str,
        task_id: str,
        task_title: str | None = None,
        custom_branch: str | None = None,
        custom_path: str | None = None,
    ) -> WorktreeResult: ...

    async def worktree_exists(self, path: str) -> bool: ...
