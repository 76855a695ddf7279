"""Workspace management: branch naming and git worktrees for agents."""

from switchyard.workspace.naming import (
    create_slug_from_title,
    generate_branch_name,
    generate_worktree_path,
    safe_agent_name,
)
from switchyard.workspace.worktree import GitWorktreeManager

__all__ = [
    "GitWorktreeManager",
    "create_slug_from_title",
    "generate_branch_name",
    "generate_worktree_path",
    "safe_agent_name",
]
