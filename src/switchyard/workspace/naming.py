"""Branch and worktree naming conventions.

Branches are ``agent/{agent-name}/{task-id}-{slug}`` and worktrees live at
``.worktrees/{agent-name}-{slug}``, with the slug derived from the task
title and capped at 30 characters.
"""

from __future__ import annotations

import re

WORKTREE_ROOT = ".worktrees"
SLUG_MAX_LENGTH = 30

_UNSAFE = re.compile(r"[^a-z0-9-]")


def safe_agent_name(name: str) -> str:
    return _UNSAFE.sub("-", name.lower())


def create_slug_from_title(title: str) -> str:
    """Derive a short, URL-friendly slug from a task title.

    Example:
        >>> create_slug_from_title("Implement feature X!")
        'implement-feature-x'
    """
    slug = re.sub(r"[^a-z0-9\s-]", "", title.lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug[:SLUG_MAX_LENGTH].strip("-")


def _safe_slug(slug: str) -> str:
    return _UNSAFE.sub("-", slug.lower())[:SLUG_MAX_LENGTH]


def generate_branch_name(agent_name: str, task_id: str, slug: str | None = None) -> str:
    """Branch an agent works on for a task."""
    base = f"agent/{safe_agent_name(agent_name)}/{task_id.lower()}"
    return f"{base}-{_safe_slug(slug)}" if slug else base


def generate_worktree_path(agent_name: str, slug: str | None = None) -> str:
    """Worktree path, relative to the repository root."""
    name = safe_agent_name(agent_name)
    if slug:
        return f"{WORKTREE_ROOT}/{name}-{_safe_slug(slug)}"
    return f"{WORKTREE_ROOT}/{name}"
