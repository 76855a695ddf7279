"""Git worktree manager for agent workspaces.

Each agent works on a task in its own git worktree so that parallel agents
never share a checkout. This module wraps the ``git worktree`` commands via
GitPython and exposes them through the async WorktreeManager interface the
dispatch daemon consumes. Git calls are blocking, so they run in a worker
thread.

Example usage:
    >>> from switchyard.config import GitConfig
    >>> from switchyard.workspace.worktree import GitWorktreeManager
    >>>
    >>> manager = GitWorktreeManager(GitConfig(repo_path=Path("/workspace/repo")))
    >>> result = await manager.create_worktree("alice", "el-abc123", "Implement feature X")
    >>> result.branch
    'agent/alice/el-abc123-implement-feature-x'
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import git
import structlog
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from switchyard.config import GitConfig
from switchyard.orchestrator.interfaces import WorktreeResult
from switchyard.workspace.naming import (
    create_slug_from_title,
    generate_branch_name,
    generate_worktree_path,
)

logger = structlog.get_logger(__name__)


class GitWorktreeManager:
    """Creates and inspects agent worktrees in one repository.

    Attributes:
        config: Git configuration (repository, worktree base, main branch).
        repo: GitPython Repo object.
        base_path: Absolute directory under which worktrees are created.
    """

    def __init__(self, config: GitConfig) -> None:
        """Open the repository.

        Args:
            config: Git configuration settings.

        Raises:
            InvalidGitRepositoryError: If repo_path is not a git repository.
            NoSuchPathError: If repo_path does not exist.
        """
        self.config = config
        self._logger = logger.bind(component="GitWorktreeManager")

        try:
            self.repo = git.Repo(config.repo_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            self._logger.error(
                "worktree_manager_init_failed",
                repo_path=str(config.repo_path),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        repo_root = Path(self.repo.working_tree_dir or config.repo_path)
        base = config.worktree_base_path
        self.base_path = base if base.is_absolute() else repo_root / base

    async def create_worktree(
        self,
        agent_name: str,
        task_id: str,
        task_title: str | None = None,
        custom_branch: str | None = None,
        custom_path: str | None = None,
    ) -> WorktreeResult:
        """Create (or reuse) the worktree an agent works on for a task.

        Args:
            agent_name: Name of the agent.
            task_id: Task the worktree is for.
            task_title: Title used to derive the branch and directory slug.
            custom_branch: Branch to use instead of the generated name. An
                existing branch is checked out as is.
            custom_path: Path to use instead of the generated one.

        Returns:
            WorktreeResult with path, branch and head commit.

        Raises:
            GitCommandError: If git refuses to create the worktree.
        """
        slug = create_slug_from_title(task_title) if task_title else None
        branch = custom_branch or generate_branch_name(agent_name, task_id, slug)
        if custom_path:
            path = Path(custom_path)
        else:
            path = self.base_path / Path(generate_worktree_path(agent_name, slug)).name

        return await asyncio.to_thread(self._create_sync, path, branch)

    async def worktree_exists(self, path: str) -> bool:
        """Return True if path is a registered worktree present on disk."""
        return await asyncio.to_thread(self._exists_sync, Path(path))

    async def remove_worktree(self, path: str, delete_branch: bool = False) -> None:
        """Remove a worktree, optionally deleting its branch.

        Raises:
            GitCommandError: If git refuses to remove the worktree.
        """
        await asyncio.to_thread(self._remove_sync, Path(path), delete_branch)

    def _create_sync(self, path: Path, branch: str) -> WorktreeResult:
        if self._exists_sync(path):
            worktree_repo = git.Repo(path)
            self._logger.info("worktree_reused", path=str(path), branch=branch)
            return WorktreeResult(
                path=str(path),
                branch=worktree_repo.active_branch.name,
                head=worktree_repo.head.commit.hexsha,
            )

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if branch in self.repo.heads:
                self.repo.git.worktree("add", str(path), branch)
            else:
                self.repo.git.worktree(
                    "add", "-b", branch, str(path), self.config.main_branch
                )
        except GitCommandError as e:
            self._logger.error(
                "worktree_creation_failed",
                path=str(path),
                branch=branch,
                error=str(e),
            )
            raise

        head = self.repo.heads[branch].commit.hexsha
        self._logger.info("worktree_created", path=str(path), branch=branch, head=head[:8])
        return WorktreeResult(path=str(path), branch=branch, head=head)

    def _registered_paths(self) -> set[Path]:
        output = self.repo.git.worktree("list", "--porcelain")
        return {
            Path(line.split(" ", 1)[1]).resolve()
            for line in output.splitlines()
            if line.startswith("worktree ")
        }

    def _exists_sync(self, path: Path) -> bool:
        if not path.exists():
            return False
        return path.resolve() in self._registered_paths()

    def _remove_sync(self, path: Path, delete_branch: bool) -> None:
        branch: str | None = None
        if delete_branch and path.exists():
            branch = git.Repo(path).active_branch.name

        self.repo.git.worktree("remove", "--force", str(path))
        if branch and branch in self.repo.heads:
            self.repo.delete_head(branch, force=True)

        self._logger.info("worktree_removed", path=str(path), branch=branch)
