"""Integration tests for git worktree management.

These tests run real git commands in temporary repositories.

Tests cover:
- Worktree creation with generated and custom branch/path
- Reuse of an existing worktree
- Existence checks
- Removal with and without branch deletion
"""

from __future__ import annotations

from pathlib import Path

import git
import pytest
from git import InvalidGitRepositoryError

from switchyard.config import GitConfig
from switchyard.workspace.worktree import GitWorktreeManager


@pytest.fixture
def git_repo(tmp_path: Path) -> git.Repo:
    """Create a temporary git repository with an initial commit on main."""
    repo_path = tmp_path / "repo"
    repo_path.mkdir()

    repo = git.Repo.init(repo_path)

    readme = repo_path / "README.md"
    readme.write_text("# Test Repository\n")
    repo.index.add(["README.md"])
    repo.index.commit("initial commit")

    if "master" in repo.heads:
        repo.heads.master.rename("main")

    return repo


@pytest.fixture
def manager(git_repo: git.Repo, tmp_path: Path) -> GitWorktreeManager:
    return GitWorktreeManager(
        GitConfig(
            repo_path=Path(git_repo.working_tree_dir),
            worktree_base_path=tmp_path / "worktrees",
            main_branch="main",
        )
    )


class TestCreate:
    """Test worktree creation."""

    @pytest.mark.asyncio
    async def test_generated_names(
        self, manager: GitWorktreeManager, git_repo: git.Repo, tmp_path: Path
    ) -> None:
        result = await manager.create_worktree("alice", "el-abc123", "Implement feature X")

        assert result.branch == "agent/alice/el-abc123-implement-feature-x"
        assert result.path == str(tmp_path / "worktrees" / "alice-implement-feature-x")
        assert result.head == git_repo.heads.main.commit.hexsha
        assert (Path(result.path) / "README.md").exists()
        assert result.branch in git_repo.heads

    @pytest.mark.asyncio
    async def test_custom_branch_and_path(
        self, manager: GitWorktreeManager, tmp_path: Path
    ) -> None:
        custom = tmp_path / "elsewhere" / "wt"

        result = await manager.create_worktree(
            "bob", "el-def456", custom_branch="handoff/branch", custom_path=str(custom)
        )

        assert result.branch == "handoff/branch"
        assert result.path == str(custom)
        assert await manager.worktree_exists(str(custom))

    @pytest.mark.asyncio
    async def test_existing_branch_checked_out(
        self, manager: GitWorktreeManager, git_repo: git.Repo, tmp_path: Path
    ) -> None:
        git_repo.create_head("agent/prev/el-xyz1")

        result = await manager.create_worktree(
            "carol", "el-xyz1", custom_branch="agent/prev/el-xyz1"
        )

        assert git.Repo(result.path).active_branch.name == "agent/prev/el-xyz1"

    @pytest.mark.asyncio
    async def test_existing_worktree_reused(self, manager: GitWorktreeManager) -> None:
        first = await manager.create_worktree("alice", "el-abc123", "Same task")
        second = await manager.create_worktree("alice", "el-abc123", "Same task")

        assert second.path == first.path
        assert second.branch == first.branch


class TestExistsAndRemove:
    """Test existence checks and removal."""

    @pytest.mark.asyncio
    async def test_exists(self, manager: GitWorktreeManager, tmp_path: Path) -> None:
        plain_dir = tmp_path / "not-a-worktree"
        plain_dir.mkdir()

        assert not await manager.worktree_exists(str(tmp_path / "missing"))
        assert not await manager.worktree_exists(str(plain_dir))

    @pytest.mark.asyncio
    async def test_remove_keeps_branch(
        self, manager: GitWorktreeManager, git_repo: git.Repo
    ) -> None:
        result = await manager.create_worktree("alice", "el-abc123", "Keep branch")

        await manager.remove_worktree(result.path)

        assert not Path(result.path).exists()
        assert not await manager.worktree_exists(result.path)
        assert result.branch in git_repo.heads

    @pytest.mark.asyncio
    async def test_remove_deletes_branch(
        self, manager: GitWorktreeManager, git_repo: git.Repo
    ) -> None:
        result = await manager.create_worktree("alice", "el-abc123", "Drop branch")

        await manager.remove_worktree(result.path, delete_branch=True)

        assert result.branch not in git_repo.heads


def test_rejects_non_repository(tmp_path: Path) -> None:
    with pytest.raises(InvalidGitRepositoryError):
        GitWorktreeManager(GitConfig(repo_path=tmp_path))
