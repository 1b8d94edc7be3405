from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from flock.agents import AgentRegistry
from flock.devserver import DevServerSupervisor
from flock.git import GitCommandError, GitResult, SyncStatus
from flock.tmux import FakeSessionHost


def _git_error(*args: str, stderr: str) -> GitCommandError:
    return GitCommandError(GitResult(args=("git", *args), returncode=128, stdout="", stderr=stderr))


class FakeWorktreeStore:
    """In-memory stand-in for ``WorktreeStore`` that still creates checkout directories."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.branches: set[str] = {"main"}
        self.checkouts: dict[Path, str] = {}
        self.commits: list[tuple[Path, str]] = []
        self.conflicts: set[Path] = set()
        self.removed_branches: list[str] = []
        self.checkout_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.sync: dict[Path, SyncStatus] = {}

    def checkout_path_for(self, branch: str) -> Path:
        return self.root / ".worktrees" / branch.replace("/", "-")

    async def branch_exists(self, name: str) -> bool:
        return name in self.branches

    async def create_branch(self, name: str) -> None:
        if name in self.branches:
            raise _git_error("branch", name, stderr=f"fatal: a branch named '{name}' already exists")
        self.branches.add(name)

    async def create_checkout(self, branch: str, path: Path) -> Path:
        if self.checkout_error is not None:
            raise self.checkout_error
        if branch in self.checkouts.values():
            raise _git_error(
                "worktree",
                "add",
                str(path),
                branch,
                stderr=f"fatal: '{branch}' is already checked out at '/elsewhere'",
            )
        path.mkdir(parents=True, exist_ok=True)
        self.checkouts[path] = branch
        return path

    async def commit_all(self, path: Path, message: str) -> bool:
        self.commits.append((path, message))
        return True

    async def has_conflicts(self, path: Path) -> bool:
        return path in self.conflicts

    async def remove_checkout(self, path: Path) -> None:
        if self.remove_error is not None:
            raise self.remove_error
        self.checkouts.pop(path, None)
        if path.exists():
            shutil.rmtree(path)

    async def sync_status(self, path: Path) -> SyncStatus:
        if path not in self.checkouts:
            raise _git_error("status", "--porcelain", stderr="fatal: not a git repository")
        return self.sync.get(path, SyncStatus())

    async def remove_branch(self, name: str) -> None:
        if name not in self.branches:
            raise _git_error("branch", "-D", name, stderr=f"error: branch '{name}' not found")
        self.branches.discard(name)
        self.removed_branches.append(name)


@pytest.fixture
def worktrees(tmp_path: Path) -> FakeWorktreeStore:
    return FakeWorktreeStore(tmp_path)


@pytest.fixture
def sessions() -> FakeSessionHost:
    return FakeSessionHost()


@pytest.fixture
def devservers() -> DevServerSupervisor:
    return DevServerSupervisor(log_capacity=50, kill_grace=2.0)


@pytest.fixture
def registry(worktrees: FakeWorktreeStore, sessions: FakeSessionHost, devservers: DevServerSupervisor) -> AgentRegistry:
    counter = iter(range(1, 1000))
    return AgentRegistry(
        worktrees,
        sessions,
        agent_command="claude",
        session_prefix="flock-",
        devservers=devservers,
        id_factory=lambda: f"agent{next(counter)}",
    )
