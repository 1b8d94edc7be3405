from __future__ import annotations

import asyncio
import shutil
import subprocess
from pathlib import Path

import pytest

from flock.agents import AgentRegistry, AgentStatus
from flock.git import GitCommandError, WorktreeStore
from flock.tmux import FakeSessionHost

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return completed.stdout.strip()


@pytest.fixture
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Flock Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "flock@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Flock Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "flock@example.com")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    path = tmp_path / "repo"
    path.mkdir()
    _git(path, "init")
    (path / "README.md").write_text("hello\n", encoding="utf-8")
    _git(path, "add", "README.md")
    _git(path, "commit", "-m", "initial")
    return path


def test_branch_and_checkout_lifecycle(repo: Path) -> None:
    store = WorktreeStore(repo)
    checkout = store.checkout_path_for("feature/login")

    async def scenario() -> None:
        assert not await store.branch_exists("feature/login")
        await store.create_branch("feature/login")
        assert await store.branch_exists("feature/login")

        await store.create_checkout("feature/login", checkout)
        assert (checkout / "README.md").read_text(encoding="utf-8") == "hello\n"

        await store.remove_checkout(checkout)
        assert not checkout.exists()
        await store.remove_branch("feature/login")
        assert not await store.branch_exists("feature/login")

    asyncio.run(scenario())

    assert checkout == repo / ".worktrees" / "feature-login"


def test_commit_all_reports_whether_anything_changed(repo: Path) -> None:
    store = WorktreeStore(repo)

    async def scenario() -> tuple[bool, bool]:
        await store.create_branch("work")
        checkout = await store.create_checkout("work", store.checkout_path_for("work"))
        clean = await store.commit_all(checkout, "nothing")
        (checkout / "notes.txt").write_text("todo\n", encoding="utf-8")
        dirty = await store.commit_all(checkout, "add notes")
        return clean, dirty

    clean, dirty = asyncio.run(scenario())

    assert clean is False
    assert dirty is True
    assert _git(repo, "log", "-1", "--format=%s", "work") == "add notes"


def test_checkout_of_branch_in_use_is_flagged(repo: Path) -> None:
    store = WorktreeStore(repo)
    current = _git(repo, "rev-parse", "--abbrev-ref", "HEAD")

    with pytest.raises(GitCommandError) as excinfo:
        asyncio.run(store.create_checkout(current, store.checkout_path_for("dup")))

    assert excinfo.value.checked_out_elsewhere
    assert excinfo.value.result.returncode != 0


def test_pause_and_resume_preserve_work_with_auto_commit(repo: Path) -> None:
    sessions = FakeSessionHost()
    registry = AgentRegistry(WorktreeStore(repo), sessions, agent_command="claude")

    async def scenario() -> None:
        agent = await registry.create("my task")
        (agent.worktree_path / "feature.py").write_text("print('hi')\n", encoding="utf-8")
        registry.update_status(agent.id, "✻ Writing feature.py", quiet_for=0.0)

        await registry.pause(agent.id)
        assert not agent.worktree_path.exists()

        await registry.resume(agent.id)
        assert registry.get(agent.id).status is AgentStatus.STARTING
        registry.update_status(agent.id, "✻ Continuing", quiet_for=0.0)
        assert registry.get(agent.id).status is AgentStatus.RUNNING

        assert (agent.worktree_path / "feature.py").read_text(encoding="utf-8") == "print('hi')\n"
        assert (agent.worktree_path / "README.md").read_text(encoding="utf-8") == "hello\n"

    asyncio.run(scenario())

    assert _git(repo, "log", "-1", "--format=%s", "my-task") == "[flock] paused 'my task'"


def test_sync_status_counts_upstream_and_main(repo: Path) -> None:
    main = _git(repo, "rev-parse", "--abbrev-ref", "HEAD")
    store = WorktreeStore(repo, main_branch=main)

    async def scenario() -> tuple:
        await store.create_branch("work")
        checkout = await store.create_checkout("work", store.checkout_path_for("work"))
        fresh = await store.sync_status(checkout)

        (checkout / "feature.py").write_text("print('hi')\n", encoding="utf-8")
        await store.commit_all(checkout, "add feature")
        _git(checkout, "branch", f"--set-upstream-to={main}", "work")
        (repo / "CHANGES.md").write_text("main moved\n", encoding="utf-8")
        _git(repo, "add", "CHANGES.md")
        _git(repo, "commit", "-m", "main moved")
        (checkout / "scratch.txt").write_text("wip\n", encoding="utf-8")
        return fresh, await store.sync_status(checkout)

    fresh, moved = asyncio.run(scenario())

    assert fresh.as_dict() == {
        "ahead": 0,
        "behind": 0,
        "divergence_from_main": 0,
        "is_clean": True,
        "is_synced": True,
    }
    assert (moved.ahead, moved.behind) == (1, 1)
    assert moved.divergence_from_main == 1
    assert moved.is_clean is False
    assert moved.is_synced is False


def test_sync_status_outside_a_checkout_raises(repo: Path, tmp_path: Path) -> None:
    outside = tmp_path / "plain"
    outside.mkdir()

    with pytest.raises(GitCommandError):
        asyncio.run(WorktreeStore(repo).sync_status(outside))
