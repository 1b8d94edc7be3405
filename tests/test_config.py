from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from flock.config import FlockSettings, get_settings
from flock.utils import sanitize_branch_name, sanitize_environment


def test_environment_aliases(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("FLOCK_REPO_PATH", str(tmp_path))
    monkeypatch.setenv("FLOCK_AGENT_COMMAND", "  aider  ")
    monkeypatch.setenv("FLOCK_POLL_INTERVAL", "0.25")
    monkeypatch.setenv("FLOCK_DEVSERVER_RUN_BEFORE", "npm ci;;  ;; npm run build")
    monkeypatch.setenv("FLOCK_LOG_LEVEL", "debug")

    settings = FlockSettings(_env_file=None)

    assert settings.repo_path == tmp_path
    assert settings.agent_command == "aider"
    assert settings.poll_interval == 0.25
    assert settings.devserver_run_before == ("npm ci", "npm run build")
    assert settings.log_level == "DEBUG"
    assert settings.worktree_root() == tmp_path / ".worktrees"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("FLOCK_POLL_INTERVAL", "0"),
        ("FLOCK_QUIET_THRESHOLD", "-1"),
        ("FLOCK_DEVSERVER_LOG_CAPACITY", "0"),
        ("FLOCK_AGENT_COMMAND", "   "),
        ("FLOCK_LOG_LEVEL", "chatty"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        FlockSettings(_env_file=None)


def test_get_settings_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FLOCK_REPO_PATH", "repo")
    get_settings.cache_clear()
    try:
        settings = get_settings()
    finally:
        get_settings.cache_clear()

    assert settings.repo_path == tmp_path.resolve() / "repo"
    assert settings.chroma_persist_path.is_absolute()


def test_sanitize_branch_name() -> None:
    assert sanitize_branch_name("Fix the Login bug") == "fix-the-login-bug"
    assert sanitize_branch_name("feature/Add OAuth") == "feature/add-oauth"


def test_sanitize_environment_drops_nested_session_markers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TMUX", "/tmp/tmux-0/default,1,0")
    monkeypatch.setenv("GIT_DIR", "/elsewhere/.git")

    env = sanitize_environment({"FORCE_COLOR": "0"})

    assert "TMUX" not in env
    assert "GIT_DIR" not in env
    assert env["FORCE_COLOR"] == "0"
