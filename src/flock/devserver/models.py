"""Data models for dev-server supervision."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class DevServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class DevServerStatus:
    """Current state of one dev server; pid/port only while running, reason only when failed."""

    state: DevServerState = DevServerState.STOPPED
    pid: int | None = None
    port: int | None = None
    reason: str | None = None

    @classmethod
    def stopped(cls) -> "DevServerStatus":
        return cls(DevServerState.STOPPED)

    @classmethod
    def starting(cls) -> "DevServerStatus":
        return cls(DevServerState.STARTING)

    @classmethod
    def running(cls, pid: int, port: int | None) -> "DevServerStatus":
        return cls(DevServerState.RUNNING, pid=pid, port=port)

    @classmethod
    def stopping(cls) -> "DevServerStatus":
        return cls(DevServerState.STOPPING)

    @classmethod
    def failed(cls, reason: str) -> "DevServerStatus":
        return cls(DevServerState.FAILED, reason=reason)

    @property
    def is_running(self) -> bool:
        return self.state is DevServerState.RUNNING

    @property
    def is_active(self) -> bool:
        return self.state in (DevServerState.STARTING, DevServerState.RUNNING)

    def as_dict(self) -> dict[str, object]:
        return {"state": self.state.value, "pid": self.pid, "port": self.port, "reason": self.reason}


class DevServerConfig(BaseModel):
    """How to launch the dev server for an agent's worktree."""

    command: str | None = Field(default=None, description="Shell command for the server.")
    run_before: list[str] = Field(
        default_factory=list,
        description="Commands run sequentially in the working dir before the server starts.",
    )
    working_dir: str = Field(
        default="",
        description="Directory relative to the agent worktree to run commands in.",
    )
    port: int | None = Field(default=None, description="Declared port; never detected at runtime.")

    @field_validator("port")
    @classmethod
    def _validate_port(cls, value: int | None) -> int | None:
        if value is not None and not 0 < value < 65536:
            raise ValueError("port must be between 1 and 65535")
        return value

    def resolve_working_dir(self, worktree_path: Path) -> Path:
        return Path(worktree_path) / self.working_dir if self.working_dir else Path(worktree_path)


@dataclass(frozen=True, slots=True)
class DevServerLaunch:
    """Arguments of the most recent start, kept for restart."""

    command: str
    working_dir: Path
    pre_run_commands: tuple[str, ...] = field(default_factory=tuple)
    port: int | None = None


__all__ = [
    "DevServerConfig",
    "DevServerLaunch",
    "DevServerState",
    "DevServerStatus",
]
