"""Agent and worktree records owned by the registry."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping


class AgentStatus(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    WAITING = "waiting"
    IDLE = "idle"
    PAUSED = "paused"
    ERROR = "error"
    DELETED = "deleted"

    @property
    def is_pausable(self) -> bool:
        return self in (AgentStatus.RUNNING, AgentStatus.WAITING, AgentStatus.IDLE)

    @property
    def is_live(self) -> bool:
        """True when the agent has a checkout and should be polled."""

        return self not in (AgentStatus.PAUSED, AgentStatus.DELETED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(slots=True)
class Agent:
    id: str
    name: str
    branch: str
    worktree_path: Path
    session_name: str
    status: AgentStatus = AgentStatus.CREATED
    status_message: str | None = None
    last_output_at: datetime | None = None
    note: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    external_state: dict[str, str] = field(default_factory=dict)

    def copy(self) -> "Agent":
        return replace(self, external_state=dict(self.external_state))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "branch": self.branch,
            "worktree_path": str(self.worktree_path),
            "session_name": self.session_name,
            "status": self.status.value,
            "status_message": self.status_message,
            "last_output_at": self.last_output_at.isoformat() if self.last_output_at else None,
            "note": self.note,
            "created_at": self.created_at.isoformat(),
            "external_state": dict(self.external_state),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Agent":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            branch=str(data["branch"]),
            worktree_path=Path(data["worktree_path"]),
            session_name=str(data["session_name"]),
            status=AgentStatus(data.get("status", AgentStatus.CREATED.value)),
            status_message=data.get("status_message"),
            last_output_at=_parse_datetime(data.get("last_output_at")),
            note=data.get("note"),
            created_at=_parse_datetime(data.get("created_at")) or _utcnow(),
            external_state={str(k): str(v) for k, v in (data.get("external_state") or {}).items()},
        )


@dataclass(slots=True)
class WorktreeRecord:
    """Checkout bookkeeping; ``exists`` is False only while paused or deleted."""

    agent_id: str
    path: Path
    branch: str
    exists: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "path": str(self.path),
            "branch": self.branch,
            "exists": self.exists,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorktreeRecord":
        return cls(
            agent_id=str(data["agent_id"]),
            path=Path(data["path"]),
            branch=str(data["branch"]),
            exists=bool(data.get("exists", True)),
        )


__all__ = ["Agent", "AgentStatus", "WorktreeRecord"]
