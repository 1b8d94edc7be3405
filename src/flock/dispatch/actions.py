"""Immutable actions applied in order by the dispatcher."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..agents import Agent, WorktreeRecord
from ..devserver import DevServerConfig, DevServerLaunch, StartPlan, StopPlan


@dataclass(frozen=True, slots=True)
class Action:
    """Base class; ``reply`` resolves the caller's future once the action completes."""

    reply: asyncio.Future[Any] | None = field(default=None, compare=False, repr=False, kw_only=True)


@dataclass(frozen=True, slots=True)
class AgentAction(Action):
    """Action scoped to one agent; handler failures turn into ``AgentFailed``."""

    agent_id: str


# ---------------------------------------------------------------------------
# Requests from the control surface
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CreateAgent(Action):
    name: str
    branch: str | None = None
    note: str | None = None


@dataclass(frozen=True, slots=True)
class PauseAgent(AgentAction):
    pass


@dataclass(frozen=True, slots=True)
class ResumeAgent(AgentAction):
    pass


@dataclass(frozen=True, slots=True)
class DeleteAgent(AgentAction):
    keep_branch: bool = False


@dataclass(frozen=True, slots=True)
class SendInput(AgentAction):
    text: str = ""
    enter: bool = True


@dataclass(frozen=True, slots=True)
class SetAgentNote(AgentAction):
    note: str | None = None


@dataclass(frozen=True, slots=True)
class RestartAgent(AgentAction):
    """Interrupt the agent and relaunch its command, recreating a dead session."""


@dataclass(frozen=True, slots=True)
class FindOrphanedSessions(Action):
    """Without ``running`` the tmux listing is fetched first; with it the result is filtered."""

    running: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class QuerySyncStatus(AgentAction):
    pass


# ---------------------------------------------------------------------------
# Completions submitted by background tasks
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AgentCreated(Action):
    agent: Agent | None = None
    record: WorktreeRecord | None = None
    error: BaseException | None = None
    session_name: str = ""


@dataclass(frozen=True, slots=True)
class AgentPaused(AgentAction):
    error: BaseException | None = None
    devserver: StopPlan | None = None


@dataclass(frozen=True, slots=True)
class AgentResumed(AgentAction):
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class AgentDeleted(AgentAction):
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class AgentRestarted(AgentAction):
    error: BaseException | None = None


# ---------------------------------------------------------------------------
# Status and failure events
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AgentOutput(AgentAction):
    snapshot: str = ""
    quiet_for: float | None = None
    observed_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class AgentFailed(AgentAction):
    message: str = ""


# ---------------------------------------------------------------------------
# Dev servers
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StartDevServer(AgentAction):
    pass


@dataclass(frozen=True, slots=True)
class StopDevServer(AgentAction):
    pass


@dataclass(frozen=True, slots=True)
class RestartDevServer(AgentAction):
    pass


@dataclass(frozen=True, slots=True)
class ConfigureDevServer(AgentAction):
    config: DevServerConfig | None = None


@dataclass(frozen=True, slots=True)
class DevServerExited(AgentAction):
    pid: int = 0
    returncode: int = 0


@dataclass(frozen=True, slots=True)
class DevServerStarted(AgentAction):
    plan: StartPlan | None = None
    process: Any = None
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class DevServerStopped(AgentAction):
    """Completion of a stop; ``restart`` carries the launch to start next."""

    plan: StopPlan | None = None
    restart: DevServerLaunch | None = None
    error: BaseException | None = None


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ExternalStateUpdated(AgentAction):
    source: str = ""
    state: str | None = None


@dataclass(frozen=True, slots=True)
class RequestExternalTransition(AgentAction):
    source: str = ""
    new_state: str = ""


# ---------------------------------------------------------------------------
# Control
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RestoreSnapshot(Action):
    snapshot: Any = None


@dataclass(frozen=True, slots=True)
class Shutdown(Action):
    pass


__all__ = [
    "Action",
    "AgentAction",
    "AgentCreated",
    "AgentDeleted",
    "AgentFailed",
    "AgentOutput",
    "AgentPaused",
    "AgentRestarted",
    "AgentResumed",
    "ConfigureDevServer",
    "CreateAgent",
    "DeleteAgent",
    "DevServerExited",
    "DevServerStarted",
    "DevServerStopped",
    "ExternalStateUpdated",
    "FindOrphanedSessions",
    "PauseAgent",
    "QuerySyncStatus",
    "RequestExternalTransition",
    "RestartAgent",
    "RestartDevServer",
    "RestoreSnapshot",
    "ResumeAgent",
    "SendInput",
    "SetAgentNote",
    "Shutdown",
    "StartDevServer",
    "StopDevServer",
]
