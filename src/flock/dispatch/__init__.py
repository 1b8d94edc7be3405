"""Ordered action dispatch: the single writer of agent and dev-server state."""

from .actions import (
    Action,
    AgentAction,
    AgentCreated,
    AgentDeleted,
    AgentFailed,
    AgentOutput,
    AgentPaused,
    AgentRestarted,
    AgentResumed,
    ConfigureDevServer,
    CreateAgent,
    DeleteAgent,
    DevServerExited,
    DevServerStarted,
    DevServerStopped,
    ExternalStateUpdated,
    FindOrphanedSessions,
    PauseAgent,
    QuerySyncStatus,
    RequestExternalTransition,
    RestartAgent,
    RestartDevServer,
    RestoreSnapshot,
    ResumeAgent,
    SendInput,
    SetAgentNote,
    Shutdown,
    StartDevServer,
    StopDevServer,
)
from .dispatcher import ActionDispatcher, Listener
from .pollers import StatusPoller
from .snapshot import SNAPSHOT_VERSION, Snapshot

__all__ = [
    "Action",
    "ActionDispatcher",
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
    "Listener",
    "PauseAgent",
    "QuerySyncStatus",
    "RequestExternalTransition",
    "RestartAgent",
    "RestartDevServer",
    "RestoreSnapshot",
    "ResumeAgent",
    "SNAPSHOT_VERSION",
    "SendInput",
    "SetAgentNote",
    "Shutdown",
    "Snapshot",
    "StartDevServer",
    "StatusPoller",
    "StopDevServer",
]
