"""Exception hierarchy for agent and dev-server lifecycle operations."""

from __future__ import annotations


class FlockError(RuntimeError):
    """Base class for orchestration errors surfaced to callers."""


class AgentNotFound(FlockError, LookupError):
    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent '{agent_id}' not found")


class CreateError(FlockError):
    """Agent creation failed; completed steps were rolled back."""


class InvalidName(CreateError):
    pass


class BranchConflict(CreateError):
    pass


class CheckoutIoFailure(CreateError):
    pass


class SessionSpawnFailure(CreateError):
    pass


class PauseError(FlockError):
    pass


class NotPausable(PauseError):
    pass


class UncommittedConflict(NotPausable):
    """The checkout has unresolved merge conflicts."""


class ResumeError(FlockError):
    pass


class NotResumable(ResumeError):
    pass


class WorktreeConflict(ResumeError):
    pass


class BranchMissing(ResumeError):
    pass


class RestartError(FlockError):
    pass


class NotRestartable(RestartError):
    pass


class SyncError(FlockError):
    """Sync status could not be read for an agent checkout."""


class DevServerError(FlockError):
    pass


class AlreadyRunning(DevServerError):
    pass


class PreRunFailed(DevServerError):
    def __init__(self, command: str, code: int) -> None:
        self.command = command
        self.code = code
        super().__init__(f"Pre-run command failed with exit code {code}: {command}")


class SpawnFailure(DevServerError):
    pass


class NotConfigured(DevServerError):
    pass


__all__ = [
    "AgentNotFound",
    "AlreadyRunning",
    "BranchConflict",
    "BranchMissing",
    "CheckoutIoFailure",
    "CreateError",
    "DevServerError",
    "FlockError",
    "InvalidName",
    "NotConfigured",
    "NotPausable",
    "NotResumable",
    "NotRestartable",
    "PauseError",
    "PreRunFailed",
    "RestartError",
    "ResumeError",
    "SessionSpawnFailure",
    "SpawnFailure",
    "SyncError",
    "UncommittedConflict",
    "WorktreeConflict",
]
