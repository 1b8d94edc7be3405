"""Agent lifecycle state machine.

Every lifecycle operation comes in three parts so that a single-writer loop can
drive it without awaiting while it holds state:

* ``plan_*`` validates against current state and returns an immutable plan,
* an async step (``provision``, ``suspend``, ``reopen``, ``teardown``) does the
  git and tmux work using only the plan,
* an apply step (``add``, ``mark_paused``, ``mark_resumed``, ``remove``) is the
  only place the registry mutates.

The composed coroutines ``create``, ``pause``, ``resume``, ``restart`` and
``delete`` chain the three for direct use by a single caller.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol

from ..detector import DetectedStatus, StatusDetector
from ..errors import (
    AgentNotFound,
    BranchConflict,
    BranchMissing,
    CheckoutIoFailure,
    InvalidName,
    NotPausable,
    NotRestartable,
    NotResumable,
    PauseError,
    RestartError,
    ResumeError,
    SessionSpawnFailure,
    SyncError,
    UncommittedConflict,
    WorktreeConflict,
)
from ..git import GitCommandError, SyncStatus
from ..tmux import SessionHandle, SessionHost, SessionHostError
from ..utils import sanitize_branch_name
from .models import Agent, AgentStatus, WorktreeRecord

logger = logging.getLogger(__name__)

RESTART_SETTLE_SECONDS = 0.1

_DETECTED_TO_STATUS = {
    DetectedStatus.RUNNING: AgentStatus.RUNNING,
    DetectedStatus.WAITING: AgentStatus.WAITING,
    DetectedStatus.ERROR: AgentStatus.ERROR,
    DetectedStatus.IDLE: AgentStatus.IDLE,
}


class WorktreeBackend(Protocol):
    def checkout_path_for(self, branch: str) -> Path: ...

    async def branch_exists(self, name: str) -> bool: ...

    async def create_branch(self, name: str) -> None: ...

    async def create_checkout(self, branch: str, path: Path) -> Path: ...

    async def commit_all(self, path: Path, message: str) -> bool: ...

    async def has_conflicts(self, path: Path) -> bool: ...

    async def remove_checkout(self, path: Path) -> None: ...

    async def remove_branch(self, name: str) -> None: ...

    async def sync_status(self, path: Path) -> SyncStatus: ...


class DevServerHooks(Protocol):
    async def stop(self, agent_id: str) -> None: ...

    def forget(self, agent_id: str) -> None: ...


@dataclass(frozen=True, slots=True)
class CreatePlan:
    agent_id: str
    name: str
    branch: str
    path: Path
    session_name: str
    command: str
    note: str | None = None


@dataclass(frozen=True, slots=True)
class CreateResult:
    agent: Agent
    record: WorktreeRecord


@dataclass(frozen=True, slots=True)
class PausePlan:
    agent_id: str
    name: str
    path: Path


@dataclass(frozen=True, slots=True)
class ResumePlan:
    agent_id: str
    branch: str
    path: Path
    session_name: str
    command: str


@dataclass(frozen=True, slots=True)
class RestartPlan:
    agent_id: str
    path: Path
    session_name: str
    command: str


@dataclass(frozen=True, slots=True)
class DeletePlan:
    agent_id: str
    branch: str
    path: Path
    session_name: str
    checkout_exists: bool
    keep_branch: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentRegistry:
    """Owns agents and worktree records and drives their lifecycle."""

    def __init__(
        self,
        worktrees: WorktreeBackend,
        sessions: SessionHost,
        *,
        detector: StatusDetector | None = None,
        agent_command: str = "claude",
        session_prefix: str = "flock-",
        devservers: DevServerHooks | None = None,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._worktrees = worktrees
        self._sessions = sessions
        self._detector = detector or StatusDetector()
        self._agent_command = agent_command
        self._session_prefix = session_prefix
        self._devservers = devservers
        self._clock = clock or _utcnow
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._agents: dict[str, Agent] = {}
        self._records: dict[str, WorktreeRecord] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def find(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def get(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        return agent

    def agents(self) -> list[Agent]:
        return sorted(self._agents.values(), key=lambda agent: agent.created_at)

    def record_for(self, agent_id: str) -> WorktreeRecord | None:
        return self._records.get(agent_id)

    def session_handle(self, agent_id: str) -> SessionHandle:
        return SessionHandle(self.get(agent_id).session_name)

    @property
    def sessions(self) -> SessionHost:
        return self._sessions

    @property
    def session_prefix(self) -> str:
        return self._session_prefix

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------
    def plan_create(self, name: str, branch: str | None = None, note: str | None = None) -> CreatePlan:
        sanitized = sanitize_branch_name(name)
        if not sanitized:
            raise InvalidName("Agent name must contain at least one non-whitespace character")
        branch_name = sanitize_branch_name(branch) if branch and branch.strip() else sanitized
        path = self._worktrees.checkout_path_for(branch_name)
        self._check_path_free(path)
        agent_id = self._id_factory()
        return CreatePlan(
            agent_id=agent_id,
            name=" ".join(name.split()),
            branch=branch_name,
            path=path,
            session_name=f"{self._session_prefix}{agent_id}",
            command=self._agent_command,
            note=note,
        )

    async def provision(self, plan: CreatePlan) -> CreateResult:
        """Create branch, checkout and session; undo completed steps on failure."""

        created_branch = False
        checkout: Path | None = None
        handle: SessionHandle | None = None
        try:
            if not await self._worktrees.branch_exists(plan.branch):
                try:
                    await self._worktrees.create_branch(plan.branch)
                except GitCommandError as exc:
                    raise BranchConflict(f"Cannot create branch '{plan.branch}': {exc}") from exc
                created_branch = True

            try:
                checkout = await self._worktrees.create_checkout(plan.branch, plan.path)
            except GitCommandError as exc:
                if exc.checked_out_elsewhere:
                    raise BranchConflict(
                        f"Branch '{plan.branch}' is already checked out elsewhere"
                    ) from exc
                raise CheckoutIoFailure(f"Cannot create worktree at {plan.path}: {exc}") from exc
            except OSError as exc:
                raise CheckoutIoFailure(f"Cannot create worktree at {plan.path}: {exc}") from exc

            try:
                handle = await asyncio.to_thread(
                    self._sessions.create, plan.session_name, checkout, plan.command
                )
            except SessionHostError as exc:
                raise SessionSpawnFailure(str(exc)) from exc
        except Exception:
            await self._rollback_create(plan, handle, checkout, created_branch)
            raise

        now = self._clock()
        agent = Agent(
            id=plan.agent_id,
            name=plan.name,
            branch=plan.branch,
            worktree_path=checkout,
            session_name=plan.session_name,
            status=AgentStatus.STARTING,
            note=plan.note,
            created_at=now,
        )
        record = WorktreeRecord(agent_id=plan.agent_id, path=checkout, branch=plan.branch)
        return CreateResult(agent=agent, record=record)

    async def _rollback_create(
        self,
        plan: CreatePlan,
        handle: SessionHandle | None,
        checkout: Path | None,
        created_branch: bool,
    ) -> None:
        if handle is not None:
            try:
                await asyncio.to_thread(self._sessions.kill, handle)
            except SessionHostError as exc:
                logger.warning("Rollback: failed to kill session", extra={"session": handle.name, "error": str(exc)})
        if checkout is not None:
            try:
                await self._worktrees.remove_checkout(checkout)
            except (GitCommandError, OSError) as exc:
                logger.warning("Rollback: failed to remove worktree", extra={"path": str(checkout), "error": str(exc)})
        if created_branch:
            try:
                await self._worktrees.remove_branch(plan.branch)
            except GitCommandError as exc:
                logger.warning("Rollback: failed to delete branch", extra={"branch": plan.branch, "error": str(exc)})
        logger.info("Rolled back agent creation", extra={"agent_id": plan.agent_id, "branch": plan.branch})

    def _check_path_free(self, path: Path) -> None:
        # Paused agents keep their path reserved so that resume can check it out again.
        for record in self._records.values():
            if record.path == path:
                raise BranchConflict(f"Worktree path {path} already belongs to agent '{record.agent_id}'")

    def add(self, result: CreateResult) -> Agent:
        agent = result.agent
        self._check_path_free(result.record.path)
        self._agents[agent.id] = agent
        self._records[agent.id] = result.record
        logger.info("Agent created", extra={"agent_id": agent.id, "branch": agent.branch})
        return agent

    async def create(self, name: str, branch: str | None = None, note: str | None = None) -> Agent:
        plan = self.plan_create(name, branch, note)
        result = await self.provision(plan)
        return self.add(result)

    # ------------------------------------------------------------------
    # pause
    # ------------------------------------------------------------------
    def plan_pause(self, agent_id: str) -> PausePlan:
        agent = self.get(agent_id)
        if not agent.status.is_pausable:
            raise NotPausable(f"Agent '{agent.name}' cannot be paused while {agent.status.value}")
        return PausePlan(agent_id=agent.id, name=agent.name, path=agent.worktree_path)

    async def suspend(self, plan: PausePlan) -> bool:
        """Commit outstanding work and drop the checkout; return whether a commit was made."""

        try:
            if await self._worktrees.has_conflicts(plan.path):
                raise UncommittedConflict(f"Agent '{plan.name}' has unresolved merge conflicts")
            committed = await self._worktrees.commit_all(plan.path, f"[flock] paused '{plan.name}'")
            await self._worktrees.remove_checkout(plan.path)
        except GitCommandError as exc:
            raise PauseError(f"Failed to pause agent '{plan.name}': {exc}") from exc
        return committed

    def mark_paused(self, agent_id: str) -> Agent:
        agent = self.get(agent_id)
        agent.status = AgentStatus.PAUSED
        agent.status_message = None
        record = self._records.get(agent_id)
        if record is not None:
            record.exists = False
        logger.info("Agent paused", extra={"agent_id": agent_id})
        return agent

    async def pause(self, agent_id: str) -> Agent:
        plan = self.plan_pause(agent_id)
        if self._devservers is not None:
            await self._devservers.stop(agent_id)
        await self.suspend(plan)
        return self.mark_paused(agent_id)

    # ------------------------------------------------------------------
    # resume
    # ------------------------------------------------------------------
    def plan_resume(self, agent_id: str) -> ResumePlan:
        agent = self.get(agent_id)
        if agent.status is not AgentStatus.PAUSED:
            raise NotResumable(f"Agent '{agent.name}' is not paused")
        return ResumePlan(
            agent_id=agent.id,
            branch=agent.branch,
            path=agent.worktree_path,
            session_name=agent.session_name,
            command=self._agent_command,
        )

    async def reopen(self, plan: ResumePlan) -> bool:
        """Recreate the checkout, and the session if it died; return whether the session was recreated."""

        if not await self._worktrees.branch_exists(plan.branch):
            raise BranchMissing(f"Branch '{plan.branch}' no longer exists")
        try:
            await self._worktrees.create_checkout(plan.branch, plan.path)
        except GitCommandError as exc:
            if exc.checked_out_elsewhere:
                raise WorktreeConflict(f"Branch '{plan.branch}' is checked out elsewhere") from exc
            raise ResumeError(f"Cannot recreate worktree at {plan.path}: {exc}") from exc
        except OSError as exc:
            raise ResumeError(f"Cannot recreate worktree at {plan.path}: {exc}") from exc

        handle = SessionHandle(plan.session_name)
        if await asyncio.to_thread(self._sessions.exists, handle):
            return False
        try:
            await asyncio.to_thread(self._sessions.create, plan.session_name, plan.path, plan.command)
        except SessionHostError as exc:
            try:
                await self._worktrees.remove_checkout(plan.path)
            except (GitCommandError, OSError) as cleanup_exc:
                logger.warning(
                    "Rollback: failed to remove worktree",
                    extra={"path": str(plan.path), "error": str(cleanup_exc)},
                )
            raise ResumeError(f"Cannot restart session '{plan.session_name}': {exc}") from exc
        return True

    def mark_resumed(self, agent_id: str) -> Agent:
        agent = self.get(agent_id)
        agent.status = AgentStatus.STARTING
        agent.status_message = None
        record = self._records.get(agent_id)
        if record is not None:
            record.exists = True
        logger.info("Agent resumed", extra={"agent_id": agent_id})
        return agent

    async def resume(self, agent_id: str) -> Agent:
        plan = self.plan_resume(agent_id)
        await self.reopen(plan)
        return self.mark_resumed(agent_id)

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------
    def plan_delete(self, agent_id: str, keep_branch: bool = False) -> DeletePlan | None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        record = self._records.get(agent_id)
        return DeletePlan(
            agent_id=agent.id,
            branch=agent.branch,
            path=agent.worktree_path,
            session_name=agent.session_name,
            checkout_exists=record.exists if record else False,
            keep_branch=keep_branch,
        )

    async def teardown(self, plan: DeletePlan) -> None:
        """Best-effort removal of everything the agent owns outside the registry."""

        try:
            await asyncio.to_thread(self._sessions.kill, SessionHandle(plan.session_name))
        except SessionHostError as exc:
            logger.warning("Failed to kill session", extra={"session": plan.session_name, "error": str(exc)})
        if plan.checkout_exists:
            try:
                await self._worktrees.remove_checkout(plan.path)
            except (GitCommandError, OSError) as exc:
                logger.warning("Failed to remove worktree", extra={"path": str(plan.path), "error": str(exc)})
        if not plan.keep_branch:
            try:
                await self._worktrees.remove_branch(plan.branch)
            except GitCommandError as exc:
                logger.warning("Failed to delete branch", extra={"branch": plan.branch, "error": str(exc)})

    def remove(self, agent_id: str) -> Agent | None:
        agent = self._agents.pop(agent_id, None)
        self._records.pop(agent_id, None)
        if self._devservers is not None:
            self._devservers.forget(agent_id)
        if agent is not None:
            agent.status = AgentStatus.DELETED
            logger.info("Agent deleted", extra={"agent_id": agent_id})
        return agent

    async def delete(self, agent_id: str, keep_branch: bool = False) -> bool:
        plan = self.plan_delete(agent_id, keep_branch)
        if plan is None:
            return False
        if self._devservers is not None:
            await self._devservers.stop(agent_id)
        await self.teardown(plan)
        self.remove(agent_id)
        return True

    # ------------------------------------------------------------------
    # restart
    # ------------------------------------------------------------------
    def plan_restart(self, agent_id: str) -> RestartPlan:
        agent = self.get(agent_id)
        if not agent.status.is_live:
            raise NotRestartable(f"Agent '{agent.name}' cannot be restarted while {agent.status.value}")
        return RestartPlan(
            agent_id=agent.id,
            path=agent.worktree_path,
            session_name=agent.session_name,
            command=self._agent_command,
        )

    async def relaunch(self, plan: RestartPlan) -> bool:
        """Interrupt the running agent and send its command again.

        A dead session is recreated in the checkout instead. Returns whether the
        session had to be recreated.
        """

        handle = SessionHandle(plan.session_name)
        try:
            if await asyncio.to_thread(self._sessions.exists, handle):
                await asyncio.to_thread(self._sessions.interrupt, handle)
                await asyncio.sleep(RESTART_SETTLE_SECONDS)
                await asyncio.to_thread(self._sessions.send_keys, handle, plan.command)
                return False
            await asyncio.to_thread(self._sessions.create, plan.session_name, plan.path, plan.command)
        except SessionHostError as exc:
            raise RestartError(f"Cannot restart session '{plan.session_name}': {exc}") from exc
        return True

    def mark_restarted(self, agent_id: str) -> Agent:
        agent = self.get(agent_id)
        agent.status = AgentStatus.STARTING
        agent.status_message = None
        logger.info("Agent restarted", extra={"agent_id": agent_id})
        return agent

    async def restart(self, agent_id: str) -> Agent:
        plan = self.plan_restart(agent_id)
        await self.relaunch(plan)
        return self.mark_restarted(agent_id)

    # ------------------------------------------------------------------
    # Sessions and checkouts
    # ------------------------------------------------------------------
    def orphaned_sessions(self, running: Iterable[str], pending: Iterable[str] = ()) -> list[str]:
        """Sessions with our prefix that no agent (or in-flight create) owns."""

        known = {agent.session_name for agent in self._agents.values()} | set(pending)
        return sorted(
            name for name in running if name.startswith(self._session_prefix) and name not in known
        )

    async def find_orphaned_sessions(self) -> list[str]:
        running = await asyncio.to_thread(self._sessions.list_sessions, self._session_prefix)
        return self.orphaned_sessions(running)

    def checkout_for(self, agent_id: str) -> Path:
        agent = self.get(agent_id)
        record = self._records.get(agent_id)
        if record is None or not record.exists:
            raise SyncError(f"Agent '{agent.name}' has no checkout while {agent.status.value}")
        return record.path

    async def read_sync_status(self, path: Path) -> SyncStatus:
        try:
            return await self._worktrees.sync_status(path)
        except GitCommandError as exc:
            raise SyncError(f"Cannot read sync status for {path}: {exc}") from exc

    async def sync_status(self, agent_id: str) -> SyncStatus:
        return await self.read_sync_status(self.checkout_for(agent_id))

    # ------------------------------------------------------------------
    # Status and annotations
    # ------------------------------------------------------------------
    def update_status(
        self,
        agent_id: str,
        snapshot: str,
        quiet_for: float | None = None,
        now: datetime | None = None,
    ) -> Agent:
        """Classify a pane snapshot and move the agent's status accordingly."""

        agent = self.get(agent_id)
        now = now or self._clock()
        agent.last_output_at = now - timedelta(seconds=quiet_for) if quiet_for else now
        if not agent.status.is_live:
            return agent

        detection = self._detector.detect(snapshot, quiet_for)
        quiet = quiet_for is not None and quiet_for >= self._detector.patterns.quiet_threshold
        if (
            agent.status in (AgentStatus.CREATED, AgentStatus.STARTING)
            and detection.status is DetectedStatus.IDLE
            and not quiet
        ):
            return agent

        status = _DETECTED_TO_STATUS[detection.status]
        if status is not agent.status:
            logger.debug(
                "Agent status changed",
                extra={"agent_id": agent_id, "from": agent.status.value, "to": status.value},
            )
        agent.status = status
        agent.status_message = detection.message if status is AgentStatus.ERROR else None
        return agent

    def set_error(self, agent_id: str, message: str) -> Agent | None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        agent.status_message = message
        if agent.status.is_live:
            agent.status = AgentStatus.ERROR
        logger.warning("Agent error", extra={"agent_id": agent_id, "error": message})
        return agent

    def set_note(self, agent_id: str, note: str | None) -> Agent:
        agent = self.get(agent_id)
        agent.note = note.strip() if note and note.strip() else None
        return agent

    def set_external_state(self, agent_id: str, source: str, state: str | None) -> Agent | None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        if state is None:
            agent.external_state.pop(source, None)
        else:
            agent.external_state[source] = state
        return agent

    async def send_input(self, agent_id: str, text: str, *, enter: bool = True) -> None:
        handle = self.session_handle(agent_id)
        await asyncio.to_thread(self._sessions.send_keys, handle, text, enter=enter)

    # ------------------------------------------------------------------
    # Persistence hooks
    # ------------------------------------------------------------------
    def serialize(self) -> list[dict[str, Any]]:
        payload: list[dict[str, Any]] = []
        for agent in self.agents():
            entry = agent.to_dict()
            record = self._records.get(agent.id)
            entry["worktree"] = record.to_dict() if record else None
            payload.append(entry)
        return payload

    def restore(self, records: Iterable[Mapping[str, Any]]) -> None:
        agents: dict[str, Agent] = {}
        worktrees: dict[str, WorktreeRecord] = {}
        for entry in records:
            agent = Agent.from_dict(entry)
            agents[agent.id] = agent
            worktree = entry.get("worktree")
            if worktree:
                worktrees[agent.id] = WorktreeRecord.from_dict(worktree)
            else:
                worktrees[agent.id] = WorktreeRecord(
                    agent_id=agent.id,
                    path=agent.worktree_path,
                    branch=agent.branch,
                    exists=agent.status.is_live,
                )
        self._agents = agents
        self._records = worktrees
        logger.info("Registry restored", extra={"agents": len(agents)})


__all__ = [
    "AgentRegistry",
    "CreatePlan",
    "CreateResult",
    "DeletePlan",
    "DevServerHooks",
    "PausePlan",
    "RESTART_SETTLE_SECONDS",
    "RestartPlan",
    "ResumePlan",
    "WorktreeBackend",
]
