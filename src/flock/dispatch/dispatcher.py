"""Single-consumer action loop that owns registry and dev-server bookkeeping."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ..agents import AgentRegistry, AgentStatus, CreateResult
from ..devserver import DevServerConfig, DevServerLaunch, DevServerSupervisor, StartPlan, StopPlan
from ..errors import BranchConflict, FlockError, NotConfigured
from ..integrations import IntegrationCollaborator, IntegrationRefresher
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
from .pollers import StatusPoller
from .snapshot import Snapshot

logger = logging.getLogger(__name__)

Listener = Callable[[Action], None]

# Reports from work that already happened; still applied while shutting down.
_COMPLETIONS = (
    AgentCreated,
    AgentPaused,
    AgentResumed,
    AgentDeleted,
    AgentRestarted,
    AgentOutput,
    AgentFailed,
    DevServerStarted,
    DevServerStopped,
    DevServerExited,
    ExternalStateUpdated,
)


def _resolve(future: asyncio.Future[Any] | None, value: Any) -> None:
    if future is not None and not future.done():
        future.set_result(value)


def _reject(future: asyncio.Future[Any] | None, exc: BaseException) -> None:
    if future is not None and not future.done():
        future.set_exception(exc)


class ActionDispatcher:
    """Apply actions one at a time, in arrival order.

    Handlers are synchronous. Anything slow runs in a tracked background task
    that reports back by submitting a completion action, so registry and
    supervisor bookkeeping only change inside this loop.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        devservers: DevServerSupervisor,
        *,
        poll_interval: float = 0.5,
        capture_lines: int = 100,
        devserver_defaults: DevServerConfig | None = None,
        collaborators: Sequence[IntegrationCollaborator] = (),
        refresh_interval: float = 30.0,
        start_pollers: bool = True,
    ) -> None:
        self._registry = registry
        self._devservers = devservers
        self._poll_interval = poll_interval
        self._capture_lines = capture_lines
        self._devserver_defaults = devserver_defaults
        self._start_pollers = start_pollers
        self._queue: asyncio.Queue[Action] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._pollers: dict[str, tuple[StatusPoller, asyncio.Task[Any]]] = {}
        self._pending_paths: set[Path] = set()
        self._pending_sessions: set[str] = set()
        self._busy: set[str] = set()
        self._refresher = (
            IntegrationRefresher(
                collaborators,
                agent_ids=lambda: [agent.id for agent in self._registry.agents()],
                on_state=self._on_external_state,
                interval=refresh_interval,
            )
            if collaborators
            else None
        )
        self._refresher_task: asyncio.Task[Any] | None = None
        self._stopping = False
        self._stopped = False
        self._handlers: dict[type[Action], Callable[[Any], None]] = {
            CreateAgent: self._on_create,
            AgentCreated: self._on_created,
            PauseAgent: self._on_pause,
            AgentPaused: self._on_paused,
            ResumeAgent: self._on_resume,
            AgentResumed: self._on_resumed,
            DeleteAgent: self._on_delete,
            AgentDeleted: self._on_deleted,
            RestartAgent: self._on_restart_agent,
            AgentRestarted: self._on_restarted,
            FindOrphanedSessions: self._on_find_orphans,
            QuerySyncStatus: self._on_query_sync_status,
            SendInput: self._on_send_input,
            SetAgentNote: self._on_set_note,
            AgentOutput: self._on_output,
            AgentFailed: self._on_failed,
            StartDevServer: self._on_start_devserver,
            DevServerStarted: self._on_devserver_started,
            StopDevServer: self._on_stop_devserver,
            DevServerStopped: self._on_devserver_stopped,
            RestartDevServer: self._on_restart_devserver,
            ConfigureDevServer: self._on_configure_devserver,
            DevServerExited: self._on_devserver_exited,
            ExternalStateUpdated: self._on_external_state_updated,
            RequestExternalTransition: self._on_external_transition,
            RestoreSnapshot: self._on_restore,
        }
        devservers.set_exit_callback(self._on_devserver_exit)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------
    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    @property
    def devservers(self) -> DevServerSupervisor:
        return self._devservers

    @property
    def stopped(self) -> bool:
        return self._stopped

    def submit(self, action: Action) -> None:
        self._queue.put_nowait(action)

    def submit_threadsafe(self, action: Action) -> None:
        if self._loop is None:
            raise RuntimeError("Dispatcher loop is not running")
        self._loop.call_soon_threadsafe(self._queue.put_nowait, action)

    def request(self, action: Action) -> asyncio.Future[Any]:
        """Submit a copy of ``action`` carrying a reply future and return that future."""

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self.submit(dataclasses.replace(action, reply=future))
        return future

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def poller(self, agent_id: str) -> StatusPoller | None:
        entry = self._pollers.get(agent_id)
        return entry[0] if entry else None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self._refresher is not None and self._refresher_task is None:
            self._refresher_task = asyncio.create_task(self._refresher.run())
        logger.info("Dispatcher started")
        while True:
            action = await self._queue.get()
            try:
                await self._process(action)
            finally:
                self._queue.task_done()
            if isinstance(action, Shutdown):
                break
        logger.info("Dispatcher stopped")

    async def drain(self, *, wait_tasks: bool = True) -> int:
        """Apply everything queued, including actions produced while draining.

        With ``wait_tasks`` background work (creates, pauses, dev-server starts)
        is awaited too; pollers and the refresher are not.
        """

        self._loop = asyncio.get_running_loop()
        applied = 0
        while True:
            while not self._queue.empty():
                action = self._queue.get_nowait()
                try:
                    await self._process(action)
                finally:
                    self._queue.task_done()
                applied += 1
            pending = [task for task in self._tasks if not task.done()]
            if not wait_tasks or not pending:
                if self._queue.empty():
                    return applied
                continue
            await asyncio.wait(pending)

    async def _process(self, action: Action) -> None:
        if isinstance(action, Shutdown):
            await self._shutdown(action)
        else:
            self._dispatch(action)
        self._notify(action)

    def _dispatch(self, action: Action) -> None:
        handler = self._handlers.get(type(action))
        if handler is None:
            logger.warning("No handler for action", extra={"action": type(action).__name__})
            _reject(action.reply, TypeError(f"Unsupported action {type(action).__name__}"))
            return
        try:
            handler(action)
        except FlockError as exc:
            logger.info(
                "Action rejected",
                extra={"action": type(action).__name__, "error": str(exc)},
            )
            _reject(action.reply, exc)
        except Exception as exc:
            logger.exception("Action handler failed", extra={"action": type(action).__name__})
            _reject(action.reply, exc)
            if isinstance(action, AgentAction) and not isinstance(action, AgentFailed):
                self.submit(AgentFailed(action.agent_id, message=str(exc)))

    def _notify(self, action: Action) -> None:
        for listener in list(self._listeners):
            try:
                listener(action)
            except Exception:
                logger.exception("Action listener failed", extra={"action": type(action).__name__})

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------
    def _spawn(
        self,
        coro: Awaitable[Any],
        *,
        agent_id: str | None = None,
        reply: asyncio.Future[Any] | None = None,
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(self._guard(coro, agent_id, reply))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(
        self,
        coro: Awaitable[Any],
        agent_id: str | None,
        reply: asyncio.Future[Any] | None,
    ) -> None:
        try:
            result = await coro
        except asyncio.CancelledError:
            if reply is not None and not reply.done():
                reply.cancel()
            raise
        except FlockError as exc:
            logger.warning("Background operation failed", extra={"agent_id": agent_id, "error": str(exc)})
            _reject(reply, exc)
        except Exception as exc:
            logger.exception("Background task crashed", extra={"agent_id": agent_id})
            _reject(reply, exc)
            if agent_id is not None:
                self.submit(AgentFailed(agent_id, message=str(exc)))
        else:
            _resolve(reply, result)

    def _check_idle(self, agent_id: str) -> None:
        if agent_id in self._busy:
            raise FlockError(f"Agent '{agent_id}' already has an operation in progress")

    def _begin(self, agent_id: str) -> None:
        self._check_idle(agent_id)
        self._busy.add(agent_id)

    def _start_poller(self, agent_id: str) -> None:
        if not self._start_pollers or self._stopping or agent_id in self._pollers:
            return
        agent = self._registry.get(agent_id)
        poller = StatusPoller(
            agent_id,
            agent.session_name,
            self._registry.sessions,
            self.submit,
            interval=self._poll_interval,
            lines=self._capture_lines,
        )
        task = asyncio.create_task(poller.run())
        self._pollers[agent_id] = (poller, task)

    def _stop_poller(self, agent_id: str) -> None:
        entry = self._pollers.pop(agent_id, None)
        if entry is not None:
            entry[1].cancel()

    # ------------------------------------------------------------------
    # Agent lifecycle handlers
    # ------------------------------------------------------------------
    def _on_create(self, action: CreateAgent) -> None:
        plan = self._registry.plan_create(action.name, action.branch, action.note)
        if plan.path in self._pending_paths:
            raise BranchConflict(f"Worktree path {plan.path} is already being created")
        self._pending_paths.add(plan.path)
        self._pending_sessions.add(plan.session_name)

        async def provision() -> None:
            try:
                result = await self._registry.provision(plan)
            except Exception as exc:
                self.submit(AgentCreated(error=exc, session_name=plan.session_name, reply=action.reply))
            else:
                self.submit(
                    AgentCreated(
                        agent=result.agent,
                        record=result.record,
                        session_name=plan.session_name,
                        reply=action.reply,
                    )
                )
            finally:
                self._pending_paths.discard(plan.path)

        self._spawn(provision())

    def _on_created(self, action: AgentCreated) -> None:
        self._pending_sessions.discard(action.session_name)
        if action.error is not None or action.agent is None or action.record is None:
            _reject(action.reply, action.error or RuntimeError("Agent creation produced no agent"))
            return
        agent = self._registry.add(CreateResult(agent=action.agent, record=action.record))
        self._start_poller(agent.id)
        _resolve(action.reply, agent.copy())

    def _on_pause(self, action: PauseAgent) -> None:
        plan = self._registry.plan_pause(action.agent_id)
        self._begin(plan.agent_id)
        devserver = self._devservers.plan_stop(plan.agent_id)

        async def suspend() -> None:
            try:
                if devserver is not None:
                    await self._devservers.terminate(devserver)
                await self._registry.suspend(plan)
            except Exception as exc:
                self.submit(AgentPaused(plan.agent_id, error=exc, devserver=devserver, reply=action.reply))
            else:
                self.submit(AgentPaused(plan.agent_id, devserver=devserver, reply=action.reply))

        self._spawn(suspend(), agent_id=plan.agent_id)

    def _on_paused(self, action: AgentPaused) -> None:
        self._busy.discard(action.agent_id)
        if action.devserver is not None:
            self._devservers.mark_stopped(action.devserver)
        if action.error is not None:
            self._fail_operation(action.agent_id, action.error, action.reply)
            return
        agent = self._registry.mark_paused(action.agent_id)
        self._stop_poller(action.agent_id)
        _resolve(action.reply, agent.copy())

    def _on_resume(self, action: ResumeAgent) -> None:
        plan = self._registry.plan_resume(action.agent_id)
        self._begin(plan.agent_id)

        async def reopen() -> None:
            try:
                await self._registry.reopen(plan)
            except Exception as exc:
                self.submit(AgentResumed(plan.agent_id, error=exc, reply=action.reply))
            else:
                self.submit(AgentResumed(plan.agent_id, reply=action.reply))

        self._spawn(reopen(), agent_id=plan.agent_id)

    def _on_resumed(self, action: AgentResumed) -> None:
        self._busy.discard(action.agent_id)
        if action.error is not None:
            self._fail_operation(action.agent_id, action.error, action.reply)
            return
        agent = self._registry.mark_resumed(action.agent_id)
        self._start_poller(action.agent_id)
        _resolve(action.reply, agent.copy())

    def _on_delete(self, action: DeleteAgent) -> None:
        plan = self._registry.plan_delete(action.agent_id, action.keep_branch)
        if plan is None:
            _resolve(action.reply, False)
            return
        self._begin(plan.agent_id)
        self._stop_poller(plan.agent_id)
        devserver = self._devservers.plan_stop(plan.agent_id)

        async def teardown() -> None:
            try:
                if devserver is not None:
                    await self._devservers.terminate(devserver)
                await self._registry.teardown(plan)
            except Exception as exc:
                self.submit(AgentDeleted(plan.agent_id, error=exc, reply=action.reply))
            else:
                self.submit(AgentDeleted(plan.agent_id, reply=action.reply))

        self._spawn(teardown(), agent_id=plan.agent_id)

    def _on_deleted(self, action: AgentDeleted) -> None:
        self._busy.discard(action.agent_id)
        if action.error is not None:
            logger.warning(
                "Agent teardown incomplete",
                extra={"agent_id": action.agent_id, "error": str(action.error)},
            )
        self._stop_poller(action.agent_id)
        self._registry.remove(action.agent_id)
        _resolve(action.reply, True)

    def _on_restart_agent(self, action: RestartAgent) -> None:
        plan = self._registry.plan_restart(action.agent_id)
        self._begin(plan.agent_id)

        async def relaunch() -> None:
            try:
                await self._registry.relaunch(plan)
            except Exception as exc:
                self.submit(AgentRestarted(plan.agent_id, error=exc, reply=action.reply))
            else:
                self.submit(AgentRestarted(plan.agent_id, reply=action.reply))

        self._spawn(relaunch(), agent_id=plan.agent_id)

    def _on_restarted(self, action: AgentRestarted) -> None:
        self._busy.discard(action.agent_id)
        if action.error is not None:
            self._fail_operation(action.agent_id, action.error, action.reply)
            return
        agent = self._registry.mark_restarted(action.agent_id)
        self._start_poller(action.agent_id)
        _resolve(action.reply, agent.copy())

    def _on_find_orphans(self, action: FindOrphanedSessions) -> None:
        if action.running is not None:
            _resolve(action.reply, self._registry.orphaned_sessions(action.running, self._pending_sessions))
            return

        async def list_sessions() -> None:
            try:
                running = await asyncio.to_thread(
                    self._registry.sessions.list_sessions, self._registry.session_prefix
                )
            except Exception as exc:
                logger.warning("Listing tmux sessions failed", extra={"error": str(exc)})
                _reject(action.reply, exc)
            else:
                self.submit(FindOrphanedSessions(running=tuple(running), reply=action.reply))

        self._spawn(list_sessions())

    def _on_query_sync_status(self, action: QuerySyncStatus) -> None:
        self._check_idle(action.agent_id)
        path = self._registry.checkout_for(action.agent_id)
        self._spawn(self._registry.read_sync_status(path), reply=action.reply)

    def _fail_operation(
        self,
        agent_id: str,
        error: BaseException,
        reply: asyncio.Future[Any] | None,
    ) -> None:
        if not isinstance(error, FlockError):
            self._registry.set_error(agent_id, str(error))
        _reject(reply, error)

    def _on_send_input(self, action: SendInput) -> None:
        self._registry.get(action.agent_id)
        self._spawn(
            self._registry.send_input(action.agent_id, action.text, enter=action.enter),
            agent_id=action.agent_id,
            reply=action.reply,
        )

    def _on_set_note(self, action: SetAgentNote) -> None:
        agent = self._registry.set_note(action.agent_id, action.note)
        _resolve(action.reply, agent.copy())

    def _on_output(self, action: AgentOutput) -> None:
        if action.agent_id not in self._registry:
            return
        agent = self._registry.update_status(
            action.agent_id,
            action.snapshot,
            quiet_for=action.quiet_for,
            now=action.observed_at,
        )
        _resolve(action.reply, agent.status)

    def _on_failed(self, action: AgentFailed) -> None:
        self._registry.set_error(action.agent_id, action.message)
        _resolve(action.reply, None)

    # ------------------------------------------------------------------
    # Dev-server handlers
    # ------------------------------------------------------------------
    def _plan_devserver_start(self, agent_id: str, launch: DevServerLaunch | DevServerConfig) -> StartPlan:
        if self._stopping:
            raise FlockError("Dispatcher is shutting down")
        agent = self._registry.get(agent_id)
        self._check_idle(agent.id)
        if agent.status in (AgentStatus.PAUSED, AgentStatus.DELETED):
            raise NotConfigured(f"Agent '{agent.name}' has no checkout to serve from")
        if isinstance(launch, DevServerConfig):
            return self._devservers.plan_start(
                agent.id,
                launch.command,
                launch.resolve_working_dir(agent.worktree_path),
                launch.run_before,
                launch.port,
            )
        return self._devservers.plan_start(
            agent.id,
            launch.command,
            launch.working_dir,
            launch.pre_run_commands,
            launch.port,
        )

    def _launch_devserver(self, plan: StartPlan, reply: asyncio.Future[Any] | None) -> None:
        async def launch() -> None:
            try:
                process = await self._devservers.launch(plan)
            except Exception as exc:
                self.submit(DevServerStarted(plan.agent_id, plan=plan, error=exc, reply=reply))
            else:
                self.submit(DevServerStarted(plan.agent_id, plan=plan, process=process, reply=reply))

        self._spawn(launch(), agent_id=plan.agent_id)

    def _terminate_devserver(
        self,
        plan: StopPlan,
        reply: asyncio.Future[Any] | None,
        restart: DevServerLaunch | None = None,
    ) -> None:
        async def terminate() -> None:
            try:
                await self._devservers.terminate(plan)
            except Exception as exc:
                self.submit(DevServerStopped(plan.agent_id, plan=plan, restart=restart, error=exc, reply=reply))
            else:
                self.submit(DevServerStopped(plan.agent_id, plan=plan, restart=restart, reply=reply))

        self._spawn(terminate(), agent_id=plan.agent_id)

    def _on_start_devserver(self, action: StartDevServer) -> None:
        agent = self._registry.get(action.agent_id)
        config = self._devservers.config_for(agent.id, self._devserver_defaults)
        if config is None or not config.command:
            raise NotConfigured(f"No dev server command configured for agent '{agent.name}'")
        self._launch_devserver(self._plan_devserver_start(agent.id, config), action.reply)

    def _on_devserver_started(self, action: DevServerStarted) -> None:
        plan = action.plan
        if plan is None:
            _resolve(action.reply, self._devservers.status(action.agent_id))
            return
        if action.error is not None:
            self._devservers.mark_start_failed(plan, action.error)
            self._fail_operation(action.agent_id, action.error, action.reply)
            return
        if action.process is not None and not self._devservers.mark_started(plan, action.process):
            logger.info("Discarding superseded dev server", extra={"agent_id": action.agent_id})
            self._spawn(self._devservers.discard(action.process))
        _resolve(action.reply, self._devservers.status(action.agent_id))

    def _on_stop_devserver(self, action: StopDevServer) -> None:
        plan = self._devservers.plan_stop(action.agent_id)
        if plan is None:
            _resolve(action.reply, None)
            return
        self._terminate_devserver(plan, action.reply)

    def _on_restart_devserver(self, action: RestartDevServer) -> None:
        agent = self._registry.get(action.agent_id)
        self._check_idle(agent.id)
        launch = self._devservers.last_launch(agent.id)
        plan = self._devservers.plan_stop(agent.id)
        if plan is None:
            self._launch_devserver(self._plan_devserver_start(agent.id, launch), action.reply)
            return
        self._terminate_devserver(plan, action.reply, restart=launch)

    def _on_devserver_stopped(self, action: DevServerStopped) -> None:
        if action.plan is not None:
            self._devservers.mark_stopped(action.plan)
        if action.error is not None:
            if action.restart is None:
                self._fail_operation(action.agent_id, action.error, action.reply)
                return
            logger.warning(
                "Stop during restart failed",
                extra={"agent_id": action.agent_id, "error": str(action.error)},
            )
        if action.restart is None:
            _resolve(action.reply, None)
            return
        self._launch_devserver(self._plan_devserver_start(action.agent_id, action.restart), action.reply)

    def _on_configure_devserver(self, action: ConfigureDevServer) -> None:
        self._registry.get(action.agent_id)
        config = action.config or DevServerConfig()
        self._devservers.configure(action.agent_id, config)
        _resolve(action.reply, config)

    def _on_devserver_exit(self, agent_id: str, pid: int, returncode: int) -> None:
        self.submit(DevServerExited(agent_id, pid=pid, returncode=returncode))

    def _on_devserver_exited(self, action: DevServerExited) -> None:
        changed = self._devservers.mark_exited(action.agent_id, action.pid, action.returncode)
        _resolve(action.reply, changed)

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------
    def _on_external_state(self, agent_id: str, source: str, state: str | None) -> None:
        self.submit(ExternalStateUpdated(agent_id, source=source, state=state))

    def _on_external_state_updated(self, action: ExternalStateUpdated) -> None:
        agent = self._registry.set_external_state(action.agent_id, action.source, action.state)
        _resolve(action.reply, agent is not None)

    def _on_external_transition(self, action: RequestExternalTransition) -> None:
        self._registry.get(action.agent_id)
        collaborator = self._refresher.collaborator(action.source) if self._refresher else None
        if collaborator is None:
            raise FlockError(f"Unknown integration '{action.source}'")
        self._spawn(
            collaborator.request_status_transition(action.agent_id, action.new_state),
            agent_id=action.agent_id,
            reply=action.reply,
        )

    # ------------------------------------------------------------------
    # Persistence and shutdown
    # ------------------------------------------------------------------
    def serialize(self) -> Snapshot:
        return Snapshot(agents=self._registry.serialize(), devservers=self._devservers.serialize())

    def restore(self, snapshot: Snapshot | Mapping[str, Any]) -> asyncio.Future[Any]:
        return self.request(RestoreSnapshot(snapshot=snapshot))

    def _on_restore(self, action: RestoreSnapshot) -> None:
        snapshot = (
            action.snapshot
            if isinstance(action.snapshot, Snapshot)
            else Snapshot.model_validate(action.snapshot)
        )
        for agent_id in list(self._pollers):
            self._stop_poller(agent_id)
        self._registry.restore(snapshot.agents)
        self._devservers.restore(snapshot.devservers)
        for agent in self._registry.agents():
            if agent.status.is_live:
                self._start_poller(agent.id)
        _resolve(action.reply, len(self._registry))

    async def _wait_tasks(self, timeout: float) -> None:
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def _settle(self) -> None:
        """Let in-flight work report back so every spawned dev server is known before stop_all.

        Queued completions are applied; queued requests are rejected since the
        loop will not reach them.
        """

        await self._wait_tasks(self._devservers.kill_grace + 1.0)
        while not self._queue.empty():
            queued = self._queue.get_nowait()
            self._queue.task_done()
            if isinstance(queued, _COMPLETIONS):
                self._dispatch(queued)
            elif not isinstance(queued, Shutdown):
                _reject(queued.reply, FlockError("Dispatcher is shutting down"))

    async def _shutdown(self, action: Shutdown) -> None:
        self._stopping = True
        for agent_id in list(self._pollers):
            self._stop_poller(agent_id)
        if self._refresher_task is not None:
            self._refresher_task.cancel()
            self._refresher_task = None
        await self._settle()
        errors = await self._devservers.stop_all()
        await self._wait_tasks(self._devservers.kill_grace + 1.0)
        for task in list(self._tasks):
            task.cancel()
        self._stopped = True
        _resolve(action.reply, errors)


__all__ = ["ActionDispatcher", "Listener"]
