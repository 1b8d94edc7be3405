"""Supervise one auxiliary dev-server process per agent."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from ..errors import AlreadyRunning, NotConfigured, PreRunFailed, SpawnFailure
from .models import DevServerConfig, DevServerLaunch, DevServerState, DevServerStatus
from .process import DEFAULT_LOG_CAPACITY, LogBuffer, ProcessSpawner

logger = logging.getLogger(__name__)

ExitCallback = Callable[[str, int, int], None]


@dataclass(slots=True)
class DevServerInstance:
    agent_id: str
    logs: LogBuffer
    status: DevServerStatus = field(default_factory=DevServerStatus.stopped)
    launch: DevServerLaunch | None = None
    process: asyncio.subprocess.Process | None = None
    tasks: list[asyncio.Task[Any]] = field(default_factory=list)
    generation: int = 0


@dataclass(frozen=True, slots=True)
class StartPlan:
    agent_id: str
    generation: int
    launch: DevServerLaunch
    logs: LogBuffer = field(compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class StopPlan:
    """The process and reader tasks a stop owns; later starts never touch them."""

    agent_id: str
    generation: int
    process: asyncio.subprocess.Process | None = field(default=None, compare=False)
    tasks: tuple[asyncio.Task[Any], ...] = field(default=(), compare=False, repr=False)


class DevServerSupervisor:
    """Start, stop and observe dev servers keyed by agent id.

    ``on_exit`` receives ``(agent_id, pid, returncode)`` when a server exits on
    its own. When no callback is given the supervisor applies
    :meth:`mark_exited` itself.
    """

    def __init__(
        self,
        *,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
        kill_grace: float = 5.0,
        spawner: ProcessSpawner | None = None,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self._log_capacity = log_capacity
        self._kill_grace = kill_grace
        self._spawner = spawner or ProcessSpawner()
        self._on_exit = on_exit or self.mark_exited
        self._instances: dict[str, DevServerInstance] = {}
        self._configs: dict[str, DevServerConfig] = {}

    @property
    def kill_grace(self) -> float:
        return self._kill_grace

    def set_exit_callback(self, callback: ExitCallback | None) -> None:
        self._on_exit = callback or self.mark_exited

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def get(self, agent_id: str) -> DevServerInstance | None:
        return self._instances.get(agent_id)

    def status(self, agent_id: str) -> DevServerStatus:
        instance = self._instances.get(agent_id)
        return instance.status if instance else DevServerStatus.stopped()

    def logs(self, agent_id: str) -> tuple[str, ...]:
        instance = self._instances.get(agent_id)
        return instance.logs.snapshot() if instance else ()

    def running_servers(self) -> list[tuple[str, int, int | None]]:
        return [
            (agent_id, instance.status.pid, instance.status.port)
            for agent_id, instance in self._instances.items()
            if instance.status.is_running and instance.status.pid is not None
        ]

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def configure(self, agent_id: str, config: DevServerConfig) -> None:
        self._configs[agent_id] = config

    def config_for(self, agent_id: str, default: DevServerConfig | None = None) -> DevServerConfig | None:
        return self._configs.get(agent_id, default)

    def serialize(self) -> dict[str, dict[str, Any]]:
        return {agent_id: config.model_dump() for agent_id, config in self._configs.items()}

    def restore(self, configs: Mapping[str, Mapping[str, Any] | DevServerConfig]) -> None:
        self._configs = {
            agent_id: DevServerConfig.model_validate(config) for agent_id, config in configs.items()
        }

    # ------------------------------------------------------------------
    # Lifecycle
    #
    # ``start`` and ``stop`` are each split into a synchronous plan step, an
    # async step that only touches the processes named in the plan, and a
    # synchronous apply step that ignores plans superseded by a later one.
    # ------------------------------------------------------------------
    def _instance(self, agent_id: str) -> DevServerInstance:
        instance = self._instances.get(agent_id)
        if instance is None:
            instance = DevServerInstance(agent_id=agent_id, logs=LogBuffer(self._log_capacity))
            self._instances[agent_id] = instance
        return instance

    def _is_current(self, agent_id: str, generation: int) -> bool:
        instance = self._instances.get(agent_id)
        return instance is not None and instance.generation == generation

    def last_launch(self, agent_id: str) -> DevServerLaunch:
        instance = self._instances.get(agent_id)
        if instance is None or instance.launch is None:
            raise NotConfigured(f"Dev server for agent '{agent_id}' has never been started")
        return instance.launch

    def plan_start(
        self,
        agent_id: str,
        command: str | None,
        working_dir: Path | str,
        pre_run_commands: Iterable[str] = (),
        port: int | None = None,
    ) -> StartPlan:
        instance = self._instance(agent_id)
        if instance.status.is_active or instance.status.state is DevServerState.STOPPING:
            raise AlreadyRunning(f"Dev server for agent '{agent_id}' is already {instance.status.state.value}")
        if not command or not command.strip():
            raise NotConfigured(f"No dev server command configured for agent '{agent_id}'")

        launch = DevServerLaunch(
            command=command,
            working_dir=Path(working_dir),
            pre_run_commands=tuple(pre_run_commands),
            port=port,
        )
        instance.launch = launch
        instance.generation += 1
        instance.status = DevServerStatus.starting()
        return StartPlan(agent_id=agent_id, generation=instance.generation, launch=launch, logs=instance.logs)

    async def launch(self, plan: StartPlan) -> asyncio.subprocess.Process | None:
        """Run the pre-run commands and spawn the server.

        Returns None when the plan was superseded while pre-run commands ran.
        """

        launch = plan.launch
        for pre_run in launch.pre_run_commands:
            plan.logs.append(f"$ {pre_run}")
            try:
                code = await self._spawner.run(pre_run, launch.working_dir, plan.logs)
            except OSError as exc:
                raise SpawnFailure(f"Failed to run pre-run command '{pre_run}': {exc}") from exc
            if not self._is_current(plan.agent_id, plan.generation):
                return None
            if code != 0:
                plan.logs.append(f"Pre-run command exited with code {code}")
                raise PreRunFailed(pre_run, code)

        plan.logs.append(f"$ {launch.command}")
        try:
            return await self._spawner.spawn(launch.command, launch.working_dir)
        except OSError as exc:
            raise SpawnFailure(f"Failed to spawn dev server for agent '{plan.agent_id}': {exc}") from exc

    def mark_started(self, plan: StartPlan, process: asyncio.subprocess.Process) -> bool:
        """Adopt ``process``; False means the plan is stale and the caller must kill it."""

        if not self._is_current(plan.agent_id, plan.generation):
            return False
        instance = self._instances[plan.agent_id]
        instance.process = process
        instance.status = DevServerStatus.running(process.pid, plan.launch.port)
        instance.tasks = [
            asyncio.create_task(self._pump(process.stdout, instance.logs, "")),
            asyncio.create_task(self._pump(process.stderr, instance.logs, "[stderr] ")),
            asyncio.create_task(self._watch(plan.agent_id, process)),
        ]
        logger.info(
            "Dev server started",
            extra={"agent_id": plan.agent_id, "pid": process.pid, "port": plan.launch.port},
        )
        return True

    def mark_start_failed(self, plan: StartPlan, error: BaseException) -> bool:
        if not self._is_current(plan.agent_id, plan.generation):
            return False
        if isinstance(error, PreRunFailed):
            reason = f"Pre-run command failed: {error.command} ({error.code})"
        else:
            reason = str(error)
        self._instances[plan.agent_id].status = DevServerStatus.failed(reason)
        return True

    async def discard(self, process: asyncio.subprocess.Process) -> None:
        """Kill a process spawned for a plan that was superseded."""

        await self._spawner.kill_tree(process, self._kill_grace)

    async def start(
        self,
        agent_id: str,
        command: str | None,
        working_dir: Path | str,
        pre_run_commands: Iterable[str] = (),
        port: int | None = None,
    ) -> DevServerStatus:
        plan = self.plan_start(agent_id, command, working_dir, pre_run_commands, port)
        try:
            process = await self.launch(plan)
        except Exception as exc:
            self.mark_start_failed(plan, exc)
            raise
        if process is not None and not self.mark_started(plan, process):
            # Stopped while starting; do not leave an orphan behind.
            await self.discard(process)
        return self.status(agent_id)

    def plan_stop(self, agent_id: str) -> StopPlan | None:
        """Move to stopping and take ownership of the process; None when already stopped."""

        instance = self._instances.get(agent_id)
        if instance is None or instance.status.state in (DevServerState.STOPPED, DevServerState.STOPPING):
            return None

        instance.generation += 1
        plan = StopPlan(
            agent_id=agent_id,
            generation=instance.generation,
            process=instance.process,
            tasks=tuple(instance.tasks),
        )
        instance.process = None
        instance.tasks = []
        instance.status = DevServerStatus.stopping()
        instance.logs.append("Stopping dev server...")
        return plan

    async def terminate(self, plan: StopPlan) -> None:
        """Kill the planned process tree; kill failures are logged, never raised."""

        process = plan.process
        if process is not None and process.returncode is None:
            try:
                await self._spawner.kill_tree(process, self._kill_grace)
            except Exception as exc:  # pragma: no cover - depends on OS races
                logger.warning(
                    "Failed to kill dev server process tree",
                    extra={"agent_id": plan.agent_id, "pid": process.pid, "error": str(exc)},
                )
        tasks = [task for task in plan.tasks if not task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._kill_grace)
            for task in pending:
                task.cancel()

    def mark_stopped(self, plan: StopPlan) -> bool:
        if not self._is_current(plan.agent_id, plan.generation):
            return False
        instance = self._instances[plan.agent_id]
        instance.status = DevServerStatus.stopped()
        instance.logs.append("Dev server stopped")
        logger.info("Dev server stopped", extra={"agent_id": plan.agent_id})
        return True

    async def stop(self, agent_id: str) -> None:
        plan = self.plan_stop(agent_id)
        if plan is None:
            return
        await self.terminate(plan)
        self.mark_stopped(plan)

    async def restart(self, agent_id: str) -> DevServerStatus:
        launch = self.last_launch(agent_id)
        try:
            await self.stop(agent_id)
        except Exception as exc:
            logger.warning("Stop during restart failed", extra={"agent_id": agent_id, "error": str(exc)})
        return await self.start(
            agent_id,
            launch.command,
            launch.working_dir,
            launch.pre_run_commands,
            launch.port,
        )

    def mark_exited(self, agent_id: str, pid: int, returncode: int) -> bool:
        """Record that the process ``pid`` exited; ignored unless it is the running one."""

        instance = self._instances.get(agent_id)
        if instance is None or not instance.status.is_running or instance.status.pid != pid:
            return False
        instance.process = None
        if returncode == 0 or returncode < 0:
            instance.logs.append(f"Dev server exited (code {returncode})")
            instance.status = DevServerStatus.stopped()
        else:
            instance.logs.append(f"Dev server exited with code {returncode}")
            instance.status = DevServerStatus.failed(f"Exited with code {returncode}")
        logger.info(
            "Dev server exited",
            extra={"agent_id": agent_id, "pid": pid, "returncode": returncode},
        )
        return True

    async def stop_all(self) -> dict[str, BaseException]:
        errors: dict[str, BaseException] = {}
        for agent_id in list(self._instances):
            try:
                await self.stop(agent_id)
            except Exception as exc:
                errors[agent_id] = exc
        return errors

    def forget(self, agent_id: str) -> None:
        instance = self._instances.pop(agent_id, None)
        self._configs.pop(agent_id, None)
        if instance is not None:
            for task in instance.tasks:
                if not task.done():
                    task.cancel()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------
    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, logs: LogBuffer, prefix: str) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logs.append(f"{prefix}[line truncated]")
                continue
            if not line:
                break
            logs.append(prefix + line.decode("utf-8", errors="replace").rstrip("\r\n"))

    async def _watch(self, agent_id: str, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        self._on_exit(agent_id, process.pid, returncode)


__all__ = ["DevServerInstance", "DevServerSupervisor", "ExitCallback", "StartPlan", "StopPlan"]
