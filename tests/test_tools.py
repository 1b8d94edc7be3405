from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from flock.config import FlockSettings
from flock.devserver import DevServerConfig, DevServerSupervisor
from flock.dispatch import ActionDispatcher, Shutdown
from flock.errors import AgentNotFound, NotPausable
from flock.git import SyncStatus
from flock.tools import register_tools, settings_devserver_defaults


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict]] = []

    def info(self, message, extra=None):
        self.records.append(("info", message, extra or {}))

    def debug(self, message, extra=None):
        self.records.append(("debug", message, extra or {}))

    def warning(self, message, extra=None):
        self.records.append(("warning", message, extra or {}))


class StubContext:
    def __init__(self) -> None:
        self.logger = StubLogger()


def _settings(**env: str) -> FlockSettings:
    return FlockSettings(_env_file=None, **env)


async def _with_loop(dispatcher: ActionDispatcher, body):
    loop_task = asyncio.create_task(dispatcher.run())
    try:
        return await body()
    finally:
        dispatcher.submit(Shutdown())
        await asyncio.wait_for(loop_task, timeout=10)


def test_registers_all_tools(registry, devservers) -> None:
    server = StubServer()
    dispatcher = ActionDispatcher(registry, devservers, start_pollers=False)

    handles = register_tools(server, dispatcher=dispatcher, settings=_settings())

    assert set(server._tools) == {
        "create_agent",
        "list_agents",
        "pause_agent",
        "resume_agent",
        "delete_agent",
        "restart_agent",
        "send_input",
        "set_note",
        "start_dev_server",
        "stop_dev_server",
        "restart_dev_server",
        "dev_server_logs",
        "running_dev_servers",
        "orphaned_sessions",
        "agent_sync_status",
    }
    assert handles.create_agent.name == "create_agent"


def test_agent_lifecycle_through_tools(registry, devservers, sessions) -> None:
    server = StubServer()
    dispatcher = ActionDispatcher(registry, devservers, start_pollers=False)
    handles = register_tools(server, dispatcher=dispatcher, settings=_settings())
    context = StubContext()

    async def body() -> None:
        created = await handles.create_agent.fn(name="my task", note="hi", context=context)
        assert created["branch"] == "my-task"
        assert created["status"] == "starting"
        assert created["dev_server"]["state"] == "stopped"

        listed = handles.list_agents.fn()
        assert [entry["id"] for entry in listed] == [created["id"]]

        with pytest.raises(NotPausable):
            await handles.pause_agent.fn(agent_id=created["id"])

        sent = await handles.send_input.fn(agent_id=created["id"], text="run tests")
        assert sent == {"agent_id": created["id"], "sent": True}
        assert sessions.sessions[created["session_name"]].sent[-1] == "run tests"

        noted = await handles.set_note.fn(agent_id=created["id"], note=" review ")
        assert noted["note"] == "review"

        deleted = await handles.delete_agent.fn(agent_id=created["id"])
        assert deleted == {"agent_id": created["id"], "deleted": True}
        missing = await handles.delete_agent.fn(agent_id="missing")
        assert missing == {"agent_id": "missing", "deleted": False}

    asyncio.run(_with_loop(dispatcher, body))

    assert len(registry) == 0
    assert ("info", "Created agent", {"agent_id": "agent1", "branch": "my-task"}) in context.logger.records


def test_unknown_agent_errors_propagate(registry, devservers) -> None:
    server = StubServer()
    dispatcher = ActionDispatcher(registry, devservers, start_pollers=False)
    handles = register_tools(server, dispatcher=dispatcher, settings=_settings())

    async def body() -> None:
        with pytest.raises(AgentNotFound):
            await handles.set_note.fn(agent_id="missing", note="x")

    asyncio.run(_with_loop(dispatcher, body))


def test_restart_orphan_and_sync_tools(registry, devservers, sessions, worktrees, tmp_path: Path) -> None:
    server = StubServer()
    dispatcher = ActionDispatcher(registry, devservers, start_pollers=False)
    handles = register_tools(server, dispatcher=dispatcher, settings=_settings())
    sessions.create("flock-leftover", tmp_path)

    async def body() -> None:
        created = await handles.create_agent.fn(name="my task")
        worktrees.sync[Path(created["worktree_path"])] = SyncStatus(ahead=2, divergence_from_main=3, is_clean=False)

        restarted = await handles.restart_agent.fn(agent_id=created["id"])
        assert restarted["status"] == "starting"
        assert sessions.sessions[created["session_name"]].sent[-2:] == ["C-c", "claude"]

        orphans = await handles.orphaned_sessions.fn()
        assert orphans == {"sessions": ["flock-leftover"], "count": 1}

        status = await handles.agent_sync_status.fn(agent_id=created["id"])
        assert status == {
            "agent_id": created["id"],
            "ahead": 2,
            "behind": 0,
            "divergence_from_main": 3,
            "is_clean": False,
            "is_synced": False,
        }

    asyncio.run(_with_loop(dispatcher, body))


def test_dev_server_tools_use_overrides_and_report_others(registry, sessions, tmp_path: Path) -> None:
    server = StubServer()
    devservers = DevServerSupervisor(log_capacity=50, kill_grace=2.0)
    dispatcher = ActionDispatcher(registry, devservers, start_pollers=False)
    handles = register_tools(
        server,
        dispatcher=dispatcher,
        settings=_settings(FLOCK_DEVSERVER_COMMAND="echo default; sleep 30", FLOCK_DEVSERVER_PORT="3000"),
    )

    async def body() -> None:
        first = await handles.create_agent.fn(name="first")
        second = await handles.create_agent.fn(name="second")

        started = await handles.start_dev_server.fn(agent_id=first["id"])
        assert started["state"] == "running"
        assert started["port"] == 3000
        assert started["other_running"] == []

        other = await handles.start_dev_server.fn(
            agent_id=second["id"], command="echo override; sleep 30", port=3001
        )
        assert other["port"] == 3001
        assert other["other_running"] == [{"agent_id": first["id"], "pid": started["pid"], "port": 3000}]
        assert devservers.config_for(second["id"]).command == "echo override; sleep 30"

        running = handles.running_dev_servers.fn()
        assert {entry["agent_id"] for entry in running} == {first["id"], second["id"]}

        for _ in range(100):
            if "default" in handles.dev_server_logs.fn(agent_id=first["id"])["lines"]:
                break
            await asyncio.sleep(0.05)
        logs = handles.dev_server_logs.fn(agent_id=first["id"], tail=1)
        assert logs["count"] == 1

        restarted = await handles.restart_dev_server.fn(agent_id=first["id"])
        assert restarted["state"] == "running"
        assert restarted["pid"] != started["pid"]

        stopped = await handles.stop_dev_server.fn(agent_id=first["id"])
        assert stopped["state"] == "stopped"

    asyncio.run(_with_loop(dispatcher, body))

    assert devservers.running_servers() == []


def test_settings_devserver_defaults() -> None:
    assert settings_devserver_defaults(_settings()) is None

    config = settings_devserver_defaults(
        _settings(
            FLOCK_DEVSERVER_COMMAND="npm run dev",
            FLOCK_DEVSERVER_RUN_BEFORE="npm ci;; npm run build",
            FLOCK_DEVSERVER_WORKING_DIR="web",
        )
    )
    assert config == DevServerConfig(command="npm run dev", run_before=["npm ci", "npm run build"], working_dir="web")
