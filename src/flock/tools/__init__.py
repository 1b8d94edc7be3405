"""Tool registration for Flock."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..agents import Agent
from ..config import FlockSettings
from ..devserver import DevServerConfig
from ..dispatch import (
    ActionDispatcher,
    ConfigureDevServer,
    CreateAgent,
    DeleteAgent,
    FindOrphanedSessions,
    PauseAgent,
    QuerySyncStatus,
    RestartAgent,
    RestartDevServer,
    ResumeAgent,
    SendInput,
    SetAgentNote,
    StartDevServer,
    StopDevServer,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_agent: Any
    list_agents: Any
    pause_agent: Any
    resume_agent: Any
    delete_agent: Any
    restart_agent: Any
    send_input: Any
    set_note: Any
    start_dev_server: Any
    stop_dev_server: Any
    restart_dev_server: Any
    dev_server_logs: Any
    running_dev_servers: Any
    orphaned_sessions: Any
    agent_sync_status: Any


def settings_devserver_defaults(settings: FlockSettings) -> DevServerConfig | None:
    """Global dev-server config from settings, or None when no command is set."""

    if not settings.devserver_command:
        return None
    return DevServerConfig(
        command=settings.devserver_command,
        run_before=list(settings.devserver_run_before),
        working_dir=settings.devserver_working_dir,
        port=settings.devserver_port,
    )


def register_tools(
    server: FastMCP,
    *,
    dispatcher: ActionDispatcher,
    settings: FlockSettings,
) -> ToolHandles:
    """Register Flock's MCP tools on the server."""

    registry = dispatcher.registry
    devservers = dispatcher.devservers
    defaults = settings_devserver_defaults(settings)

    def _agent_payload(agent: Agent) -> dict[str, Any]:
        payload = agent.to_dict()
        payload["dev_server"] = devservers.status(agent.id).as_dict()
        return payload

    async def _create_agent(
        name: str,
        branch: str | None = None,
        note: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a branch, worktree and tmux session and launch the coding agent in it."""

        agent: Agent = await dispatcher.request(CreateAgent(name, branch=branch, note=note))
        _emit_log(
            context,
            "info",
            "Created agent",
            extra={"agent_id": agent.id, "branch": agent.branch},
        )
        return _agent_payload(agent)

    def _list_agents(context: Context | None = None) -> list[dict[str, Any]]:
        """List agents with their lifecycle status and dev-server state."""

        catalog = [_agent_payload(agent) for agent in registry.agents()]
        _emit_log(context, "debug", "Listing agents", extra={"count": len(catalog)})
        return catalog

    async def _pause_agent(agent_id: str, context: Context | None = None) -> dict[str, Any]:
        """Commit the agent's work and remove its worktree, keeping branch and session."""

        agent: Agent = await dispatcher.request(PauseAgent(agent_id))
        _emit_log(context, "info", "Paused agent", extra={"agent_id": agent_id})
        return _agent_payload(agent)

    async def _resume_agent(agent_id: str, context: Context | None = None) -> dict[str, Any]:
        """Recreate a paused agent's worktree (and session if it died)."""

        agent: Agent = await dispatcher.request(ResumeAgent(agent_id))
        _emit_log(context, "info", "Resumed agent", extra={"agent_id": agent_id})
        return _agent_payload(agent)

    async def _delete_agent(
        agent_id: str,
        keep_branch: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Kill the session, remove the worktree and (unless keep_branch) delete the branch."""

        deleted = await dispatcher.request(DeleteAgent(agent_id, keep_branch=keep_branch))
        _emit_log(
            context,
            "warning" if deleted else "debug",
            "Deleted agent" if deleted else "Delete requested for unknown agent",
            extra={"agent_id": agent_id, "keep_branch": keep_branch},
        )
        return {"agent_id": agent_id, "deleted": bool(deleted)}

    async def _restart_agent(agent_id: str, context: Context | None = None) -> dict[str, Any]:
        """Interrupt the coding agent and launch it again in the same session."""

        agent: Agent = await dispatcher.request(RestartAgent(agent_id))
        _emit_log(context, "info", "Restarted agent", extra={"agent_id": agent_id})
        return _agent_payload(agent)

    async def _orphaned_sessions(context: Context | None = None) -> dict[str, Any]:
        names: list[str] = await dispatcher.request(FindOrphanedSessions())
        if names:
            _emit_log(context, "warning", "Found orphaned sessions", extra={"sessions": names})
        return {"sessions": names, "count": len(names)}

    async def _agent_sync_status(agent_id: str, context: Context | None = None) -> dict[str, Any]:
        """Report how the agent's branch compares with its upstream and the main branch."""

        status = await dispatcher.request(QuerySyncStatus(agent_id))
        return {"agent_id": agent_id, **status.as_dict()}

    async def _send_input(
        agent_id: str,
        text: str,
        enter: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Type text into the agent's terminal session."""

        await dispatcher.request(SendInput(agent_id, text=text, enter=enter))
        _emit_log(context, "debug", "Sent input", extra={"agent_id": agent_id, "chars": len(text)})
        return {"agent_id": agent_id, "sent": True}

    async def _set_note(
        agent_id: str,
        note: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Attach (or clear, with an empty note) a free-text note to an agent."""

        agent: Agent = await dispatcher.request(SetAgentNote(agent_id, note=note))
        _emit_log(context, "debug", "Updated note", extra={"agent_id": agent_id})
        return _agent_payload(agent)

    async def _start_dev_server(
        agent_id: str,
        command: str | None = None,
        run_before: list[str] | None = None,
        working_dir: str | None = None,
        port: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start the agent's dev server, optionally overriding the configured command."""

        if command is not None or run_before is not None or working_dir is not None or port is not None:
            base = devservers.config_for(agent_id, defaults) or DevServerConfig()
            overrides = {
                key: value
                for key, value in {
                    "command": command,
                    "run_before": run_before,
                    "working_dir": working_dir,
                    "port": port,
                }.items()
                if value is not None
            }
            config = base.model_copy(update=overrides)
            await dispatcher.request(ConfigureDevServer(agent_id, config=config))

        status = await dispatcher.request(StartDevServer(agent_id))
        running = [entry for entry in devservers.running_servers() if entry[0] != agent_id]
        _emit_log(
            context,
            "info",
            "Started dev server",
            extra={"agent_id": agent_id, "pid": status.pid, "port": status.port},
        )
        return {
            "agent_id": agent_id,
            **status.as_dict(),
            "other_running": [
                {"agent_id": other, "pid": pid, "port": other_port} for other, pid, other_port in running
            ],
        }

    async def _stop_dev_server(agent_id: str, context: Context | None = None) -> dict[str, Any]:
        """Stop the agent's dev server and its whole process tree."""

        await dispatcher.request(StopDevServer(agent_id))
        _emit_log(context, "info", "Stopped dev server", extra={"agent_id": agent_id})
        return {"agent_id": agent_id, **devservers.status(agent_id).as_dict()}

    async def _restart_dev_server(agent_id: str, context: Context | None = None) -> dict[str, Any]:
        """Stop and start the agent's dev server with its last launch settings."""

        status = await dispatcher.request(RestartDevServer(agent_id))
        _emit_log(context, "info", "Restarted dev server", extra={"agent_id": agent_id})
        return {"agent_id": agent_id, **status.as_dict()}

    def _dev_server_logs(
        agent_id: str,
        tail: int = 200,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the most recent dev-server log lines."""

        lines = devservers.logs(agent_id)
        if tail > 0:
            lines = lines[-tail:]
        return {"agent_id": agent_id, "lines": list(lines), "count": len(lines)}

    def _running_dev_servers(context: Context | None = None) -> list[dict[str, Any]]:
        """List dev servers that are currently running."""

        return [
            {"agent_id": agent_id, "pid": pid, "port": port}
            for agent_id, pid, port in devservers.running_servers()
        ]

    tool_create = server.tool(
        name="create_agent",
        description=(
            "Create a new agent: a git branch and worktree named after the task, a tmux "
            "session, and the configured coding agent running inside it."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Creates branches and directories in the repository",
            }
        },
    )(_create_agent)

    tool_list = server.tool(
        name="list_agents",
        description="List agents with status (starting, running, waiting, idle, paused, error).",
    )(_list_agents)

    tool_pause = server.tool(
        name="pause_agent",
        description="Auto-commit an agent's work and remove its worktree; the branch is kept.",
    )(_pause_agent)

    tool_resume = server.tool(
        name="resume_agent",
        description="Recreate a paused agent's worktree from its branch.",
    )(_resume_agent)

    tool_delete = server.tool(
        name="delete_agent",
        description="Delete an agent, its session, worktree and (unless keep_branch) its branch.",
        annotations={
            "safety": {
                "level": "destructive",
                "notes": "Uncommitted work in the worktree is lost",
            }
        },
    )(_delete_agent)

    tool_restart = server.tool(
        name="restart_agent",
        description="Interrupt an agent and relaunch its command; recreates the session if it died.",
    )(_restart_agent)

    tool_orphans = server.tool(
        name="orphaned_sessions",
        description="List tmux sessions with the Flock prefix that no agent owns.",
    )(_orphaned_sessions)

    tool_sync = server.tool(
        name="agent_sync_status",
        description="Commits ahead/behind upstream, divergence from main, and whether the worktree is clean.",
    )(_agent_sync_status)

    tool_send = server.tool(
        name="send_input",
        description="Send keystrokes to an agent's terminal session.",
    )(_send_input)

    tool_note = server.tool(
        name="set_note",
        description="Attach a free-text note to an agent.",
    )(_set_note)

    tool_start_dev = server.tool(
        name="start_dev_server",
        description="Start the dev server for an agent's worktree; reports other running servers.",
    )(_start_dev_server)

    tool_stop_dev = server.tool(
        name="stop_dev_server",
        description="Stop an agent's dev server.",
    )(_stop_dev_server)

    tool_restart_dev = server.tool(
        name="restart_dev_server",
        description="Restart an agent's dev server with its previous settings.",
    )(_restart_dev_server)

    tool_logs = server.tool(
        name="dev_server_logs",
        description="Fetch recent dev-server output for an agent.",
    )(_dev_server_logs)

    tool_running = server.tool(
        name="running_dev_servers",
        description="List running dev servers with pid and port.",
    )(_running_dev_servers)

    return ToolHandles(
        create_agent=tool_create,
        list_agents=tool_list,
        pause_agent=tool_pause,
        resume_agent=tool_resume,
        delete_agent=tool_delete,
        restart_agent=tool_restart,
        send_input=tool_send,
        set_note=tool_note,
        start_dev_server=tool_start_dev,
        stop_dev_server=tool_stop_dev,
        restart_dev_server=tool_restart_dev,
        dev_server_logs=tool_logs,
        running_dev_servers=tool_running,
        orphaned_sessions=tool_orphans,
        agent_sync_status=tool_sync,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools", "settings_devserver_defaults"]
