"""FastMCP server bootstrap for Flock."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agents import AgentRegistry
from .config import FlockSettings, get_settings
from .detector import StatusDetector, load_patterns
from .devserver import DevServerSupervisor
from .dispatch import ActionDispatcher, Shutdown
from .git import WorktreeStore
from .storage import ChromaUnavailableError, LifecycleRecorder, SnapshotStore
from .tmux import SessionHost, TmuxSessionHost
from .tools import register_tools, settings_devserver_defaults

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Flock server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def build_dispatcher(
    settings: FlockSettings,
    *,
    sessions: SessionHost | None = None,
    worktrees: Any | None = None,
) -> ActionDispatcher:
    """Wire detector, session host, worktree store, supervisor and registry."""

    patterns = load_patterns(settings.detector_patterns_path, quiet_threshold=settings.quiet_threshold)
    devservers = DevServerSupervisor(
        log_capacity=settings.log_capacity,
        kill_grace=settings.kill_grace_seconds,
    )
    registry = AgentRegistry(
        worktrees or WorktreeStore(
            settings.repo_path,
            worktree_dir=settings.worktree_dir,
            main_branch=settings.main_branch,
        ),
        sessions or TmuxSessionHost(),
        detector=StatusDetector(patterns),
        agent_command=settings.agent_command,
        session_prefix=settings.session_prefix,
        devservers=devservers,
    )
    return ActionDispatcher(
        registry,
        devservers,
        poll_interval=settings.poll_interval,
        capture_lines=settings.capture_lines,
        devserver_defaults=settings_devserver_defaults(settings),
        refresh_interval=settings.refresh_interval,
    )


def create_server(
    settings: Optional[FlockSettings] = None,
    *,
    dispatcher: ActionDispatcher | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server, its dispatcher loop and baseline resources."""

    settings = settings or get_settings()
    dispatcher = dispatcher or build_dispatcher(settings)

    snapshot_store: SnapshotStore | None = None
    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "flock_events",
        "error": None,
    }

    try:
        snapshot_store = SnapshotStore(settings.chroma_persist_path)
        snapshot_store.ping()
        chroma_metadata["available"] = True
    except ChromaUnavailableError as exc:
        chroma_metadata["error"] = str(exc)
        snapshot_store = None

    recorder: LifecycleRecorder | None = None
    if snapshot_store is not None:
        recorder = LifecycleRecorder(snapshot_store, snapshot_provider=dispatcher.serialize)
        dispatcher.add_listener(recorder)

    @asynccontextmanager
    async def lifespan(_server: Any) -> AsyncIterator[None]:
        if snapshot_store is not None:
            snapshot = await asyncio.to_thread(snapshot_store.load_snapshot)
            if snapshot is not None:
                dispatcher.restore(snapshot)
                logger.info("Restoring snapshot", extra={"agents": len(snapshot.agents)})
        loop_task = asyncio.create_task(dispatcher.run())
        try:
            yield
        finally:
            if not loop_task.done():
                errors = await dispatcher.request(Shutdown())
                for agent_id, error in errors.items():
                    logger.warning(
                        "Dev server did not stop cleanly",
                        extra={"agent_id": agent_id, "error": str(error)},
                    )
                await loop_task
            if recorder is not None:
                await recorder.aclose()
            if snapshot_store is not None:
                await asyncio.to_thread(snapshot_store.save_snapshot, dispatcher.serialize())

    server = FastMCP(
        name="Flock",
        version=__version__,
        instructions=(
            "Flock runs coding agents in parallel, each in its own git worktree and "
            "tmux session. Use the tools to create, pause, resume and delete agents "
            "and to manage per-agent dev servers."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(server, dispatcher=dispatcher, settings=settings)

    def status_resource(context: Context | None = None) -> str:
        """Return a JSON string summarizing basic runtime state."""

        status_counts: dict[str, int] = {}
        for agent in dispatcher.registry.agents():
            status_counts[agent.status.value] = status_counts.get(agent.status.value, 0) + 1

        lifecycle_preview: list[dict[str, Any]] = []
        storage_error = None
        if snapshot_store is not None:
            try:
                lifecycle_preview = [
                    {
                        "agent_id": record.agent_id,
                        "event": record.event,
                        "recorded_at": record.recorded_at.isoformat(),
                    }
                    for record in snapshot_store.list_lifecycle()[-5:]
                ]
            except Exception as exc:  # status must render even when storage misbehaves
                storage_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "repository": {
                "path": str(settings.repo_path),
                "worktree_dir": settings.worktree_dir,
            },
            "agents": {
                "count": len(dispatcher.registry),
                "status_counts": status_counts,
            },
            "dev_servers": {
                "running": [
                    {"agent_id": agent_id, "pid": pid, "port": port}
                    for agent_id, pid, port in dispatcher.devservers.running_servers()
                ],
            },
            "storage": {
                "chroma": chroma_metadata,
                "lifecycle_preview": lifecycle_preview,
                "pending_writes": recorder.pending if recorder is not None else 0,
                "error": storage_error,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    server.resource(
        "resource://flock/status",
        name="flock_status",
        title="Flock Status",
        description="Provides the current runtime status for the Flock server.",
        mime_type="application/json",
        tags={"status", "health"},
    )(status_resource)

    setattr(server, "dispatcher", dispatcher)
    setattr(server, "snapshot_store", snapshot_store)
    setattr(server, "recorder", recorder)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_snapshot", status_resource)
    setattr(server, "lifespan_context", lifespan)
    return server


def main() -> None:
    """Entry point for running the Flock server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching Flock server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "repo_path": str(settings.repo_path),
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
