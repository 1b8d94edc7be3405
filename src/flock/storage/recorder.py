"""Dispatcher listener that writes lifecycle history and snapshots to a store."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from typing import Any, Callable

from ..dispatch import (
    Action,
    AgentCreated,
    AgentDeleted,
    AgentFailed,
    AgentPaused,
    AgentRestarted,
    AgentResumed,
    DevServerExited,
    Snapshot,
)
from .chroma import SnapshotStore

logger = logging.getLogger(__name__)

Job = Callable[[], Any]

_OUTCOMES = {
    AgentPaused: "paused",
    AgentResumed: "resumed",
    AgentDeleted: "deleted",
    AgentRestarted: "restarted",
}


class LifecycleRecorder:
    """Record completed lifecycle actions and, optionally, a fresh snapshot after each.

    Register an instance with ``ActionDispatcher.add_listener``. The listener
    runs inside the dispatcher loop, so it only builds the write jobs (taking the
    snapshot there, where it is consistent) and hands them to a writer task that
    runs the blocking Chroma calls in a worker thread, one at a time and in order.
    Call :meth:`aclose` before the loop ends to write out whatever is queued.
    """

    def __init__(
        self,
        store: SnapshotStore,
        *,
        snapshot_provider: Callable[[], Snapshot] | None = None,
    ) -> None:
        self._store = store
        self._snapshot_provider = snapshot_provider
        self._queue: asyncio.Queue[Job] | None = None
        self._writer: asyncio.Task[None] | None = None

    def __call__(self, action: Action) -> None:
        lifecycle, snapshot = self._describe(action)
        if lifecycle is not None:
            self._enqueue(functools.partial(self._store.record_lifecycle, **lifecycle))
        if snapshot and self._snapshot_provider is not None:
            self._enqueue(functools.partial(self._store.save_snapshot, self._snapshot_provider()))

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def flush(self) -> None:
        """Wait until every queued write has been attempted."""

        if self._queue is not None:
            await self._queue.join()

    async def aclose(self) -> None:
        await self.flush()
        if self._writer is not None:
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None

    def _enqueue(self, job: Job) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._write())
        self._queue.put_nowait(job)

    async def _write(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await asyncio.to_thread(job)
            except Exception:
                logger.exception("Failed to persist lifecycle event")
            finally:
                self._queue.task_done()

    @staticmethod
    def _describe(action: Action) -> tuple[dict[str, Any] | None, bool]:
        """Return the lifecycle entry for ``action`` and whether a snapshot should follow."""

        if isinstance(action, AgentCreated):
            if action.error is not None or action.agent is None:
                return None, False
            return (
                {
                    "agent_id": action.agent.id,
                    "event": "created",
                    "name": action.agent.name,
                    "metadata": {"branch": action.agent.branch},
                },
                True,
            )
        outcome = _OUTCOMES.get(type(action))
        if outcome is not None:
            detail = str(action.error) if action.error is not None else None
            return (
                {
                    "agent_id": action.agent_id,
                    "event": outcome if detail is None else f"{outcome}_failed",
                    "detail": detail,
                },
                True,
            )
        if isinstance(action, AgentFailed):
            return {"agent_id": action.agent_id, "event": "error", "detail": action.message}, True
        if isinstance(action, DevServerExited):
            return (
                {
                    "agent_id": action.agent_id,
                    "event": "devserver_exited",
                    "metadata": {"pid": action.pid, "returncode": action.returncode},
                },
                False,
            )
        return None, False


__all__ = ["LifecycleRecorder"]
