"""Process spawning, log capture and tree termination for dev servers."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Iterator

import psutil

from ..utils import sanitize_environment

logger = logging.getLogger(__name__)

DEFAULT_LOG_CAPACITY = 5000
STREAM_LIMIT = 1024 * 1024


class LogBuffer:
    """Bounded ring buffer of log lines; the oldest line is evicted first."""

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("LogBuffer capacity must be >= 1")
        self._lines: deque[str] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._lines.maxlen or 0

    def append(self, line: str) -> None:
        self._lines.append(line)

    def snapshot(self) -> tuple[str, ...]:
        """Immutable copy for renderers."""

        return tuple(self._lines)

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())


def _terminate_all(processes: list[psutil.Process]) -> None:
    for proc in processes:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass


def _kill_survivors(processes: list[psutil.Process], grace: float) -> None:
    _, alive = psutil.wait_procs(processes, timeout=grace)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


def kill_tree(pid: int, grace: float = 5.0) -> None:
    """Terminate ``pid`` and all of its descendants, escalating to SIGKILL after ``grace``.

    Only for processes this interpreter does not reap itself; use
    :meth:`ProcessSpawner.kill_tree` for children spawned through asyncio.
    """

    try:
        parent = psutil.Process(pid)
        processes = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return
    _terminate_all(processes)
    _kill_survivors(processes, grace)


class ProcessSpawner:
    """Spawn shell commands in their own session and tear down whole trees."""

    async def run(self, command: str, cwd: Path, logs: LogBuffer) -> int:
        """Run ``command`` to completion, logging its combined output."""

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=sanitize_environment(),
        )
        output, _ = await process.communicate()
        for line in output.decode("utf-8", errors="replace").splitlines():
            logs.append(line)
        return process.returncode if process.returncode is not None else -1

    async def spawn(self, command: str, cwd: Path) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
            start_new_session=True,
            limit=STREAM_LIMIT,
        )

    async def kill_tree(self, process: asyncio.subprocess.Process, grace: float) -> None:
        """Kill the shell and every descendant it forked."""

        try:
            descendants = psutil.Process(process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            descendants = []

        # The direct child is reaped by asyncio, so it is waited on there rather than via psutil.
        _terminate_all(descendants)
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Dev server ignored SIGTERM, killing", extra={"pid": process.pid})
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        if descendants:
            await asyncio.to_thread(_kill_survivors, descendants, grace)


__all__ = ["DEFAULT_LOG_CAPACITY", "LogBuffer", "ProcessSpawner", "kill_tree"]
