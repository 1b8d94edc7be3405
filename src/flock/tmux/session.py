"""tmux session host built on libtmux."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class SessionHostError(RuntimeError):
    """Raised when a tmux command fails."""


@dataclass(frozen=True, slots=True)
class SessionHandle:
    """Names one tmux session; carries no live tmux object."""

    name: str


class SessionHost(Protocol):
    """Minimal multiplexer contract used by the agent registry."""

    def create(self, name: str, working_dir: Path, command: str | None = None) -> SessionHandle:
        ...

    def exists(self, handle: SessionHandle) -> bool:
        ...

    def attach(self, handle: SessionHandle) -> None:
        ...

    def send_keys(self, handle: SessionHandle, text: str, *, enter: bool = True) -> None:
        ...

    def interrupt(self, handle: SessionHandle) -> None:
        ...

    def capture(self, handle: SessionHandle, lines: int = 100) -> str:
        ...

    def kill(self, handle: SessionHandle) -> None:
        ...

    def list_sessions(self, prefix: str = "") -> list[str]:
        ...


class TmuxSessionHost:
    """Drive tmux through a ``libtmux.Server``."""

    def __init__(self, server_factory: Callable[[], Any] | None = None) -> None:
        self._server_factory = server_factory or self._default_server_factory
        self._server: Any | None = None

    @staticmethod
    def _default_server_factory() -> Any:
        import libtmux

        return libtmux.Server()

    @property
    def server(self) -> Any:
        if self._server is None:
            self._server = self._server_factory()
        return self._server

    def _cmd(self, *args: str) -> list[str]:
        result = self.server.cmd(*args)
        if result.returncode not in (0, None) or result.stderr:
            stderr = "\n".join(result.stderr or [])
            raise SessionHostError(f"tmux {args[0]} failed: {stderr.strip() or result.returncode}")
        return list(result.stdout or [])

    def create(self, name: str, working_dir: Path, command: str | None = None) -> SessionHandle:
        if self.server.has_session(name):
            raise SessionHostError(f"Session '{name}' already exists")
        try:
            self.server.new_session(
                session_name=name,
                start_directory=str(working_dir),
                attach=False,
            )
        except Exception as exc:
            raise SessionHostError(f"Failed to create tmux session '{name}': {exc}") from exc

        handle = SessionHandle(name)
        if command:
            self.send_keys(handle, command)
        logger.info("Created tmux session", extra={"session": name, "cwd": str(working_dir)})
        return handle

    def exists(self, handle: SessionHandle) -> bool:
        try:
            return bool(self.server.has_session(handle.name))
        except Exception:  # pragma: no cover - tmux server not running
            return False

    def attach(self, handle: SessionHandle) -> None:
        """Hand the terminal to tmux until the user detaches."""

        tmux = shutil.which("tmux")
        if tmux is None:
            raise SessionHostError("tmux executable not found on PATH")
        completed = subprocess.run([tmux, "attach-session", "-t", handle.name], check=False)
        if completed.returncode != 0:
            raise SessionHostError(f"tmux attach exited with code {completed.returncode}")

    def send_keys(self, handle: SessionHandle, text: str, *, enter: bool = True) -> None:
        self._cmd("send-keys", "-t", handle.name, "-l", text)
        if enter:
            self._cmd("send-keys", "-t", handle.name, "C-m")

    def interrupt(self, handle: SessionHandle) -> None:
        """Send Ctrl-C to the pane."""

        self._cmd("send-keys", "-t", handle.name, "C-c")

    def capture(self, handle: SessionHandle, lines: int = 100) -> str:
        output = self._cmd("capture-pane", "-p", "-J", "-t", handle.name, "-S", f"-{lines}")
        return "\n".join(output)

    def kill(self, handle: SessionHandle) -> None:
        try:
            self._cmd("kill-session", "-t", handle.name)
        except SessionHostError as exc:
            message = str(exc)
            if "no server running" in message or "can't find session" in message:
                return
            raise

    def list_sessions(self, prefix: str = "") -> list[str]:
        try:
            names = self._cmd("list-sessions", "-F", "#{session_name}")
        except SessionHostError:
            return []
        return [name for name in names if name.startswith(prefix)]


@dataclass
class FakeSession:
    working_dir: Path
    command: str | None
    screen: list[str] = field(default_factory=list)
    sent: list[str] = field(default_factory=list)


class FakeSessionHost:
    """In-memory session host for tests."""

    def __init__(self, *, fail_create: bool = False) -> None:
        self.sessions: dict[str, FakeSession] = {}
        self.fail_create = fail_create
        self.attached: list[str] = []

    def create(self, name: str, working_dir: Path, command: str | None = None) -> SessionHandle:
        if self.fail_create:
            raise SessionHostError(f"Failed to create tmux session '{name}'")
        if name in self.sessions:
            raise SessionHostError(f"Session '{name}' already exists")
        self.sessions[name] = FakeSession(working_dir=Path(working_dir), command=command)
        if command:
            self.sessions[name].sent.append(command)
        return SessionHandle(name)

    def exists(self, handle: SessionHandle) -> bool:
        return handle.name in self.sessions

    def attach(self, handle: SessionHandle) -> None:
        self._require(handle)
        self.attached.append(handle.name)

    def send_keys(self, handle: SessionHandle, text: str, *, enter: bool = True) -> None:
        self._require(handle).sent.append(text)

    def interrupt(self, handle: SessionHandle) -> None:
        self._require(handle).sent.append("C-c")

    def capture(self, handle: SessionHandle, lines: int = 100) -> str:
        return "\n".join(self._require(handle).screen[-lines:])

    def kill(self, handle: SessionHandle) -> None:
        self.sessions.pop(handle.name, None)

    def list_sessions(self, prefix: str = "") -> list[str]:
        return [name for name in self.sessions if name.startswith(prefix)]

    def write(self, name: str, *lines: str) -> None:
        """Append lines to a fake pane."""

        self.sessions[name].screen.extend(lines)

    def _require(self, handle: SessionHandle) -> FakeSession:
        try:
            return self.sessions[handle.name]
        except KeyError as exc:
            raise SessionHostError(f"Session '{handle.name}' not found") from exc


__all__ = [
    "FakeSessionHost",
    "SessionHandle",
    "SessionHost",
    "SessionHostError",
    "TmuxSessionHost",
]
