"""tmux session management."""

from .session import FakeSessionHost, SessionHandle, SessionHost, SessionHostError, TmuxSessionHost

__all__ = [
    "FakeSessionHost",
    "SessionHandle",
    "SessionHost",
    "SessionHostError",
    "TmuxSessionHost",
]
