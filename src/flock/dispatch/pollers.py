"""Per-agent pane pollers feeding ``AgentOutput`` actions to the dispatcher."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from ..tmux import SessionHandle, SessionHost, SessionHostError
from .actions import Action, AgentFailed, AgentOutput

logger = logging.getLogger(__name__)

MAX_CAPTURE_FAILURES = 3


class StatusPoller:
    """Capture one agent's pane every ``interval`` seconds.

    Holds only the agent id and session name. ``quiet_for`` is the time since
    the captured text last changed.
    """

    def __init__(
        self,
        agent_id: str,
        session_name: str,
        sessions: SessionHost,
        submit: Callable[[Action], None],
        *,
        interval: float = 0.5,
        lines: int = 100,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.agent_id = agent_id
        self._handle = SessionHandle(session_name)
        self._sessions = sessions
        self._submit = submit
        self._interval = interval
        self._lines = lines
        self._clock = clock or time.monotonic
        self._digest: str | None = None
        self._changed_at: float | None = None
        self._failures = 0

    async def poll_once(self) -> AgentOutput | None:
        try:
            text = await asyncio.to_thread(self._sessions.capture, self._handle, self._lines)
        except SessionHostError as exc:
            self._failures += 1
            logger.debug("Capture failed", extra={"agent_id": self.agent_id, "error": str(exc)})
            if self._failures == MAX_CAPTURE_FAILURES:
                self._submit(AgentFailed(self.agent_id, message=f"Session unavailable: {exc}"))
            return None
        self._failures = 0

        now = self._clock()
        digest = hashlib.sha1(text.encode("utf-8", errors="replace")).hexdigest()
        if digest != self._digest or self._changed_at is None:
            self._digest = digest
            self._changed_at = now
        action = AgentOutput(
            self.agent_id,
            snapshot=text,
            quiet_for=now - self._changed_at,
            observed_at=datetime.now(timezone.utc),
        )
        self._submit(action)
        return action

    async def run(self) -> None:
        """Poll until cancelled. An unexpected failure is reported once per streak as ``AgentFailed``."""

        crashed = False
        while True:
            try:
                await self.poll_once()
            except Exception as exc:
                if not crashed:
                    logger.exception("Status poll failed", extra={"agent_id": self.agent_id})
                    self._submit(AgentFailed(self.agent_id, message=str(exc) or type(exc).__name__))
                crashed = True
            else:
                crashed = False
            await asyncio.sleep(self._interval)


__all__ = ["MAX_CAPTURE_FAILURES", "StatusPoller"]
