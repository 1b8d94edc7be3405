"""Background task that polls integrations for each agent's external state."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, Sequence

from .base import IntegrationCollaborator, StateCallback

logger = logging.getLogger(__name__)


class IntegrationRefresher:
    """Query every collaborator for every agent each ``interval`` seconds.

    Results are handed to ``on_state(agent_id, source, state)``; the refresher
    never touches agent state itself. A failing collaborator is logged and
    skipped for that round.
    """

    def __init__(
        self,
        collaborators: Sequence[IntegrationCollaborator],
        *,
        agent_ids: Callable[[], Iterable[str]],
        on_state: StateCallback,
        interval: float = 30.0,
    ) -> None:
        self._collaborators = list(collaborators)
        self._agent_ids = agent_ids
        self._on_state = on_state
        self._interval = interval

    @property
    def collaborators(self) -> list[IntegrationCollaborator]:
        return list(self._collaborators)

    def collaborator(self, name: str) -> IntegrationCollaborator | None:
        for collaborator in self._collaborators:
            if collaborator.name == name:
                return collaborator
        return None

    async def refresh_once(self) -> int:
        """Run one round; return the number of successful queries."""

        ids = list(self._agent_ids())
        succeeded = 0
        for collaborator in self._collaborators:
            for agent_id in ids:
                try:
                    state = await collaborator.submit_status_query(agent_id)
                except Exception as exc:
                    logger.warning(
                        "Integration query failed",
                        extra={"source": collaborator.name, "agent_id": agent_id, "error": str(exc)},
                    )
                    continue
                self._on_state(agent_id, collaborator.name, state)
                succeeded += 1
        return succeeded

    async def run(self) -> None:
        while True:
            await self.refresh_once()
            await asyncio.sleep(self._interval)


__all__ = ["IntegrationRefresher"]
