"""Contract every integration client satisfies."""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

StateCallback = Callable[[str, str, "str | None"], None]


@runtime_checkable
class IntegrationCollaborator(Protocol):
    """A tracker (issue board, CI, ...) that knows an external state per agent."""

    name: str

    async def submit_status_query(self, agent_id: str) -> str | None:
        """Return the external state linked to ``agent_id``, or None when unlinked."""
        ...

    async def request_status_transition(self, agent_id: str, new_state: str) -> None:
        ...


__all__ = ["IntegrationCollaborator", "StateCallback"]
