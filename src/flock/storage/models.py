"""Records read back from the persistence layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class LifecycleRecord:
    agent_id: str
    event: str
    recorded_at: datetime
    name: str | None = None
    detail: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


__all__ = ["LifecycleRecord"]
