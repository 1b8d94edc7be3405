"""Plain-data image of dispatcher-owned state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from ..devserver import DevServerConfig

SNAPSHOT_VERSION = 1


class Snapshot(BaseModel):
    version: int = SNAPSHOT_VERSION
    saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    agents: list[dict[str, Any]] = Field(default_factory=list)
    devservers: dict[str, DevServerConfig] = Field(default_factory=dict)


__all__ = ["SNAPSHOT_VERSION", "Snapshot"]
