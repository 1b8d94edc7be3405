"""Agent entities and the lifecycle registry."""

from .models import Agent, AgentStatus, WorktreeRecord
from .registry import (
    AgentRegistry,
    CreatePlan,
    CreateResult,
    DeletePlan,
    PausePlan,
    RestartPlan,
    ResumePlan,
)

__all__ = [
    "Agent",
    "AgentRegistry",
    "AgentStatus",
    "CreatePlan",
    "CreateResult",
    "DeletePlan",
    "PausePlan",
    "RestartPlan",
    "ResumePlan",
    "WorktreeRecord",
]
