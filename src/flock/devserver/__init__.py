"""Dev-server supervision: one auxiliary process per agent."""

from .models import DevServerConfig, DevServerLaunch, DevServerState, DevServerStatus
from .process import DEFAULT_LOG_CAPACITY, LogBuffer, ProcessSpawner, kill_tree
from .supervisor import DevServerInstance, DevServerSupervisor, StartPlan, StopPlan

__all__ = [
    "DEFAULT_LOG_CAPACITY",
    "DevServerConfig",
    "DevServerInstance",
    "DevServerLaunch",
    "DevServerState",
    "DevServerStatus",
    "DevServerSupervisor",
    "LogBuffer",
    "ProcessSpawner",
    "StartPlan",
    "StopPlan",
    "kill_tree",
]
