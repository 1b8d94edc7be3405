"""Storage abstractions for Flock."""

from .chroma import SNAPSHOT_ID, ChromaEvent, ChromaUnavailableError, SnapshotStore, build_where
from .models import LifecycleRecord
from .recorder import LifecycleRecorder

__all__ = [
    "SNAPSHOT_ID",
    "ChromaEvent",
    "ChromaUnavailableError",
    "LifecycleRecord",
    "LifecycleRecorder",
    "SnapshotStore",
    "build_where",
]
