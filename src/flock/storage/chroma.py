"""Chroma-based persistence for snapshots and lifecycle history."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol

from ..dispatch import Snapshot
from .models import LifecycleRecord

SNAPSHOT_STREAM = "snapshot"
SNAPSHOT_ID = f"{SNAPSHOT_STREAM}:latest"
LIFECYCLE_EVENT = "lifecycle"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Flock."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def upsert(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Flock."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    stream_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def build_where(filters: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Translate flat equality filters into a Chroma ``where`` clause."""

    if not filters:
        return None
    clauses = [{key: value} for key, value in filters.items() if value is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class SnapshotStore:
    """Persist dispatcher snapshots and agent lifecycle events via ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "flock_events",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError("chromadb package is not installed") from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = dict(metadata or {})
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    stream_id=metadata.get("stream_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        stream_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        event = self._build_event(stream_id, event_type, body, metadata)
        collection.add(documents=[event.document], metadatas=[event.metadata], ids=[event.id])
        return event

    def _build_event(
        self,
        stream_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> ChromaEvent:
        counter = self._counters[stream_id] = self._counters[stream_id] + 1
        event_id = event_id or f"{stream_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata: dict[str, Any] = {
            "stream_id": stream_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            # Chroma metadata values must be scalars.
            record_metadata.update({key: value for key, value in metadata.items() if value is not None})

        return ChromaEvent(
            id=event_id,
            stream_id=stream_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_stream(self, stream_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=build_where({"stream_id": stream_id}), limit=limit)
        return self._convert_result(result)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    def save_snapshot(self, snapshot: Snapshot) -> ChromaEvent:
        """Replace the stored snapshot; only the latest one is kept."""

        collection = self._ensure_collection()
        event = self._build_event(
            SNAPSHOT_STREAM,
            "snapshot",
            snapshot.model_dump(mode="json"),
            {"agents": len(snapshot.agents), "version": snapshot.version},
            event_id=SNAPSHOT_ID,
        )
        collection.upsert(documents=[event.document], metadatas=[event.metadata], ids=[event.id])
        return event

    def load_snapshot(self) -> Snapshot | None:
        events = self._convert_result(self._ensure_collection().get(ids=[SNAPSHOT_ID]))
        if not events:
            return None
        return Snapshot.model_validate(json.loads(events[-1].document))

    # ------------------------------------------------------------------
    # Lifecycle history
    # ------------------------------------------------------------------
    def record_lifecycle(
        self,
        *,
        agent_id: str,
        event: str,
        name: str | None = None,
        detail: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LifecycleRecord:
        payload = {"agent_id": agent_id, "event": event, "name": name, "detail": detail}
        if metadata:
            payload.update(metadata)

        stored = self.record_event(
            stream_id=f"agent::{agent_id}",
            event_type=LIFECYCLE_EVENT,
            body=payload,
            metadata={"agent_id": agent_id, "event": event, "name": name},
        )
        return LifecycleRecord(
            agent_id=agent_id,
            event=event,
            recorded_at=stored.timestamp,
            name=name,
            detail=detail,
            metadata=metadata or {},
        )

    def list_lifecycle(self, agent_id: str | None = None) -> list[LifecycleRecord]:
        events = self.search_events(filters={"event_type": LIFECYCLE_EVENT, "agent_id": agent_id})
        records: list[LifecycleRecord] = []
        for stored in events:
            doc = json.loads(stored.document)
            records.append(
                LifecycleRecord(
                    agent_id=doc["agent_id"],
                    event=doc.get("event", "unknown"),
                    recorded_at=stored.timestamp,
                    name=doc.get("name"),
                    detail=doc.get("detail"),
                    metadata={k: v for k, v in doc.items() if k not in {"agent_id", "event", "name", "detail"}},
                )
            )
        return records

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=build_where(filters))
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = [
    "ChromaEvent",
    "ChromaUnavailableError",
    "LIFECYCLE_EVENT",
    "SNAPSHOT_ID",
    "SNAPSHOT_STREAM",
    "SnapshotStore",
    "build_where",
]
