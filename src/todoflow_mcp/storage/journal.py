"""Chroma-backed append-only journal of orchestration events."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from pydantic_core import to_json

DEFAULT_COLLECTION = "todoflow_events"


class JournalUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by the journal."""

    def add(
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
    """Protocol for the minimal Chroma client API used by the journal."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class JournalEvent:
    """Represents a stored journal event."""

    id: str
    stream_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    def body(self) -> Any:
        try:
            return json.loads(self.document)
        except json.JSONDecodeError:
            return self.document


def _metadata_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)):
        return value
    return to_json(value).decode("utf-8")


class EventJournal:
    """Record workflow, task and session events in a Chroma collection."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = DEFAULT_COLLECTION,
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

    @property
    def collection_name(self) -> str:
        return self._collection_name

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise JournalUnavailableError(
                "chromadb package is not installed; the event journal is disabled"
            ) from exc

        try:
            return chromadb.PersistentClient(path=str(self._path))
        except Exception as exc:  # pragma: no cover - depends on environment
            raise JournalUnavailableError(f"Cannot open Chroma at {self._path}: {exc}") from exc

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[JournalEvent]:
        events: list[JournalEvent] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for event_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                JournalEvent(
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
    ) -> JournalEvent:
        collection = self._ensure_collection()
        counter = self._counters[stream_id] = self._counters[stream_id] + 1
        event_id = f"{stream_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else to_json(body).decode("utf-8")
        record_metadata: dict[str, Any] = {
            "stream_id": stream_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(
                {key: _metadata_value(value) for key, value in metadata.items() if value is not None}
            )

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return JournalEvent(
            id=event_id,
            stream_id=stream_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_stream(self, stream_id: str, *, limit: int | None = None) -> list[JournalEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"stream_id": stream_id}, limit=limit)
        return self._convert_result(result)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[JournalEvent]:
        collection = self._ensure_collection()
        where = filters
        if filters and len(filters) > 1:
            where = {"$and": [{key: value} for key, value in filters.items()]}
        result = collection.get(where=where)
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


__all__ = ["EventJournal", "JournalEvent", "JournalUnavailableError"]
