"""Chroma-backed journal of session lifecycle events."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from ..sessions.models import Session, SessionStatus


class JournalUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Minimal Chroma collection API used by the journal."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(self, *, where: dict[str, Any] | None = None) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class JournalEvent:
    """One stored lifecycle event."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "event_type": self.event_type,
            "document": self.document,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
        }


def _scalar_metadata(values: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata only accepts str, int, float and bool values.
    cleaned: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        else:
            cleaned[key] = str(value)
    return cleaned


class SessionJournal:
    """Append-only store of session events in a Chroma collection."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "dockhand_sessions",
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
                "chromadb package is not installed; install dockhand with persistence extras"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _events_from(self, result: dict[str, list[Any]]) -> list[JournalEvent]:
        """Rebuild events from a Chroma ``get`` payload, oldest first."""

        rows = zip(result.get("ids", []), result.get("documents", []), result.get("metadatas", []))
        events = [
            JournalEvent(
                id=event_id,
                session_id=str(metadata.get("session_id", "")),
                event_type=str(metadata.get("event_type", "")),
                document=document,
                metadata=dict(metadata),
                timestamp=self._parse_timestamp(metadata.get("timestamp")),
            )
            for event_id, document, metadata in rows
        ]
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def _parse_timestamp(self, raw: Any) -> datetime:
        if isinstance(raw, str):
            try:
                return datetime.fromisoformat(raw)
            except ValueError:
                pass
        return self._clock()

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> JournalEvent:
        collection = self._ensure_collection()
        counter = self._counters[session_id] = self._counters[session_id] + 1
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata: dict[str, Any] = {
            "session_id": session_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(_scalar_metadata(metadata))

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return JournalEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def record_transition(self, session: Session, previous: SessionStatus | None = None) -> JournalEvent:
        """Journal a status change of ``session``."""

        body = {
            "session_id": session.id,
            "kind": session.kind,
            "repository": session.project.repository,
            "from_status": previous.value if previous is not None else None,
            "to_status": session.status.value,
            "container_ref": session.container_ref,
            "attempt": session.attempt,
            "error": session.error,
        }
        if session.output is not None:
            body["summary"] = session.output.summary
            body["artifact_count"] = len(session.output.artifacts)
        return self.record_event(
            session_id=session.id,
            event_type="status_change",
            body=body,
            metadata={
                "status": session.status.value,
                "from_status": previous.value if previous is not None else None,
                "repository": session.project.repository,
                "container_ref": session.container_ref,
            },
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[JournalEvent]:
        """Events of one session, oldest first; ``limit`` keeps the most recent ones."""

        events = self._events_from(self._ensure_collection().get(where={"session_id": session_id}))
        return events[-limit:] if limit else events

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[JournalEvent]:
        """Events matching ``filters``, narrowed by a case-insensitive ``query``."""

        collection = self._ensure_collection()
        where = filters
        if filters and len(filters) > 1:
            where = {"$and": [{key: value} for key, value in filters.items()]}
        events = self._events_from(collection.get(where=where))
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = ["JournalEvent", "JournalUnavailableError", "SessionJournal"]
