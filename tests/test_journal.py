from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from dockhand_mcp.config import DockhandSettings
from dockhand_mcp.orchestration import SessionOrchestrator, SessionStore
from dockhand_mcp.runtime.fake import FakeRuntime
from dockhand_mcp.sessions import (
    CreateSessionRequest,
    InMemorySessionRegistry,
    ProjectInfo,
    Session,
    SessionStatus,
)
from dockhand_mcp.storage import JournalUnavailableError, SessionJournal
from dockhand_mcp.templates import TemplateLoader


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


def _matches(metadata: dict[str, Any], where: dict[str, Any]) -> bool:
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            filtered = [record for record in filtered if _matches(record.metadata, where)]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def make_journal(tmp_path: Path, client: StubClient | None = None) -> SessionJournal:
    client = client or StubClient()
    return SessionJournal(
        tmp_path,
        client_factory=lambda: client,
        clock=lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
    )


def test_record_and_fetch_events(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)

    event = journal.record_event(
        session_id="session-1",
        event_type="note",
        body={"detail": "started"},
        metadata={"level": "INFO", "ignored": None},
    )

    assert event.session_id == "session-1"
    assert event.metadata["sequence"] == 1
    assert "ignored" not in event.metadata

    events = journal.fetch_session_events("session-1")
    assert len(events) == 1
    assert events[0].metadata["level"] == "INFO"
    assert events[0].document == '{"detail": "started"}'


def test_sequence_increments(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)

    journal.record_event(session_id="session-2", event_type="a", body="A")
    journal.record_event(session_id="session-2", event_type="b", body="B")

    events = journal.fetch_session_events("session-2")
    assert [event.metadata["sequence"] for event in events] == [1, 2]


def test_search_filters(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)

    journal.record_event(session_id="sess", event_type="note", body="Investigate auth", metadata={"tags": ["auth"]})
    journal.record_event(session_id="sess", event_type="note", body="Fix logging", metadata={})
    journal.record_event(session_id="other", event_type="alert", body="auth outage")

    assert len(journal.search_events("auth")) == 2
    results = journal.search_events("auth", filters={"session_id": "sess", "event_type": "note"})
    assert len(results) == 1
    assert "Investigate" in results[0].document
    assert results[0].metadata["tags"] == "['auth']"


def test_store_journals_status_changes(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)
    store = SessionStore(InMemorySessionRegistry(), journal)
    session = Session(id="s1", project=ProjectInfo(repository="acme/api", requirement="build"))
    store.commit(session)

    asyncio.run(store.transition("s1", SessionStatus.QUEUED))

    events = journal.fetch_session_events("s1")
    assert [event.event_type for event in events] == ["status_change"]
    assert events[0].metadata["status"] == "queued"
    assert events[0].metadata["from_status"] == "pending"


def test_store_ignores_journal_failures(tmp_path: Path) -> None:
    def broken_factory():
        raise JournalUnavailableError("chroma offline")

    journal = SessionJournal(tmp_path, client_factory=broken_factory)
    store = SessionStore(InMemorySessionRegistry(), journal)
    store.commit(Session(id="s1", project=ProjectInfo(repository="acme/api", requirement="build")))

    session = asyncio.run(store.transition("s1", SessionStatus.CANCELLED))

    assert session.status is SessionStatus.CANCELLED
    with pytest.raises(JournalUnavailableError):
        journal.ping()


def test_fetch_limit_keeps_most_recent_events(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)
    for body in ("first", "second", "third"):
        journal.record_event(session_id="s3", event_type="note", body=body)

    events = journal.fetch_session_events("s3", limit=2)

    assert [event.document for event in events] == ["second", "third"]
    assert events[-1].to_dict()["timestamp"] == "2025-01-01T00:00:00+00:00"


def make_orchestrator(journal: SessionJournal | None) -> SessionOrchestrator:
    return SessionOrchestrator(
        InMemorySessionRegistry(),
        FakeRuntime(),
        settings=DockhandSettings(registry_backend="memory", template_paths=[]),
        templates=TemplateLoader([]),
        journal=journal,
        credentials={},
    )


def run_session(orchestrator: SessionOrchestrator, session_id: str) -> None:
    async def scenario():
        orchestrator.create(
            CreateSessionRequest(
                id=session_id, project=ProjectInfo(repository="acme/api", requirement="build")
            )
        )
        await orchestrator.start(session_id)
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())


def test_history_lists_transitions_of_a_session(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(make_journal(tmp_path))
    run_session(orchestrator, "h1")

    result = orchestrator.history("h1")
    latest = orchestrator.history("h1", limit=1)
    matched = orchestrator.history("h1", query="completed")

    assert result.success is True
    statuses = [event["metadata"]["status"] for event in result.details["events"]]
    assert statuses == ["initializing", "running", "completed"]
    assert [event["metadata"]["status"] for event in latest.details["events"]] == ["completed"]
    assert len(matched.details["events"]) == 1
    assert matched.details["events"][0]["metadata"]["from_status"] == "running"


def test_history_requires_journal(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(None)
    run_session(orchestrator, "h2")

    result = orchestrator.history("h2")
    missing = orchestrator.history("ghost")

    assert result.success is False
    assert result.message == "Session journal is not enabled"
    assert missing.success is False
    assert missing.message == "Session 'ghost' not found"
