"""Session registry backends."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

from pydantic import ValidationError

from .models import SESSION_ID_PATTERN, Session, SessionStatus

logger = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    """Raised when a session record cannot be stored."""


class SessionRegistry(Protocol):
    """Storage contract shared by every registry backend."""

    def put(self, session: Session) -> None:
        ...

    def get(self, session_id: str) -> Session | None:
        ...

    def list_all(self) -> list[Session]:
        ...

    def list_by_group(self, prefix: str) -> list[Session]:
        ...

    def remove(self, session_id: str) -> bool:
        ...


@dataclass(slots=True)
class SessionFilter:
    """Listing filters surfaced to operators."""

    status: SessionStatus | None = None
    repo: str | None = None
    limit: int | None = None
    group: str | None = None

    def __post_init__(self) -> None:
        if self.status is not None and not isinstance(self.status, SessionStatus):
            self.status = SessionStatus(self.status)
        if self.limit is not None and self.limit <= 0:
            raise ValueError("limit must be a positive integer")


def apply_filter(sessions: Iterable[Session], session_filter: SessionFilter | None) -> list[Session]:
    """Filter and order sessions newest first."""

    results = list(sessions)
    if session_filter is not None:
        if session_filter.status is not None:
            results = [session for session in results if session.status == session_filter.status]
        if session_filter.repo:
            results = [
                session for session in results if session_filter.repo in session.project.repository
            ]
        if session_filter.group:
            results = [session for session in results if session.id.startswith(session_filter.group)]
    results.sort(key=lambda session: session.created_at, reverse=True)
    if session_filter is not None and session_filter.limit:
        results = results[: session_filter.limit]
    return results


class InMemorySessionRegistry:
    """Process-lifetime registry backed by a dict."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def put(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = session.model_copy(deep=True)

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session is not None else None

    def list_all(self) -> list[Session]:
        with self._lock:
            return [session.model_copy(deep=True) for session in self._sessions.values()]

    def list_by_group(self, prefix: str) -> list[Session]:
        return [session for session in self.list_all() if session.id.startswith(prefix)]

    def remove(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None


class FileSessionRegistry:
    """Registry storing one JSON record per session under a directory.

    Records are written to a temporary file in the same directory and renamed into
    place, so concurrent readers never observe a partial record. The directory can
    be listed by a separate process (for example the operator CLI).
    """

    suffix = ".json"

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory).expanduser()
        self._directory.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path_for(self, session_id: str) -> Path:
        if not SESSION_ID_PATTERN.match(session_id):
            raise RegistryError(f"Session id '{session_id}' is not a valid record name")
        return self._directory / f"{session_id}{self.suffix}"

    def put(self, session: Session) -> None:
        target = self._path_for(session.id)
        payload = session.model_dump_json(indent=2)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{session.id}.", suffix=".tmp", dir=str(self._directory)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise RegistryError(f"Failed to write session {session.id}: {exc}") from exc

    def _load(self, path: Path) -> Session | None:
        try:
            return Session.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError, ValueError) as exc:
            logger.warning("Skipping unreadable session record", extra={"path": str(path), "error": str(exc)})
            return None

    def get(self, session_id: str) -> Session | None:
        try:
            path = self._path_for(session_id)
        except RegistryError:
            return None
        return self._load(path)

    def list_all(self) -> list[Session]:
        sessions: list[Session] = []
        for path in sorted(self._directory.glob(f"*{self.suffix}")):
            session = self._load(path)
            if session is not None:
                sessions.append(session)
        return sessions

    def list_by_group(self, prefix: str) -> list[Session]:
        return [session for session in self.list_all() if session.id.startswith(prefix)]

    def remove(self, session_id: str) -> bool:
        try:
            self._path_for(session_id).unlink()
        except (FileNotFoundError, RegistryError):
            return False
        return True


__all__ = [
    "FileSessionRegistry",
    "InMemorySessionRegistry",
    "RegistryError",
    "SessionFilter",
    "SessionRegistry",
    "apply_filter",
]
