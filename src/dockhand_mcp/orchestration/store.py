"""Serialized read-modify-write access to session records."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Callable

from ..sessions.models import Session, SessionStatus
from ..sessions.registry import SessionRegistry

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..storage import SessionJournal

logger = logging.getLogger(__name__)


class SessionNotFoundError(LookupError):
    """Raised when a session id is not present in the registry."""


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed by the session state machine."""


class SessionStore:
    """Wraps a registry with one lock per session id.

    Every status change goes through :meth:`locked` so that concurrent exit
    callbacks and operator commands never interleave their read-modify-write.
    """

    def __init__(self, registry: SessionRegistry, journal: "SessionJournal | None" = None) -> None:
        self._registry = registry
        self._journal = journal
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def get(self, session_id: str) -> Session | None:
        return self._registry.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        return session

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[Session]:
        """Yield the current record while holding its lock; call :meth:`commit` to save."""

        async with self._lock_for(session_id):
            yield self.require(session_id)

    def commit(self, session: Session, *, previous: SessionStatus | None = None) -> Session:
        session.touch()
        self._registry.put(session)
        if previous is not None and previous != session.status:
            logger.info(
                "Session status changed",
                extra={
                    "session_id": session.id,
                    "from_status": previous.value,
                    "to_status": session.status.value,
                    "container_ref": session.container_ref,
                },
            )
            self._journal_transition(session, previous)
        return session

    def _journal_transition(self, session: Session, previous: SessionStatus) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_transition(session, previous)
        except Exception as exc:  # journal is optional; never block a transition
            logger.warning(
                "Failed to journal session transition",
                extra={"session_id": session.id, "error": str(exc)},
            )

    async def update(self, session_id: str, mutate: Callable[[Session], None]) -> Session:
        async with self.locked(session_id) as session:
            previous = session.status
            mutate(session)
            return self.commit(session, previous=previous)

    async def transition(
        self,
        session_id: str,
        target: SessionStatus,
        mutate: Callable[[Session], None] | None = None,
    ) -> Session:
        async with self.locked(session_id) as session:
            return self.apply_transition(session, target, mutate)

    def apply_transition(
        self,
        session: Session,
        target: SessionStatus,
        mutate: Callable[[Session], None] | None = None,
    ) -> Session:
        """Validate and persist a transition on a record already held via :meth:`locked`."""

        previous = session.status
        if not session.can_transition(target):
            raise InvalidTransitionError(
                f"Session '{session.id}' cannot move from {previous.value} to {target.value}"
            )
        session.status = target
        if mutate is not None:
            mutate(session)
        return self.commit(session, previous=previous)


__all__ = ["InvalidTransitionError", "SessionNotFoundError", "SessionStore"]
