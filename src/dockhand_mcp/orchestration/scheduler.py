"""Dependency-aware scheduling of sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from ..sessions.models import Session, SessionStatus
from ..sessions.registry import SessionRegistry

logger = logging.getLogger(__name__)


class DependencyScheduler:
    """Starts sessions once every dependency has completed.

    Sessions with unmet dependencies are parked in one wait-list bucket per unmet
    dependency. Completion notifications are delivered as messages on a queue that
    a single loop consumes; that loop is the only place where parked sessions are
    released, so overlapping notifications can never start a session twice.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        launcher: Callable[[str], Awaitable[None]],
        *,
        on_parked: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self._registry = registry
        self._launcher = launcher
        self._on_parked = on_parked
        self._waitlist: dict[str, list[str]] = {}
        self._parked: set[str] = set()
        self._lock = asyncio.Lock()
        self._events: asyncio.Queue[str] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    def dependencies_met(self, session: Session) -> bool:
        return not self.unmet_dependencies(session)

    def unmet_dependencies(self, session: Session) -> list[str]:
        unmet: list[str] = []
        for dep_id in session.dependencies:
            dependency = self._registry.get(dep_id)
            if dependency is None or dependency.status != SessionStatus.COMPLETED:
                unmet.append(dep_id)
        return unmet

    @property
    def waitlist(self) -> dict[str, list[str]]:
        return {dep_id: list(waiting) for dep_id, waiting in self._waitlist.items()}

    def is_parked(self, session_id: str) -> bool:
        return session_id in self._parked

    async def submit(self, session: Session) -> list[str]:
        """Start ``session`` now or park it; returns the dependencies it waits for.

        An immediate start is awaited so construction errors reach the caller.
        """

        self._ensure_loop()
        async with self._lock:
            unmet = self.unmet_dependencies(session)
            if unmet:
                if self._on_parked is not None:
                    await self._on_parked(session.id)
                for dep_id in unmet:
                    bucket = self._waitlist.setdefault(dep_id, [])
                    if session.id not in bucket:
                        bucket.append(session.id)
                self._parked.add(session.id)
                logger.info(
                    "Session queued", extra={"session_id": session.id, "waiting_for": unmet}
                )
                return unmet

        await self._launcher(session.id)
        return []

    async def notify_completed(self, session_id: str) -> None:
        """Publish a completion message for ``session_id``."""

        self._ensure_loop()
        assert self._events is not None
        await self._events.put(session_id)

    async def reconcile(self) -> list[str]:
        """Publish completions that were recorded without a notification here.

        Another process sharing the registry may finish a dependency that sessions
        parked in this scheduler wait for; returns the dependency ids published.
        """

        finished: list[str] = []
        async with self._lock:
            for dep_id in self._waitlist:
                dependency = self._registry.get(dep_id)
                if dependency is not None and dependency.status in (
                    SessionStatus.COMPLETED,
                    SessionStatus.FAILED,
                ):
                    finished.append(dep_id)
        for dep_id in finished:
            await self.notify_completed(dep_id)
        return finished

    async def cancel(self, session_id: str) -> bool:
        async with self._lock:
            return self._forget(session_id)

    def _forget(self, session_id: str) -> bool:
        if session_id not in self._parked:
            return False
        self._parked.discard(session_id)
        for dep_id in list(self._waitlist):
            bucket = self._waitlist[dep_id]
            if session_id in bucket:
                bucket.remove(session_id)
        return True

    def _ensure_loop(self) -> None:
        if self._events is None:
            self._events = asyncio.Queue()
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run(), name="dockhand-scheduler")

    async def _run(self) -> None:
        assert self._events is not None
        while True:
            session_id = await self._events.get()
            try:
                await self._release_waiting(session_id)
            except Exception:
                logger.exception(
                    "Failed to release sessions waiting on dependency",
                    extra={"session_id": session_id},
                )
            finally:
                self._events.task_done()

    async def _release_waiting(self, completed_id: str) -> list[str]:
        released: list[str] = []
        async with self._lock:
            waiting = self._waitlist.pop(completed_id, [])
            for waiting_id in waiting:
                if waiting_id not in self._parked:
                    continue
                session = self._registry.get(waiting_id)
                if session is None or session.status != SessionStatus.QUEUED:
                    self._forget(waiting_id)
                    continue
                if not self.dependencies_met(session):
                    continue
                self._forget(waiting_id)
                released.append(waiting_id)

        for waiting_id in released:
            logger.info(
                "Starting waiting session",
                extra={"session_id": waiting_id, "released_by": completed_id},
            )
            task = asyncio.create_task(self._launch_released(waiting_id))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        return released

    async def _launch_released(self, session_id: str) -> None:
        try:
            await self._launcher(session_id)
        except Exception as exc:
            logger.error(
                "Failed to start waiting session",
                extra={"session_id": session_id, "error": str(exc)},
            )

    async def wait_idle(self) -> None:
        """Wait until queued notifications and released launches have been handled."""

        while True:
            if self._events is not None:
                await self._events.join()
            pending = [task for task in self._inflight if not task.done()]
            if not pending:
                if self._events is None or self._events.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)


__all__ = ["DependencyScheduler"]
