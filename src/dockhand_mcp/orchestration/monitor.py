"""Execution monitor: drives one running container to a terminal session state."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable

from ..runtime import ContainerProcess
from ..sessions.models import Session, SessionOutput, SessionStatus, utcnow
from .markers import OutputCollector
from .store import SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)

SUCCESS_EXIT_CODE = 0


def extract_correlation_id(line: str) -> str | None:
    """Return the agent's own session token from an initialization record."""

    record = json.loads(line)
    if (
        isinstance(record, dict)
        and record.get("type") == "system"
        and record.get("subtype") == "init"
        and record.get("session_id")
    ):
        return str(record["session_id"])
    return None


class ExecutionMonitor:
    """Owns the output stream of one container for one session run.

    Output is consumed once, in arrival order. When the process exits the session
    is finalized and ``on_finished`` is awaited with the session id and its final
    status. Finalization never raises.
    """

    def __init__(
        self,
        session_id: str,
        store: SessionStore,
        *,
        on_finished: Callable[[str, SessionStatus], Awaitable[None]] | None = None,
        collector: OutputCollector | None = None,
    ) -> None:
        self.session_id = session_id
        self._store = store
        self._on_finished = on_finished
        self._collector = collector or OutputCollector()
        self._first_line_seen = False
        self._container_ref: str | None = None

    @property
    def collector(self) -> OutputCollector:
        return self._collector

    async def run(self, process: ContainerProcess) -> SessionStatus | None:
        self._container_ref = process.container_ref
        exit_code: int | None = None
        stream_error: str | None = None
        try:
            await asyncio.gather(self._consume_stdout(process), self._consume_stderr(process))
            exit_code = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Session output stream failed",
                extra={"session_id": self.session_id, "error": str(exc)},
            )
            stream_error = f"Output stream failed: {exc}"
        return await self.finalize(exit_code, stream_error)

    async def _consume_stdout(self, process: ContainerProcess) -> None:
        async for line in process.stdout_lines():
            if not self._first_line_seen and line.strip():
                self._first_line_seen = True
                self._collector.add_raw(line)
                await self._capture_correlation_id(line)
                continue
            self._collector.add(line)
            logger.debug("Session output", extra={"session_id": self.session_id, "line": line})

    async def _consume_stderr(self, process: ContainerProcess) -> None:
        async for line in process.stderr_lines():
            self._collector.add_raw(f"ERROR: {line}")
            logger.error("Session error", extra={"session_id": self.session_id, "line": line})

    async def _capture_correlation_id(self, line: str) -> None:
        try:
            correlation_id = extract_correlation_id(line)
        except (ValueError, TypeError) as exc:
            logger.warning(
                "Failed to parse first line as JSON",
                extra={"session_id": self.session_id, "line": line[:200], "error": str(exc)},
            )
            return
        if correlation_id is None:
            return

        def _apply(session: Session) -> None:
            if self._container_ref is None or session.container_ref == self._container_ref:
                session.correlation_id = correlation_id

        await self._store.update(self.session_id, _apply)
        logger.info(
            "Captured agent correlation id",
            extra={"session_id": self.session_id, "correlation_id": correlation_id},
        )

    async def finalize(self, exit_code: int | None, stream_error: str | None = None) -> SessionStatus | None:
        final_status: SessionStatus | None = None
        try:
            final_status = await self._write_result(exit_code, stream_error)
        except SessionNotFoundError:
            logger.info("Session removed before its process exited", extra={"session_id": self.session_id})
            return None
        except Exception as exc:
            logger.exception("Failed to finalize session", extra={"session_id": self.session_id})
            final_status = self._force_failed(f"Failed to finalize session: {exc}")

        if final_status is not None and self._on_finished is not None:
            try:
                await self._on_finished(self.session_id, final_status)
            except Exception:
                logger.exception(
                    "Session completion callback failed", extra={"session_id": self.session_id}
                )
        return final_status

    async def _write_result(self, exit_code: int | None, stream_error: str | None) -> SessionStatus | None:
        output = self._collector.build()
        async with self._store.locked(self.session_id) as session:
            if self._container_ref is not None and session.container_ref != self._container_ref:
                logger.info(
                    "Container superseded by a newer attempt",
                    extra={"session_id": self.session_id, "container_ref": self._container_ref},
                )
                return None
            if session.status != SessionStatus.RUNNING:
                # Operator transitions (stop) win over the exit of the container.
                logger.info(
                    "Session left running before its process exited",
                    extra={"session_id": self.session_id, "status": session.status.value},
                )
                return None

            if stream_error is None and exit_code == SUCCESS_EXIT_CODE:
                target = SessionStatus.COMPLETED
                error = None
            else:
                target = SessionStatus.FAILED
                error = stream_error or f"Process exited with code {exit_code}"

            def _apply(record: Session) -> None:
                record.completed_at = utcnow()
                record.output = output
                record.error = error

            self._store.apply_transition(session, target, _apply)

        logger.info(
            "Session completed",
            extra={"session_id": self.session_id, "status": target.value, "exit_code": exit_code},
        )
        return target

    def _force_failed(self, message: str) -> SessionStatus | None:
        registry = self._store.registry
        try:
            session = registry.get(self.session_id)
            if session is None or (
                self._container_ref is not None and session.container_ref != self._container_ref
            ):
                return None
            if session.status.is_terminal or session.status is SessionStatus.STOPPED:
                return session.status
            session.status = SessionStatus.FAILED
            session.error = message
            session.completed_at = utcnow()
            session.output = session.output or SessionOutput(
                logs=list(self._collector.logs), summary="Session failed"
            )
            session.touch()
            registry.put(session)
            return SessionStatus.FAILED
        except Exception:
            logger.exception(
                "Unable to record failure for session", extra={"session_id": self.session_id}
            )
            return SessionStatus.FAILED


__all__ = ["ExecutionMonitor", "SUCCESS_EXIT_CODE", "extract_correlation_id"]
