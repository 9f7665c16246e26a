"""Run lists of batch tasks sequentially or in bounded parallel chunks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from ..sessions.models import BatchTask, Session, SessionStatus

logger = logging.getLogger(__name__)

TaskRunner = Callable[[BatchTask], Awaitable[Session]]


class BatchConfigError(ValueError):
    """Raised when batch options are invalid; nothing has run yet."""


@dataclass(slots=True)
class BatchOutcome:
    index: int
    task: BatchTask
    ok: bool
    session_id: str | None = None
    status: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "repo": self.task.repo,
            "command": self.task.describe(),
            "ok": self.ok,
            "session_id": self.session_id,
            "status": self.status,
            "error": self.error,
        }


@dataclass(slots=True)
class BatchReport:
    parallel: bool
    max_concurrent: int
    outcomes: list[BatchOutcome] = field(default_factory=list)
    chunks: list[list[int]] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    def to_dict(self) -> dict[str, Any]:
        return {
            "parallel": self.parallel,
            "max_concurrent": self.max_concurrent,
            "total": len(self.outcomes),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "chunks": [list(chunk) for chunk in self.chunks],
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


def validate_max_concurrent(value: Any) -> int:
    if isinstance(value, bool):
        raise BatchConfigError("max_concurrent must be a positive integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise BatchConfigError("max_concurrent must be a positive integer") from exc
    if parsed != value and not (isinstance(value, str) and value.strip() == str(parsed)):
        raise BatchConfigError("max_concurrent must be a positive integer")
    if parsed < 1:
        raise BatchConfigError("max_concurrent must be a positive integer")
    return parsed


class BatchRunner:
    """Feeds batch tasks through ``task_runner`` under a concurrency bound."""

    def __init__(self, task_runner: TaskRunner) -> None:
        self._task_runner = task_runner

    async def run(
        self,
        tasks: Sequence[BatchTask],
        *,
        parallel: bool = False,
        max_concurrent: Any = 2,
    ) -> BatchReport:
        limit = validate_max_concurrent(max_concurrent)
        report = BatchReport(parallel=parallel, max_concurrent=limit)
        if not tasks:
            return report

        if not parallel:
            for index, task in enumerate(tasks):
                report.chunks.append([index])
                report.outcomes.append(await self._run_one(index, task))
            return report

        for start in range(0, len(tasks), limit):
            indexes = list(range(start, min(start + limit, len(tasks))))
            report.chunks.append(indexes)
            logger.info(
                "Starting batch chunk",
                extra={"chunk": len(report.chunks), "size": len(indexes)},
            )
            results = await asyncio.gather(
                *(self._run_one(index, tasks[index]) for index in indexes),
                return_exceptions=True,
            )
            for index, result in zip(indexes, results):
                if isinstance(result, BaseException):
                    report.outcomes.append(
                        BatchOutcome(index=index, task=tasks[index], ok=False, error=str(result))
                    )
                else:
                    report.outcomes.append(result)
        return report

    async def _run_one(self, index: int, task: BatchTask) -> BatchOutcome:
        try:
            session = await self._task_runner(task)
        except Exception as exc:
            logger.error(
                "Batch task failed",
                extra={"index": index, "repo": task.repo, "error": str(exc)},
            )
            return BatchOutcome(index=index, task=task, ok=False, error=str(exc))

        ok = session.status == SessionStatus.COMPLETED
        if not ok:
            logger.warning(
                "Batch task did not complete",
                extra={"index": index, "session_id": session.id, "status": session.status.value},
            )
        return BatchOutcome(
            index=index,
            task=task,
            ok=ok,
            session_id=session.id,
            status=session.status.value,
            error=session.error,
        )


__all__ = ["BatchConfigError", "BatchOutcome", "BatchReport", "BatchRunner", "validate_max_concurrent"]
