"""Session orchestration facade composing registry, runtime, monitor and scheduler."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping
from uuid import uuid4

from pydantic import BaseModel, Field

from ..config import DockhandSettings, get_settings
from ..runtime import ContainerProcess, DockerRuntime, DockerRuntimeError
from ..sessions.models import (
    BatchTask,
    CreateSessionRequest,
    ProjectInfo,
    Session,
    SessionKind,
    SessionOutput,
    SessionStatus,
    utcnow,
)
from ..sessions.registry import SessionFilter, SessionRegistry, apply_filter
from ..templates import TemplateLoader
from .batch import BatchReport, BatchRunner
from .monitor import ExecutionMonitor
from .scheduler import DependencyScheduler
from .store import InvalidTransitionError, SessionNotFoundError, SessionStore

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..storage import SessionJournal

logger = logging.getLogger(__name__)

DEFAULT_PHASES: tuple[str, ...] = ("analysis", "implementation", "testing", "review")


@dataclass(slots=True)
class OperationResult:
    """Outcome of an operator command; misuse is reported here rather than raised."""

    success: bool
    message: str
    session_id: str | None = None
    repository: str | None = None
    container_ref: str | None = None
    status: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_session(cls, session: Session, success: bool, message: str, **details: Any) -> "OperationResult":
        return cls(
            success=success,
            message=message,
            session_id=session.id,
            repository=session.project.repository,
            container_ref=session.container_ref,
            status=session.status.value,
            details=details,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class StartResult:
    session_id: str
    status: str
    queued: bool
    waiting_for: list[str] = field(default_factory=list)
    container_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class StopAllReport:
    stopped: int = 0
    failed: int = 0
    results: list[OperationResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stopped": self.stopped,
            "failed": self.failed,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(slots=True)
class SyncReport:
    total: int = 0
    running: int = 0
    stopped: int = 0
    demoted: list[str] = field(default_factory=list)
    reattached: list[str] = field(default_factory=list)
    settled: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class OrchestrationResult:
    group_id: str
    repository: str
    sessions: list[Session] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def summary(self) -> str:
        return f"Started {len(self.sessions)} sessions for {self.repository}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "repository": self.repository,
            "summary": self.summary,
            "sessions": [
                {
                    "id": session.id,
                    "kind": session.kind,
                    "status": session.status.value,
                    "dependencies": list(session.dependencies),
                }
                for session in self.sessions
            ],
            "errors": dict(self.errors),
        }


class OrchestrationComponent(BaseModel):
    """One implementation slice of an orchestrated project."""

    requirement: str = Field(..., description="Requirement handled by this component.")
    context: str | None = Field(default=None, description="Extra context for the component.")


class SessionOrchestrator:
    """Public surface for creating, scheduling and operating sessions.

    Records live in the registry; each launch gets a fresh container named after the
    session id and attempt number, watched by one :class:`ExecutionMonitor` task.
    Dependency ordering is delegated to :class:`DependencyScheduler`.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        runtime: DockerRuntime,
        *,
        settings: DockhandSettings | None = None,
        templates: TemplateLoader | None = None,
        journal: "SessionJournal | None" = None,
        credentials: Mapping[str, str] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = SessionStore(registry, journal)
        self._runtime = runtime
        self._templates = templates or TemplateLoader(self._settings.template_paths)
        self._journal = journal
        self._credentials = dict(
            credentials if credentials is not None else self._settings.credentials()
        )
        self._scheduler = DependencyScheduler(registry, self._launch, on_parked=self._mark_queued)
        self._monitors: dict[str, asyncio.Task[SessionStatus | None]] = {}
        self._watching: dict[str, str] = {}
        self._signals: dict[str, asyncio.Event] = {}

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def registry(self) -> SessionRegistry:
        return self._store.registry

    @property
    def runtime(self) -> DockerRuntime:
        return self._runtime

    @property
    def scheduler(self) -> DependencyScheduler:
        return self._scheduler

    @property
    def settings(self) -> DockhandSettings:
        return self._settings

    # Creation and scheduling -------------------------------------------------

    def _qualify_repository(self, project: ProjectInfo) -> ProjectInfo:
        if "/" in project.repository:
            return project
        owner = self._settings.default_github_owner
        return project.model_copy(update={"repository": f"{owner}/{project.repository}"})

    def _generate_id(self) -> str:
        while True:
            candidate = uuid4().hex[:12]
            if self._store.get(candidate) is None:
                return candidate

    def create(self, request: CreateSessionRequest) -> Session:
        """Register a new ``pending`` session."""

        session_id = request.id or self._generate_id()
        if self._store.get(session_id) is not None:
            raise ValueError(f"Session '{session_id}' already exists")

        session = Session(
            id=session_id,
            kind=request.kind,
            project=self._qualify_repository(request.project),
            dependencies=request.dependencies,
            resource_limits=request.resource_limits,
        )
        self._store.commit(session)
        logger.info(
            "Session created",
            extra={
                "session_id": session.id,
                "kind": session.kind,
                "repository": session.project.repository,
                "dependencies": session.dependencies,
            },
        )
        return session

    async def start(self, session_id: str) -> StartResult:
        """Launch a ``pending`` session now, or queue it behind its dependencies.

        Construction errors (volume, container or launch failures) propagate after
        the session has been marked ``failed``.
        """

        session = self._store.require(session_id)
        if session.status != SessionStatus.PENDING:
            raise InvalidTransitionError(
                f"Session '{session_id}' is {session.status.value}; only pending sessions can be started"
            )
        waiting_for = await self._scheduler.submit(session)
        current = self._store.require(session_id)
        return StartResult(
            session_id=session_id,
            status=current.status.value,
            queued=bool(waiting_for),
            waiting_for=waiting_for,
            container_ref=current.container_ref,
        )

    async def queue(self, request: CreateSessionRequest) -> StartResult:
        """Create a session and submit it in one step."""

        session = self.create(request)
        return await self.start(session.id)

    async def orchestrate(
        self,
        project: ProjectInfo,
        *,
        components: Iterable[OrchestrationComponent | Mapping[str, Any]] | None = None,
        phases: Iterable[str] | None = None,
        group_id: str | None = None,
    ) -> OrchestrationResult:
        """Fan a project out into analysis, implementation, testing and review sessions."""

        project = self._qualify_repository(project)
        group = group_id or uuid4().hex[:12]
        selected = set(phases or DEFAULT_PHASES)
        parts = [
            item if isinstance(item, OrchestrationComponent) else OrchestrationComponent.model_validate(item)
            for item in (components or [])
        ] or [OrchestrationComponent(requirement=project.requirement, context=project.context)]

        requests: list[CreateSessionRequest] = []
        analysis_id = f"{group}-analysis"
        requests.append(
            CreateSessionRequest(id=analysis_id, kind=SessionKind.ANALYSIS, project=project)
        )

        impl_ids: list[str] = []
        if "implementation" in selected:
            for index, part in enumerate(parts):
                impl_id = f"{group}-impl-{index}"
                impl_ids.append(impl_id)
                requests.append(
                    CreateSessionRequest(
                        id=impl_id,
                        kind=SessionKind.IMPLEMENTATION,
                        project=project.model_copy(
                            update={"requirement": part.requirement, "context": part.context}
                        ),
                        dependencies=[analysis_id],
                    )
                )

        testing_ids: list[str] = []
        if "testing" in selected:
            testing_ids.append(f"{group}-testing")
            requests.append(
                CreateSessionRequest(
                    id=testing_ids[0],
                    kind=SessionKind.TESTING,
                    project=project,
                    dependencies=list(impl_ids),
                )
            )

        if "review" in selected:
            requests.append(
                CreateSessionRequest(
                    id=f"{group}-review",
                    kind=SessionKind.REVIEW,
                    project=project,
                    dependencies=impl_ids + testing_ids,
                )
            )

        created = [self.create(request) for request in requests]
        result = OrchestrationResult(group_id=group, repository=project.repository)
        for session in created:
            try:
                await self._scheduler.submit(session)
            except Exception as exc:
                logger.error(
                    "Failed to start orchestrated session",
                    extra={"session_id": session.id, "group_id": group, "error": str(exc)},
                )
                result.errors[session.id] = str(exc)
        result.sessions = [self._store.require(session.id) for session in created]
        logger.info(
            "Orchestration initiated",
            extra={"group_id": group, "repository": project.repository, "sessions": len(created)},
        )
        return result

    async def _mark_queued(self, session_id: str) -> None:
        async with self._store.locked(session_id) as session:
            if session.status == SessionStatus.PENDING:
                self._store.apply_transition(session, SessionStatus.QUEUED)

    def build_environment(self, session: Session) -> dict[str, str | None]:
        """Environment variables handed to the container; empty values are dropped later."""

        project = session.project
        issue_number = project.issue_number or project.pr_number
        env: dict[str, str | None] = {
            "SESSION_ID": session.id,
            "SESSION_TYPE": session.kind,
            "REPO_FULL_NAME": project.repository,
            "BRANCH_NAME": project.branch,
            "ISSUE_NUMBER": str(issue_number) if issue_number is not None else None,
            "IS_PULL_REQUEST": "true" if project.is_pull_request else "false",
            "COMMAND": self._templates.render(session),
            "OPERATION_TYPE": "session",
            "OUTPUT_FORMAT": "stream-json",
            "BOT_USERNAME": self._settings.bot_username,
            "BOT_EMAIL": self._settings.bot_email,
        }
        env.update(self._credentials)
        return env

    async def _launch(self, session_id: str) -> None:
        def _prepare(record: Session) -> None:
            record.attempt += 1
            record.container_ref = None
            record.correlation_id = None
            record.error = None
            record.started_at = None
            record.completed_at = None

        session = await self._store.transition(session_id, SessionStatus.INITIALIZING, _prepare)
        container_ref: str | None = None
        try:
            container_ref = await self._runtime.create_container(
                f"dockhand-{session.id}-{session.attempt}", session.resource_limits
            )

            def _assign(record: Session) -> None:
                record.container_ref = container_ref

            session = await self._store.update(session_id, _assign)
            process = await self._runtime.start(
                container_ref, self._settings.container_image, self.build_environment(session)
            )

            def _running(record: Session) -> None:
                record.started_at = utcnow()

            await self._store.transition(session_id, SessionStatus.RUNNING, _running)
        except Exception as exc:
            await self._fail_launch(session_id, exc, container_ref)
            raise

        logger.info(
            "Session started",
            extra={"session_id": session_id, "container_ref": container_ref, "attempt": session.attempt},
        )
        self._watch(session_id, process)

    def _watch(self, session_id: str, process: ContainerProcess) -> None:
        monitor = ExecutionMonitor(session_id, self._store, on_finished=self._on_session_finished)
        task = asyncio.create_task(monitor.run(process), name=f"dockhand-monitor-{session_id}")
        self._monitors[session_id] = task
        self._watching[session_id] = process.container_ref

        def _forget(done: asyncio.Task[SessionStatus | None]) -> None:
            if self._monitors.get(session_id) is done:
                del self._monitors[session_id]
                self._watching.pop(session_id, None)

        task.add_done_callback(_forget)

    def is_watching(self, session_id: str, container_ref: str | None) -> bool:
        """True when this process has a live monitor on ``container_ref``."""

        task = self._monitors.get(session_id)
        return (
            task is not None
            and not task.done()
            and container_ref is not None
            and self._watching.get(session_id) == container_ref
        )

    async def _discard_container(self, session_id: str, container_ref: str) -> None:
        try:
            await self._runtime.remove(container_ref)
        except (DockerRuntimeError, OSError) as exc:
            logger.warning(
                "Failed to remove container",
                extra={"session_id": session_id, "container_ref": container_ref, "error": str(exc)},
            )

    async def _fail_launch(self, session_id: str, exc: BaseException, container_ref: str | None = None) -> None:
        message = str(exc) or exc.__class__.__name__
        logger.error("Failed to start session", extra={"session_id": session_id, "error": message})

        def _apply(record: Session) -> None:
            record.error = message
            record.completed_at = utcnow()
            record.output = SessionOutput(logs=[f"ERROR: {message}"], summary="Session failed to start")

        try:
            await self._store.transition(session_id, SessionStatus.FAILED, _apply)
        except (InvalidTransitionError, SessionNotFoundError) as record_exc:
            logger.warning(
                "Unable to record start failure",
                extra={"session_id": session_id, "error": str(record_exc)},
            )
        if container_ref:
            await self._discard_container(session_id, container_ref)
        self._signal(session_id)
        await self._scheduler.notify_completed(session_id)

    async def _on_session_finished(self, session_id: str, status: SessionStatus) -> None:
        if status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            # Output lives on the record from here on.
            session = self._store.get(session_id)
            if self._settings.remove_finished_containers and session is not None and session.container_ref:
                await self._discard_container(session_id, session.container_ref)
            await self._scheduler.notify_completed(session_id)
        self._signal(session_id)

    def _signal(self, session_id: str) -> None:
        self._signals.setdefault(session_id, asyncio.Event()).set()

    # Queries -----------------------------------------------------------------

    def get(self, session_id: str) -> Session:
        return self._store.require(session_id)

    def get_output(self, session_id: str) -> SessionOutput | None:
        return self._store.require(session_id).output

    def list(self, session_filter: SessionFilter | None = None) -> list[Session]:
        return apply_filter(self.registry.list_all(), session_filter)

    def list_group(self, prefix: str) -> list[Session]:
        return apply_filter(self.registry.list_by_group(prefix), None)

    async def wait_for(self, session_id: str, timeout: float | None = None) -> Session:
        """Wait until the session is terminal or stopped and return its record."""

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            event = self._signals.setdefault(session_id, asyncio.Event())
            event.clear()
            session = self._store.require(session_id)
            if session.status.is_terminal or session.status == SessionStatus.STOPPED:
                return session
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            await asyncio.wait_for(event.wait(), remaining)

    # Operator commands -------------------------------------------------------

    async def stop(self, session_id: str, *, force: bool = False, remove: bool = False) -> OperationResult:
        session = self._store.get(session_id)
        if session is None:
            return OperationResult(success=False, message=f"Session '{session_id}' not found", session_id=session_id)

        async with self._store.locked(session_id) as session:
            if session.status != SessionStatus.RUNNING:
                return OperationResult.for_session(
                    session, False, f"Session is {session.status.value}, not running"
                )
            container_ref = session.container_ref
            alive = bool(container_ref) and await self._runtime.is_running(container_ref)
            if not alive:
                self._store.apply_transition(session, SessionStatus.STOPPED)
                result = OperationResult.for_session(
                    session, False, "Container is not running; session marked stopped"
                )
            else:
                stopped = await self._runtime.stop(container_ref, force=force)
                if not stopped:
                    return OperationResult.for_session(session, False, "Failed to stop container")
                self._store.apply_transition(session, SessionStatus.STOPPED)
                result = OperationResult.for_session(
                    session, True, "Session stopped", forced=force
                )

        self._signal(session_id)
        logger.info(
            "Session stopped",
            extra={"session_id": session_id, "container_ref": container_ref, "force": force},
        )
        if remove:
            if container_ref:
                await self._runtime.remove(container_ref)
            self.registry.remove(session_id)
            result.details["removed"] = True
        return result

    async def stop_all(self, *, force: bool = False, remove: bool = False) -> StopAllReport:
        report = StopAllReport()
        running = self.list(SessionFilter(status=SessionStatus.RUNNING))
        outcomes = await asyncio.gather(
            *(self.stop(session.id, force=force, remove=remove) for session in running),
            return_exceptions=True,
        )
        for session, outcome in zip(running, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Failed to stop session",
                    extra={"session_id": session.id, "error": str(outcome)},
                )
                result = OperationResult(
                    success=False,
                    message=f"Failed to stop session: {outcome}",
                    session_id=session.id,
                    repository=session.project.repository,
                    container_ref=session.container_ref,
                )
            else:
                result = outcome
            report.results.append(result)
            if result.success:
                report.stopped += 1
            else:
                report.failed += 1
        return report

    async def cancel(self, session_id: str) -> OperationResult:
        session = self._store.get(session_id)
        if session is None:
            return OperationResult(success=False, message=f"Session '{session_id}' not found", session_id=session_id)

        async with self._store.locked(session_id) as session:
            if session.status not in (SessionStatus.PENDING, SessionStatus.QUEUED):
                return OperationResult.for_session(
                    session, False, f"Session is {session.status.value}; only pending or queued sessions can be cancelled"
                )
            self._store.apply_transition(session, SessionStatus.CANCELLED)
            result = OperationResult.for_session(session, True, "Session cancelled")
        await self._scheduler.cancel(session_id)
        self._signal(session_id)
        return result

    async def recover(self, session_id: str) -> OperationResult:
        """Relaunch a ``stopped`` session in a fresh container."""

        session = self._store.get(session_id)
        if session is None:
            return OperationResult(success=False, message=f"Session '{session_id}' not found", session_id=session_id)
        if session.status != SessionStatus.STOPPED:
            return OperationResult.for_session(
                session, False, f"Session is {session.status.value}; only stopped sessions can be recovered"
            )

        previous_ref = session.container_ref
        if previous_ref:
            await self._discard_container(session_id, previous_ref)
        try:
            await self._launch(session_id)
        except InvalidTransitionError as exc:
            current = self._store.require(session_id)
            return OperationResult.for_session(current, False, str(exc))
        except Exception as exc:
            current = self._store.require(session_id)
            return OperationResult.for_session(current, False, f"Failed to recover session: {exc}")

        current = self._store.require(session_id)
        return OperationResult.for_session(
            current, True, "Session recovered", previous_container_ref=previous_ref
        )

    async def continue_session(self, session_id: str, command: str) -> OperationResult:
        """Send a follow-up instruction to the agent in a running container."""

        session = self._store.get(session_id)
        if session is None:
            return OperationResult(success=False, message=f"Session '{session_id}' not found", session_id=session_id)
        if not command.strip():
            return OperationResult.for_session(session, False, "Continuation command must not be empty")
        if session.status != SessionStatus.RUNNING or not session.container_ref:
            return OperationResult.for_session(
                session, False, f"Session is {session.status.value}, not running"
            )
        if not await self._runtime.is_running(session.container_ref):
            await self._demote(session_id)
            return OperationResult.for_session(
                self._store.require(session_id), False, "Container is not running; session marked stopped"
            )

        args = [*shlex.split(self._settings.continue_command), command]
        result = await self._runtime.exec(session.container_ref, args)
        if not result.ok:
            return OperationResult.for_session(
                session, False, f"Failed to continue session: {result.stderr.strip() or result.returncode}"
            )

        def _append(record: Session) -> None:
            project = record.project
            record.project = project.model_copy(
                update={"requirement": f"{project.requirement}\n\nContinuation: {command}"}
            )

        updated = await self._store.update(session_id, _append)
        logger.info("Session continued", extra={"session_id": session_id, "container_ref": updated.container_ref})
        return OperationResult.for_session(updated, True, "Continuation sent", stdout=result.stdout)

    async def logs(self, session_id: str, tail: int | None = None) -> OperationResult:
        session = self._store.get(session_id)
        if session is None:
            return OperationResult(success=False, message=f"Session '{session_id}' not found", session_id=session_id)
        if not session.container_ref:
            return OperationResult.for_session(session, False, "Session has no container")

        if session.status == SessionStatus.RUNNING and not await self._runtime.is_running(session.container_ref):
            await self._demote(session_id)
            session = self._store.require(session_id)
        try:
            text = await self._runtime.logs(session.container_ref, tail=tail)
        except DockerRuntimeError as exc:
            if session.output is None:
                return OperationResult.for_session(session, False, str(exc))
            # Finished containers are removed; serve the log captured by the monitor.
            lines = list(session.output.logs)
            if tail is not None:
                lines = lines[-tail:] if tail else []
            return OperationResult.for_session(
                session, True, "Logs retrieved from session record", logs="\n".join(lines)
            )
        return OperationResult.for_session(session, True, "Logs retrieved", logs=text)

    def history(self, session_id: str, *, query: str | None = None, limit: int | None = None) -> OperationResult:
        """Return journaled lifecycle events of a session, oldest first."""

        session = self._store.get(session_id)
        if session is None:
            return OperationResult(success=False, message=f"Session '{session_id}' not found", session_id=session_id)
        if self._journal is None:
            return OperationResult.for_session(session, False, "Session journal is not enabled")

        if query:
            events = self._journal.search_events(query, filters={"session_id": session_id}, limit=limit)
        else:
            events = self._journal.fetch_session_events(session_id, limit=limit)
        return OperationResult.for_session(
            session,
            True,
            f"Found {len(events)} events",
            events=[event.to_dict() for event in events],
        )

    async def sync(self) -> SyncReport:
        """Reconcile ``running`` sessions with their containers.

        A session nobody in this process is watching gets a monitor attached, also
        when its container has already exited, so the exit code is still recorded.
        Sessions whose container is gone are demoted to ``stopped``. Dependencies
        finished by another process release the sessions parked here.
        """

        report = SyncReport()
        running = self.list(SessionFilter(status=SessionStatus.RUNNING))
        report.total = len(running)
        for session in running:
            container_ref = session.container_ref
            watched = self.is_watching(session.id, container_ref)
            if container_ref and await self._runtime.is_running(container_ref):
                report.running += 1
                if not watched:
                    self._reattach(session.id, container_ref, report)
                continue
            if container_ref and not watched and await self._runtime.exists(container_ref):
                report.running += 1
                self._reattach(session.id, container_ref, report)
                continue
            if await self._demote(session.id):
                report.stopped += 1
                report.demoted.append(session.id)
            else:
                report.running += 1
        report.settled = await self._scheduler.reconcile()
        logger.info(
            "Session sync finished",
            extra={
                "total": report.total,
                "running": report.running,
                "stopped": report.stopped,
                "reattached": len(report.reattached),
            },
        )
        return report

    def _reattach(self, session_id: str, container_ref: str, report: SyncReport) -> None:
        self._watch(session_id, self._runtime.attach(container_ref))
        report.reattached.append(session_id)
        logger.info("Reattached to container", extra={"session_id": session_id, "container_ref": container_ref})

    async def _demote(self, session_id: str) -> bool:
        async with self._store.locked(session_id) as session:
            if session.status != SessionStatus.RUNNING:
                return False
            self._store.apply_transition(session, SessionStatus.STOPPED)
        logger.warning("Session container no longer running; marked stopped", extra={"session_id": session_id})
        self._signal(session_id)
        return True

    # Batches and lifecycle ---------------------------------------------------

    def request_for_task(self, task: BatchTask) -> CreateSessionRequest:
        is_pull_request = task.pr is not None and task.pr is not False
        pr_number = task.pr if isinstance(task.pr, int) and not isinstance(task.pr, bool) else None
        return CreateSessionRequest(
            kind=task.kind,
            project=ProjectInfo(
                repository=task.repo,
                requirement=task.command,
                branch=task.branch,
                issue_number=task.issue,
                is_pull_request=is_pull_request,
                pr_number=pr_number,
            ),
            resource_limits=task.resource_limits,
        )

    async def run_task(self, task: BatchTask, timeout: float | None = None) -> Session:
        """Create and start one batch task, then wait for it to settle."""

        session = self.create(self.request_for_task(task))
        await self.start(session.id)
        return await self.wait_for(session.id, timeout)

    async def run_batch(
        self,
        tasks: Iterable[BatchTask],
        *,
        parallel: bool = False,
        max_concurrent: Any = None,
    ) -> BatchReport:
        limit = self._settings.batch_max_concurrent if max_concurrent is None else max_concurrent
        return await BatchRunner(self.run_task).run(list(tasks), parallel=parallel, max_concurrent=limit)

    async def resume(self) -> dict[str, Any]:
        """Reattach to surviving containers and requeue parked sessions after a restart."""

        report = await self.sync()
        requeued: list[str] = []
        queued = sorted(
            self.list(SessionFilter(status=SessionStatus.QUEUED)), key=lambda item: item.created_at
        )
        for session in queued:
            if self._scheduler.is_parked(session.id):
                continue
            try:
                waiting_for = await self._scheduler.submit(session)
            except Exception as exc:
                logger.error(
                    "Failed to resume queued session",
                    extra={"session_id": session.id, "error": str(exc)},
                )
                continue
            if waiting_for:
                requeued.append(session.id)
        logger.info(
            "Session state resumed",
            extra={"reattached": len(report.reattached), "requeued": len(requeued), "demoted": len(report.demoted)},
        )
        return {"sync": report.to_dict(), "reattached": list(report.reattached), "requeued": requeued}

    async def wait_idle(self) -> None:
        """Wait for scheduling work and every active monitor to finish."""

        while True:
            await self._scheduler.wait_idle()
            monitors = [task for task in self._monitors.values() if not task.done()]
            if not monitors:
                return
            await asyncio.gather(*monitors, return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._monitors.values()):
            task.cancel()
        if self._monitors:
            await asyncio.gather(*self._monitors.values(), return_exceptions=True)
        await self._scheduler.close()


__all__ = [
    "DEFAULT_PHASES",
    "OperationResult",
    "OrchestrationComponent",
    "OrchestrationResult",
    "SessionOrchestrator",
    "StartResult",
    "StopAllReport",
    "SyncReport",
]
