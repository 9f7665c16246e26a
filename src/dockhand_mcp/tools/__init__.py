"""Tool registration for Dockhand MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..config import DockhandSettings
from ..orchestration import OperationResult, OrchestrationComponent, SessionOrchestrator
from ..sessions import (
    BatchTask,
    CreateSessionRequest,
    ProjectInfo,
    ResourceLimits,
    Session,
    SessionFilter,
)


@dataclass(slots=True)
class ToolHandles:
    create_session: Any
    start_session: Any
    queue_session: Any
    orchestrate: Any
    get_session: Any
    session_output: Any
    list_sessions: Any
    stop_session: Any
    cancel_session: Any
    recover_session: Any
    continue_session: Any
    session_logs: Any
    session_history: Any
    sync_sessions: Any
    run_batch: Any


def _session_summary(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "kind": session.kind,
        "status": session.status.value,
        "repository": session.project.repository,
        "container_ref": session.container_ref,
        "dependencies": list(session.dependencies),
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
    }


def _build_request(
    *,
    repository: str,
    requirement: str,
    kind: str | None,
    session_id: str | None,
    dependencies: list[str] | None,
    branch: str | None,
    project_context: str | None,
    issue_number: int | None,
    is_pull_request: bool,
    pr_number: int | None,
    memory: str | None,
    cpu_shares: str | None,
    pids_limit: str | None,
) -> CreateSessionRequest:
    limits = ResourceLimits(memory=memory, cpu_shares=cpu_shares, pids_limit=pids_limit)
    return CreateSessionRequest(
        id=session_id,
        kind=kind,
        project=ProjectInfo(
            repository=repository,
            requirement=requirement,
            branch=branch,
            context=project_context,
            issue_number=issue_number,
            is_pull_request=is_pull_request,
            pr_number=pr_number,
        ),
        dependencies=dependencies or [],
        resource_limits=None if limits.is_empty() else limits,
    )


def register_tools(
    server: FastMCP,
    *,
    orchestrator: SessionOrchestrator,
    settings: DockhandSettings,
) -> ToolHandles:
    """Register Dockhand's MCP tools on the server."""

    def _require_session(session_id: str) -> Session:
        session = orchestrator.registry.get(session_id)
        if session is None:
            raise ValueError(f"Session '{session_id}' not found")
        return session

    def _operation(result: OperationResult, context: Context | None, action: str) -> dict[str, Any]:
        _emit_log(
            context,
            "info" if result.success else "warning",
            f"{action} {'succeeded' if result.success else 'rejected'}",
            extra={
                "session_id": result.session_id,
                "container_ref": result.container_ref,
                "detail": result.message,
            },
        )
        return result.to_dict()

    def _create_session(
        repository: str,
        requirement: str,
        kind: str | None = None,
        session_id: str | None = None,
        dependencies: list[str] | None = None,
        branch: str | None = None,
        project_context: str | None = None,
        issue_number: int | None = None,
        is_pull_request: bool = False,
        pr_number: int | None = None,
        memory: str | None = None,
        cpu_shares: str | None = None,
        pids_limit: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Register a pending session without starting it."""

        request = _build_request(
            repository=repository,
            requirement=requirement,
            kind=kind,
            session_id=session_id,
            dependencies=dependencies,
            branch=branch,
            project_context=project_context,
            issue_number=issue_number,
            is_pull_request=is_pull_request,
            pr_number=pr_number,
            memory=memory,
            cpu_shares=cpu_shares,
            pids_limit=pids_limit,
        )
        session = orchestrator.create(request)
        _emit_log(
            context,
            "info",
            "Created session",
            extra={"session_id": session.id, "repository": session.project.repository},
        )
        return session.model_dump(mode="json")

    async def _start_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Start a pending session, or queue it until its dependencies complete."""

        _require_session(session_id)
        result = await orchestrator.start(session_id)
        _emit_log(
            context,
            "info",
            "Queued session" if result.queued else "Started session",
            extra={"session_id": session_id, "waiting_for": result.waiting_for},
        )
        return result.to_dict()

    async def _queue_session(
        repository: str,
        requirement: str,
        kind: str | None = None,
        session_id: str | None = None,
        dependencies: list[str] | None = None,
        branch: str | None = None,
        project_context: str | None = None,
        issue_number: int | None = None,
        is_pull_request: bool = False,
        pr_number: int | None = None,
        memory: str | None = None,
        cpu_shares: str | None = None,
        pids_limit: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a session and submit it to the scheduler in one call."""

        request = _build_request(
            repository=repository,
            requirement=requirement,
            kind=kind,
            session_id=session_id,
            dependencies=dependencies,
            branch=branch,
            project_context=project_context,
            issue_number=issue_number,
            is_pull_request=is_pull_request,
            pr_number=pr_number,
            memory=memory,
            cpu_shares=cpu_shares,
            pids_limit=pids_limit,
        )
        result = await orchestrator.queue(request)
        _emit_log(
            context,
            "info",
            "Queued session" if result.queued else "Started session",
            extra={"session_id": result.session_id, "waiting_for": result.waiting_for},
        )
        return result.to_dict()

    async def _orchestrate(
        repository: str,
        requirement: str,
        components: list[dict[str, Any]] | None = None,
        phases: list[str] | None = None,
        group_id: str | None = None,
        branch: str | None = None,
        project_context: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Split a project into analysis, implementation, testing and review sessions."""

        project = ProjectInfo(
            repository=repository,
            requirement=requirement,
            branch=branch,
            context=project_context,
        )
        parts = [OrchestrationComponent.model_validate(item) for item in (components or [])]
        result = await orchestrator.orchestrate(
            project, components=parts or None, phases=phases, group_id=group_id
        )
        _emit_log(
            context,
            "info",
            "Orchestration initiated",
            extra={"group_id": result.group_id, "sessions": len(result.sessions)},
        )
        return result.to_dict()

    def _get_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return the full stored record of a session."""

        session = _require_session(session_id)
        _emit_log(context, "debug", "Fetched session", extra={"session_id": session_id})
        return session.model_dump(mode="json")

    def _session_output(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return parsed output (logs, artifacts, summary, next steps) of a finished session."""

        session = _require_session(session_id)
        output = session.output.model_dump(mode="json") if session.output is not None else None
        return {"session_id": session_id, "status": session.status.value, "output": output}

    def _list_sessions(
        status: str | None = None,
        repository: str | None = None,
        limit: int | None = None,
        group: str | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List sessions newest first, optionally filtered."""

        session_filter = SessionFilter(status=status, repo=repository, limit=limit, group=group)
        sessions = orchestrator.list(session_filter)
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(sessions)})
        return [_session_summary(session) for session in sessions]

    async def _stop_session(
        session_id: str,
        force: bool = False,
        remove: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Stop a running session, or every running session when ``session_id`` is 'all'."""

        if session_id == "all":
            report = await orchestrator.stop_all(force=force, remove=remove)
            _emit_log(
                context,
                "info",
                "Stopped running sessions",
                extra={"stopped": report.stopped, "failed": report.failed},
            )
            return report.to_dict()
        _require_session(session_id)
        result = await orchestrator.stop(session_id, force=force, remove=remove)
        return _operation(result, context, "Stop")

    async def _cancel_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel a session that has not started yet."""

        _require_session(session_id)
        return _operation(await orchestrator.cancel(session_id), context, "Cancel")

    async def _recover_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Relaunch a stopped session in a new container."""

        _require_session(session_id)
        return _operation(await orchestrator.recover(session_id), context, "Recover")

    async def _continue_session(
        session_id: str,
        command: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Send a follow-up instruction to the agent of a running session."""

        _require_session(session_id)
        return _operation(await orchestrator.continue_session(session_id, command), context, "Continue")

    async def _session_logs(
        session_id: str,
        tail: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return container logs for a session."""

        _require_session(session_id)
        result = await orchestrator.logs(session_id, tail=tail)
        if not result.success:
            return _operation(result, context, "Logs")
        return result.to_dict()

    def _session_history(
        session_id: str,
        query: str | None = None,
        limit: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return journaled status changes of a session, optionally filtered by text."""

        _require_session(session_id)
        result = orchestrator.history(session_id, query=query, limit=limit)
        if not result.success:
            return _operation(result, context, "History")
        _emit_log(
            context,
            "debug",
            "Fetched session history",
            extra={"session_id": session_id, "count": len(result.details["events"])},
        )
        return result.to_dict()

    async def _sync_sessions(context: Context | None = None) -> dict[str, Any]:
        """Reconcile running sessions against the container runtime."""

        report = await orchestrator.sync()
        _emit_log(
            context,
            "info",
            "Synchronized sessions",
            extra={"running": report.running, "stopped": report.stopped},
        )
        return report.to_dict()

    async def _run_batch(
        tasks: list[dict[str, Any]],
        parallel: bool = False,
        max_concurrent: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run a list of tasks ({repo, command, issue?, pr?, branch?}) and wait for them."""

        batch = [BatchTask.model_validate(task) for task in tasks]
        report = await orchestrator.run_batch(
            batch,
            parallel=parallel,
            max_concurrent=settings.batch_max_concurrent if max_concurrent is None else max_concurrent,
        )
        _emit_log(
            context,
            "info",
            "Batch finished",
            extra={"total": len(report.outcomes), "succeeded": report.succeeded, "failed": report.failed},
        )
        return report.to_dict()

    tool_create = server.tool(
        name="create_session",
        description=(
            "Register a coding-agent session for a repository without starting it. Provide "
            "the requirement, an optional kind (analysis, implementation, testing, review, "
            "coordination), dependencies on other session ids and resource limits."
        ),
    )(_create_session)

    tool_start = server.tool(
        name="start_session",
        description=(
            "Start a pending session in a new container. Sessions whose dependencies have "
            "not completed are queued and started automatically later."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Launches a container that runs an autonomous agent against the repository",
            }
        },
    )(_start_session)

    tool_queue = server.tool(
        name="queue_session",
        description="Create a session and start or queue it in one call.",
    )(_queue_session)

    tool_orchestrate = server.tool(
        name="orchestrate",
        description=(
            "Fan a project out into analysis, per-component implementation, testing and "
            "review sessions wired by dependencies."
        ),
    )(_orchestrate)

    tool_get = server.tool(
        name="get_session",
        description="Return the stored record for a session.",
    )(_get_session)

    tool_output = server.tool(
        name="session_output",
        description="Return logs, artifacts, summary and next steps of a finished session.",
    )(_session_output)

    tool_list = server.tool(
        name="list_sessions",
        description="List sessions newest first, filtered by status, repository, id prefix and limit.",
    )(_list_sessions)

    tool_stop = server.tool(
        name="stop_session",
        description="Stop a running session's container; pass 'all' to stop every running session.",
    )(_stop_session)

    tool_cancel = server.tool(
        name="cancel_session",
        description="Cancel a pending or queued session.",
    )(_cancel_session)

    tool_recover = server.tool(
        name="recover_session",
        description="Relaunch a stopped session in a fresh container.",
    )(_recover_session)

    tool_continue = server.tool(
        name="continue_session",
        description="Send a follow-up command to the agent of a running session.",
    )(_continue_session)

    tool_logs = server.tool(
        name="session_logs",
        description="Fetch container logs for a session, optionally only the last lines.",
    )(_session_logs)

    tool_history = server.tool(
        name="session_history",
        description="List journaled lifecycle events of a session when the journal is enabled.",
    )(_session_history)

    tool_sync = server.tool(
        name="sync_sessions",
        description="Reattach to unwatched containers, release sessions whose dependencies finished "
        "elsewhere and mark sessions whose containers are gone as stopped.",
    )(_sync_sessions)

    tool_batch = server.tool(
        name="run_batch",
        description=(
            "Run a list of tasks sequentially or in parallel chunks of max_concurrent and "
            "report the outcome of each."
        ),
    )(_run_batch)

    return ToolHandles(
        create_session=tool_create,
        start_session=tool_start,
        queue_session=tool_queue,
        orchestrate=tool_orchestrate,
        get_session=tool_get,
        session_output=tool_output,
        list_sessions=tool_list,
        stop_session=tool_stop,
        cancel_session=tool_cancel,
        recover_session=tool_recover,
        continue_session=tool_continue,
        session_logs=tool_logs,
        session_history=tool_history,
        sync_sessions=tool_sync,
        run_batch=tool_batch,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
