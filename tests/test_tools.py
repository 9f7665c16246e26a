from __future__ import annotations

import asyncio
from typing import Any

import pytest

from dockhand_mcp.config import DockhandSettings
from dockhand_mcp.orchestration import SessionOrchestrator
from dockhand_mcp.runtime.fake import FakeRun, FakeRuntime
from dockhand_mcp.sessions import InMemorySessionRegistry
from dockhand_mcp.templates import TemplateLoader
from dockhand_mcp.tools import register_tools


class StubTool:
    def __init__(self, fn, name, annotations=None):
        self.fn = fn
        self.name = name
        self.annotations = annotations


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name, kwargs.get("annotations"))
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def info(self, message: str, extra: dict[str, Any] | None = None) -> None:
        self.records.append(("info", message, extra or {}))

    def warning(self, message: str, extra: dict[str, Any] | None = None) -> None:
        self.records.append(("warning", message, extra or {}))


class StubContext:
    def __init__(self) -> None:
        self.logger = StubLogger()


def _setup(runtime: FakeRuntime | None = None):
    settings = DockhandSettings(
        registry_backend="memory",
        default_github_owner="acme",
        template_paths=[],
        batch_max_concurrent=3,
    )
    runtime = runtime or FakeRuntime()
    orchestrator = SessionOrchestrator(
        InMemorySessionRegistry(),
        runtime,
        settings=settings,
        templates=TemplateLoader([]),
        credentials={},
    )
    server = StubServer()
    handles = register_tools(
        server,  # type: ignore[arg-type]
        orchestrator=orchestrator,
        settings=settings,
    )
    return server, handles, orchestrator, runtime


def test_all_tools_registered() -> None:
    server, _handles, _orchestrator, _runtime = _setup()

    assert set(server._tools) == {
        "create_session",
        "start_session",
        "queue_session",
        "orchestrate",
        "get_session",
        "session_output",
        "list_sessions",
        "stop_session",
        "cancel_session",
        "recover_session",
        "continue_session",
        "session_logs",
        "session_history",
        "sync_sessions",
        "run_batch",
    }
    assert server._tools["start_session"].annotations["safety"]["level"] == "caution"


def test_create_start_and_inspect_session() -> None:
    runtime = FakeRuntime(FakeRun(stdout=["{}", "Committed: abc123", "Summary: shipped"]))
    _server, handles, orchestrator, _runtime = _setup(runtime)
    context = StubContext()

    created = handles.create_session.fn(  # type: ignore[attr-defined]
        repository="api",
        requirement="Add health endpoint",
        session_id="health",
        memory="1g",
        context=context,
    )
    assert created["status"] == "pending"
    assert created["project"]["repository"] == "acme/api"
    assert created["resource_limits"]["memory"] == "1g"
    assert context.logger.records[0][1] == "Created session"

    async def scenario():
        started = await handles.start_session.fn("health")  # type: ignore[attr-defined]
        await orchestrator.wait_idle()
        await orchestrator.close()
        return started

    started = asyncio.run(scenario())
    assert started["queued"] is False
    assert started["container_ref"] == "dockhand-health-1"

    record = handles.get_session.fn("health")  # type: ignore[attr-defined]
    assert record["status"] == "completed"

    output = handles.session_output.fn("health")  # type: ignore[attr-defined]
    assert output["output"]["summary"] == "shipped"
    assert output["output"]["artifacts"][0]["sha"] == "abc123"

    listed = handles.list_sessions.fn(status="completed")  # type: ignore[attr-defined]
    assert [item["id"] for item in listed] == ["health"]


def test_queue_session_waits_for_dependencies() -> None:
    _server, handles, orchestrator, _runtime = _setup()

    async def scenario():
        handles.create_session.fn(  # type: ignore[attr-defined]
            repository="acme/api", requirement="base", session_id="base"
        )
        result = await handles.queue_session.fn(  # type: ignore[attr-defined]
            repository="acme/api",
            requirement="follow-up",
            session_id="follow",
            dependencies=["base"],
        )
        await orchestrator.close()
        return result

    result = asyncio.run(scenario())

    assert result["queued"] is True
    assert result["waiting_for"] == ["base"]
    assert orchestrator.scheduler.waitlist == {"base": ["follow"]}


def test_unknown_session_raises() -> None:
    _server, handles, _orchestrator, _runtime = _setup()

    with pytest.raises(ValueError, match="Session 'ghost' not found"):
        handles.get_session.fn("ghost")  # type: ignore[attr-defined]
    with pytest.raises(ValueError):
        asyncio.run(handles.stop_session.fn("ghost"))  # type: ignore[attr-defined]


def test_rejected_operation_is_reported_not_raised() -> None:
    _server, handles, orchestrator, _runtime = _setup()
    handles.create_session.fn(  # type: ignore[attr-defined]
        repository="acme/api", requirement="later", session_id="later"
    )
    context = StubContext()

    result = asyncio.run(handles.recover_session.fn("later", context=context))  # type: ignore[attr-defined]

    assert result["success"] is False
    assert result["status"] == "pending"
    assert context.logger.records[-1][0] == "warning"


def test_orchestrate_tool_returns_group() -> None:
    _server, handles, orchestrator, _runtime = _setup()

    async def scenario():
        result = await handles.orchestrate.fn(  # type: ignore[attr-defined]
            repository="acme/shop",
            requirement="Checkout",
            components=[{"requirement": "Cart"}, {"requirement": "Payments"}],
            group_id="shop",
        )
        await orchestrator.wait_idle()
        await orchestrator.close()
        return result

    result = asyncio.run(scenario())

    assert result["summary"] == "Started 5 sessions for acme/shop"
    assert [item["id"] for item in result["sessions"]] == [
        "shop-analysis",
        "shop-impl-0",
        "shop-impl-1",
        "shop-testing",
        "shop-review",
    ]


def test_stop_all_and_sync_tools() -> None:
    runtime = FakeRuntime(FakeRun(hold=True))
    _server, handles, orchestrator, _runtime = _setup(runtime)

    async def scenario():
        for session_id in ("one", "two"):
            await handles.queue_session.fn(  # type: ignore[attr-defined]
                repository="acme/api", requirement=session_id, session_id=session_id
            )
        runtime.mark_exited("dockhand-two-1")
        synced = await handles.sync_sessions.fn()  # type: ignore[attr-defined]
        stopped = await handles.stop_session.fn("all")  # type: ignore[attr-defined]
        await orchestrator.close()
        return synced, stopped

    synced, stopped = asyncio.run(scenario())

    assert synced["demoted"] == ["two"]
    assert stopped["stopped"] == 1
    assert stopped["failed"] == 0


def test_run_batch_tool_uses_configured_limit() -> None:
    _server, handles, orchestrator, _runtime = _setup()
    tasks = [{"repo": f"acme/r{index}", "command": "lint"} for index in range(4)]

    async def scenario():
        report = await handles.run_batch.fn(tasks, parallel=True)  # type: ignore[attr-defined]
        await orchestrator.close()
        return report

    report = asyncio.run(scenario())

    assert report["max_concurrent"] == 3
    assert report["chunks"] == [[0, 1, 2], [3]]
    assert report["succeeded"] == 4


def test_session_history_without_journal_is_reported() -> None:
    _server, handles, _orchestrator, _runtime = _setup()
    handles.create_session.fn(  # type: ignore[attr-defined]
        repository="acme/api", requirement="audit", session_id="audit"
    )
    context = StubContext()

    result = handles.session_history.fn("audit", context=context)  # type: ignore[attr-defined]

    assert result["success"] is False
    assert result["message"] == "Session journal is not enabled"
    assert context.logger.records[-1] == (
        "warning",
        "History rejected",
        {"session_id": "audit", "container_ref": None, "detail": "Session journal is not enabled"},
    )
    with pytest.raises(ValueError, match="Session 'ghost' not found"):
        handles.session_history.fn("ghost")  # type: ignore[attr-defined]
