from __future__ import annotations

import asyncio
import random

import pytest

from dockhand_mcp.config import DockhandSettings
from dockhand_mcp.orchestration import SessionOrchestrator
from dockhand_mcp.orchestration.scheduler import DependencyScheduler
from dockhand_mcp.runtime.fake import FakeRun, FakeRuntime
from dockhand_mcp.sessions import (
    CreateSessionRequest,
    InMemorySessionRegistry,
    ProjectInfo,
    Session,
    SessionStatus,
)
from dockhand_mcp.templates import TemplateLoader


def make_session(session_id: str, *deps: str, status: SessionStatus = SessionStatus.PENDING) -> Session:
    return Session(
        id=session_id,
        status=status,
        dependencies=list(deps),
        project=ProjectInfo(repository="acme/api", requirement=f"work for {session_id}"),
    )


class Harness:
    """Scheduler wired to a registry where launching marks a session running."""

    def __init__(self) -> None:
        self.registry = InMemorySessionRegistry()
        self.launched: list[str] = []
        self.fail: set[str] = set()
        self.scheduler = DependencyScheduler(
            self.registry, self.launch, on_parked=self.park
        )

    def add(self, session: Session) -> Session:
        self.registry.put(session)
        return session

    def set_status(self, session_id: str, status: SessionStatus) -> None:
        session = self.registry.get(session_id)
        session.status = status
        self.registry.put(session)

    async def park(self, session_id: str) -> None:
        self.set_status(session_id, SessionStatus.QUEUED)

    async def launch(self, session_id: str) -> None:
        self.launched.append(session_id)
        if session_id in self.fail:
            raise RuntimeError("launch failed")
        self.set_status(session_id, SessionStatus.RUNNING)

    async def complete(self, session_id: str) -> None:
        self.set_status(session_id, SessionStatus.COMPLETED)
        await self.scheduler.notify_completed(session_id)
        await self.scheduler.wait_idle()


def test_session_without_dependencies_launches_inline() -> None:
    harness = Harness()
    session = harness.add(make_session("solo"))

    async def scenario():
        waiting = await harness.scheduler.submit(session)
        await harness.scheduler.close()
        return waiting

    assert asyncio.run(scenario()) == []
    assert harness.launched == ["solo"]


def test_inline_launch_errors_reach_the_caller() -> None:
    harness = Harness()
    session = harness.add(make_session("solo"))
    harness.fail.add("solo")

    async def scenario():
        try:
            await harness.scheduler.submit(session)
        finally:
            await harness.scheduler.close()

    with pytest.raises(RuntimeError, match="launch failed"):
        asyncio.run(scenario())


def test_chain_releases_in_dependency_order() -> None:
    harness = Harness()
    harness.add(make_session("x"))
    y = harness.add(make_session("y", "x"))

    async def scenario():
        assert await harness.scheduler.submit(y) == ["x"]
        assert harness.registry.get("y").status is SessionStatus.QUEUED
        assert harness.scheduler.is_parked("y")
        assert harness.launched == []

        await harness.scheduler.submit(harness.registry.get("x"))
        await harness.complete("x")
        await harness.scheduler.close()

    asyncio.run(scenario())
    assert harness.launched == ["x", "y"]
    assert harness.scheduler.waitlist == {}
    assert not harness.scheduler.is_parked("y")


def test_session_waits_for_every_dependency_and_launches_once() -> None:
    harness = Harness()
    harness.add(make_session("a", status=SessionStatus.RUNNING))
    harness.add(make_session("b", status=SessionStatus.RUNNING))
    c = harness.add(make_session("c", "a", "b"))

    async def scenario():
        assert await harness.scheduler.submit(c) == ["a", "b"]
        assert harness.scheduler.waitlist == {"a": ["c"], "b": ["c"]}

        await harness.complete("a")
        assert harness.launched == []
        assert harness.scheduler.waitlist == {"b": ["c"]}

        await harness.complete("b")
        # A late duplicate notification must not launch it again.
        await harness.complete("a")
        await harness.scheduler.close()

    asyncio.run(scenario())
    assert harness.launched == ["c"]


def test_simultaneous_completions_launch_dependent_once() -> None:
    harness = Harness()
    harness.add(make_session("a", status=SessionStatus.RUNNING))
    harness.add(make_session("b", status=SessionStatus.RUNNING))
    c = harness.add(make_session("c", "a", "b"))

    async def scenario():
        await harness.scheduler.submit(c)
        harness.set_status("a", SessionStatus.COMPLETED)
        harness.set_status("b", SessionStatus.COMPLETED)
        await asyncio.gather(
            harness.scheduler.notify_completed("a"),
            harness.scheduler.notify_completed("b"),
        )
        await harness.scheduler.wait_idle()
        await harness.scheduler.close()

    asyncio.run(scenario())
    assert harness.launched == ["c"]


def test_already_completed_dependency_counts_as_met() -> None:
    harness = Harness()
    harness.add(make_session("x", status=SessionStatus.COMPLETED))
    y = harness.add(make_session("y", "x"))

    assert harness.scheduler.unmet_dependencies(y) == []

    async def scenario():
        await harness.scheduler.submit(y)
        await harness.scheduler.close()

    asyncio.run(scenario())
    assert harness.launched == ["y"]


def test_missing_dependency_is_unmet() -> None:
    harness = Harness()
    y = harness.add(make_session("y", "ghost"))

    assert harness.scheduler.unmet_dependencies(y) == ["ghost"]
    assert not harness.scheduler.dependencies_met(y)


def test_failed_dependency_leaves_dependent_queued() -> None:
    harness = Harness()
    harness.add(make_session("x", status=SessionStatus.RUNNING))
    y = harness.add(make_session("y", "x"))

    async def scenario():
        await harness.scheduler.submit(y)
        harness.set_status("x", SessionStatus.FAILED)
        await harness.scheduler.notify_completed("x")
        await harness.scheduler.wait_idle()
        await harness.scheduler.close()

    asyncio.run(scenario())
    assert harness.launched == []
    assert harness.registry.get("y").status is SessionStatus.QUEUED
    assert "x" not in harness.scheduler.waitlist


def test_cancelled_session_is_not_released() -> None:
    harness = Harness()
    harness.add(make_session("x", status=SessionStatus.RUNNING))
    y = harness.add(make_session("y", "x"))

    async def scenario():
        await harness.scheduler.submit(y)
        assert await harness.scheduler.cancel("y") is True
        assert await harness.scheduler.cancel("y") is False
        await harness.complete("x")
        await harness.scheduler.close()

    asyncio.run(scenario())
    assert harness.launched == []
    assert not harness.scheduler.is_parked("y")


def test_released_launch_failure_is_contained() -> None:
    harness = Harness()
    harness.add(make_session("x", status=SessionStatus.RUNNING))
    y = harness.add(make_session("y", "x"))
    z = harness.add(make_session("z", "x"))
    harness.fail.add("y")

    async def scenario():
        await harness.scheduler.submit(y)
        await harness.scheduler.submit(z)
        await harness.complete("x")
        await harness.scheduler.close()

    asyncio.run(scenario())
    assert sorted(harness.launched) == ["y", "z"]
    assert harness.registry.get("z").status is SessionStatus.RUNNING


def test_reconcile_publishes_dependencies_finished_elsewhere() -> None:
    harness = Harness()
    harness.add(make_session("dep"))
    child = harness.add(make_session("child", "dep"))

    async def scenario():
        await harness.scheduler.submit(child)
        # Completed without a notification reaching this scheduler.
        harness.set_status("dep", SessionStatus.COMPLETED)
        published = await harness.scheduler.reconcile()
        await harness.scheduler.wait_idle()
        again = await harness.scheduler.reconcile()
        await harness.scheduler.close()
        return published, again

    published, again = asyncio.run(scenario())

    assert published == ["dep"]
    assert again == []
    assert harness.launched == ["child"]


@pytest.mark.parametrize("seed", [7, 1234, 20240611])
def test_random_dependency_graph_starts_after_dependencies_complete(seed: int) -> None:
    rng = random.Random(seed)
    runtime = FakeRuntime()
    orchestrator = SessionOrchestrator(
        InMemorySessionRegistry(),
        runtime,
        settings=DockhandSettings(registry_backend="memory", template_paths=[]),
        templates=TemplateLoader([]),
        credentials={},
    )
    ids = [f"s{index}" for index in range(12)]
    graph: dict[str, list[str]] = {}
    for index, session_id in enumerate(ids):
        earlier = ids[:index]
        graph[session_id] = rng.sample(earlier, k=min(len(earlier), rng.randint(0, 3)))
        runtime.plan(session_id, FakeRun(stdout=[f"Summary: {session_id}"], delay=rng.uniform(0, 0.005)))

    async def scenario():
        for session_id in ids:
            orchestrator.create(
                CreateSessionRequest(
                    id=session_id,
                    project=ProjectInfo(repository="acme/api", requirement=f"work for {session_id}"),
                    dependencies=graph[session_id],
                )
            )
        order = list(ids)
        rng.shuffle(order)
        for session_id in order:
            await orchestrator.start(session_id)
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    assert len(runtime.start_order) == len(ids)
    for session_id, deps in graph.items():
        session = orchestrator.get(session_id)
        assert session.status is SessionStatus.COMPLETED
        for dep_id in deps:
            dependency = orchestrator.get(dep_id)
            assert session.started_at >= dependency.completed_at, (session_id, dep_id)
