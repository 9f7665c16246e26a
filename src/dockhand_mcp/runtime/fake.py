"""In-memory test double for the Docker runtime adapter."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Mapping, Sequence

from ..sessions.models import ResourceLimits
from .docker import (
    ContainerCreateError,
    ContainerStartError,
    DockerExecutionResult,
    DockerRuntime,
    DockerRuntimeError,
    resolve_limits,
)


@dataclass
class FakeRun:
    """Scripted behaviour for one container launch."""

    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    exit_code: int = 0
    hold: bool = False
    delay: float = 0.0


class FakeContainerProcess:
    def __init__(self, runtime: "FakeRuntime", container_ref: str, run: FakeRun) -> None:
        self._runtime = runtime
        self.container_ref = container_ref
        self._run = run
        self._release = asyncio.Event()
        if not run.hold:
            self._release.set()
        self._exit_code: int | None = None

    def release(self, exit_code: int | None = None) -> None:
        if exit_code is not None:
            self._exit_code = exit_code
        self._runtime._running.discard(self.container_ref)
        self._release.set()

    async def _emit(self, lines: list[str]) -> AsyncIterator[str]:
        for line in lines:
            await asyncio.sleep(0)
            yield line

    def stdout_lines(self) -> AsyncIterator[str]:
        return self._emit(self._run.stdout)

    def stderr_lines(self) -> AsyncIterator[str]:
        return self._emit(self._run.stderr)

    async def wait(self) -> int:
        if self._run.delay:
            await asyncio.sleep(self._run.delay)
        await self._release.wait()
        self._runtime._running.discard(self.container_ref)
        return self._exit_code if self._exit_code is not None else self._run.exit_code


class FakeRuntime(DockerRuntime):
    """Test double that simulates container launches without a Docker daemon.

    Behaviour is scripted per session id (read from the ``SESSION_ID`` env var at
    launch) with :meth:`plan`; unscripted launches print nothing and exit 0.
    """

    def __init__(self, default: FakeRun | None = None) -> None:  # type: ignore[override]
        self._executable_path = Path("/tmp/fake-docker")
        self._entrypoint = None
        self._capabilities = ()
        self._auth_host_dir = None
        self._workspace_mount = "/home/user/project"
        self._default_limits = resolve_limits(None)
        self._reserved: dict[str, ResourceLimits] = {}
        self._default = default or FakeRun()
        self._plans: dict[str, list[FakeRun]] = {}
        self._running: set[str] = set()
        self._gone: set[str] = set()
        self.processes: dict[str, FakeContainerProcess] = {}
        self.invocations: list[tuple[str, ...]] = []
        self.started_env: dict[str, dict[str, str | None]] = {}
        self.start_order: list[str] = []
        self.stopped: list[tuple[str, bool]] = []
        self.removed: list[str] = []
        self.exec_calls: list[tuple[str, tuple[str, ...]]] = []
        self.fail_create: set[str] = set()
        self.fail_start: set[str] = set()

    def plan(self, session_id: str, *runs: FakeRun) -> None:
        self._plans.setdefault(session_id, []).extend(runs)

    def _next_run(self, session_id: str | None) -> FakeRun:
        queue = self._plans.get(session_id or "")
        if queue:
            return queue.pop(0) if len(queue) > 1 else queue[0]
        return self._default

    def mark_exited(self, container_ref: str) -> None:
        """Simulate a container that vanished without the orchestrator noticing."""

        self._running.discard(container_ref)
        self._gone.add(container_ref)

    def mark_running(self, container_ref: str) -> None:
        self._running.add(container_ref)

    async def _invoke(self, *args: str) -> DockerExecutionResult:  # type: ignore[override]
        self.invocations.append(tuple(args))
        return DockerExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    async def create_volume(self, name: str) -> None:
        self.invocations.append(("volume", "create", name))

    async def create_container(self, name: str, resource_limits: ResourceLimits | None = None) -> str:
        if name.rsplit("-", 1)[0] in {f"dockhand-{session_id}" for session_id in self.fail_create}:
            raise ContainerCreateError(f"Failed to create volume {name}-volume: simulated")
        return await super().create_container(name, resource_limits)

    async def start(  # type: ignore[override]
        self,
        container_ref: str,
        image: str,
        env: Mapping[str, str | None],
        command: Sequence[str] | None = None,
    ) -> FakeContainerProcess:
        session_id = env.get("SESSION_ID")
        if session_id in self.fail_start:
            raise ContainerStartError(f"Failed to start container {container_ref}: simulated")
        self.invocations.append(tuple(self.build_run_args(container_ref, image, env, command)))
        self.started_env[container_ref] = dict(env)
        self.start_order.append(container_ref)
        self._running.add(container_ref)
        process = FakeContainerProcess(self, container_ref, self._next_run(session_id))
        self.processes[container_ref] = process
        return process

    def attach(self, container_ref: str, *, tail: int | None = None) -> FakeContainerProcess:  # type: ignore[override]
        return self.processes[container_ref]

    def release(self, container_ref: str, exit_code: int | None = None) -> None:
        self.processes[container_ref].release(exit_code)

    async def is_running(self, container_ref: str) -> bool:
        return container_ref in self._running

    async def exists(self, container_ref: str) -> bool:
        return (
            container_ref in self.processes
            and container_ref not in self._gone
            and container_ref not in self.removed
        )

    async def stop(self, container_ref: str, force: bool = False) -> bool:
        self.stopped.append((container_ref, force))
        if container_ref not in self._running:
            return False
        self._running.discard(container_ref)
        process = self.processes.get(container_ref)
        if process is not None:
            process.release(137 if force else 143)
        return True

    async def remove(self, container_ref: str) -> bool:
        self.removed.append(container_ref)
        self._running.discard(container_ref)
        self._reserved.pop(container_ref, None)
        return True

    async def logs(self, container_ref: str, tail: int | None = None) -> str:
        if container_ref in self.removed:
            raise DockerRuntimeError(f"Failed to get logs for container {container_ref}: No such container")
        process = self.processes.get(container_ref)
        if process is None:
            return ""
        lines = list(process._run.stdout) + list(process._run.stderr)
        if tail is not None:
            lines = lines[-tail:] if tail else []
        return "\n".join(lines)

    async def exec(self, container_ref: str, args: Sequence[str]) -> DockerExecutionResult:
        self.exec_calls.append((container_ref, tuple(args)))
        return DockerExecutionResult(args=tuple(args), returncode=0, stdout="ok", stderr="")


__all__ = ["FakeContainerProcess", "FakeRun", "FakeRuntime"]
