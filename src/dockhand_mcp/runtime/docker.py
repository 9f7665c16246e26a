"""Async adapter for the Docker CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Mapping, Protocol, Sequence

from ..sessions.models import ResourceLimits
from .utils import env_flags, sanitize_environment, volume_name

logger = logging.getLogger(__name__)

DEFAULT_MEMORY = "2g"
DEFAULT_CPU_SHARES = "1024"
DEFAULT_PIDS_LIMIT = "256"


class DockerRuntimeError(RuntimeError):
    """Base class for container runtime errors."""


class DockerNotFoundError(DockerRuntimeError):
    """Raised when the Docker CLI executable cannot be located."""


class ContainerCreateError(DockerRuntimeError):
    """Raised when backing storage or the container identity cannot be provisioned."""


class ContainerStartError(DockerRuntimeError):
    """Raised when a provisioned container fails to launch."""


@dataclass(slots=True)
class DockerExecutionResult:
    """Holds the outcome of a Docker CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ContainerProcess(Protocol):
    """Handle over one container's output streams and exit status."""

    container_ref: str

    def stdout_lines(self) -> AsyncIterator[str]:
        ...

    def stderr_lines(self) -> AsyncIterator[str]:
        ...

    async def wait(self) -> int:
        ...


def resolve_limits(
    limits: ResourceLimits | None,
    *,
    memory: str = DEFAULT_MEMORY,
    cpu_shares: str = DEFAULT_CPU_SHARES,
    pids_limit: str = DEFAULT_PIDS_LIMIT,
) -> ResourceLimits:
    """Fill unset limits with fallbacks; requested values pass through untouched."""

    limits = limits or ResourceLimits()
    return ResourceLimits(
        memory=limits.memory or memory,
        cpu_shares=limits.cpu_shares or cpu_shares,
        pids_limit=limits.pids_limit or pids_limit,
    )


class DockerLogProcess:
    """Follows a detached container through ``docker logs --follow``.

    Dropping this handle never terminates the container; a fresh handle can be
    obtained at any time with :meth:`DockerRuntime.attach`.
    """

    def __init__(self, runtime: "DockerRuntime", container_ref: str, *, tail: int | None = None) -> None:
        self._runtime = runtime
        self.container_ref = container_ref
        self._tail = tail
        self._process: asyncio.subprocess.Process | None = None
        self._start_lock = asyncio.Lock()

    async def _ensure_process(self) -> asyncio.subprocess.Process:
        async with self._start_lock:
            if self._process is None:
                args = ["logs", "--follow"]
                if self._tail is not None:
                    args.extend(["--tail", str(self._tail)])
                args.append(self.container_ref)
                self._process = await self._runtime._spawn(*args)
        return self._process

    async def _read_lines(self, stream_name: str) -> AsyncIterator[str]:
        process = await self._ensure_process()
        stream = getattr(process, stream_name)
        while True:
            raw = await stream.readline()
            if not raw:
                break
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def stdout_lines(self) -> AsyncIterator[str]:
        return self._read_lines("stdout")

    def stderr_lines(self) -> AsyncIterator[str]:
        return self._read_lines("stderr")

    async def wait(self) -> int:
        process = await self._ensure_process()
        await process.wait()
        result = await self._runtime._invoke("wait", self.container_ref)
        if result.ok:
            try:
                return int(result.stdout.strip().splitlines()[-1])
            except (ValueError, IndexError):
                logger.warning(
                    "Unexpected docker wait output",
                    extra={"container_ref": self.container_ref, "stdout": result.stdout[:200]},
                )
        return process.returncode if process.returncode not in (None, 0) else -1


class DockerRuntime:
    """Create, launch and inspect agent containers through the Docker CLI."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        entrypoint: str | None = None,
        capabilities: Sequence[str] = (),
        auth_host_dir: Path | None = None,
        workspace_mount: str = "/home/user/project",
        default_limits: ResourceLimits | None = None,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._entrypoint = entrypoint
        self._capabilities = tuple(capabilities)
        self._auth_host_dir = auth_host_dir
        self._workspace_mount = workspace_mount
        self._default_limits = resolve_limits(default_limits)
        self._reserved: dict[str, ResourceLimits] = {}

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise DockerNotFoundError(f"Docker executable not found at {candidate}")

        binary = shutil.which("docker")
        if binary is None:
            raise DockerNotFoundError("Docker CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def limits_for(self, container_ref: str) -> ResourceLimits:
        return self._reserved.get(container_ref, self._default_limits)

    async def version(self) -> DockerExecutionResult:
        return await self._invoke("--version")

    async def is_available(self) -> bool:
        try:
            return (await self.version()).ok
        except OSError:
            return False

    async def image_exists(self, image: str) -> bool:
        return (await self._invoke("image", "inspect", image)).ok

    async def create_volume(self, name: str) -> None:
        result = await self._invoke("volume", "create", name)
        if not result.ok:
            raise ContainerCreateError(
                f"Failed to create volume {name}: {result.stderr.strip() or result.returncode}"
            )

    async def create_container(self, name: str, resource_limits: ResourceLimits | None = None) -> str:
        """Provision the workspace volume and reserve ``name`` with its limits."""

        if name in self._reserved:
            raise ContainerCreateError(f"Container name {name} is already reserved")
        await self.create_volume(volume_name(name))
        self._reserved[name] = resolve_limits(
            resource_limits,
            memory=self._default_limits.memory,
            cpu_shares=self._default_limits.cpu_shares,
            pids_limit=self._default_limits.pids_limit,
        )
        logger.info("Container resources created", extra={"container_ref": name})
        return name

    def build_run_args(
        self,
        container_ref: str,
        image: str,
        env: Mapping[str, str | None],
        command: Sequence[str] | None = None,
    ) -> list[str]:
        limits = self.limits_for(container_ref)
        args = [
            "run",
            "-d",
            "--name",
            container_ref,
            "--memory",
            str(limits.memory),
            "--cpu-shares",
            str(limits.cpu_shares),
            "--pids-limit",
            str(limits.pids_limit),
        ]
        args.extend(f"--cap-add={cap}" for cap in self._capabilities)
        args.extend(["-v", f"{volume_name(container_ref)}:{self._workspace_mount}"])
        if self._auth_host_dir is not None:
            args.extend(["-v", f"{self._auth_host_dir}:/home/node/.claude"])
        args.extend(env_flags(env))
        if self._entrypoint:
            args.extend(["--entrypoint", self._entrypoint])
        args.append(image)
        if command:
            args.extend(command)
        return args

    async def start(
        self,
        container_ref: str,
        image: str,
        env: Mapping[str, str | None],
        command: Sequence[str] | None = None,
    ) -> DockerLogProcess:
        """Launch the container detached and return a log-following handle."""

        result = await self._invoke(*self.build_run_args(container_ref, image, env, command))
        if not result.ok:
            raise ContainerStartError(
                f"Failed to start container {container_ref}: {result.stderr.strip() or result.returncode}"
            )
        logger.info(
            "Container started",
            extra={"container_ref": container_ref, "container_id": result.stdout.strip()[:12]},
        )
        return DockerLogProcess(self, container_ref)

    def attach(self, container_ref: str, *, tail: int | None = None) -> DockerLogProcess:
        return DockerLogProcess(self, container_ref, tail=tail)

    async def is_running(self, container_ref: str) -> bool:
        result = await self._invoke("inspect", "--format", "{{.State.Running}}", container_ref)
        return result.ok and result.stdout.strip() == "true"

    async def exists(self, container_ref: str) -> bool:
        """True while the container is known to Docker, running or exited."""

        return (await self._invoke("inspect", "--format", "{{.State.Status}}", container_ref)).ok

    async def stop(self, container_ref: str, force: bool = False) -> bool:
        result = await self._invoke("kill" if force else "stop", container_ref)
        if not result.ok:
            logger.error(
                "Failed to stop container",
                extra={"container_ref": container_ref, "stderr": result.stderr.strip()},
            )
        return result.ok

    async def remove(self, container_ref: str) -> bool:
        result = await self._invoke("rm", "-f", container_ref)
        await self._invoke("volume", "rm", "-f", volume_name(container_ref))
        self._reserved.pop(container_ref, None)
        return result.ok

    async def logs(self, container_ref: str, tail: int | None = None) -> str:
        args = ["logs"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        args.append(container_ref)
        result = await self._invoke(*args)
        if not result.ok:
            raise DockerRuntimeError(
                f"Failed to get logs for container {container_ref}: {result.stderr.strip()}"
            )
        return result.stdout + result.stderr

    async def stream_logs(self, container_ref: str, tail: int | None = None) -> AsyncIterator[str]:
        async for line in self.attach(container_ref, tail=tail).stdout_lines():
            yield line

    async def exec(self, container_ref: str, args: Sequence[str]) -> DockerExecutionResult:
        return await self._invoke("exec", container_ref, *args)

    async def _spawn(self, *args: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            str(self._executable_path),
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )

    async def _invoke(self, *args: str) -> DockerExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await self._spawn(*args)
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return DockerExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


def serialize_result(result: DockerExecutionResult) -> str:
    """Serialize a command result for operator output."""

    return json.dumps(
        {
            "args": list(result.args),
            "returncode": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }
    )


__all__ = [
    "ContainerCreateError",
    "ContainerProcess",
    "ContainerStartError",
    "DockerExecutionResult",
    "DockerLogProcess",
    "DockerNotFoundError",
    "DockerRuntime",
    "DockerRuntimeError",
    "resolve_limits",
    "serialize_result",
]
