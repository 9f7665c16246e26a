"""Container runtime adapter."""

from .docker import (
    ContainerCreateError,
    ContainerProcess,
    ContainerStartError,
    DockerExecutionResult,
    DockerNotFoundError,
    DockerRuntime,
    DockerRuntimeError,
    resolve_limits,
)

__all__ = [
    "ContainerCreateError",
    "ContainerProcess",
    "ContainerStartError",
    "DockerExecutionResult",
    "DockerNotFoundError",
    "DockerRuntime",
    "DockerRuntimeError",
    "resolve_limits",
]
