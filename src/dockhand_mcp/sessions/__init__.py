"""Session models and registry backends."""

from .models import (
    BatchTask,
    CreateSessionRequest,
    ProjectInfo,
    ResourceLimits,
    Session,
    SessionArtifact,
    SessionKind,
    SessionOutput,
    SessionStatus,
)
from .registry import (
    FileSessionRegistry,
    InMemorySessionRegistry,
    RegistryError,
    SessionFilter,
    SessionRegistry,
    apply_filter,
)

__all__ = [
    "BatchTask",
    "CreateSessionRequest",
    "FileSessionRegistry",
    "InMemorySessionRegistry",
    "ProjectInfo",
    "RegistryError",
    "ResourceLimits",
    "Session",
    "SessionArtifact",
    "SessionFilter",
    "SessionKind",
    "SessionOutput",
    "SessionRegistry",
    "SessionStatus",
    "apply_filter",
]
