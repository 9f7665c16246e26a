"""Session data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# Session ids double as record file names and container name stems.
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)

# Allowed transitions; operator transitions (stop, recover, cancel) are included.
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.QUEUED, SessionStatus.INITIALIZING, SessionStatus.CANCELLED}
    ),
    SessionStatus.QUEUED: frozenset({SessionStatus.INITIALIZING, SessionStatus.CANCELLED}),
    SessionStatus.INITIALIZING: frozenset({SessionStatus.RUNNING, SessionStatus.FAILED}),
    SessionStatus.RUNNING: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.STOPPED}
    ),
    SessionStatus.STOPPED: frozenset({SessionStatus.INITIALIZING}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


class SessionKind(str, Enum):
    """Task categories with a built-in instruction template."""

    ANALYSIS = "analysis"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    REVIEW = "review"
    COORDINATION = "coordination"


def _coerce_kind(value: Any) -> str:
    if isinstance(value, SessionKind):
        return value.value
    if value is None or not str(value).strip():
        return SessionKind.IMPLEMENTATION.value
    return str(value).strip()


class ResourceLimits(BaseModel):
    """Per-container limits passed verbatim to the runtime."""

    memory: str | None = Field(default=None, description="Memory ceiling, e.g. '2g'.")
    cpu_shares: str | None = Field(default=None, description="CPU share weight, e.g. '1024'.")
    pids_limit: str | None = Field(default=None, description="Process-count ceiling, e.g. '256'.")

    @field_validator("memory", "cpu_shares", "pids_limit", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value).strip()

    def is_empty(self) -> bool:
        return self.memory is None and self.cpu_shares is None and self.pids_limit is None


class ProjectInfo(BaseModel):
    repository: str = Field(..., description="Repository reference, usually owner/name.")
    requirement: str = Field(..., description="Free-text requirement or command for the agent.")
    branch: str | None = None
    context: str | None = None
    issue_number: int | None = None
    is_pull_request: bool = False
    pr_number: int | None = None

    @field_validator("repository", "requirement")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized


ArtifactType = Literal["file", "commit", "pr", "issue", "comment"]


class SessionArtifact(BaseModel):
    type: ArtifactType
    path: str | None = None
    sha: str | None = None
    url: str | None = None
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionOutput(BaseModel):
    logs: list[str] = Field(default_factory=list)
    artifacts: list[SessionArtifact] = Field(default_factory=list)
    summary: str = "Session completed"
    next_steps: list[str] = Field(default_factory=list)


class Session(BaseModel):
    """One unit of scheduled agent work, backed by at most one active container."""

    id: str
    kind: str = SessionKind.IMPLEMENTATION.value
    status: SessionStatus = SessionStatus.PENDING
    project: ProjectInfo
    dependencies: list[str] = Field(default_factory=list)
    resource_limits: ResourceLimits | None = None
    container_ref: str | None = None
    correlation_id: str | None = None
    attempt: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: SessionOutput | None = None
    error: str | None = None

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Session id must not be empty")
        return normalized

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> str:
        return _coerce_kind(value)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _dedupe_dependencies(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            raise TypeError("dependencies must be a sequence of session ids")
        ordered: list[str] = []
        for item in value:
            dep = str(item).strip()
            if dep and dep not in ordered:
                ordered.append(dep)
        return ordered

    def touch(self) -> None:
        self.updated_at = utcnow()

    def can_transition(self, target: SessionStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]


class CreateSessionRequest(BaseModel):
    """Caller input for a new session; the id is generated when omitted."""

    id: str | None = None
    kind: str = SessionKind.IMPLEMENTATION.value
    project: ProjectInfo
    dependencies: list[str] = Field(default_factory=list)
    resource_limits: ResourceLimits | None = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not SESSION_ID_PATTERN.match(normalized):
            raise ValueError(
                "Session id must start with a letter or digit and contain only letters, "
                "digits, '.', '_' or '-'"
            )
        return normalized

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> str:
        return _coerce_kind(value)


class BatchTask(BaseModel):
    """Input-only batch record translated into a Session at run time."""

    repo: str
    command: str
    kind: str | None = None
    issue: int | None = None
    pr: bool | int | None = None
    branch: str | None = None
    resource_limits: ResourceLimits | None = Field(
        default=None, validation_alias="resourceLimits"
    )

    model_config = {"populate_by_name": True}

    @field_validator("repo", "command")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized

    def describe(self, width: int = 50) -> str:
        preview = self.command if len(self.command) <= width else f"{self.command[:width]}..."
        return f'{self.repo}: "{preview}"'


__all__ = [
    "ALLOWED_TRANSITIONS",
    "ArtifactType",
    "BatchTask",
    "CreateSessionRequest",
    "ProjectInfo",
    "SESSION_ID_PATTERN",
    "ResourceLimits",
    "Session",
    "SessionArtifact",
    "SessionKind",
    "SessionOutput",
    "SessionStatus",
    "TERMINAL_STATUSES",
    "utcnow",
]
