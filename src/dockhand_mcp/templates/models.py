"""Instruction template models for session kinds."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..sessions.models import Session, SessionKind


class _Placeholders(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionTemplate(BaseModel):
    """Describes how the agent instruction for one session kind is worded."""

    kind: str = Field(..., description="Session kind this template applies to.")
    title: str = Field(default="", description="Display title for the template.")
    prompt: str = Field(
        ...,
        description=(
            "Instruction text; may reference {repository}, {requirement}, {context} and {branch}."
        ),
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata kept alongside the template.",
    )

    @field_validator("kind", "prompt")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Template kind and prompt must not be empty")
        return normalized

    def render(self, session: Session) -> str:
        project = session.project
        values = _Placeholders(
            repository=project.repository,
            requirement=project.requirement,
            context=project.context or "",
            branch=project.branch or "",
        )
        return self.prompt.format_map(values).strip()


BUILTIN_TEMPLATES: dict[str, InstructionTemplate] = {
    template.kind: template
    for template in (
        InstructionTemplate(
            kind=SessionKind.ANALYSIS.value,
            title="Analysis",
            prompt=(
                "Analyze the project {repository} and create a detailed implementation plan "
                "for: {requirement}"
            ),
        ),
        InstructionTemplate(
            kind=SessionKind.IMPLEMENTATION.value,
            title="Implementation",
            prompt="Implement the following in {repository}: {requirement}. {context}",
        ),
        InstructionTemplate(
            kind=SessionKind.TESTING.value,
            title="Testing",
            prompt="Write comprehensive tests for the implementation in {repository}",
        ),
        InstructionTemplate(
            kind=SessionKind.REVIEW.value,
            title="Review",
            prompt="Review the code changes in {repository} and provide feedback",
        ),
        InstructionTemplate(
            kind=SessionKind.COORDINATION.value,
            title="Coordination",
            prompt="Coordinate the implementation of {requirement} in {repository}",
        ),
    )
}


__all__ = ["BUILTIN_TEMPLATES", "InstructionTemplate"]
