"""Best-effort classification of agent output lines."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable

from ..sessions.models import SessionArtifact, SessionOutput

DEFAULT_SUMMARY = "Session completed"


@dataclass(frozen=True, slots=True)
class Marker:
    """One text marker and what a match produces."""

    name: str
    pattern: re.Pattern[str]
    build: Callable[[str], SessionArtifact] | None = None


def _artifact(kind: str, attr: str) -> Callable[[str], SessionArtifact]:
    def build(value: str) -> SessionArtifact:
        return SessionArtifact(type=kind, **{attr: value})

    return build


# Order matters: the first matching marker wins for a line.
MARKERS: tuple[Marker, ...] = (
    Marker("file", re.compile(r"Created file:\s*(?P<value>.+)"), _artifact("file", "path")),
    Marker("commit", re.compile(r"Committed:\s*(?P<value>.+)"), _artifact("commit", "sha")),
    Marker("pr", re.compile(r"Created PR:\s*(?P<value>.+)"), _artifact("pr", "url")),
    Marker("issue", re.compile(r"Opened issue:\s*(?P<value>.+)"), _artifact("issue", "url")),
    Marker("comment", re.compile(r"Posted comment:\s*(?P<value>.+)"), _artifact("comment", "url")),
    Marker("summary", re.compile(r"Summary:\s*(?P<value>.+)")),
    Marker("next_step", re.compile(r"Next step:\s*(?P<value>.+)")),
)


@dataclass
class OutputCollector:
    """Accumulates the raw log and classified results for one run."""

    markers: tuple[Marker, ...] = MARKERS
    logs: list[str] = field(default_factory=list)
    artifacts: list[SessionArtifact] = field(default_factory=list)
    summary: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)

    def add(self, line: str) -> None:
        self.logs.append(line)
        self.classify(line)

    def add_raw(self, line: str) -> None:
        self.logs.append(line)

    def classify(self, line: str) -> str | None:
        for marker in self.markers:
            match = marker.pattern.search(line)
            if match is None:
                continue
            value = match.group("value").strip()
            if not value:
                return None
            if marker.build is not None:
                self.artifacts.append(marker.build(value))
            elif marker.name == "summary":
                self.summary.append(value)
            elif marker.name == "next_step":
                self.next_steps.append(value)
            return marker.name
        return None

    def build(self) -> SessionOutput:
        return SessionOutput(
            logs=list(self.logs),
            artifacts=list(self.artifacts),
            summary="\n".join(self.summary) if self.summary else DEFAULT_SUMMARY,
            next_steps=list(self.next_steps),
        )


def parse_output(lines: list[str]) -> SessionOutput:
    """Classify a complete list of log lines."""

    collector = OutputCollector()
    for line in lines:
        collector.add(line)
    return collector.build()


__all__ = ["DEFAULT_SUMMARY", "MARKERS", "Marker", "OutputCollector", "parse_output"]
