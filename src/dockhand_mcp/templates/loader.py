"""Template loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from ..sessions.models import Session
from .models import BUILTIN_TEMPLATES, InstructionTemplate


class TemplateLoadError(RuntimeError):
    """Raised when one or more template files cannot be parsed."""


class TemplateLoader:
    """Resolves instruction templates from built-ins and YAML overrides on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, InstructionTemplate]:
        """Return built-in templates merged with any YAML overrides.

        Later search paths override earlier ones when kinds collide. A file may hold
        one template mapping or a list of them.
        """

        templates = dict(BUILTIN_TEMPLATES)
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                entries = document if isinstance(document, list) else [document]
                for entry in entries:
                    try:
                        template = InstructionTemplate.model_validate(entry)
                    except ValidationError as exc:
                        errors.append(f"Template validation error in {path}: {exc}")
                        continue
                    templates[template.kind] = template

        if errors:
            raise TemplateLoadError("; ".join(errors))

        return templates

    def get(self, kind: str) -> InstructionTemplate | None:
        return self.load_all().get(kind)

    def render(self, session: Session) -> str:
        """Render the instruction for ``session``; unknown kinds use the raw requirement."""

        template = self.get(session.kind)
        if template is None:
            return session.project.requirement
        return template.render(session)


__all__ = ["TemplateLoadError", "TemplateLoader"]
