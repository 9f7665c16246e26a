"""Utility helpers for the container runtime adapter."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def env_flags(env: Mapping[str, str | None]) -> list[str]:
    """Render ``-e KEY=VALUE`` pairs, skipping unset or empty values."""

    flags: list[str] = []
    for key, value in env.items():
        if value is None or value == "":
            continue
        flags.extend(["-e", f"{key}={value}"])
    return flags


def volume_name(container_ref: str) -> str:
    return f"{container_ref}-volume"


__all__ = ["env_flags", "sanitize_environment", "volume_name"]
