from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from dockhand_mcp.config import DockhandSettings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("GITHUB_TOKEN", "ANTHROPIC_API_KEY", "DOCKHAND_CONTAINER_CAPABILITIES"):
        monkeypatch.delenv(name, raising=False)

    settings = DockhandSettings()

    assert settings.container_image == "claudecode:latest"
    assert settings.container_capabilities == ("NET_ADMIN", "SYS_ADMIN")
    assert settings.registry_backend == "file"
    assert settings.batch_max_concurrent == 2
    assert settings.credentials() == {}


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DOCKHAND_CONTAINER_CAPABILITIES", "NET_ADMIN, ,SYS_PTRACE")
    monkeypatch.setenv("DOCKHAND_TEMPLATE_PATHS", os.pathsep.join(["/etc/dockhand", "templates"]))
    monkeypatch.setenv("DOCKHAND_LOG_LEVEL", " debug ")
    monkeypatch.setenv("DOCKHAND_REGISTRY_BACKEND", "Memory")
    monkeypatch.setenv("DOCKHAND_BATCH_MAX_CONCURRENT", "5")
    monkeypatch.setenv("GITHUB_TOKEN", "ghp-abc")
    monkeypatch.setenv("CLAUDE_CONTAINER_IMAGE", "agents/claude:1.2")

    settings = DockhandSettings()

    assert settings.container_capabilities == ("NET_ADMIN", "SYS_PTRACE")
    assert settings.template_paths == (Path("/etc/dockhand"), Path("templates"))
    assert settings.log_level == "DEBUG"
    assert settings.registry_backend == "memory"
    assert settings.batch_max_concurrent == 5
    assert settings.container_image == "agents/claude:1.2"
    assert settings.credentials() == {"GITHUB_TOKEN": "ghp-abc"}


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("DOCKHAND_LOG_LEVEL", "chatty"),
        ("DOCKHAND_REGISTRY_BACKEND", "postgres"),
        ("DOCKHAND_BATCH_MAX_CONCURRENT", "0"),
    ],
)
def test_invalid_values_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        DockhandSettings()


def test_settings_accept_field_names() -> None:
    settings = DockhandSettings(default_github_owner="acme", template_paths=[])

    assert settings.default_github_owner == "acme"
    assert settings.template_paths == ()


def test_container_retention_and_sync_interval(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DOCKHAND_REMOVE_FINISHED_CONTAINERS", raising=False)
    monkeypatch.delenv("DOCKHAND_SYNC_INTERVAL", raising=False)
    defaults = DockhandSettings()
    assert defaults.remove_finished_containers is True
    assert defaults.sync_interval == 30.0

    monkeypatch.setenv("DOCKHAND_REMOVE_FINISHED_CONTAINERS", "false")
    monkeypatch.setenv("DOCKHAND_SYNC_INTERVAL", "0")
    settings = DockhandSettings()
    assert settings.remove_finished_containers is False
    assert settings.sync_interval == 0

    monkeypatch.setenv("DOCKHAND_SYNC_INTERVAL", "-1")
    with pytest.raises(ValidationError):
        DockhandSettings()
