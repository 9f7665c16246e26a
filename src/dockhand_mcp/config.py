"""Configuration management for Dockhand."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class DockhandSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    docker_path: str | None = Field(default=None, validation_alias="DOCKER_PATH")
    container_image: str = Field(default="claudecode:latest", validation_alias="CLAUDE_CONTAINER_IMAGE")
    container_entrypoint: str | None = Field(
        default="/scripts/runtime/claudecode-entrypoint.sh",
        validation_alias="DOCKHAND_CONTAINER_ENTRYPOINT",
    )
    container_capabilities: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("NET_ADMIN", "SYS_ADMIN"), validation_alias="DOCKHAND_CONTAINER_CAPABILITIES"
    )
    auth_host_dir: Path = Field(
        default=Path("~/.claude-hub"), validation_alias="CLAUDE_AUTH_HOST_DIR"
    )
    workspace_mount: str = Field(default="/home/user/project", validation_alias="DOCKHAND_WORKSPACE_MOUNT")

    registry_backend: str = Field(default="file", validation_alias="DOCKHAND_REGISTRY_BACKEND")
    sessions_dir: Path = Field(
        default=Path("~/.dockhand/sessions"), validation_alias="DOCKHAND_SESSIONS_DIR"
    )

    default_memory: str = Field(default="2g", validation_alias="DOCKHAND_DEFAULT_MEMORY")
    default_cpu_shares: str = Field(default="1024", validation_alias="DOCKHAND_DEFAULT_CPU_SHARES")
    default_pids_limit: str = Field(default="256", validation_alias="DOCKHAND_DEFAULT_PIDS_LIMIT")

    template_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("templates"),), validation_alias="DOCKHAND_TEMPLATE_PATHS"
    )

    bot_username: str = Field(default="ClaudeBot", validation_alias="BOT_USERNAME")
    bot_email: str = Field(default="claude@example.com", validation_alias="BOT_EMAIL")
    default_github_owner: str = Field(default="default-owner", validation_alias="DEFAULT_GITHUB_OWNER")
    github_token: str | None = Field(default=None, validation_alias="GITHUB_TOKEN")
    anthropic_api_key: str | None = Field(default=None, validation_alias="ANTHROPIC_API_KEY")

    continue_command: str = Field(
        default="claude --allowedTools Bash,Create,Edit,Read,Write,GitHub --verbose --print",
        validation_alias="DOCKHAND_CONTINUE_COMMAND",
    )
    batch_max_concurrent: int = Field(default=2, validation_alias="DOCKHAND_BATCH_MAX_CONCURRENT")
    remove_finished_containers: bool = Field(
        default=True, validation_alias="DOCKHAND_REMOVE_FINISHED_CONTAINERS"
    )
    sync_interval: float = Field(default=30.0, validation_alias="DOCKHAND_SYNC_INTERVAL")

    log_level: str = Field(default="INFO", validation_alias="DOCKHAND_LOG_LEVEL")
    journal_enabled: bool = Field(default=False, validation_alias="DOCKHAND_JOURNAL_ENABLED")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "DOCKHAND_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("registry_backend")
    @classmethod
    def _normalize_registry_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"file", "memory"}:
            raise ValueError("DOCKHAND_REGISTRY_BACKEND must be 'file' or 'memory'")
        return normalized

    @field_validator("template_paths", mode="before")
    @classmethod
    def _parse_template_paths(cls, value):
        if value is None or value == "":
            return (Path("templates"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("templates"),)
        raise TypeError("DOCKHAND_TEMPLATE_PATHS must be a list of paths or a path-separated string")

    @field_validator("container_capabilities", mode="before")
    @classmethod
    def _parse_capabilities(cls, value):
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return tuple(value)

    @field_validator("batch_max_concurrent")
    @classmethod
    def _validate_batch_max_concurrent(cls, value: int) -> int:
        if value < 1:
            raise ValueError("DOCKHAND_BATCH_MAX_CONCURRENT must be >= 1")
        return value

    @field_validator("sync_interval")
    @classmethod
    def _validate_sync_interval(cls, value: float) -> float:
        if value < 0:
            raise ValueError("DOCKHAND_SYNC_INTERVAL must be >= 0 (0 disables periodic sync)")
        return value

    def credentials(self) -> dict[str, str]:
        """Return credential environment variables forwarded into containers."""

        creds: dict[str, str] = {}
        if self.github_token:
            creds["GITHUB_TOKEN"] = self.github_token
        if self.anthropic_api_key:
            creds["ANTHROPIC_API_KEY"] = self.anthropic_api_key
        return creds


@lru_cache(maxsize=1)
def get_settings() -> DockhandSettings:
    """Return cached settings instance."""

    settings = DockhandSettings()
    settings.sessions_dir = settings.sessions_dir.expanduser().resolve()
    settings.auth_host_dir = settings.auth_host_dir.expanduser()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.template_paths = tuple(path.expanduser().resolve() for path in settings.template_paths)
    return settings


__all__ = ["DockhandSettings", "get_settings"]
