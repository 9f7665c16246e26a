"""FastMCP server bootstrap for Dockhand."""

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import DockhandSettings, get_settings
from .orchestration import SessionOrchestrator
from .runtime import DockerNotFoundError, DockerRuntime
from .sessions import FileSessionRegistry, InMemorySessionRegistry, ResourceLimits, SessionRegistry
from .storage import JournalUnavailableError, SessionJournal
from .templates import TemplateLoadError, TemplateLoader
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Dockhand server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def periodic_sync(orchestrator: SessionOrchestrator, interval: float) -> None:
    """Reconcile sessions every ``interval`` seconds until cancelled."""

    while True:
        await asyncio.sleep(interval)
        try:
            await orchestrator.sync()
        except Exception:
            logging.getLogger(__name__).exception("Periodic session sync failed")


def build_runtime(settings: DockhandSettings) -> DockerRuntime:
    """Construct the Docker adapter described by ``settings``."""

    return DockerRuntime(
        Path(settings.docker_path) if settings.docker_path else None,
        entrypoint=settings.container_entrypoint,
        capabilities=settings.container_capabilities,
        auth_host_dir=settings.auth_host_dir,
        workspace_mount=settings.workspace_mount,
        default_limits=ResourceLimits(
            memory=settings.default_memory,
            cpu_shares=settings.default_cpu_shares,
            pids_limit=settings.default_pids_limit,
        ),
    )


def build_registry(settings: DockhandSettings) -> SessionRegistry:
    if settings.registry_backend == "memory":
        return InMemorySessionRegistry()
    return FileSessionRegistry(settings.sessions_dir)


def create_server(
    settings: Optional[DockhandSettings] = None,
    runtime: DockerRuntime | None = None,
    registry: SessionRegistry | None = None,
    journal: SessionJournal | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the session orchestrator attached.

    Raises :class:`DockerNotFoundError` when no runtime is supplied and the Docker
    CLI cannot be located.
    """

    settings = settings or get_settings()

    docker_metadata: dict[str, Any] = {
        "available": False,
        "version": None,
        "error": None,
    }

    if runtime is None:
        runtime = build_runtime(settings)
        try:
            version_result = _run_sync(runtime.version())
            if version_result.ok:
                docker_metadata["available"] = True
                docker_metadata["version"] = version_result.stdout.strip()
            else:
                docker_metadata["error"] = (
                    version_result.stderr.strip() or "Docker version command failed with exit code"
                )
        except OSError as exc:
            docker_metadata["error"] = str(exc)
    else:
        docker_metadata["available"] = True

    if registry is None:
        registry = build_registry(settings)
    registry_metadata = {
        "backend": type(registry).__name__,
        "path": str(getattr(registry, "directory", "")) or None,
    }

    journal_metadata: dict[str, Any] = {
        "enabled": settings.journal_enabled or journal is not None,
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": None,
        "error": None,
    }
    if journal is None and settings.journal_enabled:
        journal = SessionJournal(settings.chroma_persist_path)
    if journal is not None:
        try:
            journal.ping()
            journal_metadata["available"] = True
            journal_metadata["collection"] = journal.collection_name
        except JournalUnavailableError as exc:
            journal_metadata["error"] = str(exc)
            journal = None

    templates = TemplateLoader(settings.template_paths)
    orchestrator = SessionOrchestrator(
        registry,
        runtime,
        settings=settings,
        templates=templates,
        journal=journal,
    )
    resume_report: dict[str, Any] = {}

    @asynccontextmanager
    async def lifespan(_server: FastMCP):
        resume_report.update(await orchestrator.resume())
        reconcile: asyncio.Task[None] | None = None
        if settings.sync_interval > 0:
            reconcile = asyncio.create_task(
                periodic_sync(orchestrator, settings.sync_interval), name="dockhand-sync"
            )
        try:
            yield {}
        finally:
            if reconcile is not None:
                reconcile.cancel()
                try:
                    await reconcile
                except asyncio.CancelledError:
                    pass
            await orchestrator.close()

    server = FastMCP(
        name="Dockhand MCP",
        version=__version__,
        instructions=(
            "Dockhand runs coding-agent sessions in isolated Docker containers. Use the "
            "provided tools to create, start, queue and orchestrate dependent sessions, "
            "inspect their output, and stop, recover or sync them."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(server, orchestrator=orchestrator, settings=settings)

    @server.resource(
        "resource://dockhand/status",
        name="dockhand_status",
        title="Dockhand MCP Status",
        description="Provides the current runtime status for the Dockhand MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            template_kinds = sorted(templates.load_all().keys())
            template_error: str | None = None
        except TemplateLoadError as exc:
            template_kinds = []
            template_error = str(exc)

        sessions = orchestrator.list()
        status_counts: dict[str, int] = {}
        for session in sessions:
            status_counts[session.status.value] = status_counts.get(session.status.value, 0) + 1

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "docker": {
                "path": str(runtime.executable),
                "image": settings.container_image,
                **docker_metadata,
            },
            "registry": registry_metadata,
            "journal": journal_metadata,
            "templates": {
                "kinds": template_kinds,
                "error": template_error,
            },
            "sessions": {
                "count": len(sessions),
                "status_counts": status_counts,
                "recent": [
                    {
                        "id": session.id,
                        "kind": session.kind,
                        "status": session.status.value,
                        "container_ref": session.container_ref,
                    }
                    for session in sessions[:5]
                ],
                "waitlist": orchestrator.scheduler.waitlist,
                "resume": resume_report,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "docker_metadata", docker_metadata)
    setattr(server, "journal_metadata", journal_metadata)
    setattr(server, "registry_metadata", registry_metadata)
    setattr(server, "resume_report", resume_report)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the Dockhand MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        server = create_server(settings)
    except DockerNotFoundError as exc:
        logging.getLogger(__name__).error("Docker CLI unavailable", extra={"error": str(exc)})
        sys.exit(1)

    logging.getLogger(__name__).info(
        "Launching Dockhand MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "docker_available": getattr(server, "docker_metadata", {}).get("available"),
            "journal_available": getattr(server, "journal_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
