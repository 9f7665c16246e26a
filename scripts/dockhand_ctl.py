"""Dockhand operator CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable

import yaml
from pydantic import ValidationError

from dockhand_mcp.config import DockhandSettings, get_settings
from dockhand_mcp.orchestration import BatchConfigError, OperationResult, SessionOrchestrator
from dockhand_mcp.runtime import DockerNotFoundError, DockerRuntimeError
from dockhand_mcp.server import build_registry, build_runtime
from dockhand_mcp.sessions import (
    BatchTask,
    ResourceLimits,
    SessionFilter,
    SessionRegistry,
    SessionStatus,
    apply_filter,
)


DETACH_HELP = "Return once the container is running; the MCP server's periodic sync takes it over"


def load_registry(settings: DockhandSettings) -> SessionRegistry:
    return build_registry(settings)


def load_orchestrator(settings: DockhandSettings) -> SessionOrchestrator:
    try:
        runtime = build_runtime(settings)
    except DockerNotFoundError as exc:
        print(f"Docker unavailable: {exc}")
        raise SystemExit(1)
    return SessionOrchestrator(load_registry(settings), runtime, settings=settings)


def run_with(orchestrator: SessionOrchestrator, action: Callable[[], Awaitable[Any]]) -> Any:
    async def _runner() -> Any:
        try:
            return await action()
        finally:
            await orchestrator.close()

    return asyncio.run(_runner())


async def follow(orchestrator: SessionOrchestrator, result: OperationResult) -> OperationResult:
    """Wait in this process until a launched session finishes."""

    assert result.session_id is not None
    session = await orchestrator.wait_for(result.session_id)
    return OperationResult.for_session(
        session,
        session.status == SessionStatus.COMPLETED,
        f"{result.message}; session {session.status.value}",
        **result.details,
    )


def print_result(result: OperationResult) -> None:
    print(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        raise SystemExit(1)


def load_batch_file(path: Path) -> list[BatchTask]:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        print(f"Cannot read batch file: {exc}")
        raise SystemExit(1)
    except yaml.YAMLError as exc:
        print(f"Invalid batch file: {exc}")
        raise SystemExit(1)

    if isinstance(document, dict):
        document = document.get("tasks")
    if not isinstance(document, list):
        print("Invalid batch file: expected a list of tasks")
        raise SystemExit(1)

    try:
        return [BatchTask.model_validate(item) for item in document]
    except ValidationError as exc:
        print(f"Invalid batch file: {exc}")
        raise SystemExit(1)


def cmd_list(args: argparse.Namespace) -> None:
    settings = get_settings()
    registry = load_registry(settings)
    try:
        session_filter = SessionFilter(
            status=args.status, repo=args.repo, limit=args.limit, group=args.group
        )
    except ValueError as exc:
        print(f"Invalid filter: {exc}")
        raise SystemExit(1)

    sessions = apply_filter(registry.list_all(), session_filter)
    if args.json:
        print(json.dumps([session.model_dump(mode="json") for session in sessions], indent=2))
        return
    if not sessions:
        print("No sessions found")
        return
    for session in sessions:
        print(
            f"{session.id} [{session.status.value}] {session.project.repository} "
            f"({session.kind}) -> {session.container_ref or '-'}"
        )


def cmd_stop(args: argparse.Namespace) -> None:
    settings = get_settings()
    orchestrator = load_orchestrator(settings)
    if args.session_id == "all":
        report = run_with(orchestrator, lambda: orchestrator.stop_all(force=args.force, remove=args.remove))
        print(json.dumps(report.to_dict(), indent=2))
        if report.failed:
            raise SystemExit(1)
        return

    print_result(
        run_with(
            orchestrator,
            lambda: orchestrator.stop(args.session_id, force=args.force, remove=args.remove),
        )
    )


def cmd_start(args: argparse.Namespace) -> None:
    settings = get_settings()
    limits = ResourceLimits(memory=args.memory, cpu_shares=args.cpu, pids_limit=args.pids)
    try:
        task = BatchTask(
            repo=args.repo,
            command=args.command,
            kind=args.kind,
            branch=args.branch,
            issue=args.issue,
            pr=args.pr,
            resource_limits=None if limits.is_empty() else limits,
        )
    except ValidationError as exc:
        print(f"Invalid session: {exc}")
        raise SystemExit(1)
    orchestrator = load_orchestrator(settings)

    async def _start() -> OperationResult:
        session = orchestrator.create(orchestrator.request_for_task(task))
        try:
            await orchestrator.start(session.id)
        except DockerRuntimeError as exc:
            return OperationResult.for_session(
                orchestrator.get(session.id), False, f"Failed to start session: {exc}"
            )
        result = OperationResult.for_session(orchestrator.get(session.id), True, "Session started")
        if args.detach:
            return result
        return await follow(orchestrator, result)

    print_result(run_with(orchestrator, _start))


def cmd_continue(args: argparse.Namespace) -> None:
    settings = get_settings()
    orchestrator = load_orchestrator(settings)
    print_result(
        run_with(orchestrator, lambda: orchestrator.continue_session(args.session_id, args.command))
    )


def cmd_recover(args: argparse.Namespace) -> None:
    settings = get_settings()
    orchestrator = load_orchestrator(settings)

    async def _recover() -> OperationResult:
        result = await orchestrator.recover(args.session_id)
        if not result.success or args.detach:
            return result
        return await follow(orchestrator, result)

    print_result(run_with(orchestrator, _recover))


def cmd_sync(args: argparse.Namespace) -> None:
    settings = get_settings()
    orchestrator = load_orchestrator(settings)
    report = run_with(orchestrator, orchestrator.sync)
    print(json.dumps(report.to_dict(), indent=2))


def cmd_logs(args: argparse.Namespace) -> None:
    settings = get_settings()
    orchestrator = load_orchestrator(settings)
    result = run_with(orchestrator, lambda: orchestrator.logs(args.session_id, tail=args.tail))
    if not result.success:
        print(json.dumps(result.to_dict(), indent=2))
        raise SystemExit(1)
    print(result.details.get("logs", ""), end="")


def cmd_batch(args: argparse.Namespace) -> None:
    settings = get_settings()
    tasks = load_batch_file(Path(args.file))
    orchestrator = load_orchestrator(settings)
    max_concurrent = args.max_concurrent if args.max_concurrent is not None else settings.batch_max_concurrent
    try:
        report = run_with(
            orchestrator,
            lambda: orchestrator.run_batch(tasks, parallel=args.parallel, max_concurrent=max_concurrent),
        )
    except BatchConfigError as exc:
        print(f"Invalid batch options: {exc}")
        raise SystemExit(1)
    print(json.dumps(report.to_dict(), indent=2))
    if report.failed:
        raise SystemExit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dockhand session operations")
    sub = parser.add_subparsers(dest="cmd")

    p_list = sub.add_parser("list", help="List sessions, newest first")
    p_list.add_argument("--status")
    p_list.add_argument("--repo", help="Only sessions whose repository contains this text")
    p_list.add_argument("--group", help="Only sessions whose id starts with this prefix")
    p_list.add_argument("--limit", type=int, default=None)
    p_list.add_argument("--json", action="store_true", help="Output JSON")
    p_list.set_defaults(func=cmd_list)

    p_stop = sub.add_parser("stop", help="Stop a running session, or 'all'")
    p_stop.add_argument("session_id")
    p_stop.add_argument("--force", action="store_true", help="Kill instead of a graceful stop")
    p_stop.add_argument("--remove", action="store_true", help="Also remove container and record")
    p_stop.set_defaults(func=cmd_stop)

    p_start = sub.add_parser("start", help="Start a session and wait for it to finish")
    p_start.add_argument("repo", help="Repository as owner/repo, or repo for the default owner")
    p_start.add_argument("command", help="Instruction for the agent")
    p_start.add_argument("--kind", default=None)
    p_start.add_argument("-b", "--branch", default=None)
    p_start.add_argument("--issue", type=int, default=None)
    p_start.add_argument(
        "-p", "--pr", nargs="?", const=True, type=int, default=None,
        help="Treat as a pull request, optionally with its number",
    )
    p_start.add_argument("-m", "--memory", default=None, help='Memory limit (e.g. "2g")')
    p_start.add_argument("-c", "--cpu", default=None, help='CPU shares (e.g. "1024")')
    p_start.add_argument("--pids", default=None, help='Process limit (e.g. "256")')
    p_start.add_argument("--detach", action="store_true", help=DETACH_HELP)
    p_start.set_defaults(func=cmd_start)

    p_continue = sub.add_parser("continue", help="Send a follow-up command to a running session")
    p_continue.add_argument("session_id")
    p_continue.add_argument("command")
    p_continue.set_defaults(func=cmd_continue)

    p_recover = sub.add_parser("recover", help="Relaunch a stopped session and wait for it to finish")
    p_recover.add_argument("session_id")
    p_recover.add_argument("--detach", action="store_true", help=DETACH_HELP)
    p_recover.set_defaults(func=cmd_recover)

    p_sync = sub.add_parser("sync", help="Finalize running sessions whose containers exited; mark vanished ones stopped")
    p_sync.set_defaults(func=cmd_sync)

    p_logs = sub.add_parser("logs", help="Print container logs for a session")
    p_logs.add_argument("session_id")
    p_logs.add_argument("--tail", type=int, default=None)
    p_logs.set_defaults(func=cmd_logs)

    p_batch = sub.add_parser("batch", help="Run tasks from a YAML file")
    p_batch.add_argument("file")
    p_batch.add_argument("--parallel", action="store_true")
    p_batch.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Tasks per parallel chunk (defaults to DOCKHAND_BATCH_MAX_CONCURRENT)",
    )
    p_batch.set_defaults(func=cmd_batch)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
