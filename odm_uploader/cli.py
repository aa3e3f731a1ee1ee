"""Command line interface for odm_uploader."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

from rich.logging import RichHandler

from .cli_progress import (
    ConsoleFolderChooser,
    ProgressStreamDisplay,
    console,
    render_configuration_summary,
    render_operation_result,
    render_projects,
    render_tasks,
)
from .config import Settings
from .errors import (
    OperationCancelledError,
    PollTimeoutError,
    RemoteTaskError,
    UploaderError,
)
from .models import MiB, PollConfig, ProgressStage, UploadConfig
from .orchestrator import ProcessingCoordinator
from .orchestrator.task_poller import raise_for_outcome

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_TIMEOUT = 2
EXIT_INTERRUPTED = 130


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Configure logging.

    Default behavior is silent unless --debug or --log-level is provided.
    Returns a string describing effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    logging.disable(logging.NOTSET)

    if silent or (not debug and not log_level):
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        markup=False,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    return logging.getLevelName(level)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_env_file(path: Path, override: bool = False) -> None:
    if not path.exists():
        raise CLIError(f"env file not found: {path}")
    if not path.is_file():
        raise CLIError(f"env path is not a file: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = _strip_optional_quotes(value.strip())
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.exists() and default_env.is_file() else None


def _remote_id(value: str) -> Union[int, str]:
    """Numeric ids go over the wire as integers."""
    value = value.strip()
    return int(value) if value.isdigit() else value


def _build_upload_config(args: argparse.Namespace) -> UploadConfig:
    overrides: Dict[str, Any] = {}
    if getattr(args, "batch_size", None) is not None:
        overrides["batch_size"] = args.batch_size
    if getattr(args, "max_file_size_mb", None) is not None:
        overrides["max_file_size_bytes"] = int(args.max_file_size_mb * MiB)
    if getattr(args, "inter_batch_delay_ms", None) is not None:
        overrides["inter_batch_delay_ms"] = args.inter_batch_delay_ms
    if getattr(args, "request_timeout_ms", None) is not None:
        overrides["request_timeout_ms"] = args.request_timeout_ms
    if getattr(args, "batch_retries", None) is not None:
        overrides["batch_retries"] = args.batch_retries
    try:
        return UploadConfig(**overrides)
    except UploaderError as exc:
        raise CLIError(exc.message) from exc


def _build_poll_config(args: argparse.Namespace) -> PollConfig:
    overrides: Dict[str, Any] = {}
    if getattr(args, "max_polls", None) is not None:
        overrides["max_polls"] = args.max_polls
    if getattr(args, "interval_ms", None) is not None:
        overrides["interval_ms"] = args.interval_ms
    try:
        return PollConfig(**overrides)
    except UploaderError as exc:
        raise CLIError(exc.message) from exc


def _outcome_code(event_stage: Optional[str]) -> int:
    if event_stage == ProgressStage.TIMEOUT.value:
        console.print("[yellow]Processing is still running; check WebODM directly.[/yellow]")
        return EXIT_TIMEOUT
    return EXIT_OK


async def _cmd_upload(coordinator: ProcessingCoordinator, args: argparse.Namespace) -> int:
    if args.wait_ready and not await coordinator.wait_until_ready():
        raise CLIError("backend did not become ready")

    upload_display = ProgressStreamDisplay("Upload", show_bytes=True)
    processing_display = ProgressStreamDisplay("Processing")
    coordinator.on_upload_progress(upload_display)
    coordinator.on_webodm_progress(processing_display)
    try:
        result = await coordinator.select_folder(
            args.project,
            args.folder,
            monitor=not args.no_monitor,
        )
    finally:
        upload_display.close()
        processing_display.close()

    if not result.success:
        render_operation_result("Upload", result)
        return EXIT_FAILED

    upload = result.data["upload"]
    console.print(
        f"[bold]Finished[/bold] uploaded={upload['totalUploaded']} total={upload['totalFiles']} "
        f"skipped={upload['totalSkipped']} failed_batches={upload['failedBatches']}"
    )
    processing = result.data.get("processing") or {}
    return _outcome_code(processing.get("stage"))


async def _cmd_poll(coordinator: ProcessingCoordinator, args: argparse.Namespace) -> int:
    display = ProgressStreamDisplay("Processing")
    coordinator.on_webodm_progress(display)
    try:
        event = await coordinator.poll_task_progress(
            args.task_id,
            args.project_id,
            max_polls=args.max_polls,
            interval_ms=args.interval_ms,
        )
    except UploaderError as exc:
        raise CLIError(exc.message) from exc
    finally:
        display.close()

    try:
        raise_for_outcome(event)
    except PollTimeoutError:
        return _outcome_code(ProgressStage.TIMEOUT.value)
    except (RemoteTaskError, OperationCancelledError) as exc:
        console.print(f"[red]Processing did not complete:[/red] {exc.message}")
        return EXIT_FAILED
    return EXIT_OK


async def _cmd_projects(coordinator: ProcessingCoordinator, args: argparse.Namespace) -> int:
    action = args.projects_action or "list"
    if action == "list":
        render_projects(await coordinator.get_projects())
        return EXIT_OK
    if action == "create":
        result = await coordinator.create_project(args.name)
    elif action == "rename":
        result = await coordinator.rename_project(args.project_id, args.new_name)
    else:
        result = await coordinator.delete_project(args.project_id)
    render_operation_result(f"{action.capitalize()} project", result)
    return EXIT_OK if result.success else EXIT_FAILED


async def _cmd_tasks(coordinator: ProcessingCoordinator, args: argparse.Namespace) -> int:
    render_tasks(args.project_id, await coordinator.get_tasks(args.project_id))
    return EXIT_OK


async def _cmd_commit(coordinator: ProcessingCoordinator, args: argparse.Namespace) -> int:
    display = ProgressStreamDisplay("Commit")
    coordinator.on_commit_progress(display)
    try:
        if args.commit_target == "map":
            result = await coordinator.commit_task_to_map(args.project_id, args.name)
        else:
            result = await coordinator.commit_task_to_custom_folder(args.project_id, args.path)
    finally:
        display.close()
    render_operation_result("Commit", result)
    return EXIT_OK if result.success else EXIT_FAILED


async def _cmd_wait(coordinator: ProcessingCoordinator, args: argparse.Namespace) -> int:
    with console.status("Waiting for backend..."):
        ready = await coordinator.wait_until_ready(retries=args.retries, delay=args.delay)
    if ready:
        console.print("[green]Backend is ready[/green]")
        return EXIT_OK
    console.print("[red]Backend did not become ready[/red]")
    return EXIT_FAILED


COMMANDS: Dict[str, Callable[[ProcessingCoordinator, argparse.Namespace], Awaitable[int]]] = {
    "upload": _cmd_upload,
    "poll": _cmd_poll,
    "projects": _cmd_projects,
    "tasks": _cmd_tasks,
    "commit": _cmd_commit,
    "wait": _cmd_wait,
}


async def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    async with ProcessingCoordinator(
        settings.api_url,
        upload_config=_build_upload_config(args),
        poll_config=_build_poll_config(args),
        credentials=settings.credential_provider(),
        folder_chooser=ConsoleFolderChooser(),
        timeout=settings.request_timeout,
    ) as coordinator:
        return await COMMANDS[args.command](coordinator, args)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="odm-up",
        description="Upload image folders to WebODM and follow processing until outputs are ready.",
    )
    parser.add_argument(
        "--api-url",
        default=None,
        help="Image request handler URL (default from IMAGE_HANDLER_API_URL or http://localhost:7789)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )
    parser.add_argument("--version", action="version", version="odm-up (from odm_uploader)")

    commands = parser.add_subparsers(dest="command")

    upload = commands.add_parser("upload", help="Upload a folder of JPEG images")
    upload.add_argument("folder", nargs="?", type=Path, help="Image folder (prompted when omitted)")
    upload.add_argument("-p", "--project", required=True, help="Project name")
    upload.add_argument("-b", "--batch-size", type=int, default=None, help="Images per request (default 1000)")
    upload.add_argument("--max-file-size-mb", type=float, default=None, help="Skip larger images (default 50)")
    upload.add_argument("--inter-batch-delay-ms", type=int, default=None, help="Pause between batches")
    upload.add_argument("--request-timeout-ms", type=int, default=None, help="Timeout per batch request")
    upload.add_argument("--batch-retries", type=int, default=None, help="Extra attempts for a failed batch")
    upload.add_argument("--no-monitor", action="store_true", help="Do not follow processing after upload")
    upload.add_argument("--wait-ready", action="store_true", help="Wait for the backend before uploading")
    upload.add_argument("--max-polls", type=int, default=None, help="Poll budget while monitoring")
    upload.add_argument("--interval-ms", type=int, default=None, help="Base poll interval")

    poll = commands.add_parser("poll", help="Follow a processing task")
    poll.add_argument("--project-id", type=_remote_id, required=True)
    poll.add_argument("--task-id", type=_remote_id, default=None, help="Defaults to the latest task")
    poll.add_argument("--max-polls", type=int, default=None)
    poll.add_argument("--interval-ms", type=int, default=None)

    projects = commands.add_parser("projects", help="List or manage projects")
    project_actions = projects.add_subparsers(dest="projects_action")
    project_actions.add_parser("list", help="List projects")
    create = project_actions.add_parser("create", help="Create a project")
    create.add_argument("name")
    rename = project_actions.add_parser("rename", help="Rename a project")
    rename.add_argument("project_id", type=_remote_id)
    rename.add_argument("new_name")
    delete = project_actions.add_parser("delete", help="Delete a project")
    delete.add_argument("project_id", type=_remote_id)

    tasks = commands.add_parser("tasks", help="List tasks of a project")
    tasks.add_argument("project_id", type=_remote_id)

    commit = commands.add_parser("commit", help="Commit the latest task's outputs")
    targets = commit.add_subparsers(dest="commit_target", required=True)
    to_map = targets.add_parser("map", help="Commit to a mapserver target")
    to_map.add_argument("project_id", type=_remote_id)
    to_map.add_argument("name", help="Map name")
    to_folder = targets.add_parser("folder", help="Commit to a folder")
    to_folder.add_argument("project_id", type=_remote_id)
    to_folder.add_argument("path", nargs="?", default=None, help="Destination (prompted when omitted)")

    wait = commands.add_parser("wait", help="Wait until the backend answers")
    wait.add_argument("--retries", type=int, default=20)
    wait.add_argument("--delay", type=float, default=3.0)

    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return EXIT_FAILED

    settings = Settings.from_env()
    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level or settings.log_level,
    )

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    if args.api_url:
        settings = replace(settings, api_url=args.api_url.rstrip("/"))

    if not args.silent:
        render_configuration_summary(
            {
                "Command": args.command,
                "API": settings.api_url,
                "WebODM Auth": settings.webodm_username or "(none)",
                "Env File": str(used_env_file) if used_env_file else "-",
                "Logging": effective_log_mode,
            }
        )

    try:
        return asyncio.run(_run_command(args, settings))
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return EXIT_INTERRUPTED


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
