"""Console rendering and progress helpers for the odm-up CLI."""
from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.prompt import Prompt
from rich.table import Table

from .models import OperationResult, ProgressEvent, ProgressStage, Project, RemoteTask, RemoteTaskStatus

console = Console()

STAGE_COLORS = {
    ProgressStage.COMPLETED: "green",
    ProgressStage.BATCH_COMPLETED: "green",
    ProgressStage.ERROR: "red",
    ProgressStage.BATCH_ERROR: "red",
    ProgressStage.RETRY: "yellow",
    ProgressStage.TIMEOUT: "yellow",
    ProgressStage.CANCELLED: "yellow",
    ProgressStage.WAITING: "blue",
}

# Stages worth a timeline line of their own, not just a bar update.
TIMELINE_STAGES = frozenset({
    ProgressStage.STARTING,
    ProgressStage.BATCH_COMPLETED,
    ProgressStage.BATCH_ERROR,
    ProgressStage.RETRY,
    ProgressStage.COMPLETED,
    ProgressStage.ERROR,
    ProgressStage.TIMEOUT,
    ProgressStage.CANCELLED,
})


def _human_size(value: int) -> str:
    size = float(max(value, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_idx = 0
    while size >= 1024.0 and unit_idx < len(units) - 1:
        size /= 1024.0
        unit_idx += 1
    if unit_idx == 0:
        return f"{int(size)} {units[unit_idx]}"
    return f"{size:.2f} {units[unit_idx]}"


def render_configuration_summary(config: Dict[str, Any]) -> None:
    """Render startup configuration summary."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    panel = Panel(
        table,
        title="[bold green]odm-up[/bold green]",
        subtitle="[dim]WebODM uploader[/dim]",
        border_style="blue",
    )
    console.print(panel)


def render_projects(projects: Iterable[Project]) -> None:
    projects = list(projects)
    if not projects:
        console.print("[dim]No projects found.[/dim]")
        return
    table = Table(title="Projects")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name")
    for project in projects:
        table.add_row(str(project.id), project.name)
    console.print(table)


def _status_label(status: Optional[int]) -> str:
    try:
        return RemoteTaskStatus(status).name
    except ValueError:
        return "-" if status is None else str(status)


def render_tasks(project_id: Any, tasks: Iterable[RemoteTask]) -> None:
    tasks = list(tasks)
    if not tasks:
        console.print(f"[dim]No tasks found for project {project_id}.[/dim]")
        return
    table = Table(title=f"Tasks for project {project_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Images", justify="right")
    table.add_column("Created")
    for task in tasks:
        table.add_row(
            str(task.id),
            task.name or "-",
            _status_label(task.status),
            "-" if task.images_count is None else str(task.images_count),
            task.created_at or "-",
        )
    console.print(table)


def render_operation_result(action: str, result: OperationResult) -> None:
    if result.success:
        console.print(f"[green]{action}:[/green] done")
        if isinstance(result.data, dict):
            for key in ("orthophotoPath", "shapefilePath", "id", "name"):
                if key in result.data:
                    console.print(f"  {key}: {result.data[key]}")
        return
    console.print(f"[red]{action} failed:[/red] {result.error}")
    if result.details:
        console.print(f"  [dim]{result.details}[/dim]")


class ProgressStreamDisplay:
    """Renders one progress channel as a live bar plus a short timeline."""

    def __init__(self, label: str, show_bytes: bool = False):
        self._label = label
        self._show_bytes = show_bytes
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=36),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            TextColumn("[dim]{task.fields[detail]}", justify="left"),
            expand=False,
            console=console,
        )
        self._live: Optional[Live] = None
        self._task_id: Optional[TaskID] = None
        self._finished = False

    def _start_live(self) -> None:
        if self._live is not None:
            return
        self._live = Live(self._progress, console=console, refresh_per_second=8, vertical_overflow="visible")
        self._live.start()
        self._task_id = self._progress.add_task("stream", label=self._label, total=100, detail="")

    def _stop_live(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    def _detail(self, event: ProgressEvent) -> str:
        detail = event.message
        if self._show_bytes and event.bytes_total:
            detail = f"{detail} ({_human_size(event.bytes_uploaded or 0)}/{_human_size(event.bytes_total)})"
        return detail[:100]

    def _timeline(self, event: ProgressEvent) -> None:
        color = STAGE_COLORS.get(event.stage, "white")
        stamp = time.strftime("%H:%M:%S")
        console.print(
            f"[dim]{stamp}[/dim] [{color}]{event.stage.value:<15}[/{color}] {event.message}"
        )

    def __call__(self, event: ProgressEvent) -> None:
        if self._finished:
            if event.stage in TIMELINE_STAGES:
                self._timeline(event)
            return
        self._start_live()
        if self._task_id is not None:
            self._progress.update(self._task_id, completed=event.percent, detail=self._detail(event))
        if event.stage in TIMELINE_STAGES:
            self._timeline(event)
        if event.is_terminal:
            self._finished = True
            self._stop_live()

    def close(self) -> None:
        self._stop_live()


class ConsoleFolderChooser:
    """Implements IFolderChooser with a console prompt."""

    async def choose_folder(self, title: str) -> Optional[Path]:
        answer = await asyncio.to_thread(Prompt.ask, f"[bold]{title}[/bold] (empty to cancel)", default="")
        answer = answer.strip()
        if not answer:
            return None
        return Path(answer).expanduser()
