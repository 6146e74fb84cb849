"""Shared CLI helpers: error handling, pipeline loading, storage and display."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from taskrail.executor.base import ExecutionBackend
    from taskrail.models import Run, TaskRun
    from taskrail.pipeline.schema import PipelineDefinition
    from taskrail.storage.sqlite import SQLiteStorage

console = Console()

STATUS_STYLES: dict[str, str] = {
    "successful": "green",
    "failed": "red",
    "skipped": "dim",
    "cancelled": "yellow",
    "unknown": "",
}


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "")
    return f"[{style}]{status}[/{style}]" if style else status


def load_pipeline_or_exit(pipeline_file: Path) -> PipelineDefinition:
    from taskrail.pipeline.loader import PipelineLoadError, load_pipeline

    try:
        return load_pipeline(pipeline_file)
    except PipelineLoadError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


def parse_vars_or_exit(var: list[str] | None) -> dict[str, str]:
    variables: dict[str, str] = {}
    for v in var or []:
        if "=" not in v:
            console.print(f"[red]Error:[/red] Invalid variable format: '{v}'. Use key=value.")
            raise typer.Exit(1)
        key, value = v.split("=", 1)
        variables[key] = value
    return variables


def open_storage(db: Path | None) -> SQLiteStorage:
    from taskrail.config import get_db_path
    from taskrail.storage.sqlite import SQLiteStorage

    return SQLiteStorage(db or get_db_path())


def open_existing_storage_or_exit(db: Path | None) -> SQLiteStorage:
    from taskrail.config import get_db_path

    db_path = db or get_db_path()
    if not db_path.exists():
        console.print(f"[red]Error:[/red] Run database not found at {db_path}")
        raise typer.Exit(1)
    return open_storage(db_path)


def create_backend(docker: bool, output_dir: Path | None = None) -> ExecutionBackend:
    from taskrail.executor.local import DockerBackend, ProcessBackend

    if docker:
        return DockerBackend(output_dir)
    return ProcessBackend(output_dir)


def load_settings_or_exit():
    from taskrail.config import SettingsLoadError, load_settings

    try:
        return load_settings()
    except SettingsLoadError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


def render_run(run: Run, task_runs: list[TaskRun]) -> None:
    reason = f" ({run.status_reason.description})" if run.status_reason else ""
    console.print(
        f"[bold]Run {run.key}[/bold] state={run.state} "
        f"status={styled_status(run.status)}{reason}"
    )
    table = Table(title=f"Task runs ({len(task_runs)})")
    table.add_column("Task", style="cyan")
    table.add_column("State")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    table.add_column("Started", style="dim")
    table.add_column("Ended", style="dim")
    table.add_column("Reason")
    for tr in task_runs:
        table.add_row(
            tr.task_id,
            tr.state,
            styled_status(tr.status),
            "" if tr.exit_code is None else str(tr.exit_code),
            tr.started or "",
            tr.ended or "",
            tr.status_reason.description if tr.status_reason else "",
        )
    console.print(table)
