"""Run inspection commands: list, get."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from taskrail.cli._helpers import (
    console,
    load_settings_or_exit,
    open_existing_storage_or_exit,
    render_run,
    styled_status,
)

app = typer.Typer(help="Inspect stored runs.")

_Namespace = Annotated[
    str | None,
    typer.Option("--namespace", "-n", help="Pipeline namespace (default from settings)"),
]
_Db = Annotated[Path | None, typer.Option(help="Path to run database")]


def _namespace_or_default(namespace: str | None) -> str:
    return namespace or load_settings_or_exit().default_namespace


@app.command("list")
def runs_list(
    pipeline_id: Annotated[str, typer.Argument(help="Pipeline id")],
    namespace: _Namespace = None,
    limit: Annotated[int, typer.Option(help="Max runs to show (0 = all)")] = 20,
    offset: Annotated[int, typer.Option(help="Skip this many of the newest runs")] = 0,
    db: _Db = None,
) -> None:
    """List runs of a pipeline, newest first."""
    namespace = _namespace_or_default(namespace)
    with open_existing_storage_or_exit(db) as storage:
        runs = storage.list_runs(namespace, pipeline_id, offset=offset, limit=limit)

    if not runs:
        console.print(f"No runs found for {namespace}/{pipeline_id}.")
        return

    table = Table(title=f"Runs: {namespace}/{pipeline_id}")
    table.add_column("Run", justify="right", style="cyan")
    table.add_column("Version", justify="right")
    table.add_column("State")
    table.add_column("Status")
    table.add_column("Initiator")
    table.add_column("Started", style="dim")
    table.add_column("Ended", style="dim")
    for r in runs:
        initiator = r.initiator.kind
        if r.initiator.name:
            initiator = f"{initiator}:{r.initiator.name}"
        table.add_row(
            str(r.run_id),
            str(r.version),
            r.state,
            styled_status(r.status),
            initiator,
            r.started,
            r.ended or "",
        )
    console.print(table)


@app.command("get")
def runs_get(
    pipeline_id: Annotated[str, typer.Argument(help="Pipeline id")],
    run_id: Annotated[int, typer.Argument(help="Run id")],
    namespace: _Namespace = None,
    db: _Db = None,
) -> None:
    """Show one run and its task runs."""
    from taskrail.errors import NotFoundError
    from taskrail.models import RunKey

    namespace = _namespace_or_default(namespace)
    key = RunKey(namespace, pipeline_id, run_id)
    with open_existing_storage_or_exit(db) as storage:
        try:
            run = storage.get_run(key)
        except NotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from None
        task_runs = storage.list_task_runs(key)

    render_run(run, task_runs)
