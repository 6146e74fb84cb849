"""Typer CLI for Taskrail: wiring hub for command modules."""

from __future__ import annotations

from typing import Annotated

import typer

from taskrail.cli._helpers import console
from taskrail.cli.runs_cmd import app as runs_app

app = typer.Typer(
    name="taskrail",
    help="Run dependency-ordered task pipelines.",
    no_args_is_help=True,
)

app.add_typer(runs_app, name="runs")


def version_callback(value: bool) -> None:
    if value:
        from taskrail import __version__

        console.print(f"taskrail {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug output to stderr"),
    ] = False,
) -> None:
    """Taskrail: run dependency-ordered task pipelines."""
    from taskrail._log import setup_logging

    setup_logging(verbose=verbose)


# ---------------------------------------------------------------------------
# Command registrations: plain functions from *_cmd modules
# ---------------------------------------------------------------------------

from taskrail.cli.pipeline_cmd import validate  # noqa: E402
from taskrail.cli.run_cmd import daemon, run  # noqa: E402

app.command()(validate)
app.command()(run)
app.command()(daemon)


def app_entry() -> None:
    """Entry point for the CLI."""
    app()
