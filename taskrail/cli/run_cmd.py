"""Execution commands: run, daemon."""

from __future__ import annotations

import getpass
import threading
from pathlib import Path
from typing import Annotated

import typer

from taskrail.cli._helpers import (
    console,
    create_backend,
    load_pipeline_or_exit,
    load_settings_or_exit,
    open_storage,
    parse_vars_or_exit,
    render_run,
)


def run(
    pipeline_file: Annotated[Path, typer.Argument(help="Path to pipeline YAML")],
    var: Annotated[
        list[str] | None,
        typer.Option("--var", help="Run variable in key=value format"),
    ] = None,
    db: Annotated[Path | None, typer.Option(help="Path to run database")] = None,
    docker: Annotated[
        bool, typer.Option("--docker", help="Run tasks in Docker containers")
    ] = False,
    output_dir: Annotated[
        Path | None, typer.Option(help="Write each task run's output to a log file here")
    ] = None,
) -> None:
    """Register a pipeline, start one run and wait for it to finish."""
    from taskrail.errors import ConcurrencyError
    from taskrail.models import Initiator, InitiatorKind, RunStatus
    from taskrail.runs.service import RunService

    pipe = load_pipeline_or_exit(pipeline_file)
    variables = parse_vars_or_exit(var)
    settings = load_settings_or_exit()

    backend = create_backend(docker, output_dir)
    with open_storage(db) as storage:
        service = RunService(storage, backend, settings)
        version = service.register_pipeline(pipe)
        try:
            started = service.create_run(
                pipe.namespace,
                pipe.pipeline_id,
                variables=variables,
                initiator=Initiator(InitiatorKind.HUMAN, getpass.getuser(), "started from cli"),
                version=version.version,
            )
        except ConcurrencyError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from None

        console.print(
            f"[dim]Started run {started.key} of version {version.version} "
            f"({len(pipe.spec.tasks)} task(s))[/dim]"
        )
        try:
            finished = service.wait_for_run(
                started.namespace, started.pipeline_id, started.run_id
            )
        except KeyboardInterrupt:
            console.print("[yellow]Cancelling run...[/yellow]")
            service.cancel_run(
                started.namespace, started.pipeline_id, started.run_id, "interrupted from cli"
            )
            finished = service.wait_for_run(
                started.namespace, started.pipeline_id, started.run_id
            )
        finally:
            backend.close()

        render_run(finished, storage.list_task_runs(finished.key))

    if finished.status != RunStatus.SUCCESSFUL:
        raise typer.Exit(1)


def daemon(
    pipeline_files: Annotated[list[Path], typer.Argument(help="Pipeline YAML files")],
    db: Annotated[Path | None, typer.Option(help="Path to run database")] = None,
    docker: Annotated[
        bool, typer.Option("--docker", help="Run tasks in Docker containers")
    ] = False,
    output_dir: Annotated[
        Path | None, typer.Option(help="Write each task run's output to a log file here")
    ] = None,
) -> None:
    """Serve pipeline triggers, resuming runs left over from a previous daemon."""
    from taskrail._signal import ShutdownSignals
    from taskrail.runs.service import RunService
    from taskrail.triggers.dispatcher import TriggerDispatcher

    pipes = [load_pipeline_or_exit(p) for p in pipeline_files]
    if not any(p.spec.triggers for p in pipes):
        console.print("[red]Error:[/red] No triggers configured in any pipeline definition.")
        raise typer.Exit(1)
    settings = load_settings_or_exit()

    backend = create_backend(docker, output_dir)
    with open_storage(db) as storage:
        service = RunService(storage, backend, settings)
        for pipe in pipes:
            version = service.register_pipeline(pipe)
            console.print(
                f"Registered [cyan]{pipe.namespace}/{pipe.pipeline_id}[/cyan] "
                f"version {version.version}"
            )

        recovered = service.recover()
        if recovered:
            console.print(f"Resumed {len(recovered)} run(s): " + ", ".join(map(str, recovered)))

        dispatcher = TriggerDispatcher(pipes, service.handle_trigger_event)
        console.print(f"Daemon running with {dispatcher.count} trigger(s). Press Ctrl+C to stop.")

        stop = threading.Event()
        signals = ShutdownSignals(stop, on_first_signal=lambda: service.set_run_ingress(False))
        with dispatcher, signals:
            # Periodic wakeups in case the signal handler never sets the event.
            while not stop.wait(timeout=30):
                pass

        service.shutdown()

    console.print("Daemon stopped.")
