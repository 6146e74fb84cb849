"""Pipeline commands: validate."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from taskrail.cli._helpers import console, load_pipeline_or_exit


def validate(
    pipeline_file: Annotated[Path, typer.Argument(help="Path to pipeline YAML")],
) -> None:
    """Validate a pipeline definition and show its dependency graph."""
    pipe = load_pipeline_or_exit(pipeline_file)
    graph = pipe.spec.graph()

    tier_of = {task_id: i for i, tier in enumerate(graph.tiers()) for task_id in tier}

    title = pipe.metadata.name or pipe.pipeline_id
    table = Table(title=f"Pipeline: {pipe.namespace}/{title}")
    table.add_column("Task", style="cyan")
    table.add_column("Image")
    table.add_column("Depends On")
    table.add_column("Tier", justify="right")
    for task in pipe.spec.tasks:
        deps = ", ".join(f"{p} ({req})" for p, req in task.depends_on.items()) or "(none)"
        table.add_row(task.id, task.image, deps, str(tier_of.get(task.id, 0)))
    console.print(table)

    parallelism = pipe.spec.parallelism or "unlimited"
    console.print(
        f"[green]Valid[/green] {len(graph)} task(s), {graph.edge_count()} dependency edge(s), "
        f"{len(pipe.spec.triggers)} trigger(s), parallelism {parallelism}."
    )
