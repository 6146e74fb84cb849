"""Load and validate pipeline YAML definitions."""

from __future__ import annotations

from pathlib import Path

from taskrail._yaml import load_yaml_model
from taskrail.pipeline.schema import PipelineDefinition


class PipelineLoadError(Exception):
    """Raised when a pipeline definition cannot be loaded or validated."""


def load_pipeline(path: Path) -> PipelineDefinition:
    """Read a YAML file and validate it as a PipelineDefinition."""
    return load_yaml_model(path, PipelineDefinition, PipelineLoadError)
