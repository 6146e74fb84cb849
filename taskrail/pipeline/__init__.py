"""Pipeline module: task definitions and their dependency graph."""

from taskrail.pipeline.graph import PipelineGraph, build_graph
from taskrail.pipeline.loader import PipelineLoadError, load_pipeline
from taskrail.pipeline.schema import (
    PipelineDefinition,
    PipelineMetadata,
    PipelineSpec,
    RequiredParentStatus,
    TaskConfig,
)

__all__ = [
    "PipelineDefinition",
    "PipelineGraph",
    "PipelineLoadError",
    "PipelineMetadata",
    "PipelineSpec",
    "RequiredParentStatus",
    "TaskConfig",
    "build_graph",
    "load_pipeline",
]
