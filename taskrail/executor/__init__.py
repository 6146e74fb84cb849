"""Execution backends: where task workloads actually run."""

from taskrail.executor.base import (
    DispatchRequest,
    ExecutionBackend,
    TaskRunEvent,
    TaskRunEventKind,
    build_env,
    build_request,
)
from taskrail.executor.local import DockerBackend, ProcessBackend

__all__ = [
    "DispatchRequest",
    "DockerBackend",
    "ExecutionBackend",
    "ProcessBackend",
    "TaskRunEvent",
    "TaskRunEventKind",
    "build_env",
    "build_request",
]
