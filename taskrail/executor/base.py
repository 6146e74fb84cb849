"""Execution backend contract used by run coordinators."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from taskrail.errors import DispatchError
from taskrail.models import Run, TaskRunStatus
from taskrail.pipeline.schema import TaskConfig

ENV_PREFIX = "TASKRAIL_"


class TaskRunEventKind(StrEnum):
    STARTED = "started"
    COMPLETED = "completed"


@dataclass
class TaskRunEvent:
    """Notification from a backend about one dispatched task run."""

    task_id: str
    kind: TaskRunEventKind
    exit_code: int | None = None
    status: TaskRunStatus | None = None
    # Extra detail for failed or cancelled completions.
    message: str = ""


Notify = Callable[[TaskRunEvent], None]


@dataclass
class DispatchRequest:
    namespace: str
    pipeline_id: str
    run_id: int
    task_id: str
    image: str
    command: list[str] | None = None
    entrypoint: list[str] | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return f"{self.namespace}/{self.pipeline_id}#{self.run_id}/{self.task_id}"


def build_env(task: TaskConfig, run: Run) -> dict[str, str]:
    """Merge task variables, then run variables, then the injected run identity."""
    env = dict(task.variables)
    env.update(run.variables)
    env.update(
        {
            f"{ENV_PREFIX}NAMESPACE": run.namespace,
            f"{ENV_PREFIX}PIPELINE": run.pipeline_id,
            f"{ENV_PREFIX}RUN_ID": str(run.run_id),
            f"{ENV_PREFIX}TASK_ID": task.id,
        }
    )
    return env


def build_request(task: TaskConfig, run: Run) -> DispatchRequest:
    return DispatchRequest(
        namespace=run.namespace,
        pipeline_id=run.pipeline_id,
        run_id=run.run_id,
        task_id=task.id,
        image=task.image,
        command=list(task.command) if task.command else None,
        entrypoint=list(task.entrypoint) if task.entrypoint else None,
        env=build_env(task, run),
    )


def status_for_exit(exit_code: int) -> TaskRunStatus:
    return TaskRunStatus.SUCCESSFUL if exit_code == 0 else TaskRunStatus.FAILED


class ExecutionBackend(ABC):
    """Runs task workloads and reports their progress.

    ``notify`` is called from the backend's own threads, first with a
    ``started`` event and then exactly once with a ``completed`` event.
    """

    @abstractmethod
    def dispatch(self, request: DispatchRequest, notify: Notify) -> str:
        """Start the workload and return an opaque handle.

        Raises DispatchError if the workload cannot be started at all.
        """

    @abstractmethod
    def cancel(self, handle: str) -> None:
        """Ask the workload to stop; its completion is still reported through notify."""

    def attach(self, handle: str, task_id: str, notify: Notify) -> None:
        """Resume reporting on *task_id*'s workload dispatched by an earlier process."""
        raise DispatchError(f"{type(self).__name__} cannot re-attach to {handle!r}")

    def close(self) -> None:  # noqa: B027
        """Stop any remaining workloads and release resources."""
