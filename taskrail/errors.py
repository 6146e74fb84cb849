"""Exception hierarchy shared by every Taskrail component."""

from __future__ import annotations


class TaskrailError(Exception):
    """Base class for all Taskrail errors."""


class NotFoundError(TaskrailError, LookupError):
    """Raised when a requested entity does not exist."""


class AlreadyExistsError(TaskrailError):
    """Raised when an entity that must be unique already exists."""


# ---------------------------------------------------------------------------
# Validation (pipeline registration time; never partially applied)
# ---------------------------------------------------------------------------


class PipelineValidationError(TaskrailError, ValueError):
    """Raised when a pipeline definition fails graph validation."""


class UnknownTaskError(PipelineValidationError, NotFoundError):
    """A dependency references a task id that was never declared."""

    def __init__(self, task_id: str, referenced_by: str | None = None) -> None:
        self.task_id = task_id
        self.referenced_by = referenced_by
        if referenced_by is None:
            msg = f"task {task_id!r} does not exist"
        else:
            msg = (
                f"task {task_id!r} is listed as a dependency within task "
                f"{referenced_by!r} but does not exist"
            )
        super().__init__(msg)


class DuplicateTaskError(PipelineValidationError, AlreadyExistsError):
    """A task id was declared more than once."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"duplicate task id found; {task_id!r} is already a task")


class CycleDetectedError(PipelineValidationError):
    """Adding the dependency ``task -> dependency`` would close a cycle."""

    def __init__(self, task_id: str, dependency: str) -> None:
        self.task_id = task_id
        self.dependency = dependency
        super().__init__(
            f"a cycle was detected creating a dependency from task {task_id!r} "
            f"to task {dependency!r}"
        )


# ---------------------------------------------------------------------------
# Concurrency (run creation / coordination; safe to retry)
# ---------------------------------------------------------------------------


class ConcurrencyError(TaskrailError):
    """Raised when a run cannot be created or claimed right now."""


class AlreadyRegisteredError(ConcurrencyError, AlreadyExistsError):
    """A coordinator already owns the run."""


class ParallelismExceededError(ConcurrencyError):
    """The pipeline already has as many active runs as its limit allows."""

    def __init__(self, pipeline_id: str, limit: int, active: int) -> None:
        self.pipeline_id = pipeline_id
        self.limit = limit
        self.active = active
        super().__init__(
            f"pipeline {pipeline_id!r} has {active} active run(s); parallelism limit is {limit}"
        )


class RunIngressDisabledError(ConcurrencyError):
    """New runs are not being accepted at this time."""


# ---------------------------------------------------------------------------
# Execution and internal failures
# ---------------------------------------------------------------------------


class DispatchError(TaskrailError):
    """The execution backend rejected a task run."""


class InternalError(TaskrailError):
    """A collaborator (storage, backend) is unavailable or misbehaving."""


class StorageError(InternalError):
    """The storage layer failed to read or write."""


class InvalidTransitionError(TaskrailError):
    """A task run or run was asked to make an illegal state change."""
