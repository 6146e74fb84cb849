"""Abstract storage collaborator for pipelines, runs, task runs and run registrations."""

from __future__ import annotations

import abc
from contextlib import AbstractContextManager

from taskrail.models import PipelineVersion, Run, RunKey, TaskRun


class Storage(abc.ABC):
    """Record store with per-entity CRUD and a serializing transaction scope.

    Implementations raise ``NotFoundError`` for missing records,
    ``AlreadyExistsError`` for duplicate inserts and ``StorageError`` when the
    backing store itself fails. Reads after the caller's own writes are always
    consistent. Returned records are copies; mutating them does not change
    stored state until the matching ``update_*`` call.
    """

    @abc.abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Serialize every call made inside the ``with`` block against other writers.

        Nested use is allowed. If an exception propagates out of the outermost
        block, every write made inside it is rolled back.
        """

    # -- pipelines ---------------------------------------------------------

    @abc.abstractmethod
    def insert_pipeline_version(self, version: PipelineVersion) -> None: ...

    @abc.abstractmethod
    def get_pipeline_version(
        self, namespace: str, pipeline_id: str, version: int | None = None
    ) -> PipelineVersion:
        """Return *version*, or the latest version when *version* is None."""

    @abc.abstractmethod
    def list_pipeline_versions(self, namespace: str, pipeline_id: str) -> list[PipelineVersion]:
        """Return every version, oldest first."""

    @abc.abstractmethod
    def latest_pipeline_version(self, namespace: str, pipeline_id: str) -> int:
        """Return the newest version number, or 0 when none is registered."""

    # -- runs --------------------------------------------------------------

    @abc.abstractmethod
    def insert_run(self, run: Run) -> None: ...

    @abc.abstractmethod
    def get_run(self, key: RunKey) -> Run: ...

    @abc.abstractmethod
    def list_runs(
        self, namespace: str, pipeline_id: str, *, offset: int = 0, limit: int = 0
    ) -> list[Run]:
        """Return runs newest first; ``limit=0`` means no limit."""

    @abc.abstractmethod
    def update_run(self, run: Run) -> None: ...

    @abc.abstractmethod
    def max_run_id(self, namespace: str, pipeline_id: str) -> int:
        """Return the highest run id for the pipeline, or 0 when it has no runs."""

    @abc.abstractmethod
    def count_active_runs(self, namespace: str, pipeline_id: str) -> int:
        """Return the number of runs in state pending or running."""

    # -- task runs ---------------------------------------------------------

    @abc.abstractmethod
    def insert_task_run(self, task_run: TaskRun) -> None: ...

    @abc.abstractmethod
    def get_task_run(self, key: RunKey, task_id: str) -> TaskRun: ...

    @abc.abstractmethod
    def list_task_runs(self, key: RunKey) -> list[TaskRun]:
        """Return the run's task runs in insertion order."""

    @abc.abstractmethod
    def update_task_run(self, task_run: TaskRun) -> None: ...

    # -- run registrations -------------------------------------------------

    @abc.abstractmethod
    def register_run(self, key: RunKey) -> None:
        """Persist a registration marker; raise AlreadyExistsError if present."""

    @abc.abstractmethod
    def unregister_run(self, key: RunKey) -> None:
        """Remove a registration marker; missing markers are ignored."""

    @abc.abstractmethod
    def registration_exists(self, key: RunKey) -> bool: ...

    @abc.abstractmethod
    def list_registrations(self) -> set[RunKey]: ...

    # -- lifecycle ---------------------------------------------------------

    def close(self) -> None:  # noqa: B027
        """Release any held resources."""

    def __enter__(self) -> Storage:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
