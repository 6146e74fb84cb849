"""Thread-safe in-process storage. State is lost when the process exits."""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from taskrail.errors import AlreadyExistsError, NotFoundError
from taskrail.models import PipelineVersion, Run, RunKey, TaskRun
from taskrail.storage.base import Storage

_PipelineKey = tuple[str, str]


class MemoryStorage(Storage):
    """Dict-backed storage guarded by one re-entrant lock.

    ``transaction()`` holds the lock for the whole block, which serializes it
    against every other call. The outermost block snapshots the state on entry
    and restores it if the block raises.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._pipelines: dict[_PipelineKey, dict[int, PipelineVersion]] = {}
        self._runs: dict[_PipelineKey, dict[int, Run]] = {}
        self._task_runs: dict[RunKey, dict[str, TaskRun]] = {}
        self._registrations: set[RunKey] = set()

    def _snapshot(self) -> tuple:
        return copy.deepcopy(
            (self._pipelines, self._runs, self._task_runs, self._registrations)
        )

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            saved = self._snapshot() if self._depth == 0 else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if saved is not None:
                    self._pipelines, self._runs, self._task_runs, self._registrations = saved
                raise
            finally:
                self._depth -= 1

    # -- pipelines ---------------------------------------------------------

    def insert_pipeline_version(self, version: PipelineVersion) -> None:
        with self._lock:
            versions = self._pipelines.setdefault((version.namespace, version.pipeline_id), {})
            if version.version in versions:
                raise AlreadyExistsError(
                    f"pipeline {version.pipeline_id!r} version {version.version} already exists"
                )
            versions[version.version] = copy.deepcopy(version)

    def get_pipeline_version(
        self, namespace: str, pipeline_id: str, version: int | None = None
    ) -> PipelineVersion:
        with self._lock:
            versions = self._pipelines.get((namespace, pipeline_id))
            if not versions:
                raise NotFoundError(f"pipeline {namespace}/{pipeline_id} not found")
            number = max(versions) if version is None else version
            if number not in versions:
                raise NotFoundError(
                    f"pipeline {namespace}/{pipeline_id} version {number} not found"
                )
            return copy.deepcopy(versions[number])

    def list_pipeline_versions(self, namespace: str, pipeline_id: str) -> list[PipelineVersion]:
        with self._lock:
            versions = self._pipelines.get((namespace, pipeline_id), {})
            return [copy.deepcopy(versions[n]) for n in sorted(versions)]

    def latest_pipeline_version(self, namespace: str, pipeline_id: str) -> int:
        with self._lock:
            return max(self._pipelines.get((namespace, pipeline_id), {}), default=0)

    # -- runs --------------------------------------------------------------

    def insert_run(self, run: Run) -> None:
        with self._lock:
            runs = self._runs.setdefault((run.namespace, run.pipeline_id), {})
            if run.run_id in runs:
                raise AlreadyExistsError(f"run {run.key} already exists")
            runs[run.run_id] = copy.deepcopy(run)

    def get_run(self, key: RunKey) -> Run:
        with self._lock:
            try:
                return copy.deepcopy(self._runs[(key.namespace, key.pipeline_id)][key.run_id])
            except KeyError:
                raise NotFoundError(f"run {key} not found") from None

    def list_runs(
        self, namespace: str, pipeline_id: str, *, offset: int = 0, limit: int = 0
    ) -> list[Run]:
        with self._lock:
            runs = self._runs.get((namespace, pipeline_id), {})
            ordered = [runs[i] for i in sorted(runs, reverse=True)]
        end = offset + limit if limit else None
        return [copy.deepcopy(r) for r in ordered[offset:end]]

    def update_run(self, run: Run) -> None:
        with self._lock:
            runs = self._runs.get((run.namespace, run.pipeline_id), {})
            if run.run_id not in runs:
                raise NotFoundError(f"run {run.key} not found")
            runs[run.run_id] = copy.deepcopy(run)

    def max_run_id(self, namespace: str, pipeline_id: str) -> int:
        with self._lock:
            return max(self._runs.get((namespace, pipeline_id), {}), default=0)

    def count_active_runs(self, namespace: str, pipeline_id: str) -> int:
        with self._lock:
            runs = self._runs.get((namespace, pipeline_id), {})
            return sum(1 for r in runs.values() if r.is_active)

    # -- task runs ---------------------------------------------------------

    def insert_task_run(self, task_run: TaskRun) -> None:
        with self._lock:
            task_runs = self._task_runs.setdefault(task_run.run_key, {})
            if task_run.task_id in task_runs:
                raise AlreadyExistsError(
                    f"task run {task_run.task_id!r} of run {task_run.run_key} already exists"
                )
            task_runs[task_run.task_id] = copy.deepcopy(task_run)

    def get_task_run(self, key: RunKey, task_id: str) -> TaskRun:
        with self._lock:
            try:
                return copy.deepcopy(self._task_runs[key][task_id])
            except KeyError:
                raise NotFoundError(f"task run {task_id!r} of run {key} not found") from None

    def list_task_runs(self, key: RunKey) -> list[TaskRun]:
        with self._lock:
            return [copy.deepcopy(tr) for tr in self._task_runs.get(key, {}).values()]

    def update_task_run(self, task_run: TaskRun) -> None:
        with self._lock:
            task_runs = self._task_runs.get(task_run.run_key, {})
            if task_run.task_id not in task_runs:
                raise NotFoundError(
                    f"task run {task_run.task_id!r} of run {task_run.run_key} not found"
                )
            task_runs[task_run.task_id] = copy.deepcopy(task_run)

    # -- run registrations -------------------------------------------------

    def register_run(self, key: RunKey) -> None:
        with self._lock:
            if key in self._registrations:
                raise AlreadyExistsError(f"run {key} is already registered")
            self._registrations.add(key)

    def unregister_run(self, key: RunKey) -> None:
        with self._lock:
            self._registrations.discard(key)

    def registration_exists(self, key: RunKey) -> bool:
        with self._lock:
            return key in self._registrations

    def list_registrations(self) -> set[RunKey]:
        with self._lock:
            return set(self._registrations)
