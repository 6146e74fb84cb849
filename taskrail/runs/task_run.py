"""Per-task-run lifecycle: waiting -> scheduled -> running -> complete."""

from __future__ import annotations

import copy
import threading

from taskrail._log import get_logger
from taskrail.errors import InvalidTransitionError
from taskrail.models import (
    ReasonKind,
    StatusReason,
    TaskRun,
    TaskRunState,
    TaskRunStatus,
    utc_now,
)
from taskrail.storage.base import Storage

logger = get_logger("runs.task_run")

_TRANSITIONS: dict[TaskRunState, frozenset[TaskRunState]] = {
    TaskRunState.WAITING: frozenset({TaskRunState.SCHEDULED, TaskRunState.COMPLETE}),
    TaskRunState.SCHEDULED: frozenset({TaskRunState.RUNNING, TaskRunState.COMPLETE}),
    TaskRunState.RUNNING: frozenset({TaskRunState.COMPLETE}),
    TaskRunState.COMPLETE: frozenset(),
}


class TaskRunStateMachine:
    """Single writer for one task run.

    Every transition is checked against the transition table, applied to a
    copy of the record, persisted, and only then made visible. If storage
    rejects the write the in-memory record is left unchanged.
    """

    def __init__(self, task_run: TaskRun, storage: Storage) -> None:
        self._record = task_run
        self._storage = storage
        self._lock = threading.Lock()

    @property
    def task_id(self) -> str:
        return self._record.task_id

    @property
    def state(self) -> TaskRunState:
        with self._lock:
            return self._record.state

    @property
    def status(self) -> TaskRunStatus:
        with self._lock:
            return self._record.status

    @property
    def handle(self) -> str | None:
        with self._lock:
            return self._record.handle

    @property
    def is_complete(self) -> bool:
        return self.state == TaskRunState.COMPLETE

    def snapshot(self) -> TaskRun:
        with self._lock:
            return copy.deepcopy(self._record)

    def _apply(self, target: TaskRunState, **changes: object) -> TaskRun:
        with self._lock:
            current = self._record.state
            if target not in _TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"task run {self._record.task_id!r} of run {self._record.run_key} "
                    f"cannot move from {current} to {target}"
                )
            updated = copy.deepcopy(self._record)
            updated.state = target
            for name, value in changes.items():
                setattr(updated, name, value)
            self._storage.update_task_run(updated)
            self._record = updated
            logger.debug(
                "Task run %s/%s: %s -> %s (%s)",
                updated.run_key,
                updated.task_id,
                current,
                target,
                updated.status,
            )
            return copy.deepcopy(updated)

    def schedule(self, handle: str | None = None) -> TaskRun:
        """Record that dispatch was requested."""
        return self._apply(TaskRunState.SCHEDULED, scheduled=utc_now(), handle=handle)

    def set_handle(self, handle: str) -> None:
        with self._lock:
            updated = copy.deepcopy(self._record)
            updated.handle = handle
            self._storage.update_task_run(updated)
            self._record = updated

    def start(self) -> TaskRun:
        """Record the backend's confirmation that the workload is running."""
        return self._apply(TaskRunState.RUNNING, started=utc_now())

    def complete(
        self,
        status: TaskRunStatus,
        *,
        exit_code: int | None = None,
        reason: StatusReason | None = None,
    ) -> TaskRun:
        if status == TaskRunStatus.UNKNOWN:
            raise InvalidTransitionError("a task run cannot complete with status unknown")
        return self._apply(
            TaskRunState.COMPLETE,
            status=status,
            exit_code=exit_code,
            status_reason=reason,
            ended=utc_now(),
        )

    def skip(self, description: str) -> TaskRun:
        return self.complete(
            TaskRunStatus.SKIPPED,
            reason=StatusReason(ReasonKind.FAILED_PRECONDITION, description),
        )

    def cancel(self, description: str, *, exit_code: int | None = None) -> TaskRun:
        return self.complete(
            TaskRunStatus.CANCELLED,
            exit_code=exit_code,
            reason=StatusReason(ReasonKind.CANCELLED, description),
        )

    def fail(self, kind: ReasonKind, description: str, *, exit_code: int | None = None) -> TaskRun:
        return self.complete(
            TaskRunStatus.FAILED,
            exit_code=exit_code,
            reason=StatusReason(kind, description),
        )
