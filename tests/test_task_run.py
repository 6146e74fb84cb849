"""Tests for the task run state machine."""

from unittest.mock import MagicMock

import pytest

from taskrail.errors import InvalidTransitionError, StorageError
from taskrail.models import ReasonKind, RunKey, TaskRun, TaskRunState, TaskRunStatus
from taskrail.runs.task_run import TaskRunStateMachine


@pytest.fixture
def record(storage):
    tr = TaskRun(namespace="default", pipeline_id="demo", run_id=1, task_id="build")
    storage.insert_task_run(tr)
    return tr


@pytest.fixture
def machine(record, storage):
    return TaskRunStateMachine(record, storage)


def _stored(storage) -> TaskRun:
    return storage.get_task_run(RunKey("default", "demo", 1), "build")


class TestHappyPath:
    def test_schedule_start_complete(self, machine, storage):
        machine.schedule()
        assert _stored(storage).state == TaskRunState.SCHEDULED
        assert _stored(storage).scheduled is not None

        machine.set_handle("h-1")
        assert _stored(storage).handle == "h-1"

        machine.start()
        assert _stored(storage).state == TaskRunState.RUNNING
        assert _stored(storage).started is not None

        machine.complete(TaskRunStatus.SUCCESSFUL, exit_code=0)
        stored = _stored(storage)
        assert stored.state == TaskRunState.COMPLETE
        assert stored.status == TaskRunStatus.SUCCESSFUL
        assert stored.exit_code == 0
        assert stored.ended is not None
        assert machine.is_complete

    def test_scheduled_straight_to_complete(self, machine):
        machine.schedule()
        machine.fail(ReasonKind.ABNORMAL_EXIT, "exit 2", exit_code=2)
        snap = machine.snapshot()
        assert snap.status == TaskRunStatus.FAILED
        assert snap.status_reason.kind == ReasonKind.ABNORMAL_EXIT
        assert snap.exit_code == 2

    def test_skip_from_waiting(self, machine, storage):
        machine.skip("parent failed")
        stored = _stored(storage)
        assert stored.state == TaskRunState.COMPLETE
        assert stored.status == TaskRunStatus.SKIPPED
        assert stored.status_reason.kind == ReasonKind.FAILED_PRECONDITION
        assert stored.started is None

    def test_cancel_from_waiting(self, machine):
        machine.cancel("run was cancelled")
        assert machine.status == TaskRunStatus.CANCELLED


class TestIllegalTransitions:
    def test_nothing_leaves_complete(self, machine):
        machine.skip("nope")
        with pytest.raises(InvalidTransitionError):
            machine.schedule()
        with pytest.raises(InvalidTransitionError):
            machine.start()
        with pytest.raises(InvalidTransitionError):
            machine.complete(TaskRunStatus.SUCCESSFUL)
        assert machine.status == TaskRunStatus.SKIPPED

    def test_waiting_cannot_start(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.start()
        assert machine.state == TaskRunState.WAITING

    def test_running_cannot_reschedule(self, machine):
        machine.schedule()
        machine.start()
        with pytest.raises(InvalidTransitionError):
            machine.schedule()

    def test_cannot_complete_unknown(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.complete(TaskRunStatus.UNKNOWN)


class TestPersistence:
    def test_storage_failure_leaves_record_unchanged(self, record):
        storage = MagicMock()
        storage.update_task_run.side_effect = StorageError("disk full")
        m = TaskRunStateMachine(record, storage)
        with pytest.raises(StorageError):
            m.schedule()
        assert m.state == TaskRunState.WAITING

    def test_snapshot_is_a_copy(self, machine):
        snap = machine.snapshot()
        snap.state = TaskRunState.COMPLETE
        assert machine.state == TaskRunState.WAITING
