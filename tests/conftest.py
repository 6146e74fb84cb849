"""Shared test fixtures and helpers."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import pytest

from taskrail.config import ServiceSettings
from taskrail.errors import DispatchError
from taskrail.executor.base import (
    DispatchRequest,
    ExecutionBackend,
    Notify,
    TaskRunEvent,
    TaskRunEventKind,
)
from taskrail.models import TaskRunStatus
from taskrail.pipeline.schema import (
    PipelineDefinition,
    PipelineMetadata,
    PipelineSpec,
    TaskConfig,
)
from taskrail.runs.service import RunService
from taskrail.storage.memory import MemoryStorage


def make_task(
    task_id: str,
    depends_on: dict[str, str] | None = None,
    *,
    image: str = "alpine:3",
    command: list[str] | None = None,
    **kwargs,
) -> TaskConfig:
    """Build a TaskConfig; *depends_on* maps parent id to any/success/failure."""
    return TaskConfig(
        id=task_id,
        image=image,
        command=command if command is not None else ["true"],
        depends_on=depends_on or {},
        **kwargs,
    )


def make_pipeline(
    tasks: list[TaskConfig] | None = None,
    *,
    pipeline_id: str = "demo",
    namespace: str = "default",
    parallelism: int = 0,
    **spec_kwargs,
) -> PipelineDefinition:
    """Build a minimal PipelineDefinition for tests."""
    return PipelineDefinition(
        metadata=PipelineMetadata(id=pipeline_id, namespace=namespace),
        spec=PipelineSpec(tasks=tasks or [], parallelism=parallelism, **spec_kwargs),
    )


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met within timeout")


class ScriptedBackend(ExecutionBackend):
    """In-memory backend driven by the test.

    Tasks listed in *exit_codes* finish as soon as they are dispatched; any
    other task stays in flight until ``finish()`` is called. Tasks in
    *reject* fail to dispatch. Cancelled workloads report ``cancelled``
    unless *honor_cancel* is False. Handles in *attachable* can be
    re-attached after a restart.
    """

    def __init__(
        self,
        exit_codes: dict[str, int] | None = None,
        *,
        reject: set[str] | None = None,
        honor_cancel: bool = True,
        attachable: set[str] | None = None,
    ) -> None:
        self.exit_codes = dict(exit_codes or {})
        self.reject = set(reject or ())
        self.honor_cancel = honor_cancel
        self.attachable = set(attachable or ())
        self.dispatched: list[DispatchRequest] = []
        self.cancelled: list[str] = []
        self.attached: list[str] = []
        self._workloads: dict[str, tuple[str, Notify]] = {}
        self._cond = threading.Condition()

    @staticmethod
    def handle_for(task_id: str, run_id: int = 1) -> str:
        return f"h-{run_id}-{task_id}"

    def dispatch(self, request: DispatchRequest, notify: Notify) -> str:
        if request.task_id in self.reject:
            raise DispatchError(f"scheduler rejected {request.task_id}")
        handle = self.handle_for(request.task_id, request.run_id)
        with self._cond:
            self.dispatched.append(request)
            self._workloads[handle] = (request.task_id, notify)
            self._cond.notify_all()
        if request.task_id in self.exit_codes:
            self.finish(request.task_id, self.exit_codes[request.task_id], run_id=request.run_id)
        return handle

    def cancel(self, handle: str) -> None:
        with self._cond:
            self.cancelled.append(handle)
            known = handle in self._workloads
        if known and self.honor_cancel:
            self._complete(handle, 137, TaskRunStatus.CANCELLED)

    def attach(self, handle: str, task_id: str, notify: Notify) -> None:
        if handle not in self.attachable:
            raise DispatchError(f"no such workload {handle}")
        with self._cond:
            self.attached.append(handle)
            self._workloads[handle] = (task_id, notify)
            self._cond.notify_all()

    def dispatched_ids(self) -> list[str]:
        with self._cond:
            return [r.task_id for r in self.dispatched]

    def wait_dispatched(self, task_id: str, run_id: int = 1, timeout: float = 5.0) -> None:
        with self._cond:
            ok = self._cond.wait_for(
                lambda: any(
                    r.task_id == task_id and r.run_id == run_id for r in self.dispatched
                ),
                timeout,
            )
        if not ok:
            raise AssertionError(f"task {task_id} of run {run_id} was never dispatched")

    def _send(self, handle: str, event: TaskRunEvent) -> None:
        with self._cond:
            _, notify = self._workloads[handle]
        notify(event)

    def _complete(self, handle: str, exit_code: int, status: TaskRunStatus | None) -> None:
        with self._cond:
            task_id, _ = self._workloads[handle]
        if status is None:
            status = TaskRunStatus.SUCCESSFUL if exit_code == 0 else TaskRunStatus.FAILED
        self._send(handle, TaskRunEvent(task_id=task_id, kind=TaskRunEventKind.STARTED))
        self._send(
            handle,
            TaskRunEvent(
                task_id=task_id,
                kind=TaskRunEventKind.COMPLETED,
                exit_code=exit_code,
                status=status,
            ),
        )

    def start(self, task_id: str, *, run_id: int = 1) -> None:
        handle = self.handle_for(task_id, run_id)
        self._send(handle, TaskRunEvent(task_id=task_id, kind=TaskRunEventKind.STARTED))

    def finish(
        self,
        task_id: str,
        exit_code: int = 0,
        *,
        status: TaskRunStatus | None = None,
        run_id: int = 1,
    ) -> None:
        """Report the workload as started and then completed."""
        self._complete(self.handle_for(task_id, run_id), exit_code, status)


@pytest.fixture
def storage():
    with MemoryStorage() as s:
        yield s


@pytest.fixture
def settings() -> ServiceSettings:
    return ServiceSettings(event_poll_seconds=0.05)


@pytest.fixture
def make_service(storage, settings):
    """Factory for RunService instances sharing the test's storage."""
    services: list[RunService] = []

    def _make(backend: ExecutionBackend | None = None, **settings_kwargs) -> RunService:
        s = settings.model_copy(update=settings_kwargs) if settings_kwargs else settings
        service = RunService(storage, backend or ScriptedBackend(), s)
        services.append(service)
        return service

    yield _make
    for service in services:
        service.shutdown(timeout=1.0)
