"""Drives one run from pending to a terminal state.

Each coordinator owns a single daemon thread. Backend notifications and
cancel requests are funnelled through one queue, so every mutation of the run
and its task runs happens on that thread, in order. Dependency resolution is a
work queue: each waiting task keeps a count of parents that have not reached a
terminal status, and a task is evaluated only when that count drops to zero.
"""

from __future__ import annotations

import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from taskrail._log import get_logger
from taskrail.errors import DispatchError, InternalError
from taskrail.executor.base import (
    ExecutionBackend,
    TaskRunEvent,
    TaskRunEventKind,
    build_request,
    status_for_exit,
)
from taskrail.models import (
    PipelineVersion,
    ReasonKind,
    Run,
    RunKey,
    RunState,
    RunStatus,
    StatusReason,
    TaskRunState,
    TaskRunStatus,
    utc_now,
)
from taskrail.runs.policy import Readiness, evaluate, skip_reason
from taskrail.runs.registry import RunRegistry
from taskrail.runs.task_run import TaskRunStateMachine
from taskrail.storage.base import Storage

logger = get_logger("runs.coordinator")

_SUCCESS_STATUSES = frozenset({TaskRunStatus.SUCCESSFUL, TaskRunStatus.SKIPPED})

_CANCEL_ACK_TIMEOUT = 10.0


@dataclass
class _CancelCommand:
    description: str
    ack: threading.Event = field(default_factory=threading.Event)


class RunCoordinator:
    """Owns the lifecycle of a single run while its registry entry is held."""

    def __init__(
        self,
        run: Run,
        version: PipelineVersion,
        storage: Storage,
        backend: ExecutionBackend,
        registry: RunRegistry,
        *,
        poll_seconds: float = 0.5,
        on_finished: Callable[[RunCoordinator], None] | None = None,
    ) -> None:
        self._run = run
        self._spec = version.definition.spec
        self._tasks = {t.id: t for t in self._spec.tasks}
        self._graph = self._spec.graph()
        self._storage = storage
        self._backend = backend
        self._registry = registry
        self._poll_seconds = poll_seconds
        self._on_finished = on_finished

        self._events: queue.Queue[TaskRunEvent | _CancelCommand] = queue.Queue()
        self._stop_event = threading.Event()
        self._done = threading.Event()
        self._thread: threading.Thread | None = None

        self._machines: dict[str, TaskRunStateMachine] = {}
        self._waiting: set[str] = set()
        self._inflight: set[str] = set()
        self._terminal: set[str] = set()
        self._open_parents: dict[str, int] = {}
        self._cancel_requested = False
        self._finished = False

    # -- public surface ----------------------------------------------------

    @property
    def key(self) -> RunKey:
        return self._run.key

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def finished(self) -> bool:
        """True once the run reached a terminal state and was unregistered."""
        return self._finished

    def start(self, *, adopt: bool = False) -> None:
        """Claim the run in the registry and start driving it.

        With *adopt* the coordinator takes over a registry entry already in
        storage, either left behind by an earlier process or written together
        with the run, and re-attaches to task runs that were in flight.
        Raises AlreadyRegisteredError if another coordinator holds the run.
        """
        if adopt:
            self._registry.adopt(self.key)
        else:
            self._registry.register(self.key)
        self._thread = threading.Thread(
            target=self._drive, args=(adopt,), daemon=True, name=f"run-{self.key}"
        )
        self._thread.start()

    def cancel(self, description: str = "run was cancelled", *, wait: bool = True) -> None:
        """Request cancellation.

        Waiting task runs are cancelled at once; in-flight workloads are asked
        to stop and the run stays running until each of them reports back.
        With *wait* this returns after the coordinator has recorded the decision.
        """
        command = _CancelCommand(description)
        self._events.put(command)
        if not wait:
            return
        deadline = time.monotonic() + _CANCEL_ACK_TIMEOUT
        while self.is_alive and time.monotonic() < deadline:
            if command.ack.wait(0.05):
                return

    def notify(self, event: TaskRunEvent) -> None:
        """Backend callback; safe to call from any thread."""
        self._events.put(event)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop driving the run without finishing it; the registry entry stays in storage."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the coordinator exits; returns False on timeout."""
        return self._done.wait(timeout)

    # -- main loop ---------------------------------------------------------

    def _drive(self, resume: bool) -> None:
        try:
            self._load(resume)
            self._maybe_finish()
            while not self._finished:
                if self._stop_event.is_set():
                    logger.info("Run %s stopped before completion; leaving it registered", self.key)
                    self._registry.release(self.key)
                    return
                try:
                    item = self._events.get(timeout=self._poll_seconds)
                except queue.Empty:
                    continue
                if isinstance(item, _CancelCommand):
                    try:
                        self._apply_cancel(item.description)
                    finally:
                        item.ack.set()
                else:
                    self._handle_event(item)
                self._maybe_finish()
        except InternalError as e:
            logger.error("Run %s aborted on internal error, left registered: %s", self.key, e)
            self._registry.release(self.key)
        except Exception:
            logger.exception("Run %s aborted unexpectedly, left registered", self.key)
            self._registry.release(self.key)
        finally:
            self._drain_acks()
            try:
                if self._on_finished is not None:
                    self._on_finished(self)
            finally:
                self._done.set()

    def _drain_acks(self) -> None:
        while True:
            try:
                item = self._events.get_nowait()
            except queue.Empty:
                return
            if isinstance(item, _CancelCommand):
                item.ack.set()

    def _load(self, resume: bool) -> None:
        records = {tr.task_id: tr for tr in self._storage.list_task_runs(self.key)}
        for task in self._spec.tasks:
            record = records.get(task.id)
            if record is None:
                raise InternalError(f"run {self.key} has no task run for task {task.id!r}")
            machine = TaskRunStateMachine(record, self._storage)
            self._machines[task.id] = machine
            if record.state == TaskRunState.COMPLETE:
                self._terminal.add(task.id)
            elif record.state == TaskRunState.WAITING:
                self._waiting.add(task.id)
            else:
                self._inflight.add(task.id)

        if self._run.status == RunStatus.CANCELLED:
            self._cancel_requested = True

        if self._run.state == RunState.PENDING:
            self._run.state = RunState.RUNNING
            self._storage.update_run(self._run)
            logger.info("Run %s started with %d task(s)", self.key, len(self._machines))
        elif resume:
            logger.info(
                "Resuming run %s: %d waiting, %d in flight, %d done",
                self.key,
                len(self._waiting),
                len(self._inflight),
                len(self._terminal),
            )

        for task_id in self._waiting:
            self._open_parents[task_id] = sum(
                1 for parent in self._graph.edges(task_id) if parent not in self._terminal
            )

        work: deque[str] = deque()
        if self._cancel_requested:
            self._cancel_waiting("run was cancelled")
        for task_id in sorted(self._inflight, key=self._order):
            self._reattach(task_id, work)
        work.extend(t for t in self._declared(self._waiting) if self._open_parents[t] == 0)
        self._resolve(work)

    def _order(self, task_id: str) -> int:
        return self._run.task_runs.index(task_id) if task_id in self._run.task_runs else 0

    def _declared(self, task_ids: set[str]) -> list[str]:
        return [t for t in self._run.task_runs if t in task_ids]

    # -- dependency resolution ---------------------------------------------

    def _parent_statuses(self, task_id: str) -> dict[str, TaskRunStatus]:
        return {
            parent: self._machines[parent].status
            for parent in self._tasks[task_id].depends_on
            if parent in self._terminal
        }

    def _resolve(self, work: deque[str]) -> None:
        """Evaluate unlocked tasks until no waiting task changes state."""
        while work:
            task_id = work.popleft()
            if task_id not in self._waiting:
                continue
            task = self._tasks[task_id]
            statuses = self._parent_statuses(task_id)
            decision = evaluate(task.depends_on, statuses)
            if decision == Readiness.WAITING:
                continue
            self._waiting.discard(task_id)
            if decision == Readiness.SKIP:
                self._machines[task_id].skip(skip_reason(task.depends_on, statuses))
                logger.debug("Run %s: skipped task %s", self.key, task_id)
                self._mark_terminal(task_id, work)
            else:
                self._dispatch(task_id, work)

    def _mark_terminal(self, task_id: str, work: deque[str]) -> None:
        self._inflight.discard(task_id)
        self._terminal.add(task_id)
        for child in self._graph.dependents(task_id):
            if child not in self._waiting:
                continue
            self._open_parents[child] -= 1
            if self._open_parents[child] == 0:
                work.append(child)

    def _dispatch(self, task_id: str, work: deque[str]) -> None:
        machine = self._machines[task_id]
        machine.schedule()
        request = build_request(self._tasks[task_id], self._run)
        try:
            handle = self._backend.dispatch(request, self.notify)
        except InternalError:
            raise
        except DispatchError as e:
            logger.warning("Run %s: could not dispatch task %s: %s", self.key, task_id, e)
            machine.fail(ReasonKind.SCHEDULER_ERROR, str(e))
            self._mark_terminal(task_id, work)
            return
        except Exception as e:
            logger.exception("Run %s: backend failed dispatching task %s", self.key, task_id)
            machine.fail(ReasonKind.SCHEDULER_ERROR, f"backend error: {e}")
            self._mark_terminal(task_id, work)
            return
        machine.set_handle(handle)
        self._inflight.add(task_id)
        logger.debug("Run %s: dispatched task %s (handle %s)", self.key, task_id, handle)

    def _reattach(self, task_id: str, work: deque[str]) -> None:
        machine = self._machines[task_id]
        handle = machine.handle
        try:
            if handle is None:
                raise DispatchError("task run was never assigned a handle")
            self._backend.attach(handle, task_id, self.notify)
        except DispatchError as e:
            logger.warning("Run %s: task %s orphaned: %s", self.key, task_id, e)
            machine.fail(
                ReasonKind.ORPHANED,
                f"task run was in flight when its coordinator stopped and could not be "
                f"re-attached: {e}",
            )
            self._mark_terminal(task_id, work)
            return
        if self._cancel_requested:
            self._backend.cancel(handle)

    # -- events ------------------------------------------------------------

    def _handle_event(self, event: TaskRunEvent) -> None:
        machine = self._machines.get(event.task_id)
        if machine is None or machine.is_complete or event.task_id not in self._inflight:
            logger.debug("Run %s: ignoring %s event for %s", self.key, event.kind, event.task_id)
            return

        if event.kind == TaskRunEventKind.STARTED:
            if machine.state == TaskRunState.SCHEDULED:
                machine.start()
            return

        status = event.status
        if status is None:
            status = status_for_exit(event.exit_code if event.exit_code is not None else 1)
        if self._cancel_requested or status == TaskRunStatus.CANCELLED:
            machine.cancel(event.message or "run was cancelled", exit_code=event.exit_code)
        elif status == TaskRunStatus.FAILED:
            machine.fail(
                ReasonKind.ABNORMAL_EXIT,
                event.message or f"task exited with code {event.exit_code}",
                exit_code=event.exit_code,
            )
        else:
            machine.complete(status, exit_code=event.exit_code)
        logger.debug("Run %s: task %s finished %s", self.key, event.task_id, machine.status)

        work: deque[str] = deque()
        self._mark_terminal(event.task_id, work)
        self._resolve(work)

    def _cancel_waiting(self, description: str) -> None:
        for task_id in self._declared(self._waiting):
            self._machines[task_id].cancel(description)
            self._terminal.add(task_id)
        self._waiting.clear()

    def _apply_cancel(self, description: str) -> None:
        if self._cancel_requested or self._finished:
            return
        self._cancel_requested = True
        self._cancel_waiting(description)
        self._run.status = RunStatus.CANCELLED
        self._run.status_reason = StatusReason(ReasonKind.CANCELLED, description)
        self._storage.update_run(self._run)
        logger.info("Run %s cancelled; %d task(s) still in flight", self.key, len(self._inflight))
        for task_id in self._inflight:
            handle = self._machines[task_id].handle
            if handle is not None:
                self._backend.cancel(handle)

    # -- completion --------------------------------------------------------

    def _maybe_finish(self) -> None:
        if self._finished or self._waiting or self._inflight:
            return
        ended = utc_now()
        if self._cancel_requested:
            self._run.state = RunState.CANCELLED
            self._run.status = RunStatus.CANCELLED
        else:
            self._run.state = RunState.COMPLETE
            failed = [
                tid
                for tid in self._run.task_runs
                if self._machines[tid].status not in _SUCCESS_STATUSES
            ]
            if failed:
                self._run.status = RunStatus.FAILED
                self._run.status_reason = StatusReason(
                    ReasonKind.ABNORMAL_EXIT,
                    "one or more task runs failed: " + ", ".join(failed),
                )
            else:
                self._run.status = RunStatus.SUCCESSFUL
        self._run.ended = ended
        self._storage.update_run(self._run)
        self._registry.unregister(self.key)
        self._finished = True
        logger.info("Run %s finished: %s/%s", self.key, self._run.state, self._run.status)
