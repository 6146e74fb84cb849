"""Run service: the command and query surface over pipelines, runs and task runs."""

from __future__ import annotations

import threading
import time

from taskrail._log import get_logger
from taskrail.config import ServiceSettings
from taskrail.errors import (
    AlreadyRegisteredError,
    InvalidTransitionError,
    NotFoundError,
    ParallelismExceededError,
    RunIngressDisabledError,
)
from taskrail.executor.base import ExecutionBackend
from taskrail.models import (
    Initiator,
    InitiatorKind,
    PipelineVersion,
    Run,
    RunKey,
    TaskRun,
)
from taskrail.pipeline.schema import PipelineDefinition
from taskrail.pipeline.versions import PipelineRegistry
from taskrail.runs.coordinator import RunCoordinator
from taskrail.runs.registry import RunRegistry
from taskrail.runs.sequencer import RunSequencer
from taskrail.storage.base import Storage
from taskrail.triggers.base import TriggerEvent

logger = get_logger("runs.service")


class RunService:
    """Wires storage, the execution backend and one coordinator per active run.

    The service is the only place coordinators are created, so it can hand
    cancellation requests to the right one and stop them all on shutdown.
    """

    def __init__(
        self,
        storage: Storage,
        backend: ExecutionBackend,
        settings: ServiceSettings | None = None,
    ) -> None:
        self.settings = settings or ServiceSettings()
        self.storage = storage
        self.backend = backend
        self.pipelines = PipelineRegistry(storage)
        self.sequencer = RunSequencer(storage, global_limit=self.settings.run_parallelism_limit)
        self.registry = RunRegistry(storage)
        self._lock = threading.Lock()
        self._coordinators: dict[RunKey, RunCoordinator] = {}
        self._ingress = threading.Event()
        self._ingress.set()

    # -- pipelines ---------------------------------------------------------

    def register_pipeline(self, definition: PipelineDefinition) -> PipelineVersion:
        return self.pipelines.register_pipeline(definition)

    def get_pipeline(
        self, namespace: str, pipeline_id: str, version: int | None = None
    ) -> PipelineVersion:
        return self.pipelines.get_pipeline(namespace, pipeline_id, version)

    def list_pipeline_versions(self, namespace: str, pipeline_id: str) -> list[PipelineVersion]:
        return self.pipelines.list_pipeline_versions(namespace, pipeline_id)

    # -- run creation ------------------------------------------------------

    def set_run_ingress(self, enabled: bool) -> None:
        """Start or stop accepting new runs; runs already in progress are unaffected."""
        if enabled:
            self._ingress.set()
        else:
            self._ingress.clear()
        logger.info("Run ingress %s", "enabled" if enabled else "disabled")

    @property
    def accepting_runs(self) -> bool:
        return self._ingress.is_set()

    def create_run(
        self,
        namespace: str,
        pipeline_id: str,
        *,
        variables: dict[str, str] | None = None,
        initiator: Initiator | None = None,
        version: int | None = None,
    ) -> Run:
        """Create a run of *version* (latest by default) and start coordinating it.

        Raises RunIngressDisabledError when ingress is off, NotFoundError for an
        unknown pipeline and ParallelismExceededError when the pipeline is at
        its limit.
        """
        if not self._ingress.is_set():
            raise RunIngressDisabledError("new runs are not being accepted")
        pipeline = self.pipelines.get_pipeline(namespace, pipeline_id, version)
        run = self.sequencer.create_run(
            pipeline, initiator=initiator, variables=variables, register=True
        )
        # The claim was stored with the run; if starting fails, recover() resumes it.
        self._start_coordinator(run, pipeline, adopt=True)
        return run

    def retry_run(self, namespace: str, pipeline_id: str, run_id: int) -> Run:
        """Start a new run of the latest version with the variables of an earlier run."""
        previous = self.get_run(namespace, pipeline_id, run_id)
        return self.create_run(
            namespace,
            pipeline_id,
            variables=previous.variables,
            initiator=Initiator(
                kind=previous.initiator.kind,
                name=previous.initiator.name,
                reason=f"retry of run {run_id}",
            ),
        )

    def handle_trigger_event(self, event: TriggerEvent) -> Run | None:
        """Create a run for a trigger event; events over the limit are logged and dropped."""
        initiator = Initiator(
            kind=InitiatorKind.TRIGGER,
            name=event.trigger_type,
            reason=", ".join(f"{k}={v}" for k, v in sorted(event.metadata.items())),
        )
        try:
            return self.create_run(
                event.namespace,
                event.pipeline_id,
                variables=event.variables,
                initiator=initiator,
            )
        except (ParallelismExceededError, RunIngressDisabledError) as e:
            logger.warning(
                "Dropped %s event for %s/%s: %s",
                event.trigger_type,
                event.namespace,
                event.pipeline_id,
                e,
            )
            return None

    def _start_coordinator(
        self, run: Run, pipeline: PipelineVersion, *, adopt: bool = False
    ) -> RunCoordinator:
        coordinator = RunCoordinator(
            run,
            pipeline,
            self.storage,
            self.backend,
            self.registry,
            poll_seconds=self.settings.event_poll_seconds,
            on_finished=self._forget,
        )
        with self._lock:
            if run.key in self._coordinators:
                raise AlreadyRegisteredError(f"run {run.key} is already being coordinated")
            self._coordinators[run.key] = coordinator
        try:
            coordinator.start(adopt=adopt)
        except Exception:
            with self._lock:
                self._coordinators.pop(run.key, None)
            raise
        return coordinator

    def _forget(self, coordinator: RunCoordinator) -> None:
        with self._lock:
            if self._coordinators.get(coordinator.key) is coordinator:
                del self._coordinators[coordinator.key]

    def _coordinator(self, key: RunKey) -> RunCoordinator | None:
        with self._lock:
            return self._coordinators.get(key)

    # -- queries -----------------------------------------------------------

    def get_run(self, namespace: str, pipeline_id: str, run_id: int) -> Run:
        return self.storage.get_run(RunKey(namespace, pipeline_id, run_id))

    def list_runs(
        self, namespace: str, pipeline_id: str, *, offset: int = 0, limit: int = 0
    ) -> list[Run]:
        return self.storage.list_runs(namespace, pipeline_id, offset=offset, limit=limit)

    def get_task_run(self, namespace: str, pipeline_id: str, run_id: int, task_id: str) -> TaskRun:
        return self.storage.get_task_run(RunKey(namespace, pipeline_id, run_id), task_id)

    def list_task_runs(self, namespace: str, pipeline_id: str, run_id: int) -> list[TaskRun]:
        key = RunKey(namespace, pipeline_id, run_id)
        self.storage.get_run(key)
        return self.storage.list_task_runs(key)

    def active_runs(self) -> list[RunKey]:
        with self._lock:
            return sorted(self._coordinators)

    # -- cancellation ------------------------------------------------------

    def cancel_run(
        self,
        namespace: str,
        pipeline_id: str,
        run_id: int,
        description: str = "run was cancelled by request",
    ) -> Run:
        """Cancel an active run and return its record after the decision is recorded.

        Cancelling a run that already finished is a no-op. Raises
        InvalidTransitionError for an active run this service does not drive.
        """
        key = RunKey(namespace, pipeline_id, run_id)
        run = self.storage.get_run(key)
        coordinator = self._coordinator(key)
        if coordinator is None:
            if run.is_active:
                raise InvalidTransitionError(f"run {key} is not being coordinated by this service")
            return run
        coordinator.cancel(description)
        return self.storage.get_run(key)

    def cancel_all_runs(
        self,
        namespace: str,
        pipeline_id: str,
        description: str = "run was cancelled by request",
    ) -> list[int]:
        """Cancel every run of the pipeline this service is driving; returns their ids."""
        self.pipelines.get_pipeline(namespace, pipeline_id)
        with self._lock:
            targets = [
                c
                for k, c in sorted(self._coordinators.items())
                if k.namespace == namespace and k.pipeline_id == pipeline_id
            ]
        for coordinator in targets:
            coordinator.cancel(description)
        return [c.key.run_id for c in targets]

    def wait_for_run(
        self,
        namespace: str,
        pipeline_id: str,
        run_id: int,
        timeout: float | None = None,
    ) -> Run:
        """Block until the run's coordinator exits, then return the stored run.

        Raises TimeoutError if the coordinator is still running after *timeout*.
        """
        key = RunKey(namespace, pipeline_id, run_id)
        coordinator = self._coordinator(key)
        if coordinator is not None and not coordinator.wait(timeout):
            raise TimeoutError(f"run {key} did not finish within {timeout}s")
        return self.storage.get_run(key)

    # -- lifecycle ---------------------------------------------------------

    def recover(self) -> list[RunKey]:
        """Resume runs whose registry entries survived a previous process.

        Finished runs only lose their entry. Unfinished runs get a new
        coordinator that adopts the entry and re-attaches to in-flight task
        runs. Returns the keys of the resumed runs.
        """
        resumed: list[RunKey] = []
        for key in sorted(self.registry.list_all()):
            if self._coordinator(key) is not None:
                continue
            try:
                run = self.storage.get_run(key)
            except NotFoundError:
                logger.warning("Registry entry %s has no run record; removing it", key)
                self.registry.unregister(key)
                continue
            if not run.is_active:
                logger.debug("Run %s already finished; clearing its registry entry", key)
                self.registry.unregister(key)
                continue
            pipeline = self.pipelines.get_pipeline(key.namespace, key.pipeline_id, run.version)
            self._start_coordinator(run, pipeline, adopt=True)
            resumed.append(key)
            logger.info("Recovered run %s", key)
        return resumed

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting runs and stop every coordinator without finishing its run.

        Registry entries stay in storage so ``recover()`` can resume the runs.
        """
        self.set_run_ingress(False)
        with self._lock:
            coordinators = list(self._coordinators.values())
        deadline = time.monotonic() + timeout
        for coordinator in coordinators:
            coordinator.stop(timeout=max(0.0, deadline - time.monotonic()))
        logger.info("Run service stopped; %d run(s) left for recovery", len(coordinators))
