"""Per-pipeline run numbering and parallelism enforcement."""

from __future__ import annotations

import threading

from taskrail._log import get_logger
from taskrail.errors import AlreadyExistsError, ParallelismExceededError
from taskrail.models import Initiator, PipelineVersion, Run, TaskRun
from taskrail.storage.base import Storage

logger = get_logger("runs.sequencer")

_PipelineKey = tuple[str, str]

_MAX_INSERT_ATTEMPTS = 3


def effective_limit(pipeline_limit: int, global_limit: int) -> int:
    """Return the smaller non-zero of the two limits, or 0 when both are unlimited."""
    limits = [n for n in (pipeline_limit, global_limit) if n > 0]
    return min(limits) if limits else 0


class RunSequencer:
    """Allocates run ids and admits new runs one pipeline at a time.

    Each pipeline gets its own lock; within it the id counter and the active
    run count are read and written inside one storage transaction, so two
    concurrent requests never share an id and never overshoot the limit. The
    counter is re-seeded from storage on every allocation, which keeps ids
    correct when another process shares the same store.
    """

    def __init__(self, storage: Storage, *, global_limit: int = 0) -> None:
        self._storage = storage
        self._global_limit = global_limit
        self._guard = threading.Lock()
        self._locks: dict[_PipelineKey, threading.Lock] = {}
        self._counters: dict[_PipelineKey, int] = {}

    @property
    def global_limit(self) -> int:
        return self._global_limit

    def _lock_for(self, key: _PipelineKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _reserve(self, key: _PipelineKey) -> int:
        stored = self._storage.max_run_id(*key)
        run_id = max(self._counters.get(key, 0), stored) + 1
        self._counters[key] = run_id
        return run_id

    def next_run_id(self, namespace: str, pipeline_id: str) -> int:
        """Reserve and return the next run id for the pipeline (1 when it has no runs).

        The id is consumed even though no run is stored under it: later calls
        and ``create_run`` on this sequencer continue after it. Other processes
        sharing the store only see ids of stored runs.
        """
        key = (namespace, pipeline_id)
        with self._lock_for(key), self._storage.transaction():
            return self._reserve(key)

    def check_parallelism(self, namespace: str, pipeline_id: str, pipeline_limit: int = 0) -> bool:
        """Return True if another run may start under the effective limit."""
        limit = effective_limit(pipeline_limit, self._global_limit)
        if limit == 0:
            return True
        return self._storage.count_active_runs(namespace, pipeline_id) < limit

    def create_run(
        self,
        version: PipelineVersion,
        *,
        initiator: Initiator | None = None,
        variables: dict[str, str] | None = None,
        register: bool = False,
    ) -> Run:
        """Admit, number and persist a new pending run with one waiting task run per task.

        With *register* the run's registry marker is written in the same
        transaction, so a run is never stored without a claim that
        ``RunService.recover()`` can find. Raises ParallelismExceededError when
        the pipeline is at its limit.
        """
        key = (version.namespace, version.pipeline_id)
        spec = version.definition.spec
        limit = effective_limit(spec.parallelism, self._global_limit)
        task_ids = [t.id for t in spec.tasks]

        with self._lock_for(key):
            attempt = 0
            while True:
                attempt += 1
                previous = self._counters.get(key, 0)
                try:
                    with self._storage.transaction():
                        if limit:
                            active = self._storage.count_active_runs(*key)
                            if active >= limit:
                                raise ParallelismExceededError(version.pipeline_id, limit, active)
                        run = Run(
                            namespace=version.namespace,
                            pipeline_id=version.pipeline_id,
                            run_id=self._reserve(key),
                            version=version.version,
                            initiator=initiator or Initiator(),
                            variables=dict(variables or {}),
                            task_runs=task_ids,
                        )
                        self._storage.insert_run(run)
                        for task_id in task_ids:
                            self._storage.insert_task_run(
                                TaskRun(
                                    namespace=run.namespace,
                                    pipeline_id=run.pipeline_id,
                                    run_id=run.run_id,
                                    task_id=task_id,
                                )
                            )
                        if register:
                            self._storage.register_run(run.key)
                except AlreadyExistsError:
                    self._counters[key] = previous
                    if attempt >= _MAX_INSERT_ATTEMPTS:
                        raise
                    logger.warning(
                        "Run id for %s/%s already taken; retrying (attempt %d/%d)",
                        *key,
                        attempt,
                        _MAX_INSERT_ATTEMPTS,
                    )
                    continue
                except Exception:
                    self._counters[key] = previous
                    raise
                logger.info("Created run %s (version %d)", run.key, version.version)
                return run
