"""Process-wide record of which runs are being actively coordinated."""

from __future__ import annotations

import threading

from taskrail._log import get_logger
from taskrail.errors import AlreadyExistsError, AlreadyRegisteredError
from taskrail.models import RunKey
from taskrail.storage.base import Storage

logger = get_logger("runs.registry")


class RunRegistry:
    """Thread-safe set of run keys, mirrored to storage.

    ``_held`` is the set of keys owned by coordinators in this process; the
    storage markers outlive the process so a restart can find runs that were
    in flight. A key held here is never handed to a second coordinator.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._lock = threading.Lock()
        self._held: set[RunKey] = set()

    def register(self, key: RunKey) -> None:
        """Claim *key*; raises AlreadyRegisteredError if it is already claimed."""
        with self._lock:
            if key in self._held:
                raise AlreadyRegisteredError(f"run {key} is already being coordinated")
            try:
                self._storage.register_run(key)
            except AlreadyExistsError:
                raise AlreadyRegisteredError(f"run {key} is already registered") from None
            self._held.add(key)
        logger.debug("Registered %s", key)

    def adopt(self, key: RunKey) -> None:
        """Claim a key whose storage marker survived a restart.

        Raises AlreadyRegisteredError if a coordinator in this process already
        holds it. A missing storage marker is recreated.
        """
        with self._lock:
            if key in self._held:
                raise AlreadyRegisteredError(f"run {key} is already being coordinated")
            if not self._storage.registration_exists(key):
                self._storage.register_run(key)
            self._held.add(key)
        logger.debug("Adopted %s", key)

    def unregister(self, key: RunKey) -> None:
        with self._lock:
            self._storage.unregister_run(key)
            self._held.discard(key)
        logger.debug("Unregistered %s", key)

    def release(self, key: RunKey) -> None:
        """Drop the in-process claim but keep the storage marker for recovery."""
        with self._lock:
            self._held.discard(key)

    def exists(self, key: RunKey) -> bool:
        with self._lock:
            return key in self._held or self._storage.registration_exists(key)

    def list_all(self) -> set[RunKey]:
        with self._lock:
            return self._held | self._storage.list_registrations()

    def held(self) -> set[RunKey]:
        with self._lock:
            return set(self._held)
