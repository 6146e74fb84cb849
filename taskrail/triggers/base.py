"""Trigger events and the thread lifecycle shared by all triggers."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar

from taskrail._log import get_logger

logger = get_logger("triggers")


@dataclass
class TriggerEvent:
    trigger_type: str
    namespace: str
    pipeline_id: str
    variables: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


EventCallback = Callable[[TriggerEvent], None]


class TriggerBase(ABC):
    """A source of run requests for one pipeline, driven by a daemon thread.

    Subclasses implement ``_run`` and return from it promptly once
    ``_stop_event`` is set.
    """

    trigger_type: ClassVar[str]

    def __init__(
        self, config: Any, namespace: str, pipeline_id: str, callback: EventCallback
    ) -> None:
        self._config = config
        self._namespace = namespace
        self._pipeline_id = pipeline_id
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def name(self) -> str:
        return f"{self.trigger_type}:{self._namespace}/{self._pipeline_id}"

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _emit(self, variables: dict[str, str], metadata: dict[str, str] | None = None) -> None:
        event = TriggerEvent(
            trigger_type=self.trigger_type,
            namespace=self._namespace,
            pipeline_id=self._pipeline_id,
            variables=dict(variables),
            metadata=metadata or {},
        )
        try:
            self._callback(event)
        except Exception:
            logger.exception("Trigger %s failed to deliver its event", self.name)

    def _sleep_until(self, deadline: datetime) -> bool:
        """Block until *deadline*. Returns False if the trigger was stopped first."""
        while not self._stop_event.is_set():
            remaining = (deadline - datetime.now(UTC)).total_seconds()
            if remaining <= 0:
                return True
            # Wake at least once a second so a changed wall clock is noticed.
            self._stop_event.wait(min(remaining, 1.0))
        return False

    def start(self) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=10)

    @abstractmethod
    def _run(self) -> None: ...
