"""Fixed-interval trigger."""

from __future__ import annotations

from taskrail.pipeline.schema import IntervalTriggerConfig
from taskrail.triggers.base import TriggerBase


class IntervalTrigger(TriggerBase):
    """Starts a run every ``every_seconds``; the first one fires one interval after start."""

    trigger_type = "interval"
    _config: IntervalTriggerConfig

    def _run(self) -> None:
        every = self._config.every_seconds
        while not self._stop_event.wait(every):
            self._emit(self._config.variables, {"every_seconds": str(every)})
