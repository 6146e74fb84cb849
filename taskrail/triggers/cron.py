"""Cron schedule trigger."""

from __future__ import annotations

from datetime import UTC, datetime

from croniter import croniter

from taskrail.pipeline.schema import CronTriggerConfig
from taskrail.triggers.base import TriggerBase


class CronTrigger(TriggerBase):
    """Starts a run at every time matched by the schedule, evaluated in UTC."""

    trigger_type = "cron"
    _config: CronTriggerConfig

    def _run(self) -> None:
        schedule = self._config.schedule
        upcoming = croniter(schedule, datetime.now(UTC))
        while True:
            fire_at = upcoming.get_next(datetime)
            if not self._sleep_until(fire_at):
                return
            self._emit(
                self._config.variables,
                {"schedule": schedule, "fired_at": fire_at.isoformat()},
            )
