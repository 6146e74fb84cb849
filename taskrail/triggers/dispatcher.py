"""Build the triggers declared by pipelines and run them together."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from taskrail._log import get_logger
from taskrail.pipeline.schema import PipelineDefinition
from taskrail.triggers.base import EventCallback, TriggerBase

logger = get_logger("triggers.dispatcher")

TriggerFactory = Callable[[Any, str, str, EventCallback], TriggerBase]

_TRIGGER_FACTORIES: dict[str, TriggerFactory] = {}


def register_trigger(trigger_type: str) -> Callable[[TriggerFactory], TriggerFactory]:
    """Register the factory for ``spec.triggers`` entries whose ``type`` is *trigger_type*.

    Factories are called as ``factory(config, namespace, pipeline_id, callback)``.
    """

    def decorator(factory: TriggerFactory) -> TriggerFactory:
        _TRIGGER_FACTORIES[trigger_type] = factory
        return factory

    return decorator


# Trigger modules are imported on first use so croniter and uvicorn load on demand.


@register_trigger("cron")
def _cron(config, namespace, pipeline_id, callback):
    from taskrail.triggers.cron import CronTrigger

    return CronTrigger(config, namespace, pipeline_id, callback)


@register_trigger("interval")
def _interval(config, namespace, pipeline_id, callback):
    from taskrail.triggers.interval import IntervalTrigger

    return IntervalTrigger(config, namespace, pipeline_id, callback)


@register_trigger("webhook")
def _webhook(config, namespace, pipeline_id, callback):
    from taskrail.triggers.webhook import WebhookTrigger

    return WebhookTrigger(config, namespace, pipeline_id, callback)


def build_triggers(
    pipelines: Iterable[PipelineDefinition], callback: EventCallback
) -> list[TriggerBase]:
    triggers = []
    for definition in pipelines:
        for config in definition.spec.triggers:
            factory = _TRIGGER_FACTORIES[config.type]
            triggers.append(factory(config, definition.namespace, definition.pipeline_id, callback))
    return triggers


class TriggerDispatcher:
    """Starts and stops every trigger of a set of pipelines as one unit.

    Used as a context manager: triggers start on entry and stop, in reverse
    order, on exit. If one fails to start, those already running are stopped.
    """

    def __init__(
        self, pipelines: Iterable[PipelineDefinition], callback: EventCallback
    ) -> None:
        self._triggers = build_triggers(pipelines, callback)

    @property
    def triggers(self) -> tuple[TriggerBase, ...]:
        return tuple(self._triggers)

    @property
    def count(self) -> int:
        return len(self._triggers)

    def start_all(self) -> None:
        for trigger in self._triggers:
            trigger.start()
            logger.info("Started trigger %s", trigger.name)

    def stop_all(self) -> None:
        for trigger in reversed(self._triggers):
            trigger.stop()

    def __enter__(self) -> TriggerDispatcher:
        try:
            self.start_all()
        except BaseException:
            self.stop_all()
            raise
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop_all()
