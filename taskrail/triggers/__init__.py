"""Triggers: event sources that request new runs."""

from taskrail.triggers.base import TriggerBase, TriggerEvent
from taskrail.triggers.dispatcher import TriggerDispatcher, build_triggers, register_trigger

__all__ = ["TriggerBase", "TriggerDispatcher", "TriggerEvent", "build_triggers", "register_trigger"]
