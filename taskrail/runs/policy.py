"""Decide whether a waiting task may run, must be skipped, or keeps waiting."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum

from taskrail.models import TERMINAL_TASK_RUN_STATUSES, TaskRunStatus
from taskrail.pipeline.schema import RequiredParentStatus


class Readiness(StrEnum):
    READY = "ready"
    WAITING = "waiting"
    SKIP = "skip"


def requirement_met(requirement: RequiredParentStatus, status: TaskRunStatus) -> bool:
    """Return True if a parent that finished with *status* satisfies *requirement*."""
    if requirement == RequiredParentStatus.ANY:
        return status in TERMINAL_TASK_RUN_STATUSES
    if requirement == RequiredParentStatus.SUCCESS:
        return status == TaskRunStatus.SUCCESSFUL
    return status == TaskRunStatus.FAILED


def evaluate(
    depends_on: Mapping[str, RequiredParentStatus],
    parent_statuses: Mapping[str, TaskRunStatus],
) -> Readiness:
    """Evaluate a task's parents.

    *parent_statuses* holds the terminal status of every parent that has
    finished; parents absent from it (or still non-terminal) keep the task
    waiting. Once all parents are terminal the task is ready if every
    requirement holds, otherwise it is skipped. A task with no parents is
    always ready.
    """
    violated = False
    for parent, requirement in depends_on.items():
        status = parent_statuses.get(parent)
        if status is None or status not in TERMINAL_TASK_RUN_STATUSES:
            return Readiness.WAITING
        if not requirement_met(requirement, status):
            violated = True
    return Readiness.SKIP if violated else Readiness.READY


def skip_reason(
    depends_on: Mapping[str, RequiredParentStatus],
    parent_statuses: Mapping[str, TaskRunStatus],
) -> str:
    """Describe which parent requirements were not met, for a skipped task run."""
    unmet = []
    for parent, requirement in depends_on.items():
        status = parent_statuses.get(parent, TaskRunStatus.UNKNOWN)
        if not requirement_met(requirement, status):
            unmet.append(f"{parent} (required {requirement}, got {status})")
    return "task could not be run due to unmet dependencies: " + ", ".join(unmet)
