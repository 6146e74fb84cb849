"""Run execution: numbering, coordination, task-run lifecycle and the run service."""

from taskrail.runs.coordinator import RunCoordinator
from taskrail.runs.policy import Readiness, evaluate
from taskrail.runs.registry import RunRegistry
from taskrail.runs.sequencer import RunSequencer, effective_limit
from taskrail.runs.service import RunService
from taskrail.runs.task_run import TaskRunStateMachine

__all__ = [
    "Readiness",
    "RunCoordinator",
    "RunRegistry",
    "RunSequencer",
    "RunService",
    "TaskRunStateMachine",
    "effective_limit",
    "evaluate",
]
