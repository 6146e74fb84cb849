"""Run, task run and pipeline version records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from taskrail.pipeline.schema import PipelineDefinition


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class RunState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class RunStatus(StrEnum):
    UNKNOWN = "unknown"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskRunState(StrEnum):
    WAITING = "waiting"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETE = "complete"


class TaskRunStatus(StrEnum):
    UNKNOWN = "unknown"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


ACTIVE_RUN_STATES: frozenset[RunState] = frozenset({RunState.PENDING, RunState.RUNNING})

TERMINAL_TASK_RUN_STATUSES: frozenset[TaskRunStatus] = frozenset(
    {
        TaskRunStatus.SUCCESSFUL,
        TaskRunStatus.FAILED,
        TaskRunStatus.SKIPPED,
        TaskRunStatus.CANCELLED,
    }
)


class InitiatorKind(StrEnum):
    UNKNOWN = "unknown"
    HUMAN = "human"
    BOT = "bot"
    TRIGGER = "trigger"


class ReasonKind(StrEnum):
    ABNORMAL_EXIT = "abnormal_exit"
    SCHEDULER_ERROR = "scheduler_error"
    FAILED_PRECONDITION = "failed_precondition"
    CANCELLED = "cancelled"
    ORPHANED = "orphaned"


@dataclass
class Initiator:
    kind: InitiatorKind = InitiatorKind.UNKNOWN
    name: str = ""
    reason: str = ""


@dataclass
class StatusReason:
    kind: ReasonKind
    description: str


@dataclass(frozen=True, order=True)
class RunKey:
    namespace: str
    pipeline_id: str
    run_id: int

    def __str__(self) -> str:
        return f"{self.namespace}/{self.pipeline_id}#{self.run_id}"


@dataclass
class PipelineVersion:
    """One immutable, validated registration of a pipeline definition."""

    namespace: str
    pipeline_id: str
    version: int
    definition: PipelineDefinition
    registered: str = field(default_factory=utc_now)


@dataclass
class Run:
    namespace: str
    pipeline_id: str
    run_id: int
    version: int
    initiator: Initiator = field(default_factory=Initiator)
    variables: dict[str, str] = field(default_factory=dict)
    state: RunState = RunState.PENDING
    status: RunStatus = RunStatus.UNKNOWN
    status_reason: StatusReason | None = None
    started: str = field(default_factory=utc_now)
    ended: str | None = None
    # Task ids in pipeline declaration order; one task run per id.
    task_runs: list[str] = field(default_factory=list)

    @property
    def key(self) -> RunKey:
        return RunKey(self.namespace, self.pipeline_id, self.run_id)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_RUN_STATES


@dataclass
class TaskRun:
    namespace: str
    pipeline_id: str
    run_id: int
    task_id: str
    state: TaskRunState = TaskRunState.WAITING
    status: TaskRunStatus = TaskRunStatus.UNKNOWN
    status_reason: StatusReason | None = None
    created: str = field(default_factory=utc_now)
    scheduled: str | None = None
    started: str | None = None
    ended: str | None = None
    exit_code: int | None = None
    # Backend-issued identifier of the dispatched workload.
    handle: str | None = None

    @property
    def run_key(self) -> RunKey:
        return RunKey(self.namespace, self.pipeline_id, self.run_id)

    @property
    def is_complete(self) -> bool:
        return self.state == TaskRunState.COMPLETE
