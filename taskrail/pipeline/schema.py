"""Pydantic models for pipeline YAML definitions."""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Annotated, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from taskrail.errors import PipelineValidationError

if TYPE_CHECKING:
    from taskrail.pipeline.graph import PipelineGraph

_ID_PATTERN = r"^[A-Za-z0-9_-]+$"


class RequiredParentStatus(StrEnum):
    """What a parent task must finish with for its dependent to run."""

    ANY = "any"
    SUCCESS = "success"
    FAILURE = "failure"


class TaskConfig(BaseModel):
    id: str = Field(pattern=_ID_PATTERN, max_length=64)
    image: str
    description: str = ""
    command: list[str] | None = None
    entrypoint: list[str] | None = None
    variables: dict[str, str] = {}
    depends_on: dict[str, RequiredParentStatus] = {}


class CronTriggerConfig(BaseModel):
    type: Literal["cron"] = "cron"
    schedule: str
    variables: dict[str, str] = {}

    @field_validator("schedule")
    @classmethod
    def _check_schedule(cls, value: str) -> str:
        from croniter import croniter

        if not croniter.is_valid(value):
            raise ValueError(f"invalid cron schedule {value!r}")
        return value


class IntervalTriggerConfig(BaseModel):
    type: Literal["interval"] = "interval"
    every_seconds: int = Field(ge=1)
    variables: dict[str, str] = {}


class WebhookTriggerConfig(BaseModel):
    type: Literal["webhook"] = "webhook"
    path: str = "/webhook"
    port: int = 8080
    method: str = "POST"
    secret: str | None = None
    variables: dict[str, str] = {}


TriggerConfig = Annotated[
    CronTriggerConfig | IntervalTriggerConfig | WebhookTriggerConfig,
    Field(discriminator="type"),
]


class PipelineMetadata(BaseModel):
    id: str = Field(pattern=_ID_PATTERN, max_length=64)
    namespace: str = Field(default="default", pattern=_ID_PATTERN, max_length=64)
    name: str = ""
    description: str = ""


class PipelineSpec(BaseModel):
    tasks: list[TaskConfig] = []
    # Maximum concurrently active runs; 0 means unlimited.
    parallelism: int = Field(default=0, ge=0)
    triggers: list[TriggerConfig] = []

    @model_validator(mode="after")
    def _validate_dag(self) -> PipelineSpec:
        try:
            self.graph()
        except PipelineValidationError as e:
            raise ValueError(str(e)) from None
        return self

    def graph(self) -> PipelineGraph:
        """Build a fresh dependency graph; raises PipelineValidationError subclasses."""
        from taskrail.pipeline.graph import build_graph

        return build_graph((t.id, list(t.depends_on)) for t in self.tasks)

    def task(self, task_id: str) -> TaskConfig:
        for t in self.tasks:
            if t.id == task_id:
                return t
        raise KeyError(task_id)


class PipelineDefinition(BaseModel):
    apiVersion: str = "taskrail/v1"
    kind: Literal["Pipeline"] = "Pipeline"
    metadata: PipelineMetadata
    spec: PipelineSpec

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def pipeline_id(self) -> str:
        return self.metadata.id
