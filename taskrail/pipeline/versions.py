"""Versioned pipeline registrations."""

from __future__ import annotations

from taskrail._log import get_logger
from taskrail.models import PipelineVersion
from taskrail.pipeline.schema import PipelineDefinition
from taskrail.storage.base import Storage

logger = get_logger("pipeline.versions")


class PipelineRegistry:
    """Stores each registration of a pipeline as a new immutable version."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def register_pipeline(self, definition: PipelineDefinition) -> PipelineVersion:
        """Validate *definition* and store it as the next version (1, 2, ...).

        Graph errors propagate as PipelineValidationError subclasses and
        nothing is stored.
        """
        definition.spec.graph()
        namespace, pipeline_id = definition.namespace, definition.pipeline_id
        with self._storage.transaction():
            number = self._storage.latest_pipeline_version(namespace, pipeline_id) + 1
            version = PipelineVersion(
                namespace=namespace,
                pipeline_id=pipeline_id,
                version=number,
                definition=definition.model_copy(deep=True),
            )
            self._storage.insert_pipeline_version(version)
        logger.info("Registered pipeline %s/%s version %d", namespace, pipeline_id, number)
        return version

    def get_pipeline(
        self, namespace: str, pipeline_id: str, version: int | None = None
    ) -> PipelineVersion:
        return self._storage.get_pipeline_version(namespace, pipeline_id, version)

    def list_pipeline_versions(self, namespace: str, pipeline_id: str) -> list[PipelineVersion]:
        return self._storage.list_pipeline_versions(namespace, pipeline_id)
