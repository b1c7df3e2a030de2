"""
Pipelines Service: manifest management on top of the manifest repository.
"""

from typing import List, Optional

from ..models.pipelines import EMPTY_PIPELINE_ID, PipelineManifest
from ..utils.config import config
from ..utils.logging_config import get_logger
from .pipelines_repository import FilePipelinesRepository

logger = get_logger(__name__)


class PipelinesService:
    """Create, read, update and delete pipeline manifests."""

    def __init__(self, repository: Optional[FilePipelinesRepository] = None):
        self.repository = repository or FilePipelinesRepository(config.pipeline.storage_path)

        logger.info('Initialized PipelinesService')

    def get(self, pipeline_id: str) -> Optional[PipelineManifest]:
        """Get a manifest by id; the empty pipeline id resolves to the built-in no-op manifest."""
        if pipeline_id == EMPTY_PIPELINE_ID:
            return PipelineManifest.empty()

        manifest = self.repository.get(pipeline_id)
        if manifest is None:
            logger.debug(f'Pipeline {pipeline_id} not found')
        return manifest

    def get_all(self) -> List[PipelineManifest]:
        return self.repository.get_all()

    def create(self, manifest: PipelineManifest) -> PipelineManifest:
        return self.repository.create(manifest)

    def update(self, pipeline_id: str, manifest: PipelineManifest) -> PipelineManifest:
        return self.repository.update(pipeline_id, manifest)

    def delete(self, pipeline_id: str) -> bool:
        return self.repository.delete(pipeline_id)
