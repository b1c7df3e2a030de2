"""
File-backed storage of pipeline manifests, one JSON document per pipeline.
"""

import json
import os
import threading
import uuid
from typing import List, Optional

from ..models.pipelines import PipelineManifest
from ..utils.errors import NotFoundError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class PipelineRepositoryError(Exception):
    """Custom exception for manifest storage errors."""
    pass


class FilePipelinesRepository:
    """Store pipeline manifests as ``<id>.json`` files in a directory."""

    def __init__(self, storage_path: str):
        self.storage_path = storage_path
        self._lock = threading.Lock()
        os.makedirs(storage_path, exist_ok=True)

        logger.info(f'Initialized FilePipelinesRepository at {storage_path}')

    def _path_for(self, pipeline_id: str) -> str:
        if not pipeline_id or os.path.basename(pipeline_id) != pipeline_id:
            raise PipelineRepositoryError(f'Invalid pipeline id: {pipeline_id!r}')
        return os.path.join(self.storage_path, f'{pipeline_id}.json')

    def _read(self, path: str) -> PipelineManifest:
        with open(path, 'r', encoding='utf-8') as f:
            return PipelineManifest.from_dict(json.load(f))

    def _write(self, manifest: PipelineManifest) -> None:
        path = self._path_for(manifest.id)
        tmp_path = f'{path}.tmp'
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(manifest.to_dict(), f, indent=2)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f'Failed to write pipeline {manifest.id}: {e}')
            raise PipelineRepositoryError(f'Failed to write pipeline {manifest.id}: {e}')
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    def get(self, pipeline_id: str) -> Optional[PipelineManifest]:
        """Load a manifest, or None if no file exists for the id."""
        path = self._path_for(pipeline_id)
        if not os.path.exists(path):
            return None

        try:
            return self._read(path)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f'Failed to read pipeline {pipeline_id}: {e}')
            raise PipelineRepositoryError(f'Failed to read pipeline {pipeline_id}: {e}')

    def get_all(self) -> List[PipelineManifest]:
        """Load every readable manifest; unreadable files are logged and skipped."""
        manifests = []
        for filename in sorted(os.listdir(self.storage_path)):
            if not filename.endswith('.json'):
                continue
            try:
                manifests.append(self._read(os.path.join(self.storage_path, filename)))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f'Skipping unreadable pipeline file {filename}: {e}')
        return manifests

    def create(self, manifest: PipelineManifest) -> PipelineManifest:
        """Store a new manifest, generating an id when it has none.

        Raises:
            PipelineRepositoryError: If a manifest with the same id exists or the file cannot be written
        """
        if not manifest.id:
            manifest.id = str(uuid.uuid4())

        with self._lock:
            if os.path.exists(self._path_for(manifest.id)):
                raise PipelineRepositoryError(f'Pipeline with ID {manifest.id} already exists')
            self._write(manifest)

        logger.info(f'Created pipeline {manifest.id} ({manifest.name})')
        return manifest

    def update(self, pipeline_id: str, manifest: PipelineManifest) -> PipelineManifest:
        """Replace an existing manifest; the stored id is always ``pipeline_id``.

        Raises:
            NotFoundError: If no manifest exists for the id
            PipelineRepositoryError: If the file cannot be written
        """
        manifest.id = pipeline_id

        with self._lock:
            if not os.path.exists(self._path_for(pipeline_id)):
                raise NotFoundError(f'Pipeline with ID {pipeline_id} not found')
            self._write(manifest)

        logger.info(f'Updated pipeline {pipeline_id}')
        return manifest

    def delete(self, pipeline_id: str) -> bool:
        """Delete a manifest. Returns False if it did not exist."""
        path = self._path_for(pipeline_id)
        with self._lock:
            if not os.path.exists(path):
                return False
            os.remove(path)

        logger.info(f'Deleted pipeline {pipeline_id}')
        return True
