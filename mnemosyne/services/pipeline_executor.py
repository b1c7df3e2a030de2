"""
Pipeline Execution Engine: run manifest stages over an execution state and track run status.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import Dict, Optional, Tuple

from ..models.pipelines import (EMPTY_PIPELINE_ID, PipelineExecutionState, PipelineExecutionStatus, PipelineManifest, PipelineStatus,
                                StageResult)
from ..utils.config import config
from ..utils.errors import DuplicateRunError, PipelineNotFoundError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .pipeline_stages import StageRegistry, default_registry
from .pipelines_service import PipelinesService

logger = get_logger(__name__)


class PipelineExecutor:
    """Execute pipelines stage by stage and keep a registry of run statuses.

    The registry lock is held only to insert, look up and evict records;
    stages of unrelated runs never wait on each other.
    """

    def __init__(self,
                 pipelines_service: Optional[PipelinesService] = None,
                 registry: Optional[StageRegistry] = None,
                 max_workers: Optional[int] = None,
                 status_retention_seconds: Optional[int] = None):
        """
        Initialize the executor.

        Args:
            pipelines_service: Manifest source (file-backed service from config if None)
            registry: Stage registry (built-in stages if None)
            max_workers: Worker threads used by ``submit``
            status_retention_seconds: Evict finished runs older than this; keep forever if None
        """
        self.pipelines_service = pipelines_service or PipelinesService()
        self.registry = registry or default_registry()
        self.status_retention_seconds = status_retention_seconds if status_retention_seconds is not None \
            else config.pipeline.status_retention_seconds

        self._statuses: Dict[str, PipelineExecutionStatus] = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers or config.pipeline.max_concurrent_runs,
                                        thread_name_prefix='pipeline-run')

        logger.info('Initialized PipelineExecutor')

    def _load_manifest(self, pipeline_id: str) -> PipelineManifest:
        if pipeline_id == EMPTY_PIPELINE_ID:
            logger.info(f'Executing empty pipeline for ID: {pipeline_id}')
            return PipelineManifest.empty()

        manifest = self.pipelines_service.get(pipeline_id)
        if manifest is None:
            logger.warning(f'Execution failed: Pipeline manifest not found for ID {pipeline_id}')
            raise PipelineNotFoundError(f'Pipeline with ID {pipeline_id} not found')
        return manifest

    def _register(self, state: PipelineExecutionState) -> PipelineExecutionStatus:
        status = PipelineExecutionStatus(run_id=state.run_id,
                                         pipeline_id=state.pipeline_id,
                                         current_stage_name='Initializing',
                                         current_stage_start_time=utc_now())

        with self._lock:
            if self.status_retention_seconds is not None:
                self._evict_locked(self.status_retention_seconds)
            if state.run_id in self._statuses:
                logger.error(f'Failed to add pipeline execution {state.run_id}: Key already exists.')
                raise DuplicateRunError(f'Run with ID {state.run_id} is already registered')
            self._statuses[state.run_id] = status

        return status

    def execute(self, state: PipelineExecutionState) -> PipelineExecutionState:
        """Run a pipeline to completion on the calling thread.

        A failing or unresolvable stage ends the run as Failed; the state as of
        that point is still returned and the outcome is read from the status.

        Args:
            state: Execution state with a unique run id

        Returns:
            The final execution state

        Raises:
            PipelineNotFoundError: If the pipeline id is unknown (no status is recorded)
            DuplicateRunError: If the run id is already registered
        """
        manifest, status = self._start(state)
        return self._run(state, manifest, status)

    def _start(self, state: PipelineExecutionState) -> Tuple[PipelineManifest, PipelineExecutionStatus]:
        manifest = self._load_manifest(state.pipeline_id)
        status = self._register(state)
        logger.info(f'Pipeline ID: {state.pipeline_id} execution initiated with RunId: {state.run_id}')
        return manifest, status

    def _run(self, state: PipelineExecutionState, manifest: PipelineManifest, status: PipelineExecutionStatus) -> PipelineExecutionState:
        run_id = state.run_id
        try:
            status.mark_running()

            if not manifest.components:
                logger.info(f'RunId {run_id}: Pipeline {manifest.id} has no components. Marking as completed.')
                status.finish(PipelineStatus.COMPLETED, 'Pipeline completed: No components to execute.')
                return state

            for component in manifest.components:
                stage_name = component.name or 'Unnamed Stage'
                status.enter_stage(stage_name)

                try:
                    stage = self.registry.resolve(component.type, stage_name, component.settings)
                    if stage is None:
                        message = f"Component type '{component.type}' not registered or resolved for stage '{stage_name}'."
                        logger.error(f'RunId {run_id}: {message}')
                        status.add_stage_history(stage_name, StageResult.ERROR, message)
                        status.finish(PipelineStatus.FAILED, message)
                        return state

                    logger.debug(f'RunId {run_id}: Executing stage {stage_name} ({component.type})')
                    state = stage.execute(state, status)
                except Exception as e:
                    logger.error(f'RunId {run_id}: Stage {stage_name} failed: {e}')
                    status.add_stage_history(stage_name, StageResult.ERROR, str(e))
                    status.finish(PipelineStatus.FAILED, f'Stage {stage_name} failed: {e}')
                    return state

                status.add_stage_history(stage_name, StageResult.SUCCESS, f'Stage {stage_name} completed.')

            status.finish(PipelineStatus.COMPLETED, 'Pipeline execution completed successfully.', stage_name='Finished')
            logger.info(f'RunId {run_id}: Pipeline execution completed successfully.')
            return state

        finally:
            if status.end_time is None:
                status.finish(PipelineStatus.FAILED, 'Pipeline execution terminated unexpectedly.')

    def submit(self, state: PipelineExecutionState) -> 'Future[PipelineExecutionState]':
        """Run a pipeline on a worker thread; poll ``get_status`` for progress.

        The run is registered before this returns, so unknown pipelines and
        duplicate run ids raise here rather than through the future.

        Raises:
            PipelineNotFoundError: If the pipeline id is unknown
            DuplicateRunError: If the run id is already registered
        """
        manifest, status = self._start(state)
        return self._pool.submit(self._run, state, manifest, status)

    def get_status(self, run_id: str) -> Optional[PipelineExecutionStatus]:
        with self._lock:
            status = self._statuses.get(run_id)
        if status is None:
            logger.debug(f'Execution status not found for RunId: {run_id}')
        return status

    def _evict_locked(self, older_than_seconds: float) -> int:
        cutoff = utc_now() - timedelta(seconds=older_than_seconds)
        expired = [
            run_id for run_id, status in self._statuses.items()
            if status.status.is_terminal and status.end_time is not None and status.end_time <= cutoff
        ]
        for run_id in expired:
            del self._statuses[run_id]
        return len(expired)

    def evict_finished(self, older_than_seconds: float = 0) -> int:
        """Drop status records of runs that finished at least ``older_than_seconds`` ago.

        Returns:
            Number of evicted records
        """
        with self._lock:
            evicted = self._evict_locked(older_than_seconds)
        if evicted:
            logger.info(f'Evicted {evicted} finished pipeline run(s)')
        return evicted

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
