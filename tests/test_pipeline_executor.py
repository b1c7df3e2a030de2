"""Unit tests for the pipeline execution engine."""

import threading
from unittest.mock import MagicMock, patch

import pytest

from mnemosyne.models.pipelines import (EMPTY_PIPELINE_ID, ComponentConfiguration, ContextChunk, PipelineExecutionRequest, PipelineExecutionState,
                                        PipelineManifest, PipelineStatus, StageResult)
from mnemosyne.services.pipeline_executor import PipelineExecutor
from mnemosyne.services.pipeline_stages import PipelineStage, StageRegistry, default_registry
from mnemosyne.utils.errors import DuplicateRunError, PipelineNotFoundError


class AppendStage(PipelineStage):

    def execute_internal(self, state):
        state.context.append(ContextChunk(type='Test', content=self.settings.get('text', 'appended')))
        return state


class FailingStage(PipelineStage):

    def execute_internal(self, state):
        raise RuntimeError('stage exploded')


class BlockingStage(PipelineStage):
    """Waits until the test releases it."""

    def execute_internal(self, state):
        self.settings['started'].set()
        self.settings['release'].wait(timeout=5)
        return state


@pytest.fixture
def registry():
    registry = StageRegistry()
    registry.register('AppendStage', lambda settings, services: AppendStage(settings=settings))
    registry.register('FailingStage', lambda settings, services: FailingStage(settings=settings))
    registry.register('BlockingStage', lambda settings, services: BlockingStage(settings=settings))
    return registry


@pytest.fixture
def manifests():
    return {}


@pytest.fixture
def pipelines_service(manifests):
    service = MagicMock()
    service.get.side_effect = lambda pipeline_id: manifests.get(pipeline_id)
    return service


@pytest.fixture
def executor(pipelines_service, registry):
    executor = PipelineExecutor(pipelines_service=pipelines_service, registry=registry, max_workers=4)
    yield executor
    executor.shutdown()


def make_state(pipeline_id, run_id=None, user_input='hello'):
    state = PipelineExecutionState(pipeline_id=pipeline_id, request=PipelineExecutionRequest(pipeline_id, user_input))
    if run_id:
        state.run_id = run_id
    return state


class TestExecute:
    """Tests for synchronous execution."""

    def test_empty_pipeline_completes_unchanged(self, executor, pipelines_service):
        state = make_state(EMPTY_PIPELINE_ID)

        result = executor.execute(state)

        status = executor.get_status(state.run_id)
        assert result is state
        assert result.context == []
        assert status.status == PipelineStatus.COMPLETED
        assert status.end_time is not None
        assert status.message == 'Pipeline completed: No components to execute.'
        pipelines_service.get.assert_not_called()

    def test_stored_manifest_without_components_completes(self, executor, manifests):
        manifests['p0'] = PipelineManifest('p0')

        state = executor.execute(make_state('p0'))

        assert executor.get_status(state.run_id).status == PipelineStatus.COMPLETED

    def test_unknown_pipeline_records_no_status(self, executor):
        state = make_state('missing')

        with pytest.raises(PipelineNotFoundError):
            executor.execute(state)
        assert executor.get_status(state.run_id) is None

    def test_stages_run_in_order(self, executor, manifests):
        manifests['p1'] = PipelineManifest('p1',
                                           components=[
                                               ComponentConfiguration('First', 'AppendStage', {'text': 'one'}),
                                               ComponentConfiguration('Second', 'AppendStage', {'text': 'two'}),
                                           ])

        state = executor.execute(make_state('p1'))

        status = executor.get_status(state.run_id)
        assert [c.content for c in state.context] == ['one', 'two']
        assert status.status == PipelineStatus.COMPLETED
        assert status.current_stage_name == 'Finished'
        assert [(h.stage_name, h.result) for h in status.stage_history] == [('First', StageResult.SUCCESS), ('Second', StageResult.SUCCESS)]

    def test_failing_stage_fails_run(self, executor, manifests):
        manifests['P1'] = PipelineManifest('P1',
                                           components=[
                                               ComponentConfiguration('StageA', 'AppendStage'),
                                               ComponentConfiguration('StageB', 'FailingStage'),
                                           ])

        state = executor.execute(make_state('P1'))

        status = executor.get_status(state.run_id)
        assert status.status == PipelineStatus.FAILED
        assert status.end_time is not None
        assert [(h.stage_name, h.result) for h in status.stage_history] == [('StageA', StageResult.SUCCESS), ('StageB', StageResult.ERROR)]
        assert status.stage_history[1].message == 'stage exploded'
        assert len(state.context) == 1

    def test_unresolved_stage_skips_remaining(self, executor, manifests):
        manifests['p2'] = PipelineManifest('p2',
                                           components=[
                                               ComponentConfiguration('Mystery', 'UnknownStage'),
                                               ComponentConfiguration('Never', 'AppendStage'),
                                           ])

        state = executor.execute(make_state('p2'))

        status = executor.get_status(state.run_id)
        assert status.status == PipelineStatus.FAILED
        assert [h.stage_name for h in status.stage_history] == ['Mystery']
        assert "Component type 'UnknownStage' not registered" in status.stage_history[0].message
        assert state.context == []

    def test_duplicate_run_id_rejected(self, executor, manifests):
        manifests['p1'] = PipelineManifest('p1', components=[ComponentConfiguration('A', 'AppendStage')])
        executor.execute(make_state('p1', run_id='run-1'))
        first = executor.get_status('run-1')
        snapshot = first.to_dict()

        with pytest.raises(DuplicateRunError):
            executor.execute(make_state(EMPTY_PIPELINE_ID, run_id='run-1'))

        assert executor.get_status('run-1') is first
        assert first.to_dict() == snapshot

    def test_builtin_registry_end_to_end(self, pipelines_service, manifests):
        manifests['p3'] = PipelineManifest('p3',
                                           components=[
                                               ComponentConfiguration('Input', 'UserInputStage'),
                                               ComponentConfiguration('Noop', 'NullPipelineStage'),
                                               ComponentConfiguration('Handoff', 'AgenticWorkflowStage'),
                                           ])
        executor = PipelineExecutor(pipelines_service=pipelines_service, registry=default_registry(MagicMock()), max_workers=1)

        state = executor.execute(make_state('p3', user_input='hi there'))

        assert [c.type for c in state.context] == ['UserInput', 'Simulation']
        assert executor.get_status(state.run_id).status == PipelineStatus.COMPLETED
        executor.shutdown()

    @patch('mnemosyne.services.pipeline_stages.MemoryQueryService')
    def test_default_registry_runs_memory_stages(self, mock_service_class, pipelines_service, manifests):
        mock_service_class.return_value.query.return_value = []
        manifests['p4'] = PipelineManifest('p4', components=[ComponentConfiguration('Retrieve', 'MemoryRetrievalStage')])
        executor = PipelineExecutor(pipelines_service=pipelines_service, max_workers=1)

        state = executor.execute(make_state('p4', user_input='where is Miso?'))

        assert executor.get_status(state.run_id).status == PipelineStatus.COMPLETED
        mock_service_class.return_value.query.assert_called_once()
        executor.shutdown()


class TestSubmit:
    """Tests for concurrent runs."""

    def test_runs_proceed_concurrently_and_are_pollable(self, executor, manifests):
        started = [threading.Event(), threading.Event()]
        release = threading.Event()
        for index, event in enumerate(started):
            manifests[f'block-{index}'] = PipelineManifest(f'block-{index}',
                                                           components=[
                                                               ComponentConfiguration('Block', 'BlockingStage', {
                                                                   'started': event,
                                                                   'release': release
                                                               })
                                                           ])

        states = [make_state(f'block-{index}') for index in range(2)]
        futures = [executor.submit(state) for state in states]

        assert all(event.wait(timeout=5) for event in started)
        for state in states:
            status = executor.get_status(state.run_id)
            assert status.status == PipelineStatus.PROCESSING
            assert status.current_stage_name == 'Block'

        release.set()
        for future in futures:
            future.result(timeout=5)

        assert all(executor.get_status(s.run_id).status == PipelineStatus.COMPLETED for s in states)

    def test_submit_raises_for_unknown_pipeline(self, executor):
        with pytest.raises(PipelineNotFoundError):
            executor.submit(make_state('missing'))

    def test_submit_raises_for_duplicate_run(self, executor):
        executor.execute(make_state(EMPTY_PIPELINE_ID, run_id='run-1'))

        with pytest.raises(DuplicateRunError):
            executor.submit(make_state(EMPTY_PIPELINE_ID, run_id='run-1'))


class TestRetention:
    """Tests for status eviction."""

    def test_records_kept_by_default(self, executor):
        state = executor.execute(make_state(EMPTY_PIPELINE_ID))
        assert executor.get_status(state.run_id) is not None

    def test_evict_finished(self, executor):
        state = executor.execute(make_state(EMPTY_PIPELINE_ID))

        assert executor.evict_finished(older_than_seconds=3600) == 0
        assert executor.evict_finished() == 1
        assert executor.get_status(state.run_id) is None

    def test_retention_applied_on_new_runs(self, pipelines_service, registry):
        executor = PipelineExecutor(pipelines_service=pipelines_service, registry=registry, max_workers=1, status_retention_seconds=0)
        first = executor.execute(make_state(EMPTY_PIPELINE_ID))

        second = executor.execute(make_state(EMPTY_PIPELINE_ID))

        assert executor.get_status(first.run_id) is None
        assert executor.get_status(second.run_id) is not None
        executor.shutdown()
