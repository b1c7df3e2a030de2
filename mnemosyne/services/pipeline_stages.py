"""
Pipeline stages and the registry resolving manifest type discriminators to stage factories.
"""

import threading
from typing import Any, Callable, Dict, List, Optional

from ..models.core import ReformulationAspect
from ..models.pipelines import ContextChunk, ContextProvenance, PipelineExecutionState, PipelineExecutionStatus
from ..utils.errors import ValidationError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .memory_query_service import MemoryQueryError, MemoryQueryService

logger = get_logger(__name__)

# factory(settings, services) -> stage
StageFactory = Callable[[Dict[str, Any], Dict[str, Any]], 'PipelineStage']


class PipelineStage:
    """Base class for pipeline stages.

    Subclasses implement ``execute_internal``. A stage may append to the
    state's context but must not remove entries, and must not keep a
    reference to the state after returning.
    """

    def __init__(self, name: Optional[str] = None, settings: Optional[Dict[str, Any]] = None):
        self.name = name or type(self).__name__
        self.settings = settings or {}

    def execute(self, state: PipelineExecutionState, status: PipelineExecutionStatus) -> PipelineExecutionState:
        status.enter_stage(self.name)
        return self.execute_internal(state)

    def execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        raise NotImplementedError


class NullPipelineStage(PipelineStage):
    """Stage that only records that it ran."""

    def execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        logger.debug(f'Executing {self.name} for run {state.run_id}')
        state.context.append(
            ContextChunk(type='Simulation', content='Simulated stage completed', provenance=ContextProvenance(source=self.name)))
        return state


class UserInputStage(PipelineStage):
    """Add the request's user input to the context."""

    def execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        user_input = state.request.user_input
        if not user_input or not user_input.strip():
            logger.warning('User input is empty or whitespace. Skipping UserInputStage.')
            return state

        state.context.append(ContextChunk(type='UserInput', content=user_input, provenance=ContextProvenance(source=self.name)))
        return state


class MemoryRetrievalStage(PipelineStage):
    """Retrieve memorygrams similar to the user input and add them as Memory chunks.

    Settings:
        top_k: Maximum number of memories (default 5)
        minimum_similarity_score: Drop memories scoring below this value
        aspect: Search only this aspect (Topical, Content, Context, Metadata)
        scope_to_chat: Restrict the search to the session's chatId
    """

    DEFAULT_TOP_K = 5

    def __init__(self, memory_query_service, name: Optional[str] = None, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        self.memory_query_service = memory_query_service
        self.top_k = int(self.settings.get('top_k', self.DEFAULT_TOP_K))

        minimum = self.settings.get('minimum_similarity_score')
        self.minimum_similarity_score = float(minimum) if minimum is not None else None

        aspect = self.settings.get('aspect')
        self.aspect = ReformulationAspect.parse(aspect) if aspect else None
        self.scope_to_chat = bool(self.settings.get('scope_to_chat', False))

    def execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        user_input = state.request.user_input
        if not user_input or not user_input.strip():
            logger.warning('User input is null or empty, skipping memory retrieval')
            return state

        scope_id = state.request.session_metadata.get('chatId') if self.scope_to_chat else None

        try:
            results = self.memory_query_service.query(user_input, top_k=self.top_k, aspect=self.aspect, scope_id=scope_id)
        except (MemoryQueryError, ValidationError) as e:
            logger.error(f'Failed to query memory: {e}')
            return state

        if self.minimum_similarity_score is not None:
            results = [r for r in results if r.score >= self.minimum_similarity_score]

        for result in results:
            memorygram = result.memorygram
            state.context.append(
                ContextChunk(type='Memory',
                             content=memorygram.content,
                             relevance_score=result.score,
                             provenance=ContextProvenance(source=self.name,
                                                          timestamp=memorygram.updated_at,
                                                          original_id=memorygram.id,
                                                          metadata={
                                                              'MemorygramSource': memorygram.source,
                                                              'MemorygramType': memorygram.type.value
                                                          })))

        logger.info(f'Memory retrieval added {len(results)} context chunks')
        return state


class ChatHistoryStage(PipelineStage):
    """Add the conversation of the session's chat (``chatId``) to the context."""

    def __init__(self, memory_query_service, name: Optional[str] = None, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        self.memory_query_service = memory_query_service

    def execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        chat_id = state.request.session_metadata.get('chatId')
        if not chat_id:
            logger.warning('No chatId in session metadata, skipping chat history')
            return state

        for turn in self.memory_query_service.get_chat_history(chat_id):
            state.context.append(
                ContextChunk(type=turn.type.value,
                             subtype=chat_id,
                             content=turn.content,
                             provenance=ContextProvenance(source=ContextProvenance.CHAT_HISTORY,
                                                          timestamp=turn.created_at,
                                                          original_id=turn.id)))
        return state


class AgenticWorkflowStage(PipelineStage):
    """Hand-off point for downstream response generation; passes the state through."""

    def execute_internal(self, state: PipelineExecutionState) -> PipelineExecutionState:
        logger.debug(f'{self.name} reached at {utc_now().isoformat()} with {len(state.context)} context chunks')
        return state


class StageRegistry:
    """Maps stage type discriminators to stage factories."""

    def __init__(self, services: Optional[Dict[str, Any]] = None):
        self.services = services or {}
        self._factories: Dict[str, StageFactory] = {}

    @staticmethod
    def _key(stage_type: str) -> str:
        # 'package.module.ClassName' and 'ClassName' resolve to the same stage
        return stage_type.strip().rsplit('.', 1)[-1].lower()

    def register(self, stage_type: str, factory: StageFactory) -> None:
        if not stage_type or not stage_type.strip():
            raise ValidationError('Stage type is required')
        self._factories[self._key(stage_type)] = factory

    def types(self) -> List[str]:
        return sorted(self._factories)

    def resolve(self, stage_type: str, name: str, settings: Dict[str, Any]) -> Optional[PipelineStage]:
        """Instantiate the stage registered for a discriminator, or None if unknown."""
        factory = self._factories.get(self._key(stage_type or ''))
        if factory is None:
            return None

        stage = factory(settings, self.services)
        if name:
            stage.name = name
        return stage


_services_lock = threading.Lock()


def _memory_query_service(services: Dict[str, Any]) -> MemoryQueryService:
    """Shared query service of a registry, built from config on first use."""
    with _services_lock:
        if services.get('memory_query_service') is None:
            logger.info('Creating MemoryQueryService for memory-backed stages')
            services['memory_query_service'] = MemoryQueryService()
        return services['memory_query_service']


def default_registry(memory_query_service: Optional[MemoryQueryService] = None) -> StageRegistry:
    """Registry with the built-in stages.

    Without a query service, one is built from config the first time a
    memory-backed stage is resolved.
    """
    registry = StageRegistry({'memory_query_service': memory_query_service})
    registry.register('NullPipelineStage', lambda settings, services: NullPipelineStage(settings=settings))
    registry.register('UserInputStage', lambda settings, services: UserInputStage(settings=settings))
    registry.register('AgenticWorkflowStage', lambda settings, services: AgenticWorkflowStage(settings=settings))
    registry.register('MemoryRetrievalStage',
                      lambda settings, services: MemoryRetrievalStage(_memory_query_service(services), settings=settings))
    registry.register('ChatHistoryStage', lambda settings, services: ChatHistoryStage(_memory_query_service(services), settings=settings))
    return registry
