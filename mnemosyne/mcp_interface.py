"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .models.core import ReformulationAspect
from .models.pipelines import EMPTY_PIPELINE_ID, PipelineExecutionRequest, PipelineExecutionState
from .services.memory_query_service import MemoryQueryError, MemoryQueryService
from .services.pipeline_executor import PipelineExecutor
from .services.pipeline_stages import default_registry
from .utils.config import config
from .utils.errors import DuplicateRunError, PipelineNotFoundError, ValidationError
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Mnemosyne Memory')


@lru_cache(maxsize=None)
def get_memory_query_service() -> MemoryQueryService:
    return MemoryQueryService()


@lru_cache(maxsize=None)
def get_pipeline_executor() -> PipelineExecutor:
    return PipelineExecutor(registry=default_registry(get_memory_query_service()))


@mcp.tool()
def query_memory(query: str, top_k: int = 5, aspect: Optional[str] = None, chat_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Search stored memories by semantic similarity.

    Args:
        query: Natural language query
        top_k: Maximum number of results to return (default: 5)
        aspect: Restrict the search to one aspect: Topical, Content, Context or Metadata
        chat_id: Restrict the search to memories of one chat

    Returns:
        List of memories with id, content, type, score and timestamps
    """
    try:
        parsed_aspect = ReformulationAspect.parse(aspect) if aspect else None
        results = get_memory_query_service().query(query, top_k=top_k, aspect=parsed_aspect, scope_id=chat_id)
    except (ValueError, MemoryQueryError) as e:
        logger.error(f'Memory query failed in MCP: {e}')
        raise ToolError(f'Memory query failed: {e}')

    logger.debug(f'MCP query returned {len(results)} memories')
    return [{
        'id': result.id,
        'content': result.memorygram.content,
        'type': result.memorygram.type.value,
        'score': result.score,
        'created_at': result.memorygram.created_at.isoformat(),
        'updated_at': result.memorygram.updated_at.isoformat()
    } for result in results]


@mcp.tool()
def get_chat_history(chat_id: str) -> List[Dict[str, Any]]:
    """Get the ordered user and assistant turns of a chat.

    Args:
        chat_id: Chat session id

    Returns:
        List of turns with id, role type, content and timestamp; empty for unknown chats
    """
    if not chat_id or not chat_id.strip():
        raise ToolError('Chat ID is required')

    try:
        history = get_memory_query_service().get_chat_history(chat_id)
    except MemoryQueryError as e:
        logger.error(f'Chat history lookup failed in MCP: {e}')
        raise ToolError(f'Chat history lookup failed: {e}')

    return [{'id': node.id, 'type': node.type.value, 'content': node.content, 'timestamp': node.timestamp} for node in history]


@mcp.tool()
def execute_pipeline(user_input: str, pipeline_id: str = EMPTY_PIPELINE_ID, chat_id: Optional[str] = None, wait: bool = False) -> Dict[str, Any]:
    """Start a pipeline run over a user input.

    Args:
        user_input: User input to process
        pipeline_id: Pipeline manifest id (default: the empty pipeline)
        chat_id: Chat session id made available to stages as ``chatId``
        wait: Block until the run finishes and include the gathered context

    Returns:
        Run status; with ``wait`` also the context chunks
    """
    session_metadata = {'chatId': chat_id} if chat_id else {}
    state = PipelineExecutionState(pipeline_id=pipeline_id,
                                   request=PipelineExecutionRequest(pipeline_id=pipeline_id,
                                                                    user_input=user_input,
                                                                    session_metadata=session_metadata))
    executor = get_pipeline_executor()

    try:
        if wait:
            final_state = executor.execute(state)
            result = executor.get_status(state.run_id).to_dict()
            result['context'] = [chunk.to_dict() for chunk in final_state.context]
            return result

        executor.submit(state)
    except (PipelineNotFoundError, DuplicateRunError, ValidationError) as e:
        logger.error(f'Pipeline execution failed in MCP: {e}')
        raise ToolError(f'Pipeline execution failed: {e}')

    return {'run_id': state.run_id, 'pipeline_id': pipeline_id, 'status': 'Submitted'}


@mcp.tool()
def get_pipeline_status(run_id: str) -> Dict[str, Any]:
    """Get the status and stage history of a pipeline run.

    Args:
        run_id: Run id returned by execute_pipeline
    """
    status = get_pipeline_executor().get_status(run_id)
    if status is None:
        raise ToolError(f'Execution status not found for Run ID: {run_id}')
    return status.to_dict()


@mcp.tool()
def system_info() -> Dict[str, Any]:
    """Service version, configuration summary and health of the backing AWS services."""
    return get_system_info()


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
