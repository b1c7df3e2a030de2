"""
Health checks for the backing AWS services.
"""

from typing import Any, Callable, Dict

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)

SERVICE_NAME = 'Mnemosyne'
VERSION = '0.1.0'


def _probe(service: str, build: Callable[[], Any], **details: Any) -> Dict[str, Any]:
    """Build a client and run its health check; any failure marks the service unhealthy."""
    try:
        healthy = bool(build().health_check())
        return {'healthy': healthy, 'service': service, **details}
    except Exception as e:
        logger.warning(f'{service} health probe failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status() -> Dict[str, Any]:
    """Get detailed health status of every backing service.

    Returns:
        Dictionary keyed by component name
    """
    return {
        'bedrock_llm':
            _probe('Amazon Bedrock LLM',
                   lambda: BedrockLLM(config.bedrock_llm),
                   master_model=config.bedrock_llm.master_model_id,
                   auxiliary_model=config.bedrock_llm.auxiliary_model_id),
        'bedrock_embed':
            _probe('Amazon Bedrock Embed', lambda: BedrockEmbed(config.bedrock_embed), model=config.bedrock_embed.model_id),
        'neptune':
            _probe('Amazon Neptune', lambda: NeptuneClient(config.neptune), endpoint=config.neptune.endpoint),
        'opensearch':
            _probe('Amazon OpenSearch', lambda: OpenSearchClient(config.opensearch), endpoint=config.opensearch.endpoint),
    }


def get_system_info() -> Dict[str, Any]:
    """System information, configuration summary and health status."""
    health_status = get_health_status()
    unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]

    if unhealthy:
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')
    else:
        logger.info('All system components are healthy')

    return {
        'service_name': SERVICE_NAME,
        'version': VERSION,
        'healthy': not unhealthy,
        'configuration': {
            'environment': config.environment,
            'bedrock_llm_master_model': config.bedrock_llm.master_model_id,
            'bedrock_llm_auxiliary_model': config.bedrock_llm.auxiliary_model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'embedding_dimension': config.bedrock_embed.dimension,
            'opensearch_index_prefix': config.opensearch.index_name,
            'pipeline_storage_path': config.pipeline.storage_path,
            'aws_region': config.bedrock_llm.region
        },
        'health_status': health_status
    }
