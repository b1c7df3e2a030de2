"""
Configuration management for AWS services and application settings.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    master_model_id: str
    auxiliary_model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float

    def model_for_role(self, role: str) -> str:
        """Resolve a model role name (Master, Auxiliary) to a model id."""
        if role.lower() == 'auxiliary':
            return self.auxiliary_model_id
        return self.master_model_id


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int


@dataclass
class MemoryConfig:
    """Configuration for memory queries."""
    default_top_k: int


@dataclass
class PipelineConfig:
    """Configuration for pipeline manifests and the execution engine."""
    storage_path: str
    max_concurrent_runs: int
    status_retention_seconds: Optional[int]


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    memory: MemoryConfig
    pipeline: PipelineConfig
    mcp: MCPConfig


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name, '').strip()
    return int(value) if value else None


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock LLM configuration, one model per role
    bedrock_llm_config = BedrockLLMConfig(
        region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
        master_model_id=os.getenv('BEDROCK_LLM_MASTER_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
        auxiliary_model_id=os.getenv('BEDROCK_LLM_AUXILIARY_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
        max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
        temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
        retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
        retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector search configuration, one index per reformulation aspect
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memorygram_embeddings'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    memory_config = MemoryConfig(default_top_k=int(os.getenv('MEMORY_DEFAULT_TOP_K', '5')))

    pipeline_config = PipelineConfig(storage_path=os.getenv('PIPELINE_STORAGE_PATH', './pipelines'),
                                     max_concurrent_runs=int(os.getenv('PIPELINE_MAX_CONCURRENT_RUNS', '8')),
                                     status_retention_seconds=_optional_int('PIPELINE_STATUS_RETENTION_SECONDS'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     memory=memory_config,
                     pipeline=pipeline_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
