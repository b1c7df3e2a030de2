"""
Semantic Reformulator: rewrite raw text into four aspect-specific texts.
"""

import json
from typing import Dict, Optional

from ..models.core import MemoryReformulations
from ..utils.bedrock_llm import AUXILIARY, BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.errors import ValidationError
from ..utils.json_utils import clean_json_response, loads_case_insensitive
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

REFORMULATION_TEMPERATURE = 0.3

RESPONSE_FORMAT = """Return your response as a JSON object with the following structure:
{
  "Topical": "topical reformulation here",
  "Content": "content reformulation here",
  "Context": "context reformulation here",
  "Metadata": "metadata reformulation here"
}

Ensure each reformulation is semantically rich and captures the essence of that particular aspect while being distinct from the others."""


class SemanticReformulationError(Exception):
    """Custom exception for reformulation errors."""
    pass


class SemanticReformulator:
    """Produce Topical, Content, Context and Metadata rewrites of text using the auxiliary LLM."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        self.llm = llm or BedrockLLM(config.bedrock_llm)

        logger.info('Initialized SemanticReformulator')

    def reformulate_for_storage(self, text: str, context: Optional[str] = None, metadata: Optional[Dict[str, str]] = None) -> MemoryReformulations:
        """Reformulate content that is about to be stored.

        Args:
            text: Content to store
            context: Optional situational context
            metadata: Optional key/value metadata

        Returns:
            Four non-empty reformulations

        Raises:
            ValidationError: If the text is blank
            SemanticReformulationError: If the LLM call fails or returns an invalid payload
        """
        if not text or not text.strip():
            raise ValidationError('Content to reformulate cannot be empty')

        metadata_string = ', '.join(f'{key}:{value}' for key, value in metadata.items()) if metadata else 'None'
        context_string = context if context and context.strip() else 'None'

        prompt = f"""You are a semantic reformulation assistant. Your task is to generate multiple semantic representations of content for storage in a memory system.

Given the following input:
- Content: {text}
- Context: {context_string}
- Metadata: {metadata_string}

Generate four different semantic reformulations that capture different aspects of the content:

1. **Topical**: Focus on the main topics, themes, and subject matter
2. **Content**: Focus on the actual information, facts, and details
3. **Context**: Focus on the situational, temporal, and relational aspects
4. **Metadata**: Focus on the structural, categorical, and classificatory aspects

{RESPONSE_FORMAT}"""

        return self._reformulate(prompt)

    def reformulate_for_query(self, text: str, conversation_context: Optional[str] = None) -> MemoryReformulations:
        """Reformulate a retrieval query.

        Raises:
            ValidationError: If the query is blank
            SemanticReformulationError: If the LLM call fails or returns an invalid payload
        """
        if not text or not text.strip():
            raise ValidationError('Query to reformulate cannot be empty')

        context_string = conversation_context if conversation_context and conversation_context.strip() else 'None'

        prompt = f"""You are a semantic reformulation assistant. Your task is to generate multiple semantic representations of a query for retrieval from a memory system.

Given the following input:
- Query: {text}
- Conversation Context: {context_string}

Generate four different semantic reformulations that capture different aspects of the query:

1. **Topical**: Focus on the main topics, themes, and subject matter being queried
2. **Content**: Focus on the specific information, facts, and details being sought
3. **Context**: Focus on the situational, temporal, and relational aspects of the query
4. **Metadata**: Focus on the structural, categorical, and classificatory aspects of what is being searched for

{RESPONSE_FORMAT}"""

        return self._reformulate(prompt)

    def _reformulate(self, prompt: str) -> MemoryReformulations:
        try:
            response = self.llm.complete([{'role': 'user', 'content': prompt}], model_role=AUXILIARY, temperature=REFORMULATION_TEMPERATURE)
        except BedrockLLMError as e:
            logger.error(f'LLM error during reformulation: {e}')
            raise SemanticReformulationError(f'Reformulation failed: {e}')

        try:
            data = loads_case_insensitive(clean_json_response(response))
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f'Failed to parse reformulation JSON: {e}')
            raise SemanticReformulationError(f'Failed to parse JSON response from language model: {e}')

        reformulations = MemoryReformulations(topical=str(data.get('topical') or ''),
                                              content=str(data.get('content') or ''),
                                              context=str(data.get('context') or ''),
                                              metadata=str(data.get('metadata') or ''))

        if not reformulations.is_complete():
            logger.warning('Reformulation response is missing one or more aspects')
            raise SemanticReformulationError('Language model response contains empty reformulations')

        logger.debug('Reformulated text into four aspects')
        return reformulations
