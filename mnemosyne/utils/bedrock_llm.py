"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Model roles; each resolves to a configured model id
MASTER = 'Master'
AUXILIARY = 'Auxiliary'


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


def to_bedrock_messages(messages: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], str]:
    """Split plain ``{'role', 'content'}`` chat messages into Converse messages and a system prompt.

    Messages whose content is already a list of content blocks are passed through.
    """
    system_parts = []
    converted = []
    for message in messages:
        role = message.get('role', 'user')
        content = message.get('content', '')
        if role == 'system':
            system_parts.append(content if isinstance(content, str) else ''.join(b.get('text', '') for b in content))
            continue
        if isinstance(content, str):
            content = [{'text': content}]
        converted.append({'role': role, 'content': content})
    return converted, '\n\n'.join(part for part in system_parts if part)


class BedrockLLM:
    """Amazon Bedrock chat-completion client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=600,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with models: master={config.master_model_id}, '
                    f'auxiliary={config.auxiliary_model_id}')

    def complete(self,
                 messages: List[Dict[str, Any]],
                 model_role: str = MASTER,
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None) -> str:
        """
        Generate a completion for plain chat messages using the model bound to a role.

        Args:
            messages: List of ``{'role': ..., 'content': ...}`` dicts; system messages become the system prompt
            model_role: MASTER or AUXILIARY
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)

        Returns:
            Generated text

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        bedrock_messages, system_prompt = to_bedrock_messages(messages)
        if not bedrock_messages:
            raise BedrockLLMError('At least one non-system message is required')

        response, _ = self.generate_response(messages=bedrock_messages,
                                             system_prompt=system_prompt,
                                             model_id=self.config.model_for_role(model_role),
                                             max_tokens=max_tokens,
                                             temperature=temperature)
        return response

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str = '',
                          model_id: Optional[str] = None,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            model_id: Model to invoke (uses the master model if None)
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        model_id = model_id or self.config.master_model_id
        max_tokens = max_tokens or self.config.max_tokens
        temperature = self.config.temperature if temperature is None else temperature

        inf_params = {
            'maxTokens': max_tokens,
            'temperature': temperature,
            'stopSequences': stop_sequences or [],
        }
        request = {'modelId': model_id, 'messages': messages, 'inferenceConfig': inf_params}
        if system_prompt:
            request['system'] = [{'text': system_prompt}]

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts} ({model_id})')

                stream = self.bedrock_runtime.converse_stream(**request).get('stream')

                msg = ''
                invoke_metrics = None

                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta']['text']
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata']['usage'], **event['metadata']['metrics']}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.complete([{
                'role': 'system',
                'content': "You are a helpful assistant. Respond with just 'OK'."
            }, {
                'role': 'user',
                'content': 'Hi'
            }],
                                     model_role=AUXILIARY,
                                     max_tokens=10,
                                     temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
