"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

SEARCH_DOCUMENT = 'search_document'
SEARCH_QUERY = 'search_query'


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client turning text into fixed-length vectors."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def embed(self, text: str, input_type: str = SEARCH_DOCUMENT) -> List[float]:
        """
        Generate an embedding vector for text.

        Args:
            text: Text to embed
            input_type: SEARCH_DOCUMENT for stored content, SEARCH_QUERY for queries

        Returns:
            List of embedding values of length ``dimension``

        Raises:
            BedrockEmbedError: If the text is blank or embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty text')

        model = self.model_id.lower()
        if 'titan' in model:
            response = self._call_with_retry({'inputText': text, 'dimensions': self.dimension})
            embedding = response.get('embedding') or []
        elif 'cohere' in model:
            if self.dimension != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')
            response = self._call_with_retry({'input_type': input_type, 'texts': [text]})
            embeddings = response.get('embeddings') or [[]]
            embedding = embeddings[0]
        else:
            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        if len(embedding) != self.dimension:
            raise BedrockEmbedError(f'Expected embedding of length {self.dimension}, got {len(embedding)}')

        return [float(value) for value in embedding]

    def embed_document(self, text: str) -> List[float]:
        return self.embed(text, SEARCH_DOCUMENT)

    def embed_query(self, text: str) -> List[float]:
        return self.embed(text, SEARCH_QUERY)

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_document('test')) == self.dimension

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
