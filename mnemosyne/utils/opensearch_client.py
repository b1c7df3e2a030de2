"""
OpenSearch client wrapper for per-aspect vector similarity search.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication, one k-NN index per embedding aspect."""

    def __init__(self, config: OpenSearchConfig, client=None, index_sync_seconds: float = 15.0):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Optional pre-built opensearch-py client
            index_sync_seconds: Wait after creating an index before using it
        """
        self.config = config
        self.index_sync_seconds = index_sync_seconds

        if client is not None:
            self.client = client
        else:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            self.client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                     http_auth=auth,
                                     use_ssl=True,
                                     verify_certs=True,
                                     connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name_for(self, index_type: str) -> str:
        """Name of the index holding one aspect's embeddings."""
        return f'{self.config.index_name}_{index_type}'

    def create_index_if_not_exists(self, index_type: str) -> str:
        """
        Create an aspect index if it doesn't exist.

        Args:
            index_type: Aspect suffix of the index (topical, content, context, metadata)

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name_for(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            index_body = {
                'mappings': {
                    'properties': {
                        'id': {
                            'type': 'keyword'
                        },
                        'scope_id': {
                            'type': 'keyword'
                        },
                        'type': {
                            'type': 'keyword'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                        'updated_at': {
                            'type': 'date'
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=index_name, body=index_body)
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                if self.index_sync_seconds:
                    logger.info(f'Waiting {self.index_sync_seconds}s for index {index_name} sync-up...')
                    time.sleep(self.index_sync_seconds)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def index_embedding(self, doc_id: str, embedding: List[float], index_type: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Upsert the embedding document of one node in an aspect index.

        Args:
            doc_id: Node id, used as the document id
            embedding: Embedding vector
            index_type: Aspect suffix of the index
            metadata: Extra keyword fields (scope_id, type, updated_at)

        Returns:
            True if the document was created or updated
        """
        index_name = self.index_name_for(index_type)
        document = {'id': doc_id, 'embedding': embedding, **(metadata or {})}

        try:
            response = self.client.index(index=index_name, id=doc_id, body=document)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed embedding for {doc_id} in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error indexing document: {e}')

    def get_embedding(self, doc_id: str, index_type: str) -> List[float]:
        """
        Fetch the stored embedding of one node from an aspect index.

        Returns:
            The embedding, or an empty list if the node has none for this aspect
        """
        index_name = self.index_name_for(index_type)

        try:
            response = self.client.get(index=index_name, id=doc_id)
            return list(response.get('_source', {}).get('embedding') or [])

        except OpenSearchNotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error getting embedding {doc_id} from {index_name}: {e}')
            raise OpenSearchError(f'Failed to get embedding: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting embedding {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting embedding: {e}')

    def delete_embedding(self, doc_id: str, index_type: str) -> bool:
        """
        Delete a node's embedding document from an aspect index.

        Returns:
            True if a document was deleted, False if there was none
        """
        index_name = self.index_name_for(index_type)

        try:
            response = self.client.delete(index=index_name, id=doc_id)
            deleted = response.get('result') == 'deleted'
            if deleted:
                logger.debug(f'Deleted embedding {doc_id} from {index_name}')
            return deleted

        except OpenSearchNotFoundError:
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting embedding {doc_id} from {index_name}: {e}')
            raise OpenSearchError(f'Failed to delete embedding: {e}')

    def vector_search(self, query_vector: List[float], top_k: int, index_type: str, scope_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Perform vector similarity search against one aspect index.

        Args:
            query_vector: Query vector for similarity search
            top_k: Number of results to return
            index_type: Aspect suffix of the index
            scope_id: Optional scope filter

        Returns:
            List of results ``{'id', 'score', 'document'}`` ordered by descending score
        """
        index_name = self.index_name_for(index_type)

        knn_query = {'knn': {'embedding': {'vector': query_vector, 'k': top_k}}}
        if scope_id:
            query = {'bool': {'must': [knn_query], 'filter': [{'term': {'scope_id': scope_id}}]}}
        else:
            query = knn_query

        search_body = {
            'size': top_k,
            'query': query,
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        try:
            response = self.client.search(index=index_name, body=search_body)

            results = []
            for hit in response['hits']['hits']:
                results.append({'id': hit['_source'].get('id', hit['_id']), 'score': hit['_score'], 'document': hit['_source']})

            results.sort(key=lambda r: r['score'], reverse=True)
            logger.debug(f'Vector search on {index_name} returned {len(results)} results')
            return results[:top_k]

        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise OpenSearchError(f'Unexpected error in vector search: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name_for('content'))

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
