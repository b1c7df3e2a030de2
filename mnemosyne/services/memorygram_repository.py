"""
Memorygram Repository: persistence of memory nodes and relationships.

Nodes and edges live in Neptune; each aspect embedding lives in its own
OpenSearch k-NN index keyed by the node id.
"""

import json
import math
import uuid
from typing import Any, Dict, List, Optional, Union

from ..models.core import ASSOCIATED_WITH, GraphRelationship, Memorygram, MemorygramType, MemorygramWithScore, ReformulationAspect
from ..utils.config import config
from ..utils.errors import NotFoundError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, NeptuneError
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import parse_datetime, to_iso, utc_now

logger = get_logger(__name__)

MEMORYGRAM_LABEL = 'Memorygram'


class MemorygramRepositoryError(Exception):
    """Custom exception for graph or vector store failures."""
    pass


def validate_weight(weight: float) -> float:
    """Relationship weights must lie in [0, 1]."""
    try:
        weight = float(weight)
    except (TypeError, ValueError):
        raise ValidationError(f'Weight must be a number, got {weight!r}')
    if math.isnan(weight) or not 0.0 <= weight <= 1.0:
        raise ValidationError(f'Weight must be between 0 and 1, got {weight}')
    return weight


def serialize_properties(properties: Optional[Union[str, Dict[str, Any]]]) -> Optional[str]:
    if properties is None or isinstance(properties, str):
        return properties
    return json.dumps(properties, sort_keys=True, default=str)


def parse_memorygram_type(value: Any) -> MemorygramType:
    """Parse a stored type name; names outside the enum read as Invalid."""
    try:
        return MemorygramType.parse(value)
    except ValueError:
        logger.warning(f'Unknown memorygram type {value!r} read as {MemorygramType.INVALID.value}')
        return MemorygramType.INVALID


def memorygram_from_vertex(vertex: Dict[str, Any]) -> Memorygram:
    """Build a Memorygram (without embeddings) from stored vertex properties."""
    sequence = vertex.get('sequence')
    return Memorygram(id=vertex['id'],
                      content=vertex.get('content', ''),
                      type=parse_memorygram_type(vertex.get('type', MemorygramType.INVALID.value)),
                      subtype=vertex.get('subtype') or None,
                      source=vertex.get('source', ''),
                      timestamp=int(vertex.get('timestamp') or 0),
                      created_at=parse_datetime(vertex.get('created_at')),
                      updated_at=parse_datetime(vertex.get('updated_at')),
                      chat_id=vertex.get('chat_id') or None,
                      previous_memorygram_id=vertex.get('previous_memorygram_id') or None,
                      next_memorygram_id=vertex.get('next_memorygram_id') or None,
                      sequence=int(sequence) if sequence is not None else None)


def relationship_from_edge(edge: Dict[str, Any]) -> GraphRelationship:
    """Build a GraphRelationship from a projected edge."""
    is_active = edge.get('is_active', True)
    if isinstance(is_active, str):
        is_active = is_active.lower() == 'true'
    return GraphRelationship(id=edge['id'],
                             from_id=edge['from_id'],
                             to_id=edge['to_id'],
                             relationship_type=edge.get('label', ''),
                             weight=float(edge.get('weight', 0.0)),
                             created_at=parse_datetime(edge.get('created_at')),
                             updated_at=parse_datetime(edge.get('updated_at')),
                             properties=edge.get('properties'),
                             is_active=bool(is_active))


class MemorygramRepository:
    """Persistence contract for memorygrams, relationships and multi-aspect similarity search."""

    def __init__(self,
                 neptune: Optional[NeptuneClient] = None,
                 opensearch: Optional[OpenSearchClient] = None,
                 create_indexes: bool = True):
        """
        Initialize the repository.

        Args:
            neptune: Graph client (built from global config if None)
            opensearch: Vector index client (built from global config if None)
            create_indexes: Create the four aspect indexes if missing
        """
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)

        if create_indexes:
            for aspect in ReformulationAspect:
                try:
                    self.opensearch.create_index_if_not_exists(aspect.index_type)
                except OpenSearchError as e:
                    logger.warning(f'Failed to create OpenSearch index for {aspect.value}: {e}')

        logger.info('Initialized MemorygramRepository')

    # ------------------------------------------------------------------
    # Memorygrams
    # ------------------------------------------------------------------

    def upsert(self, memorygram: Memorygram) -> Memorygram:
        """Create or update a memorygram and its aspect embeddings.

        Populated embeddings are indexed; an empty embedding removes any vector
        previously stored for that aspect.

        Args:
            memorygram: Node to store

        Returns:
            The stored node

        Raises:
            ValidationError: If the node has no id
            MemorygramRepositoryError: If the graph or vector store fails
        """
        if not memorygram.id or not memorygram.id.strip():
            raise ValidationError('Memorygram id is required')

        now = utc_now()
        properties = {
            'content': memorygram.content,
            'type': memorygram.type.value,
            'subtype': memorygram.subtype,
            'source': memorygram.source,
            'timestamp': int(memorygram.timestamp),
            'chat_id': memorygram.chat_id,
            'previous_memorygram_id': memorygram.previous_memorygram_id,
            'next_memorygram_id': memorygram.next_memorygram_id,
            'sequence': memorygram.sequence,
            'updated_at': to_iso(now)
        }

        try:
            vertex = self.neptune.upsert_vertex(MEMORYGRAM_LABEL, memorygram.id, properties, created_at=to_iso(memorygram.created_at))
            stored = memorygram_from_vertex(vertex)

            for aspect in ReformulationAspect:
                embedding = memorygram.embedding_for(aspect)
                if not embedding:
                    # A vector left from earlier content must not outlive it
                    self.opensearch.delete_embedding(memorygram.id, aspect.index_type)
                    continue
                self.opensearch.index_embedding(memorygram.id,
                                                embedding,
                                                aspect.index_type,
                                                metadata={
                                                    'scope_id': memorygram.scope_id,
                                                    'type': memorygram.type.value,
                                                    'updated_at': to_iso(now)
                                                })
                stored = stored.with_embedding(aspect, embedding)

        except (NeptuneError, OpenSearchError) as e:
            logger.error(f'Failed to upsert memorygram {memorygram.id}: {e}')
            raise MemorygramRepositoryError(f'Failed to upsert memorygram {memorygram.id}: {e}')

        logger.debug(f'Upserted memorygram {memorygram.id} ({memorygram.type.value})')
        return stored

    def get(self, memorygram_id: str, include_embeddings: bool = True) -> Optional[Memorygram]:
        """Get a memorygram by id.

        Args:
            memorygram_id: Node id
            include_embeddings: Load the four aspect embeddings as well

        Returns:
            The node, or None if it does not exist
        """
        try:
            vertex = self.neptune.get_vertex(memorygram_id)
            if vertex is None:
                logger.debug(f'Memorygram {memorygram_id} not found')
                return None

            memorygram = memorygram_from_vertex(vertex)
            if include_embeddings:
                for aspect in ReformulationAspect:
                    embedding = self.opensearch.get_embedding(memorygram_id, aspect.index_type)
                    if embedding:
                        memorygram = memorygram.with_embedding(aspect, embedding)
            return memorygram

        except (NeptuneError, OpenSearchError) as e:
            logger.error(f'Failed to get memorygram {memorygram_id}: {e}')
            raise MemorygramRepositoryError(f'Failed to get memorygram {memorygram_id}: {e}')

    def exists(self, memorygram_id: str) -> bool:
        try:
            return self.neptune.vertex_exists(memorygram_id)
        except NeptuneError as e:
            raise MemorygramRepositoryError(f'Failed to check memorygram {memorygram_id}: {e}')

    def find_similar(self,
                     query_vector: List[float],
                     aspect: ReformulationAspect,
                     top_k: int,
                     scope_id: Optional[str] = None) -> List[MemorygramWithScore]:
        """Find memorygrams whose aspect embedding is most similar to a query vector.

        Args:
            query_vector: Query embedding
            aspect: Which aspect index to search
            top_k: Maximum number of results, must be positive
            scope_id: Restrict results to one scope (chat id)

        Returns:
            At most top_k scored nodes, ordered by descending score

        Raises:
            ValidationError: If top_k is not positive or the vector is empty
            MemorygramRepositoryError: If the graph or vector store fails
        """
        if top_k <= 0:
            raise ValidationError('TopK must be greater than 0')
        if not query_vector:
            raise ValidationError('Query vector cannot be empty')

        try:
            hits = self.opensearch.vector_search(query_vector, top_k, aspect.index_type, scope_id=scope_id)

            results = []
            for hit in hits:
                memorygram = self.get(hit['id'], include_embeddings=False)
                if memorygram is None:
                    logger.warning(f"Vector index references missing memorygram {hit['id']}, skipping")
                    continue
                results.append(MemorygramWithScore(memorygram=memorygram, score=float(hit['score'])))

        except OpenSearchError as e:
            logger.error(f'Failed to find similar memorygrams on {aspect.value}: {e}')
            raise MemorygramRepositoryError(f'Failed to find similar memorygrams: {e}')

        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug(f'Found {len(results)} similar memorygrams on {aspect.value}')
        return results[:top_k]

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def create_relationship(self,
                            from_id: str,
                            to_id: str,
                            relationship_type: str,
                            weight: float,
                            properties: Optional[Union[str, Dict[str, Any]]] = None) -> GraphRelationship:
        """Create a typed, weighted relationship between two existing memorygrams.

        Raises:
            ValidationError: If the weight is outside [0, 1] or the type is empty
            NotFoundError: If either endpoint does not exist
            MemorygramRepositoryError: If the graph store fails
        """
        weight = validate_weight(weight)
        if not relationship_type or not relationship_type.strip():
            raise ValidationError('Relationship type is required')

        try:
            if not self.neptune.vertex_exists(from_id):
                logger.warning(f'Source Memorygram with ID {from_id} not found')
                raise NotFoundError(f'Memorygram with ID {from_id} not found')
            if not self.neptune.vertex_exists(to_id):
                logger.warning(f'Target Memorygram with ID {to_id} not found')
                raise NotFoundError(f'Memorygram with ID {to_id} not found')

            now = to_iso(utc_now())
            edge = self.neptune.create_edge(str(uuid.uuid4()),
                                            from_id,
                                            to_id,
                                            relationship_type,
                                            properties={
                                                'weight': weight,
                                                'properties': serialize_properties(properties),
                                                'is_active': True,
                                                'created_at': now,
                                                'updated_at': now
                                            })
        except NeptuneError as e:
            logger.error(f'Failed to create {relationship_type} relationship {from_id} -> {to_id}: {e}')
            raise MemorygramRepositoryError(f'Failed to create relationship: {e}')

        return relationship_from_edge(edge)

    def update_relationship(self,
                            relationship_id: str,
                            weight: Optional[float] = None,
                            properties: Optional[Union[str, Dict[str, Any]]] = None,
                            is_active: Optional[bool] = None) -> GraphRelationship:
        """Update weight, properties or the active flag of a relationship.

        Raises:
            ValidationError: If the weight is outside [0, 1]
            NotFoundError: If the relationship does not exist
            MemorygramRepositoryError: If the graph store fails
        """
        if weight is not None:
            weight = validate_weight(weight)

        try:
            edge = self.neptune.update_edge(relationship_id, {
                'weight': weight,
                'properties': serialize_properties(properties),
                'is_active': is_active,
                'updated_at': to_iso(utc_now())
            })
        except NeptuneError as e:
            logger.error(f'Failed to update relationship {relationship_id}: {e}')
            raise MemorygramRepositoryError(f'Failed to update relationship: {e}')

        if edge is None:
            raise NotFoundError(f'Relationship with ID {relationship_id} not found')
        return relationship_from_edge(edge)

    def get_relationship(self, relationship_id: str) -> Optional[GraphRelationship]:
        try:
            edge = self.neptune.get_edge(relationship_id)
        except NeptuneError as e:
            raise MemorygramRepositoryError(f'Failed to get relationship: {e}')
        return relationship_from_edge(edge) if edge else None

    def get_relationships_by_node(self, memorygram_id: str, include_incoming: bool = True, include_outgoing: bool = True) -> List[GraphRelationship]:
        try:
            edges = self.neptune.get_edges_by_vertex(memorygram_id, include_incoming, include_outgoing)
        except NeptuneError as e:
            logger.error(f'Failed to get relationships for {memorygram_id}: {e}')
            raise MemorygramRepositoryError(f'Failed to get relationships for memorygram: {e}')
        return [relationship_from_edge(edge) for edge in edges]

    def get_relationships_by_type(self, relationship_type: str) -> List[GraphRelationship]:
        try:
            edges = self.neptune.get_edges_by_label(relationship_type)
        except NeptuneError as e:
            logger.error(f'Failed to get {relationship_type} relationships: {e}')
            raise MemorygramRepositoryError(f'Failed to get relationships by type: {e}')
        return [relationship_from_edge(edge) for edge in edges]

    def find_relationships(self,
                           from_id: Optional[str] = None,
                           to_id: Optional[str] = None,
                           relationship_type: Optional[str] = None,
                           min_weight: Optional[float] = None,
                           max_weight: Optional[float] = None,
                           is_active: Optional[bool] = None) -> List[GraphRelationship]:
        """Find relationships matching every given filter."""
        try:
            edges = self.neptune.find_edges(from_id=from_id,
                                            to_id=to_id,
                                            label=relationship_type,
                                            min_weight=min_weight,
                                            max_weight=max_weight,
                                            is_active=is_active)
        except NeptuneError as e:
            logger.error(f'Failed to find relationships: {e}')
            raise MemorygramRepositoryError(f'Failed to find relationships: {e}')
        return [relationship_from_edge(edge) for edge in edges]

    def create_association(self, from_id: str, to_id: str, weight: float) -> Memorygram:
        """Associate two memorygrams and return the source node.

        Raises:
            ValidationError: If the weight is outside [0, 1]
            NotFoundError: If either endpoint does not exist
        """
        self.create_relationship(from_id, to_id, ASSOCIATED_WITH, weight)
        memorygram = self.get(from_id)
        if memorygram is None:
            raise NotFoundError(f'Memorygram with ID {from_id} not found')
        return memorygram
