"""
Pytest configuration and shared fixtures.

- memory_repository: in-memory stand-in for MemorygramRepository
- fake_embed: deterministic embedding client with per-text failures
- mock_llm: MagicMock completion client returning a reformulation payload
- reformulator: SemanticReformulator over mock_llm
"""

import json
import math
import uuid
from datetime import timedelta
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from mnemosyne.models.core import ASSOCIATED_WITH, GraphRelationship, Memorygram, MemorygramType, MemorygramWithScore
from mnemosyne.services.memorygram_repository import serialize_properties, validate_weight
from mnemosyne.services.semantic_reformulator import SemanticReformulator
from mnemosyne.utils.bedrock_embed import BedrockEmbedError
from mnemosyne.utils.errors import NotFoundError, ValidationError
from mnemosyne.utils.timestamp_utils import utc_now

EMBEDDING_DIMENSION = 4


def reformulation_payload(prefix: str = '') -> str:
    return json.dumps({
        'Topical': f'{prefix}topics',
        'Content': f'{prefix}facts',
        'Context': f'{prefix}situation',
        'Metadata': f'{prefix}classification'
    })


class FakeEmbed:
    """Embedding client producing a fixed-length vector per text."""

    def __init__(self, failing_texts=()):
        self.failing_texts = set(failing_texts)
        self.calls: List[str] = []

    def embed(self, text: str, input_type: str = 'search_document') -> List[float]:
        self.calls.append(text)
        if text in self.failing_texts:
            raise BedrockEmbedError(f'Embedding failed for {text}')
        seed = sum(ord(c) for c in text)
        return [float((seed * (i + 1)) % 17 + 1) for i in range(EMBEDDING_DIMENSION)]

    def embed_document(self, text: str) -> List[float]:
        return self.embed(text)

    def embed_query(self, text: str) -> List[float]:
        return self.embed(text, 'search_query')


def _cosine(a: List[float], b: List[float]) -> float:
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return sum(x * y for x, y in zip(a, b)) / norm if norm else 0.0


class InMemoryMemorygramRepository:
    """Dictionary-backed repository with the same contract as MemorygramRepository."""

    def __init__(self):
        self.nodes: Dict[str, Memorygram] = {}
        self.relationships: Dict[str, GraphRelationship] = {}

    def upsert(self, memorygram: Memorygram) -> Memorygram:
        if not memorygram.id:
            raise ValidationError('Memorygram id is required')
        existing = self.nodes.get(memorygram.id)
        if existing is not None:
            memorygram.created_at = existing.created_at
        memorygram.updated_at = utc_now()
        self.nodes[memorygram.id] = memorygram
        return memorygram

    def get(self, memorygram_id: str, include_embeddings: bool = True) -> Optional[Memorygram]:
        return self.nodes.get(memorygram_id)

    def exists(self, memorygram_id: str) -> bool:
        return memorygram_id in self.nodes

    def find_similar(self, query_vector, aspect, top_k, scope_id=None) -> List[MemorygramWithScore]:
        if top_k <= 0:
            raise ValidationError('TopK must be greater than 0')
        if not query_vector:
            raise ValidationError('Query vector cannot be empty')
        results = [
            MemorygramWithScore(node, _cosine(query_vector, node.embedding_for(aspect)))
            for node in self.nodes.values()
            if node.embedding_for(aspect) and (scope_id is None or node.scope_id == scope_id)
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:top_k]

    def create_relationship(self, from_id, to_id, relationship_type, weight, properties=None) -> GraphRelationship:
        weight = validate_weight(weight)
        if not relationship_type:
            raise ValidationError('Relationship type is required')
        for node_id in (from_id, to_id):
            if node_id not in self.nodes:
                raise NotFoundError(f'Memorygram with ID {node_id} not found')
        relationship = GraphRelationship(id=str(uuid.uuid4()),
                                         from_id=from_id,
                                         to_id=to_id,
                                         relationship_type=relationship_type,
                                         weight=weight,
                                         properties=serialize_properties(properties))
        self.relationships[relationship.id] = relationship
        return relationship

    def update_relationship(self, relationship_id, weight=None, properties=None, is_active=None) -> GraphRelationship:
        if weight is not None:
            weight = validate_weight(weight)
        relationship = self.relationships.get(relationship_id)
        if relationship is None:
            raise NotFoundError(f'Relationship with ID {relationship_id} not found')
        if weight is not None:
            relationship.weight = weight
        if properties is not None:
            relationship.properties = serialize_properties(properties)
        if is_active is not None:
            relationship.is_active = is_active
        relationship.updated_at = utc_now()
        return relationship

    def get_relationship(self, relationship_id):
        return self.relationships.get(relationship_id)

    def get_relationships_by_node(self, memorygram_id, include_incoming=True, include_outgoing=True):
        return [
            r for r in self.relationships.values()
            if (include_outgoing and r.from_id == memorygram_id) or (include_incoming and r.to_id == memorygram_id)
        ]

    def get_relationships_by_type(self, relationship_type):
        return [r for r in self.relationships.values() if r.relationship_type == relationship_type]

    def find_relationships(self, from_id=None, to_id=None, relationship_type=None, min_weight=None, max_weight=None, is_active=None):
        return [
            r for r in self.relationships.values()
            if (from_id is None or r.from_id == from_id) and (to_id is None or r.to_id == to_id) and
            (relationship_type is None or r.relationship_type == relationship_type) and
            (min_weight is None or r.weight >= min_weight) and (max_weight is None or r.weight <= max_weight) and
            (is_active is None or r.is_active == is_active)
        ]

    def create_association(self, from_id, to_id, weight):
        self.create_relationship(from_id, to_id, ASSOCIATED_WITH, weight)
        return self.nodes[from_id]

    # Test helpers

    def add_node(self, type: MemorygramType, content: str = '', subtype: Optional[str] = None, timestamp: int = 0, age_seconds: int = 0,
                 **kwargs) -> Memorygram:
        node = Memorygram.new(content or f'{type.value} node', type, subtype=subtype, timestamp=timestamp, **kwargs)
        node.created_at = utc_now() - timedelta(seconds=age_seconds)
        self.nodes[node.id] = node
        return node


@pytest.fixture
def memory_repository() -> InMemoryMemorygramRepository:
    return InMemoryMemorygramRepository()


@pytest.fixture
def fake_embed() -> FakeEmbed:
    return FakeEmbed()


@pytest.fixture
def mock_llm() -> MagicMock:
    """Completion client whose answer is a complete reformulation payload."""
    llm = MagicMock()
    llm.complete.return_value = reformulation_payload()
    return llm


@pytest.fixture
def reformulator(mock_llm) -> SemanticReformulator:
    return SemanticReformulator(llm=mock_llm)
