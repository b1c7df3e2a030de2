"""
Core data models for the memory graph.
"""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import to_seconds, utc_now

# Reserved relationship type conventions; other types may coexist
ROOT_OF = 'ROOT_OF'
HAS_CHAT_ID = 'HAS_CHAT_ID'
ASSOCIATED_WITH = 'ASSOCIATED_WITH'


class MemorygramType(str, Enum):
    """Closed set of memory node kinds."""
    INVALID = 'Invalid'
    USER_INPUT = 'UserInput'
    ASSISTANT_RESPONSE = 'AssistantResponse'
    EXPERIENCE = 'Experience'
    REFLECTION = 'Reflection'

    @classmethod
    def parse(cls, value: str) -> 'MemorygramType':
        """Parse a stored type name, case-insensitively.

        Raises:
            ValueError: If the name is not a known type
        """
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        raise ValueError(f'Unknown memorygram type: {value}')


class ReformulationAspect(str, Enum):
    """The four semantic facets each memorygram is reformulated and embedded along."""
    TOPICAL = 'Topical'
    CONTENT = 'Content'
    CONTEXT = 'Context'
    METADATA = 'Metadata'

    @property
    def index_type(self) -> str:
        """Suffix of the vector index holding this aspect's embeddings."""
        return self.value.lower()

    @property
    def field_name(self) -> str:
        """Name of the Memorygram attribute holding this aspect's embedding."""
        return f'{self.value.lower()}_embedding'

    @classmethod
    def parse(cls, value: str) -> 'ReformulationAspect':
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        raise ValueError(f'Unknown reformulation aspect: {value}')


@dataclass
class Memorygram:
    """A single persisted memory node (utterance, reflection or experience marker).

    Embeddings stay empty until their aspect's reformulation and embedding
    succeed; any subset may be populated.
    """
    id: str
    content: str
    type: MemorygramType
    subtype: Optional[str] = None
    topical_embedding: List[float] = field(default_factory=list)
    content_embedding: List[float] = field(default_factory=list)
    context_embedding: List[float] = field(default_factory=list)
    metadata_embedding: List[float] = field(default_factory=list)
    source: str = ''
    timestamp: int = field(default_factory=to_seconds)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    chat_id: Optional[str] = None
    previous_memorygram_id: Optional[str] = None
    next_memorygram_id: Optional[str] = None
    sequence: Optional[int] = None

    @classmethod
    def new(cls, content: str, type: MemorygramType, **kwargs: Any) -> 'Memorygram':
        """Create a memorygram with a fresh identifier."""
        return cls(id=str(uuid.uuid4()), content=content, type=type, **kwargs)

    def embedding_for(self, aspect: ReformulationAspect) -> List[float]:
        return getattr(self, aspect.field_name)

    def with_embedding(self, aspect: ReformulationAspect, embedding: List[float]) -> 'Memorygram':
        """Return a copy with one aspect's embedding replaced."""
        return replace(self, **{aspect.field_name: list(embedding)})

    def has_embeddings(self) -> bool:
        return any(self.embedding_for(aspect) for aspect in ReformulationAspect)

    @property
    def scope_id(self) -> Optional[str]:
        """Identifier used to scope similarity searches (chat id, else subtype)."""
        return self.chat_id or self.subtype


@dataclass
class GraphRelationship:
    """A directed, typed, weighted edge between two memorygrams."""
    id: str
    from_id: str
    to_id: str
    relationship_type: str
    weight: float
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    properties: Optional[str] = None  # JSON-serialized key/value payload
    is_active: bool = True

    def properties_dict(self) -> Dict[str, Any]:
        if not self.properties:
            return {}
        try:
            data = json.loads(self.properties)
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}


@dataclass
class MemoryReformulations:
    """Four aspect-specific rewrites of one input text."""
    topical: str = ''
    content: str = ''
    context: str = ''
    metadata: str = ''

    def __getitem__(self, aspect: ReformulationAspect) -> str:
        return getattr(self, aspect.value.lower())

    def is_complete(self) -> bool:
        """A reformulation result is only valid when no field is blank."""
        return all(self[aspect].strip() for aspect in ReformulationAspect)


@dataclass
class MemorygramWithScore:
    """A memorygram returned by similarity search together with its score."""
    memorygram: Memorygram
    score: float

    @property
    def id(self) -> str:
        return self.memorygram.id
