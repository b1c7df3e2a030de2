"""
Memorygram Service: reformulate, embed and persist memory nodes.
"""

import uuid
from typing import Any, Dict, List, Optional, Union

from ..models.core import HAS_CHAT_ID, ROOT_OF, GraphRelationship, Memorygram, MemorygramType, ReformulationAspect
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.errors import ValidationError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_seconds
from .memorygram_repository import MemorygramRepository, MemorygramRepositoryError
from .semantic_reformulator import SemanticReformulationError, SemanticReformulator

logger = get_logger(__name__)

# Namespace for the deterministic ids of per-chat Experience roots and session markers
CHAT_NAMESPACE = uuid.UUID('6f1c2a9e-4b0d-5e3a-9c7f-2d8b1e4a6c30')
CHAT_SESSION_SOURCE = 'ChatSession'


class MemorygramServiceError(Exception):
    """Custom exception for memorygram service errors."""
    pass


def experience_id_for_chat(chat_id: str) -> str:
    return str(uuid.uuid5(CHAT_NAMESPACE, f'experience/{chat_id}'))


def session_marker_id_for_chat(chat_id: str) -> str:
    return str(uuid.uuid5(CHAT_NAMESPACE, f'session/{chat_id}'))


class MemorygramService:
    """Turn raw memorygrams into fully embedded nodes and manage their relationships."""

    def __init__(self,
                 repository: Optional[MemorygramRepository] = None,
                 embed: Optional[BedrockEmbed] = None,
                 reformulator: Optional[SemanticReformulator] = None):
        """Initialize the memorygram service."""
        self.repository = repository or MemorygramRepository()
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.reformulator = reformulator or SemanticReformulator()

        logger.info('Initialized MemorygramService')

    def create_or_update(self, memorygram: Memorygram, context: Optional[str] = None, metadata: Optional[Dict[str, str]] = None) -> Memorygram:
        """Reformulate, embed and persist a memorygram.

        A failed reformulation aborts the whole call. A failed embedding only
        leaves that aspect's embedding empty.

        Args:
            memorygram: Node to store; its content is reformulated
            context: Optional situational context passed to the reformulator
            metadata: Optional key/value metadata passed to the reformulator

        Returns:
            The stored node

        Raises:
            ValidationError: If the content is blank
            MemorygramServiceError: If reformulation or persistence fails
        """
        try:
            reformulations = self.reformulator.reformulate_for_storage(memorygram.content, context=context, metadata=metadata)
        except SemanticReformulationError as e:
            logger.error(f'Failed to reformulate content for memorygram {memorygram.id}: {e}')
            raise MemorygramServiceError(f'Reformulation failed for memorygram {memorygram.id}: {e}')

        for aspect in ReformulationAspect:
            text = reformulations[aspect]
            if not text:
                continue
            try:
                memorygram = memorygram.with_embedding(aspect, self.embed.embed_document(text))
            except BedrockEmbedError as e:
                logger.warning(f'Failed to generate embedding for {aspect.value} of memorygram {memorygram.id}: {e}')

        try:
            stored = self.repository.upsert(memorygram)
        except MemorygramRepositoryError as e:
            raise MemorygramServiceError(f'Failed to store memorygram {memorygram.id}: {e}')

        logger.debug(f'Stored memorygram {stored.id} with {sum(1 for a in ReformulationAspect if stored.embedding_for(a))}/4 embeddings')
        return stored

    def get(self, memorygram_id: str) -> Optional[Memorygram]:
        return self.repository.get(memorygram_id)

    def create_association(self, from_id: str, to_id: str, weight: float) -> Memorygram:
        """Associate two existing memorygrams and return the source node.

        Raises:
            ValidationError: If the weight is outside [0, 1]
            NotFoundError: If either endpoint does not exist
        """
        return self.repository.create_association(from_id, to_id, weight)

    def create_relationship(self,
                            from_id: str,
                            to_id: str,
                            relationship_type: str,
                            weight: float,
                            properties: Optional[Union[str, Dict[str, Any]]] = None) -> GraphRelationship:
        return self.repository.create_relationship(from_id, to_id, relationship_type, weight, properties)

    def update_relationship(self,
                            relationship_id: str,
                            weight: Optional[float] = None,
                            properties: Optional[Union[str, Dict[str, Any]]] = None,
                            is_active: Optional[bool] = None) -> GraphRelationship:
        return self.repository.update_relationship(relationship_id, weight=weight, properties=properties, is_active=is_active)

    def get_relationships_by_node(self, memorygram_id: str, include_incoming: bool = True, include_outgoing: bool = True) -> List[GraphRelationship]:
        return self.repository.get_relationships_by_node(memorygram_id, include_incoming, include_outgoing)

    def get_relationships_by_type(self, relationship_type: str) -> List[GraphRelationship]:
        return self.repository.get_relationships_by_type(relationship_type)

    def ensure_chat_experience(self, chat_id: str) -> Memorygram:
        """Get or create the Experience root of a chat.

        The root is an Experience node whose subtype is the chat id, linked to
        a session marker node through a HAS_CHAT_ID relationship. A root left
        without its relationship by an earlier failure is completed here.
        """
        if not chat_id or not chat_id.strip():
            raise ValidationError('Chat id is required')

        experience_id = experience_id_for_chat(chat_id)
        marker_id = session_marker_id_for_chat(chat_id)
        try:
            experience = self.repository.get(experience_id, include_embeddings=False)
            if experience is not None and self.repository.find_relationships(
                    from_id=experience_id, to_id=marker_id, relationship_type=HAS_CHAT_ID, is_active=True):
                return experience

            logger.info(f'Creating Experience root for chat {chat_id}')
            if not self.repository.exists(marker_id):
                self.repository.upsert(
                    Memorygram(id=marker_id, content=chat_id, type=MemorygramType.EXPERIENCE, source=CHAT_SESSION_SOURCE))
            if experience is None:
                experience = self.repository.upsert(
                    Memorygram(id=experience_id,
                               content=f'Conversation {chat_id}',
                               type=MemorygramType.EXPERIENCE,
                               subtype=chat_id,
                               source=CHAT_SESSION_SOURCE,
                               chat_id=chat_id))
            self.repository.create_relationship(experience_id, marker_id, HAS_CHAT_ID, 1.0)
        except MemorygramRepositoryError as e:
            raise MemorygramServiceError(f'Failed to create Experience root for chat {chat_id}: {e}')

        return experience

    def record_chat_turn(self,
                         chat_id: str,
                         content: str,
                         type: MemorygramType,
                         source: str = '',
                         timestamp: Optional[int] = None,
                         previous_memorygram_id: Optional[str] = None) -> Memorygram:
        """Persist one conversational turn and root it under the chat's Experience.

        Args:
            chat_id: External chat session id
            content: Utterance text
            type: USER_INPUT or ASSISTANT_RESPONSE
            source: Producer of the utterance
            timestamp: Logical event time in seconds, defaults to now
            previous_memorygram_id: Id of the preceding turn, if any

        Returns:
            The stored turn

        Raises:
            ValidationError: If the chat id is blank or the type is not a conversational turn
            MemorygramServiceError: If reformulation or persistence fails
        """
        if type not in (MemorygramType.USER_INPUT, MemorygramType.ASSISTANT_RESPONSE):
            raise ValidationError(f'Chat turns must be UserInput or AssistantResponse, got {type.value}')

        experience = self.ensure_chat_experience(chat_id)
        turn = Memorygram.new(content,
                              type,
                              source=source,
                              timestamp=timestamp if timestamp is not None else to_seconds(),
                              chat_id=chat_id,
                              previous_memorygram_id=previous_memorygram_id)

        stored = self.create_or_update(turn)
        try:
            self.repository.create_relationship(experience.id, stored.id, ROOT_OF, 1.0)
        except MemorygramRepositoryError as e:
            raise MemorygramServiceError(f'Failed to link turn {stored.id} to chat {chat_id}: {e}')

        logger.info(f'Recorded {type.value} turn {stored.id} for chat {chat_id}')
        return stored
