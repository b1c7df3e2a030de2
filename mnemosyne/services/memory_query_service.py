"""
Memory Query Service: multi-aspect retrieval and chat history reconstruction.
"""

from typing import Dict, List, Optional

from ..models.core import HAS_CHAT_ID, ROOT_OF, Memorygram, MemorygramType, MemorygramWithScore, ReformulationAspect
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.errors import ValidationError
from ..utils.logging_config import get_logger
from .memorygram_repository import MemorygramRepository, MemorygramRepositoryError
from .semantic_reformulator import SemanticReformulationError, SemanticReformulator

logger = get_logger(__name__)

CHAT_TURN_TYPES = (MemorygramType.USER_INPUT, MemorygramType.ASSISTANT_RESPONSE)


class MemoryQueryError(Exception):
    """Custom exception for memory query errors."""
    pass


class MemoryQueryService:
    """Retrieve memorygrams by aspect similarity and rebuild per-chat conversations from the graph."""

    def __init__(self,
                 repository: Optional[MemorygramRepository] = None,
                 embed: Optional[BedrockEmbed] = None,
                 reformulator: Optional[SemanticReformulator] = None):
        """Initialize the memory query service."""
        self.repository = repository or MemorygramRepository()
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.reformulator = reformulator or SemanticReformulator()

        logger.info('Initialized MemoryQueryService')

    def query(self,
              text: str,
              top_k: Optional[int] = None,
              aspect: Optional[ReformulationAspect] = None,
              scope_id: Optional[str] = None,
              conversation_context: Optional[str] = None) -> List[MemorygramWithScore]:
        """Find the memorygrams most similar to a query.

        The query is reformulated into four aspects; each requested aspect is
        embedded and searched in its own index. An aspect whose embedding or
        search fails contributes no results.

        Args:
            text: Query text
            top_k: Maximum number of results (config default if None)
            aspect: Search only this aspect; all four when None
            scope_id: Restrict results to one scope (chat id)
            conversation_context: Optional context passed to the reformulator

        Returns:
            Scored nodes, deduplicated by id keeping the highest score, ordered by descending score

        Raises:
            ValidationError: If the text is blank or top_k is not positive
            MemoryQueryError: If reformulation fails
        """
        if not text or not text.strip():
            raise ValidationError('Query text cannot be empty')

        top_k = config.memory.default_top_k if top_k is None else top_k
        if top_k <= 0:
            raise ValidationError('TopK must be greater than 0')

        try:
            reformulations = self.reformulator.reformulate_for_query(text, conversation_context=conversation_context)
        except SemanticReformulationError as e:
            logger.error(f'Failed to reformulate query: {e}')
            raise MemoryQueryError(f'Query reformulation failed: {e}')

        aspects = [aspect] if aspect is not None else list(ReformulationAspect)
        best: Dict[str, MemorygramWithScore] = {}

        for current in aspects:
            aspect_text = reformulations[current]
            if not aspect_text:
                continue

            try:
                query_vector = self.embed.embed_query(aspect_text)
                results = self.repository.find_similar(query_vector, current, top_k, scope_id=scope_id)
            except (BedrockEmbedError, MemorygramRepositoryError) as e:
                logger.warning(f'Skipping {current.value} aspect for query: {e}')
                continue

            for result in results:
                existing = best.get(result.id)
                if existing is None or result.score > existing.score:
                    best[result.id] = result

        merged = sorted(best.values(), key=lambda r: r.score, reverse=True)[:top_k]
        logger.info(f'Query returned {len(merged)} results across {len(aspects)} aspect(s)')
        return merged

    def _active_chat_id_edges(self):
        try:
            relationships = self.repository.get_relationships_by_type(HAS_CHAT_ID)
        except MemorygramRepositoryError as e:
            logger.error(f'Failed to load {HAS_CHAT_ID} relationships: {e}')
            raise MemoryQueryError(f'Failed to load chat relationships: {e}')
        return [r for r in relationships if r.is_active]

    def get_experience_for_chat(self, chat_id: str) -> Optional[Memorygram]:
        """Resolve the Experience root of a chat.

        Scans the HAS_CHAT_ID relationships and returns the first source node
        that is an Experience whose subtype equals the chat id.
        """
        try:
            for relationship in self._active_chat_id_edges():
                node = self.repository.get(relationship.from_id, include_embeddings=False)
                if node is not None and node.type == MemorygramType.EXPERIENCE and node.subtype == chat_id:
                    return node
        except MemorygramRepositoryError as e:
            raise MemoryQueryError(f'Failed to resolve Experience for chat {chat_id}: {e}')

        return None

    def get_chat_history(self, chat_id: str) -> List[Memorygram]:
        """Rebuild the conversation of a chat.

        Returns:
            UserInput and AssistantResponse nodes rooted under the chat's
            Experience, ordered by (timestamp, created_at). Empty if the chat
            has no Experience root.
        """
        experience = self.get_experience_for_chat(chat_id)
        if experience is None:
            logger.debug(f'No Experience root found for chat {chat_id}')
            return []

        history = []
        try:
            relationships = self.repository.get_relationships_by_node(experience.id, include_incoming=False, include_outgoing=True)
            for relationship in relationships:
                if relationship.relationship_type != ROOT_OF or not relationship.is_active:
                    continue
                node = self.repository.get(relationship.to_id, include_embeddings=False)
                if node is not None and node.type in CHAT_TURN_TYPES:
                    history.append(node)
        except MemorygramRepositoryError as e:
            logger.error(f'Failed to load history for chat {chat_id}: {e}')
            raise MemoryQueryError(f'Failed to load chat history: {e}')

        history.sort(key=lambda node: (node.timestamp, node.created_at))
        logger.debug(f'Loaded {len(history)} turns for chat {chat_id}')
        return history

    def get_all_chat_experiences(self) -> List[Memorygram]:
        """Distinct Experience roots of all chats, most recently created first."""
        experiences: Dict[str, Memorygram] = {}
        try:
            for relationship in self._active_chat_id_edges():
                if relationship.from_id in experiences:
                    continue
                node = self.repository.get(relationship.from_id, include_embeddings=False)
                if node is not None and node.type == MemorygramType.EXPERIENCE:
                    experiences[node.id] = node
        except MemorygramRepositoryError as e:
            raise MemoryQueryError(f'Failed to load chat experiences: {e}')

        return sorted(experiences.values(), key=lambda node: node.created_at, reverse=True)
