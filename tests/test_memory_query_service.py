"""Unit tests for multi-aspect queries and chat history reconstruction."""

from unittest.mock import MagicMock

import pytest

from mnemosyne.models.core import HAS_CHAT_ID, ROOT_OF, Memorygram, MemorygramType, MemorygramWithScore, ReformulationAspect
from mnemosyne.services.memory_query_service import MemoryQueryError, MemoryQueryService
from mnemosyne.services.memorygram_repository import MemorygramRepository, MemorygramRepositoryError
from mnemosyne.services.semantic_reformulator import SemanticReformulationError
from mnemosyne.utils.errors import ValidationError

from .conftest import FakeEmbed


def scored(node_id: str, score: float) -> MemorygramWithScore:
    return MemorygramWithScore(Memorygram(id=node_id, content=node_id, type=MemorygramType.USER_INPUT), score)


@pytest.fixture
def search_repository():
    """Repository mock whose results depend on the searched aspect."""
    by_aspect = {
        ReformulationAspect.TOPICAL: [scored('a', 0.9), scored('b', 0.4)],
        ReformulationAspect.CONTENT: [scored('b', 0.8), scored('c', 0.3)],
        ReformulationAspect.CONTEXT: [scored('d', 0.5)],
        ReformulationAspect.METADATA: [scored('a', 0.2)],
    }
    repository = MagicMock()
    repository.find_similar.side_effect = lambda vector, aspect, top_k, scope_id=None: by_aspect[aspect][:top_k]
    return repository


class TestQuery:
    """Tests for the merged multi-aspect query."""

    def test_merges_dedupes_and_sorts(self, search_repository, fake_embed, reformulator):
        service = MemoryQueryService(repository=search_repository, embed=fake_embed, reformulator=reformulator)

        results = service.query('where is Miso?', top_k=5)

        assert [(r.id, r.score) for r in results] == [('a', 0.9), ('b', 0.8), ('d', 0.5), ('c', 0.3)]

    def test_truncates_to_top_k(self, search_repository, fake_embed, reformulator):
        service = MemoryQueryService(repository=search_repository, embed=fake_embed, reformulator=reformulator)

        results = service.query('where is Miso?', top_k=2)

        assert [r.id for r in results] == ['a', 'b']

    def test_single_aspect(self, search_repository, fake_embed, reformulator):
        service = MemoryQueryService(repository=search_repository, embed=fake_embed, reformulator=reformulator)

        results = service.query('where is Miso?', top_k=5, aspect=ReformulationAspect.CONTEXT, scope_id='chat-42')

        search_repository.find_similar.assert_called_once()
        assert search_repository.find_similar.call_args.kwargs['scope_id'] == 'chat-42'
        assert [r.id for r in results] == ['d']

    def test_failed_aspect_embedding_contributes_nothing(self, search_repository, reformulator):
        service = MemoryQueryService(repository=search_repository, embed=FakeEmbed(failing_texts={'topics'}), reformulator=reformulator)

        results = service.query('where is Miso?', top_k=5)

        assert [(r.id, r.score) for r in results] == [('b', 0.8), ('d', 0.5), ('c', 0.3), ('a', 0.2)]

    def test_failed_aspect_search_contributes_nothing(self, search_repository, fake_embed, reformulator):
        original = search_repository.find_similar.side_effect

        def flaky(vector, aspect, top_k, scope_id=None):
            if aspect == ReformulationAspect.CONTENT:
                raise MemorygramRepositoryError('index unavailable')
            return original(vector, aspect, top_k, scope_id)

        search_repository.find_similar.side_effect = flaky
        service = MemoryQueryService(repository=search_repository, embed=fake_embed, reformulator=reformulator)

        assert [r.id for r in service.query('where is Miso?', top_k=5)] == ['a', 'd', 'b']

    def test_reformulation_failure_fails_query(self, search_repository, fake_embed):
        reformulator = MagicMock()
        reformulator.reformulate_for_query.side_effect = SemanticReformulationError('bad payload')
        service = MemoryQueryService(repository=search_repository, embed=fake_embed, reformulator=reformulator)

        with pytest.raises(MemoryQueryError):
            service.query('where is Miso?')
        search_repository.find_similar.assert_not_called()

    @pytest.mark.parametrize('text,top_k', [('', 5), ('   ', 5), ('hello', 0), ('hello', -1)])
    def test_validation_before_io(self, search_repository, fake_embed, mock_llm, reformulator, text, top_k):
        service = MemoryQueryService(repository=search_repository, embed=fake_embed, reformulator=reformulator)

        with pytest.raises(ValidationError):
            service.query(text, top_k=top_k)
        mock_llm.complete.assert_not_called()


@pytest.fixture
def chat_service(memory_repository, fake_embed, reformulator):
    return MemoryQueryService(repository=memory_repository, embed=fake_embed, reformulator=reformulator)


def add_chat(repository, chat_id, age_seconds=0):
    experience = repository.add_node(MemorygramType.EXPERIENCE, subtype=chat_id, age_seconds=age_seconds)
    marker = repository.add_node(MemorygramType.EXPERIENCE, content=chat_id)
    repository.create_relationship(experience.id, marker.id, HAS_CHAT_ID, 1.0)
    return experience


def add_turn(repository, experience, type, content, timestamp, age_seconds=0):
    turn = repository.add_node(type, content=content, timestamp=timestamp, age_seconds=age_seconds)
    repository.create_relationship(experience.id, turn.id, ROOT_OF, 1.0)
    return turn


class TestChatHistory:
    """Tests for conversation reconstruction."""

    def test_only_turns_of_requested_chat(self, chat_service, memory_repository):
        chat_42 = add_chat(memory_repository, 'chat-42')
        chat_43 = add_chat(memory_repository, 'chat-43')
        hello = add_turn(memory_repository, chat_42, MemorygramType.USER_INPUT, 'hello 42', 1)
        reply = add_turn(memory_repository, chat_42, MemorygramType.ASSISTANT_RESPONSE, 'hi 42', 2)
        add_turn(memory_repository, chat_43, MemorygramType.USER_INPUT, 'hello 43', 1)

        history = chat_service.get_chat_history('chat-42')

        assert [n.id for n in history] == [hello.id, reply.id]

    def test_excludes_reflections_and_inactive_edges(self, chat_service, memory_repository):
        chat = add_chat(memory_repository, 'chat-42')
        turn = add_turn(memory_repository, chat, MemorygramType.USER_INPUT, 'hello', 1)
        add_turn(memory_repository, chat, MemorygramType.REFLECTION, 'thinking', 2)
        removed = add_turn(memory_repository, chat, MemorygramType.ASSISTANT_RESPONSE, 'retracted', 3)
        for relationship in memory_repository.get_relationships_by_node(removed.id):
            memory_repository.update_relationship(relationship.id, is_active=False)

        assert [n.id for n in chat_service.get_chat_history('chat-42')] == [turn.id]

    def test_sorted_by_timestamp_then_creation(self, chat_service, memory_repository):
        chat = add_chat(memory_repository, 'chat-42')
        late = add_turn(memory_repository, chat, MemorygramType.ASSISTANT_RESPONSE, 'late', 20)
        tie_newer = add_turn(memory_repository, chat, MemorygramType.ASSISTANT_RESPONSE, 'tie newer', 10, age_seconds=5)
        tie_older = add_turn(memory_repository, chat, MemorygramType.USER_INPUT, 'tie older', 10, age_seconds=60)

        history = chat_service.get_chat_history('chat-42')

        assert [n.id for n in history] == [tie_older.id, tie_newer.id, late.id]
        keys = [(n.timestamp, n.created_at) for n in history]
        assert keys == sorted(keys)

    def test_unknown_chat_returns_empty(self, chat_service, memory_repository):
        add_chat(memory_repository, 'chat-43')
        assert chat_service.get_chat_history('chat-42') == []

    def test_non_experience_source_is_not_a_root(self, chat_service, memory_repository):
        impostor = memory_repository.add_node(MemorygramType.USER_INPUT, subtype='chat-42')
        marker = memory_repository.add_node(MemorygramType.EXPERIENCE)
        memory_repository.create_relationship(impostor.id, marker.id, HAS_CHAT_ID, 1.0)

        assert chat_service.get_experience_for_chat('chat-42') is None

    def test_relationship_failure_is_wrapped(self, fake_embed, reformulator):
        repository = MagicMock()
        repository.get_relationships_by_type.side_effect = MemorygramRepositoryError('graph down')
        service = MemoryQueryService(repository=repository, embed=fake_embed, reformulator=reformulator)

        with pytest.raises(MemoryQueryError):
            service.get_chat_history('chat-42')

    def test_stored_node_of_unknown_type_is_excluded(self, fake_embed, reformulator):
        vertices = {
            'exp': {'id': 'exp', 'content': 'Conversation chat-1', 'type': 'Experience', 'subtype': 'chat-1'},
            'summary': {'id': 'summary', 'content': 'recap', 'type': 'Summary', 'timestamp': 1},
            't1': {'id': 't1', 'content': 'hi', 'type': 'UserInput', 'timestamp': 2},
        }
        neptune = MagicMock()
        neptune.get_vertex.side_effect = vertices.get
        neptune.get_edges_by_label.return_value = [{'id': 'c1', 'from_id': 'exp', 'to_id': 'marker', 'label': HAS_CHAT_ID}]
        neptune.get_edges_by_vertex.return_value = [
            {'id': 'r1', 'from_id': 'exp', 'to_id': 'summary', 'label': ROOT_OF},
            {'id': 'r2', 'from_id': 'exp', 'to_id': 't1', 'label': ROOT_OF},
        ]
        repository = MemorygramRepository(neptune=neptune, opensearch=MagicMock(), create_indexes=False)
        service = MemoryQueryService(repository=repository, embed=fake_embed, reformulator=reformulator)

        assert [node.id for node in service.get_chat_history('chat-1')] == ['t1']


class TestAllChatExperiences:
    """Tests for listing chat roots."""

    def test_distinct_and_newest_first(self, chat_service, memory_repository):
        older = add_chat(memory_repository, 'chat-1', age_seconds=100)
        newer = add_chat(memory_repository, 'chat-2', age_seconds=10)
        second_marker = memory_repository.add_node(MemorygramType.EXPERIENCE)
        memory_repository.create_relationship(older.id, second_marker.id, HAS_CHAT_ID, 1.0)

        experiences = chat_service.get_all_chat_experiences()

        assert [e.id for e in experiences] == [newer.id, older.id]

    def test_inactive_links_ignored(self, chat_service, memory_repository):
        chat = add_chat(memory_repository, 'chat-1')
        for relationship in memory_repository.get_relationships_by_type(HAS_CHAT_ID):
            memory_repository.update_relationship(relationship.id, is_active=False)

        assert chat not in chat_service.get_all_chat_experiences()
        assert chat_service.get_all_chat_experiences() == []
