"""
Unit Tests for in-memory repositories

Tests:
- Conversation turns, messages and deletion
- State compare-and-set
- Knowledge listing and supersession
- Resolution path filtering
"""

import pytest

from support_engine.models.conversation import ConversationState
from support_engine.models.knowledge import FAQ, SuccessPattern
from support_engine.models.resolution import ResolutionPath
from support_engine.utils.error_handling import NotFoundError, StaleStateError


class TestConversationRepository:
    """Tests for InMemoryConversationRepository."""

    def test_turns_are_stamped_and_ordered(self, conversations, successful_login_turns):
        for turn in successful_login_turns:
            conversations.add_turn("conv-login", turn.model_copy(update={"conversation_id": None}))

        turns = conversations.get_turns("conv-login")

        assert [t.message_id for t in turns] == ["conv-login-0", "conv-login-1", "conv-login-2"]
        assert all(t.conversation_id == "conv-login" for t in turns)
        assert conversations.get_message("conv-login-1").content == successful_login_turns[1].content

    def test_unknown_conversation(self, conversations):
        with pytest.raises(NotFoundError):
            conversations.get_turns("missing")

    def test_delete_message(self, conversations, successful_login_turns):
        for turn in successful_login_turns:
            conversations.add_turn("conv-login", turn)

        conversations.delete_message("conv-login-1")

        with pytest.raises(NotFoundError):
            conversations.get_message("conv-login-1")
        assert len(conversations.get_turns("conv-login")) == 2

    def test_state_compare_and_set(self, conversations):
        state = conversations.get_state("conv-1")
        assert state.version == 0

        conversations.save_state("conv-1", state.advance(ai_interaction_count=1), expected_version=0)
        assert conversations.get_state("conv-1").ai_interaction_count == 1

        with pytest.raises(StaleStateError):
            conversations.save_state("conv-1", state.advance(ai_interaction_count=2), expected_version=0)

    def test_states_are_per_conversation(self, conversations):
        conversations.save_state("a", ConversationState().advance(ai_interaction_count=2), expected_version=0)
        assert conversations.get_state("b").ai_interaction_count == 0


class TestKnowledgeRepository:
    """Tests for InMemoryKnowledgeRepository."""

    def test_superseded_entries_hidden(self, knowledge):
        original = knowledge.add(FAQ(question="返金できますか", answer="30日以内"))
        revised = knowledge.add(original.supersede(answer="14日以内"))

        assert [e.entry_id for e in knowledge.list()] == [revised.entry_id]
        assert len(knowledge.list(include_superseded=True)) == 2

    def test_filter_by_kind(self, knowledge):
        knowledge.add(FAQ(question="q", answer="a"))
        pattern = knowledge.add(SuccessPattern(conversation_ref="conv-1", score=85, problem="p"))

        assert knowledge.list(kind="success_pattern") == [pattern]
        assert knowledge.find_by_conversation("conv-1") == pattern
        assert knowledge.find_by_conversation("conv-2") is None


class TestResolutionPathRepository:
    """Tests for InMemoryResolutionPathRepository."""

    def test_filter_by_problem_type(self, path_repository):
        login = path_repository.add(ResolutionPath(conversation_ref="c1", problem_type="login_issue", problem="p"))
        path_repository.add(ResolutionPath(conversation_ref="c2", problem_type="billing", problem="p"))

        assert path_repository.list("login_issue") == [login]
        assert len(path_repository.list()) == 2
