"""
Unit Tests for FeedbackLoopEngine

Tests:
- Success scoring from customer-side signals
- Negation handling in keyword indicators
- Pattern persistence, threshold and duplicate protection
- Tag and summary generation
- Similar pattern retrieval
"""

from datetime import timedelta

import pytest

from support_engine.core.feedback_loop import ConversationEvaluation, FeedbackLoopEngine, _mentions
from support_engine.models.knowledge import SuccessPattern
from support_engine.utils.error_handling import DuplicatePatternError


@pytest.fixture
def engine(knowledge, vector_store, feedback_settings, metrics):
    return FeedbackLoopEngine(knowledge, vector_store, settings=feedback_settings, metrics=metrics)


@pytest.fixture
def abandoned_turns(turns_factory):
    return turns_factory(
        ("user", "ログインできません"),
        ("assistant", "パスワードをリセットしてください"),
        ("user", "よくわからないです。もういいです"),
        conversation_id="conv-abandoned",
    )


# ============================================================================
# Evaluation Tests
# ============================================================================

class TestEvaluateConversation:
    """Tests for conversation scoring."""

    def test_resolved_conversation_scores_high(self, engine, successful_login_turns):
        evaluation = engine.evaluate_conversation(successful_login_turns)

        assert evaluation.success_score == 100
        assert evaluation.is_successful is True
        assert evaluation.indicators == ["positive_feedback", "clear_resolution", "gratitude_expressed"]
        assert evaluation.factors["customer_satisfaction"] == "high"
        assert evaluation.key_factors == ["適切な提案", "ニーズの把握", "顧客満足", "迅速な対応"]
        assert evaluation.improvement_areas == []
        assert evaluation.completion_rate == 1.0

    def test_abandoned_conversation_scores_zero(self, engine, abandoned_turns):
        evaluation = engine.evaluate_conversation(abandoned_turns)

        assert evaluation.success_score == 0
        assert evaluation.is_successful is False
        assert evaluation.indicators == ["confusion", "frustration"]
        assert evaluation.improvement_areas == ["応答の明確化", "顧客ニーズの把握"]
        assert evaluation.completion_rate == 0.3

    def test_agent_text_does_not_count(self, engine, turns_factory):
        """Only customer turns produce indicators."""
        turns = turns_factory(
            ("user", "請求書について教えてください"),
            ("assistant", "ありがとうございます。解決しました。"),
        )
        evaluation = engine.evaluate_conversation(turns)

        assert evaluation.indicators == []
        assert evaluation.success_score == 40

    def test_negated_resolution_is_not_positive(self, engine, turns_factory):
        turns = turns_factory(
            ("user", "エラーが出ます"),
            ("assistant", "再起動をお試しください"),
            ("user", "解決しません"),
        )
        evaluation = engine.evaluate_conversation(turns)

        assert "positive_feedback" not in evaluation.indicators
        assert evaluation.is_successful is False

    def test_long_slow_conversation_penalized(self, engine, turns_factory):
        exchanges = [("user", "質問です"), ("assistant", "はい")] * 8
        exchanges.append(("user", "ありがとうございます。解決しました"))
        turns = turns_factory(*exchanges, step=timedelta(minutes=3))

        evaluation = engine.evaluate_conversation(turns)

        # 50 + 20 + 15 + 15 + 10 - 10 (17 messages) - 5 (48 minutes)
        assert evaluation.success_score == 95

    def test_mentions_respects_negation(self):
        assert _mentions("解決しました", "解決") is True
        assert _mentions("解決しません", "解決") is False
        assert _mentions("解決しませんが、別件は解決しました", "解決") is True


# ============================================================================
# Persistence Tests
# ============================================================================

class TestSavePattern:
    """Tests for success pattern persistence."""

    def test_saves_above_threshold(self, engine, knowledge, vector_store, metrics, successful_login_turns):
        pattern = engine.save_pattern("conv-login", successful_login_turns)

        assert isinstance(pattern, SuccessPattern)
        assert pattern.score == 100
        assert pattern.problem == "パスワードリセットのメールが届きません"
        assert pattern.resolution == "スパムフォルダをご確認いただけますか？"
        assert pattern.summary_text == "ログイン: パスワードリセットのメールが届きません"
        assert pattern.tags == frozenset({"score:high", "satisfaction", "topic:login_issue", "category:general"})
        assert pattern.embedding is not None
        assert knowledge.find_by_conversation("conv-login") == pattern
        assert vector_store.get_entry(pattern.entry_id) == pattern
        assert metrics.sample("success_patterns_saved_total") == 1.0

    def test_below_threshold_is_skipped(self, engine, knowledge, abandoned_turns):
        assert engine.save_pattern("conv-abandoned", abandoned_turns) is None
        assert knowledge.list() == []

    def test_duplicate_is_rejected(self, engine, successful_login_turns):
        engine.save_pattern("conv-login", successful_login_turns)
        with pytest.raises(DuplicatePatternError):
            engine.save_pattern("conv-login", successful_login_turns)

    def test_process_completed_is_idempotent(self, engine, knowledge, metrics, successful_login_turns):
        first = engine.process_completed_conversation("conv-login", successful_login_turns)
        second = engine.process_completed_conversation("conv-login", successful_login_turns)

        assert second == first
        assert len(knowledge.list(kind="success_pattern")) == 1
        assert metrics.sample("success_patterns_saved_total") == 1.0

    def test_gratitude_and_contract_intent_saved_once(self, engine, knowledge, metrics, turns_factory):
        turns = turns_factory(
            ("user", "データ分析機能について教えてください"),
            ("assistant", "ダッシュボードで売上推移を可視化できます"),
            ("user", "ありがとうございます。とても分かりやすいので契約したいと思います"),
            conversation_id="conv-contract",
        )

        first = engine.process_completed_conversation("conv-contract", turns)
        second = engine.process_completed_conversation("conv-contract", turns)

        assert first.score >= 70
        assert "conversion" in first.tags
        assert second == first
        assert knowledge.list(kind="success_pattern") == [first]
        assert metrics.sample("success_patterns_saved_total") == 1.0

        evaluation = engine.evaluate_conversation(turns)
        assert {"gratitude_expressed", "conversion_intent"} <= set(evaluation.indicators)
        assert evaluation.reasoning["conversion_potential"] is True


class TestTagsAndSummary:
    """Tests for tag and summary generation."""

    def test_conversion_tags(self, engine):
        evaluation = ConversationEvaluation(
            success_score=75,
            is_successful=True,
            indicators=["conversion_intent"],
            factors={},
            reasoning={},
            key_factors=[],
        )
        tags = engine.generate_tags(evaluation, "ECサイトの導入を検討しています")

        assert tags == ["score:good", "conversion", "topic:general_issue", "category:marketing"]

    def test_summary_without_points(self, engine, turns_factory):
        turns = turns_factory(("user", "営業時間を教えてください"), ("assistant", "9時から18時です"))
        assert engine.generate_summary(turns) == "営業時間を教えてください"


# ============================================================================
# Retrieval Tests
# ============================================================================

class TestFindSimilarPatterns:
    """Tests for retrieving saved patterns."""

    def test_saved_pattern_is_retrievable(self, engine, successful_login_turns):
        saved = engine.save_pattern("conv-login", successful_login_turns)

        found = engine.find_similar_patterns("パスワードリセットのメールが届きません。", min_relevance=0.7)

        assert found == [saved]

    def test_tag_filter_falls_back(self, engine, successful_login_turns):
        saved = engine.save_pattern("conv-login", successful_login_turns)

        found = engine.find_similar_patterns("パスワードリセットのメール", tags=["topic:payment_issue"])

        assert found == [saved]

    def test_empty_store(self, engine):
        assert engine.find_similar_patterns("何でも") == []
