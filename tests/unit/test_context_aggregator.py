"""
Unit Tests for ContextAggregator

Tests:
- Planning: injection plan and retrieval strategy
- Retrieval: relevance floor, ranking, dedupe, caching
- Source deadline and failure exclusion
- Response shaping helpers
"""

import asyncio
import time

import pytest

from support_engine.config.settings import RetrievalConfig
from support_engine.models.knowledge import FAQ, CaseStudy
from support_engine.models.needs import ConversationAnalysis, SentimentSignal
from support_engine.services.context_aggregator import ContextAggregator, assess_query_complexity
from support_engine.tools.embedding_client import EmbeddingModelError
from support_engine.utils.error_handling import EmptyInputError, InputTooLongError

FAQ_TEXT = "パスワードを忘れました\n再設定リンクから変更できます"
COMPLEX_QUERY = "ログインに失敗し、また請求書も届きません"


@pytest.fixture
def faq(vector_store):
    return vector_store.add_entry(FAQ(question="パスワードを忘れました", answer="再設定リンクから変更できます"))


@pytest.fixture
def case(vector_store):
    return vector_store.add_entry(
        CaseStudy(problem="請求書の送付先が古い", solution="請求先メールアドレスを更新", success_rate=0.9)
    )


@pytest.fixture
def aggregator(vector_store, retrieval_settings, metrics):
    return ContextAggregator(vector_store, settings=retrieval_settings, metrics=metrics)


def faq_source(vector_store):
    async def fetch(vector, limit):
        return vector_store.search(vector, top_k=limit, score_threshold=-1.0, kind="faq")
    return fetch


# ============================================================================
# Planning Tests
# ============================================================================

class TestPlanning:
    """Tests for injection plans and retrieval strategies."""

    def test_simple_plan(self, aggregator):
        plan = aggregator.optimize_context_injection("ログインできません")

        assert plan.complexity == "simple"
        assert (plan.injection_depth, plan.max_items, plan.timeout_seconds) == (3, 8, 2.0)

    def test_complex_plan(self, aggregator):
        plan = aggregator.optimize_context_injection(COMPLEX_QUERY)

        assert plan.complexity == "complex"
        assert (plan.injection_depth, plan.max_items, plan.timeout_seconds) == (5, 15, 3.0)

    def test_urgent_strategy_widens_retrieval(self, aggregator):
        strategy = aggregator.adaptive_retrieval("ログインできません", urgency="high")

        assert strategy.strategy == "single_stage"
        assert (strategy.limit, strategy.threshold) == (10, 0.5)

    def test_complex_strategy_is_multi_stage(self, aggregator):
        strategy = aggregator.adaptive_retrieval(COMPLEX_QUERY)

        assert strategy.strategy == "multi_stage"
        assert strategy.stages == 3
        assert (strategy.limit, strategy.threshold) == (3, 0.7)

    def test_long_queries_are_complex(self):
        assert assess_query_complexity(" ".join(["word"] * 11)) == "complex"
        assert assess_query_complexity("料金について") == "simple"


# ============================================================================
# Retrieval Tests
# ============================================================================

class TestInjectContext:
    """Tests for context retrieval."""

    @pytest.mark.asyncio
    async def test_relevant_faq_is_retrieved(self, aggregator, faq, case):
        context = await aggregator.inject_context(FAQ_TEXT)

        assert [item.entry.entry_id for item in context.items] == [faq.entry_id]
        item = context.items[0]
        assert item.source == "faq"
        assert item.relevance == pytest.approx(1.0)
        assert item.importance == pytest.approx(35.0)
        assert context.sources == {"faq": 1, "case": 0, "product": 0, "pattern": 0}
        assert context.integrated_context == "FAQ: 1件の関連情報"
        assert context.confidence == pytest.approx(1.0)
        assert context.excluded_sources == []
        assert context.relevance_floor == 0.7

    @pytest.mark.asyncio
    async def test_nothing_above_floor(self, aggregator, case):
        context = await aggregator.inject_context("アカウントを削除したい")

        assert context.items == []
        assert context.confidence == 0.1
        assert context.integrated_context == "関連情報は見つかりませんでした"

    @pytest.mark.asyncio
    async def test_second_call_is_cached(self, aggregator, faq):
        first = await aggregator.inject_context(FAQ_TEXT)
        second = await aggregator.inject_context(f"  {FAQ_TEXT}  ")

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.items == first.items
        assert aggregator.cache.hits == 1

    @pytest.mark.asyncio
    async def test_urgency_is_part_of_cache_key(self, aggregator, faq):
        await aggregator.inject_context(FAQ_TEXT)
        urgent = await aggregator.inject_context(FAQ_TEXT, urgency="high")

        assert urgent.from_cache is False
        assert urgent.relevance_floor == 0.5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   "])
    async def test_empty_query(self, aggregator, query):
        with pytest.raises(EmptyInputError):
            await aggregator.inject_context(query)

    @pytest.mark.asyncio
    async def test_duplicate_hits_are_merged(self, vector_store, retrieval_settings, faq):
        fetch = faq_source(vector_store)
        aggregator = ContextAggregator(vector_store, settings=retrieval_settings, sources={"faq": fetch, "pattern": fetch})

        context = await aggregator.inject_context(FAQ_TEXT)

        assert len(context.items) == 1


class TestSourceExclusion:
    """Tests for sources that miss the deadline or fail."""

    @pytest.mark.asyncio
    async def test_slow_source_is_excluded(self, vector_store, metrics, faq):
        async def slow(vector, limit):
            await asyncio.sleep(5)
            return []

        settings = RetrievalConfig(relevance_floor=0.7, top_n=3, fetch_timeout_seconds=0.05)
        aggregator = ContextAggregator(
            vector_store,
            settings=settings,
            sources={"faq": faq_source(vector_store), "slow": slow},
            metrics=metrics,
        )

        context = await aggregator.inject_context(FAQ_TEXT)

        assert context.excluded_sources == ["slow"]
        assert [item.source for item in context.items] == ["faq"]
        assert metrics.sample("context_source_timeouts_total", {"source": "slow"}) == 1.0
        assert len(aggregator.cache) == 0

    @pytest.mark.asyncio
    async def test_failing_source_is_excluded(self, vector_store, retrieval_settings, metrics, faq):
        async def broken(vector, limit):
            raise RuntimeError("index offline")

        aggregator = ContextAggregator(
            vector_store,
            settings=retrieval_settings,
            sources={"faq": faq_source(vector_store), "broken": broken},
            metrics=metrics,
        )

        context = await aggregator.inject_context(FAQ_TEXT)

        assert context.excluded_sources == ["broken"]
        assert len(context.items) == 1
        assert metrics.sample("context_source_timeouts_total", {"source": "broken"}) == 0.0


class TestConversationContext:
    """Tests for retrieval shaped by earlier turns."""

    @pytest.mark.asyncio
    async def test_cache_is_scoped_to_conversation_history(self, vector_store, aggregator, turns_factory):
        vector_store.add_entry(FAQ(question="ログインできない", answer="パスワードを再設定してください"))
        vector_store.add_entry(FAQ(question="請求書が届かない", answer="請求先メールアドレスをご確認ください"))
        login = turns_factory(("user", "ログインできないです"), conversation_id="conv-a")
        billing = turns_factory(("user", "請求書が届かないです"), conversation_id="conv-b")

        first = await aggregator.inject_context("困っています", login)
        other = await aggregator.inject_context("困っています", billing)
        repeat = await aggregator.inject_context("困っています", login)

        assert first.from_cache is False
        assert other.from_cache is False
        assert repeat.from_cache is True
        assert len(aggregator.cache) == 2

    def test_older_turns_dropped_when_combined_text_too_long(self, aggregator, turns_factory):
        older, newer, query = "あ" * 3000, "い" * 3000, "う" * 3000
        turns = turns_factory(("user", older), ("assistant", "確認します"), ("user", newer))

        [first] = aggregator._stage_queries(query, turns, 1)

        assert first == f"[context] {newer}\n{query}"

    @pytest.mark.asyncio
    async def test_bare_query_when_no_prefix_fits(self, aggregator, turns_factory):
        query = "画面" * 2500
        turns = turns_factory(("user", "ログイン" * 1000), ("assistant", "詳細を教えてください"))

        assert aggregator._stage_queries(query, turns, 1) == [query]
        context = await aggregator.inject_context(query, turns)
        assert context.excluded_sources == []

    @pytest.mark.asyncio
    async def test_slow_embedding_yields_empty_context(self, vector_store, metrics, faq, monkeypatch):
        def slow_embed(texts):
            time.sleep(0.5)
            return [[0.0] * vector_store.embedder.vector_dimension for _ in texts]

        monkeypatch.setattr(vector_store.embedder, "embed_many", slow_embed)
        settings = RetrievalConfig(relevance_floor=0.7, top_n=3, fetch_timeout_seconds=0.05)
        aggregator = ContextAggregator(vector_store, settings=settings, metrics=metrics)

        context = await aggregator.inject_context(FAQ_TEXT)

        assert context.items == []
        assert context.confidence == 0.1
        assert context.excluded_sources == ["case", "faq", "pattern", "product"]
        assert len(aggregator.cache) == 0

    @pytest.mark.asyncio
    async def test_embedding_service_failure_yields_empty_context(self, vector_store, aggregator, monkeypatch):
        def broken(texts):
            raise EmbeddingModelError("embedding API unavailable")

        monkeypatch.setattr(vector_store.embedder, "embed_many", broken)

        context = await aggregator.inject_context(FAQ_TEXT)

        assert context.items == []
        assert context.excluded_sources == ["case", "faq", "pattern", "product"]

    @pytest.mark.asyncio
    async def test_query_too_long_to_embed(self, aggregator):
        with pytest.raises(InputTooLongError):
            await aggregator.inject_context("あ" * 9000)


# ============================================================================
# Response Shaping Tests
# ============================================================================

class TestResponseShaping:
    """Tests for answer scaffolds and prompts."""

    @pytest.mark.asyncio
    async def test_contextual_response(self, aggregator, faq):
        context = await aggregator.inject_context(FAQ_TEXT)

        response = aggregator.generate_contextual_response("パスワードを忘れました", context)

        assert "再設定リンクから変更できます" in response["content"]
        assert response["references"] == [{"type": "faq", "content": "パスワードを忘れました", "link": None}]
        assert response["suggested_actions"] == ["FAQを確認する"]
        assert [s["step_number"] for s in response["resolution_steps"]] == [1, 2]

    @pytest.mark.asyncio
    async def test_augment_query(self, aggregator, faq):
        context = await aggregator.inject_context(FAQ_TEXT)

        augmented = aggregator.augment_query("パスワードを忘れました", context)

        assert augmented["context_used"] is True
        assert "関連する過去の問い合わせ" in augmented["augmented_query"]
        assert augmented["suggested_approaches"] == ["類似ケースの参照"]

    @pytest.mark.asyncio
    async def test_augmented_prompt_flags_urgency(self, aggregator, faq):
        context = await aggregator.inject_context(FAQ_TEXT)
        analysis = ConversationAnalysis(sentiment=SentimentSignal.URGENT)

        prompt = aggregator.build_augmented_prompt("パスワードを忘れました", context, analysis)

        assert f"- [faq] {faq.summary()}" in prompt
        assert "簡潔かつ迅速に対応してください" in prompt
        assert prompt.endswith("質問: パスワードを忘れました")
