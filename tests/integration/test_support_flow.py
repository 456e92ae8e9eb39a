"""
Integration Tests for the support flow

End-to-end through SupportOrchestrator with in-memory collaborators:
- Reply built from retrieved FAQ knowledge, message embedded in background
- Escalation after repeated AI interactions and on urgent messages
- Closing a conversation saves its success pattern, path and case study
- Learned patterns are retrieved for later, similar inquiries
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from support_engine.agents.orchestrator import SupportOrchestrator
from support_engine.config.settings import Config, RetrievalConfig
from support_engine.models.embedding import Embedding
from support_engine.models.escalation import EscalationState
from support_engine.models.knowledge import FAQ, ProductInfo
from support_engine.utils.error_handling import NotFoundError

LOGIN_PROBLEM = "パスワードリセットのメールが届きません"


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def settings(embedding_settings, escalation_settings, extractor_settings, feedback_settings, worker_settings):
    return Config(
        embedding=embedding_settings,
        retrieval=RetrievalConfig(relevance_floor=0.5, top_n=3, fetch_timeout_seconds=3.0),
        escalation=escalation_settings,
        extractor=extractor_settings,
        feedback=feedback_settings,
        worker=worker_settings,
    )


@pytest.fixture
def orchestrator(settings, notifier, conversations, knowledge, path_repository, metrics):
    return SupportOrchestrator(
        conversations=conversations,
        knowledge=knowledge,
        paths=path_repository,
        notifier=notifier,
        settings=settings,
        metrics=metrics,
    )


async def send(orchestrator, conversation_id, turn):
    orchestrator.conversations.add_turn(conversation_id, turn)
    return await orchestrator.handle_message(conversation_id, turn.message_id)


# ============================================================================
# Per-message Flow
# ============================================================================

class TestMessageFlow:
    """Tests for handling a single user message."""

    @pytest.mark.asyncio
    async def test_reply_uses_faq_knowledge(self, orchestrator, turns_factory, conversations):
        [faq, _] = orchestrator.load_knowledge([
            FAQ(question=LOGIN_PROBLEM, answer="迷惑メールフォルダをご確認ください"),
            ProductInfo(name="Analytics Pro", features=["ダッシュボード"]),
        ])
        await orchestrator.start()

        [turn] = turns_factory(("user", LOGIN_PROBLEM), conversation_id="conv-faq")
        result = await send(orchestrator, "conv-faq", turn)

        assert result.decision.should_escalate is False
        assert result.decision.state == EscalationState.COLLECTING
        assert [item.entry.entry_id for item in result.context.items] == [faq.entry_id]
        assert "迷惑メールフォルダをご確認ください" in result.reply

        embedding = await orchestrator.task_manager.wait_for(result.embedding_task_id, timeout=5)
        assert isinstance(embedding, Embedding)
        assert conversations.get_embedding("conv-faq-0") == embedding
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_unknown_message(self, orchestrator):
        await orchestrator.start()
        with pytest.raises(NotFoundError):
            await orchestrator.handle_message("conv-x", "missing")
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_background_analysis(self, orchestrator, turns_factory):
        await orchestrator.start()
        [turn] = turns_factory(("user", "レポート作成に時間がかかります"), conversation_id="conv-bg")
        orchestrator.conversations.add_turn("conv-bg", turn)

        task_id = await orchestrator.schedule_analysis("conv-bg", turn.message_id)
        outcome = await orchestrator.task_manager.wait_for(task_id, timeout=5)

        assert outcome.conversation_id == "conv-bg"
        assert outcome.analysis.needs
        await orchestrator.stop()


    @pytest.mark.asyncio
    async def test_message_too_long_with_history_still_replies(self, orchestrator, turns_factory, conversations):
        await orchestrator.start()
        turns = turns_factory(
            ("user", "ログイン" * 1000),
            ("assistant", "詳細を教えてください"),
            ("user", "画面" * 2500),
            conversation_id="conv-long",
        )
        for turn in turns[:2]:
            conversations.add_turn("conv-long", turn)

        result = await send(orchestrator, "conv-long", turns[2])

        assert result.reply
        assert result.context is not None
        assert result.context.items == []
        await orchestrator.stop()

# ============================================================================
# Escalation Flow
# ============================================================================

class TestEscalationFlow:
    """Tests for hand-off to human support."""

    @pytest.mark.asyncio
    async def test_escalates_after_five_interactions(self, orchestrator, notifier, turns_factory, conversations):
        await orchestrator.start()
        turns = turns_factory(*[("user", "こんにちは")] * 6, conversation_id="conv-hello")

        results = [await send(orchestrator, "conv-hello", turn) for turn in turns[:5]]

        assert [r.decision.should_escalate for r in results] == [False, False, False, False, True]
        assert results[-1].reply.startswith("ご相談内容を確認させていただきました。")
        assert results[-1].decision.notified is True
        assert conversations.get_state("conv-hello").escalated
        sent = notifier.send.await_count

        sixth = await send(orchestrator, "conv-hello", turns[5])

        assert sixth.decision.state == EscalationState.ESCALATED
        assert sixth.decision.escalation_id == results[-1].decision.escalation_id
        assert sixth.decision.notified is False
        assert notifier.send.await_count == sent
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_urgent_message_escalates_immediately(self, orchestrator, notifier, turns_factory):
        await orchestrator.start()
        [turn] = turns_factory(("user", "至急対応してください"), conversation_id="conv-urgent")

        result = await send(orchestrator, "conv-urgent", turn)

        assert result.decision.should_escalate is True
        channels = [call.args[0] for call in notifier.send.await_args_list]
        assert "#urgent-support" in channels
        assert result.context is None
        await orchestrator.stop()


# ============================================================================
# Closing Flow
# ============================================================================

class TestClosingFlow:
    """Tests for learning from closed conversations."""

    @pytest.mark.asyncio
    async def test_close_saves_pattern_path_and_case(
        self, orchestrator, conversations, knowledge, path_repository, successful_login_turns, metrics
    ):
        for turn in successful_login_turns:
            conversations.add_turn("conv-login", turn)

        result = await orchestrator.close_conversation("conv-login")

        assert result.evaluation.success_score == 100
        assert result.pattern.conversation_ref == "conv-login"
        assert result.path.successful is True
        assert result.path.solution == "スパムフォルダをご確認いただけますか？"
        [case] = knowledge.list(kind="case_study")
        assert case.problem == LOGIN_PROBLEM
        assert orchestrator.vector_store.get_entry(case.entry_id) is not None
        assert metrics.sample("success_patterns_saved_total") == 1.0

        again = await orchestrator.close_conversation("conv-login")

        assert again is result
        assert len(knowledge.list(kind="success_pattern")) == 1
        assert len(path_repository.list()) == 1

    @pytest.mark.asyncio
    async def test_learned_pattern_is_retrieved_later(
        self, orchestrator, conversations, successful_login_turns, turns_factory
    ):
        for turn in successful_login_turns:
            conversations.add_turn("conv-login", turn)
        await orchestrator.close_conversation("conv-login")
        await orchestrator.start()

        [turn] = turns_factory(("user", LOGIN_PROBLEM), conversation_id="conv-later")
        result = await send(orchestrator, "conv-later", turn)

        patterns = result.context.by_source("pattern")
        assert patterns[0].entry.conversation_ref == "conv-login"
        assert patterns[0].relevance == pytest.approx(1.0)
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_learned_pattern_found_for_reworded_query_at_default_floor(
        self, settings, notifier, conversations, knowledge, path_repository, metrics, successful_login_turns, turns_factory
    ):
        strict = SupportOrchestrator(
            conversations=conversations,
            knowledge=knowledge,
            paths=path_repository,
            notifier=notifier,
            settings=settings.model_copy(update={"retrieval": RetrievalConfig(relevance_floor=0.7, top_n=3)}),
            metrics=metrics,
        )
        for turn in successful_login_turns:
            conversations.add_turn("conv-login", turn)
        await strict.close_conversation("conv-login")
        await strict.start()

        [turn] = turns_factory(("user", "パスワードリセットのメールがまだ届きません"), conversation_id="conv-reworded")
        result = await send(strict, "conv-reworded", turn)

        [pattern] = result.context.by_source("pattern")
        assert pattern.entry.conversation_ref == "conv-login"
        assert 0.7 <= pattern.relevance < 1.0
        assert result.context.relevance_floor == 0.7
        await strict.stop()

    @pytest.mark.asyncio
    async def test_unsuccessful_conversation_is_not_saved(self, orchestrator, conversations, knowledge, turns_factory):
        for turn in turns_factory(
            ("user", "設定方法が分からないです"),
            ("assistant", "どの画面でお困りですか？"),
            ("user", "もういいです。キャンセルします"),
            conversation_id="conv-abandon",
        ):
            conversations.add_turn("conv-abandon", turn)

        result = await orchestrator.close_conversation("conv-abandon")

        assert result.pattern is None
        assert result.path.successful is False
        assert knowledge.list(kind="success_pattern") == []
        assert knowledge.list(kind="case_study") == []
