"""Shared fixtures for the support engine test suite."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from support_engine.config.settings import (
    EmbeddingConfig,
    EscalationConfig,
    ExtractorConfig,
    FeedbackConfig,
    RetrievalConfig,
    WorkerConfig,
)
from support_engine.models.conversation import ConversationTurn, Role
from support_engine.observability.metrics import EngineMetrics
from support_engine.persistence.memory import (
    InMemoryConversationRepository,
    InMemoryKnowledgeRepository,
    InMemoryResolutionPathRepository,
)
from support_engine.tools.embedding_client import EmbeddingClient
from support_engine.tools.vector_store import VectorStore

TEST_DIMENSIONS = 384
BASE_TIME = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def make_turns(
    *exchanges: tuple[str, str],
    conversation_id: Optional[str] = None,
    step: timedelta = timedelta(minutes=1),
) -> list[ConversationTurn]:
    """Build turns from (role, content) pairs, one minute apart."""
    turns = []
    for index, (role, content) in enumerate(exchanges):
        turns.append(
            ConversationTurn(
                role=Role(role),
                content=content,
                timestamp=BASE_TIME + step * index,
                message_id=f"{conversation_id or 'msg'}-{index}",
                conversation_id=conversation_id,
            )
        )
    return turns


@pytest.fixture
def metrics():
    return EngineMetrics()


@pytest.fixture
def embedding_settings():
    return EmbeddingConfig(provider="hashing", dimensions=TEST_DIMENSIONS)


@pytest.fixture
def embedding_client(embedding_settings, metrics):
    return EmbeddingClient(embedding_settings, metrics=metrics)


@pytest.fixture
def vector_store(embedding_client):
    return VectorStore(embedding_client=embedding_client)


@pytest.fixture
def retrieval_settings():
    return RetrievalConfig(relevance_floor=0.7, top_n=3, fetch_timeout_seconds=3.0, cache_ttl_seconds=300)


@pytest.fixture
def escalation_settings():
    return EscalationConfig(app_url="https://support.example.com", slack_webhook_url=None)


@pytest.fixture
def extractor_settings():
    return ExtractorConfig(threshold_high=120, threshold_medium=80)


@pytest.fixture
def feedback_settings():
    return FeedbackConfig(success_threshold=70)


@pytest.fixture
def worker_settings():
    return WorkerConfig(max_workers=2, max_attempts=3, backoff_initial_seconds=0.0, backoff_max_seconds=0.0)


@pytest.fixture
def conversations():
    return InMemoryConversationRepository()


@pytest.fixture
def knowledge():
    return InMemoryKnowledgeRepository()


@pytest.fixture
def path_repository():
    return InMemoryResolutionPathRepository()


@pytest.fixture
def successful_login_turns():
    return make_turns(
        ("user", "パスワードリセットのメールが届きません"),
        ("assistant", "スパムフォルダをご確認いただけますか？"),
        ("user", "ありました！解決しました。ありがとうございます"),
        conversation_id="conv-login",
    )


@pytest.fixture
def turns_factory():
    return make_turns
