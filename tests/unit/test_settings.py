"""
Test suite for configuration management.

Verifies that settings load defaults and pick up environment overrides.
"""

from support_engine.config.settings import (
    CompletionConfig,
    Config,
    EmbeddingConfig,
    EscalationConfig,
    QdrantConfig,
    RetrievalConfig,
)


class TestConfiguration:
    """Test the configuration system."""

    def test_defaults(self, monkeypatch):
        """Config loads default values when no env vars are set."""
        for key in ("EMBEDDING_PROVIDER", "RETRIEVAL_RELEVANCE_FLOOR", "RETRIEVAL_TOP_N",
                    "ESCALATION_MAX_AI_INTERACTIONS", "QDRANT_ENABLED", "SUCCESS_SCORE_THRESHOLD"):
            monkeypatch.delenv(key, raising=False)

        config = Config()

        assert config.embedding.provider == "hashing"
        assert config.retrieval.relevance_floor == 0.7
        assert config.retrieval.top_n == 3
        assert config.escalation.max_ai_interactions == 5
        assert config.escalation.channels["tech"] == "#tech-support"
        assert config.qdrant.enabled is False
        assert config.feedback.success_threshold == 70

    def test_env_overrides(self, monkeypatch):
        """Config reads environment variables at construction."""
        monkeypatch.setenv("EMBEDDING_PROVIDER", "openai")
        monkeypatch.setenv("EMBEDDING_DIMENSIONS", "768")
        monkeypatch.setenv("RETRIEVAL_RELEVANCE_FLOOR", "0.6")
        monkeypatch.setenv("QDRANT_ENABLED", "TRUE")
        monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.slack.test/x")
        monkeypatch.setenv("COMPLETION_MODEL", "test-model")

        assert EmbeddingConfig().provider == "openai"
        assert EmbeddingConfig().dimensions == 768
        assert RetrievalConfig().relevance_floor == 0.6
        assert QdrantConfig().enabled is True
        assert EscalationConfig().slack_webhook_url == "https://hooks.slack.test/x"
        assert CompletionConfig().model == "test-model"

    def test_explicit_values_win(self, monkeypatch):
        monkeypatch.setenv("RETRIEVAL_TOP_N", "9")
        assert RetrievalConfig(top_n=2).top_n == 2
