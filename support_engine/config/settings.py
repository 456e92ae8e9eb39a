"""Configuration loader and environment variable management"""
import os
from typing import Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field


load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration"""
    provider: str = Field(default_factory=lambda: os.getenv("EMBEDDING_PROVIDER", "hashing"))
    model_name: str = Field(default_factory=lambda: os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"))
    dimensions: int = Field(default_factory=lambda: int(os.getenv("EMBEDDING_DIMENSIONS", "1536")))
    max_chars: int = Field(default_factory=lambda: int(os.getenv("EMBEDDING_MAX_CHARS", "40000")))
    max_tokens: int = Field(default=8191)
    max_batch_size: int = Field(default_factory=lambda: int(os.getenv("EMBEDDING_MAX_BATCH", "1000")))
    remote_truncate_chars: int = Field(default=6000)
    api_url: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_API_URL", "https://api.openai.com/v1/embeddings")
    )
    api_key: Optional[str] = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("EMBEDDING_TIMEOUT", "30")))


class QdrantConfig(BaseModel):
    """Qdrant vector database configuration (optional backend)"""
    enabled: bool = Field(default_factory=lambda: _env_bool("QDRANT_ENABLED", "false"))
    host: str = Field(default_factory=lambda: os.getenv("QDRANT_HOST", "localhost"))
    port: int = Field(default_factory=lambda: int(os.getenv("QDRANT_PORT", "6333")))
    collection_name: str = Field(default_factory=lambda: os.getenv("QDRANT_COLLECTION", "support_knowledge"))


class RetrievalConfig(BaseModel):
    """Context retrieval (RAG) configuration"""
    relevance_floor: float = Field(
        default_factory=lambda: float(os.getenv("RETRIEVAL_RELEVANCE_FLOOR", "0.7"))
    )
    urgent_relevance_floor: float = Field(default=0.5)
    top_n: int = Field(default_factory=lambda: int(os.getenv("RETRIEVAL_TOP_N", "3")))
    max_items: int = Field(default=20)
    fetch_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRIEVAL_TIMEOUT", "3.0"))
    )
    cache_ttl_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRIEVAL_CACHE_TTL", "300"))
    )


class ExtractorConfig(BaseModel):
    """Needs extraction thresholds"""
    threshold_high: float = Field(default_factory=lambda: float(os.getenv("NEEDS_THRESHOLD_HIGH", "120")))
    threshold_medium: float = Field(default_factory=lambda: float(os.getenv("NEEDS_THRESHOLD_MEDIUM", "80")))
    topic_repeat_min: int = Field(default=3)


class EscalationConfig(BaseModel):
    """Escalation policy and routing"""
    max_ai_interactions: int = Field(
        default_factory=lambda: int(os.getenv("ESCALATION_MAX_AI_INTERACTIONS", "5"))
    )
    app_url: str = Field(default_factory=lambda: os.getenv("APP_URL", "http://localhost:3000"))
    channels: dict[str, str] = Field(
        default_factory=lambda: {
            "marketing": "#marketing",
            "tech": "#tech-support",
            "general": "#general-support",
        }
    )
    urgent_channel: str = Field(default="#urgent-support")
    oncall_target: str = Field(default="@oncall")
    medium_budget_man_yen: int = Field(default=100)
    slack_webhook_url: Optional[str] = Field(default_factory=lambda: os.getenv("SLACK_WEBHOOK_URL"))


class FeedbackConfig(BaseModel):
    """Success-pattern feedback loop"""
    success_threshold: float = Field(
        default_factory=lambda: float(os.getenv("SUCCESS_SCORE_THRESHOLD", "70"))
    )


class CompletionConfig(BaseModel):
    """Completion (LLM) collaborator configuration"""
    api_url: str = Field(
        default_factory=lambda: os.getenv("COMPLETION_API_URL", "https://api.anthropic.com/v1/messages")
    )
    api_key: Optional[str] = Field(default_factory=lambda: os.getenv("COMPLETION_API_KEY"))
    model: str = Field(default_factory=lambda: os.getenv("COMPLETION_MODEL", "claude-3-5-sonnet-latest"))
    max_tokens: int = Field(default=1000)
    timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("COMPLETION_TIMEOUT", "30")))


class WorkerConfig(BaseModel):
    """Background worker pool"""
    max_workers: int = Field(default_factory=lambda: int(os.getenv("WORKER_COUNT", "4")))
    max_attempts: int = Field(default=3)
    backoff_initial_seconds: float = Field(default=1.0)
    backoff_max_seconds: float = Field(default=8.0)


class Config(BaseModel):
    """Master configuration"""
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    qdrant: QdrantConfig = Field(default_factory=QdrantConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    extractor: ExtractorConfig = Field(default_factory=ExtractorConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


# Global config instance
config = Config()
