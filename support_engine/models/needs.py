"""Needs and sentiment models produced by conversation analysis."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class NeedType(str, Enum):
    EFFICIENCY = "efficiency"
    COST_REDUCTION = "cost_reduction"
    FEATURE_REQUEST = "feature_request"
    INTEGRATION = "integration"
    SCALABILITY = "scalability"
    USABILITY = "usability"
    OTHER = "other"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class SentimentSignal(str, Enum):
    FRUSTRATED = "frustrated"
    URGENT = "urgent"
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class ExtractedNeed(BaseModel):
    """A latent customer need detected in user turns."""

    type: NeedType
    evidence: str = Field(..., description="User text that supports the need")
    confidence: float = Field(..., ge=0.0, le=1.0)
    priority: Priority
    priority_score: float = Field(0.0, ge=0.0)
    suggestion: str = ""
    keywords: list[str] = Field(default_factory=list)
    sentiments: list[SentimentSignal] = Field(default_factory=list)

    class Config:
        frozen = True


class ConversationAnalysis(BaseModel):
    """Well-formed analysis of a conversation."""

    needs: list[ExtractedNeed] = Field(default_factory=list)
    sentiment: SentimentSignal = SentimentSignal.NEUTRAL
    priority: Priority = Priority.LOW
    escalation_required: bool = False
    escalation_reason: Optional[str] = None
    fallback: bool = Field(False, description="True when produced by the safe default path")

    @classmethod
    def safe_default(cls) -> "ConversationAnalysis":
        """Neutral analysis returned when a completion response cannot be parsed."""
        return cls(fallback=True)
