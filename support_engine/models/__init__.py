# Models Package
"""
Pydantic models for typed data contracts.

Knowledge entries, embeddings and resolution paths are immutable after
creation.
"""

from support_engine.models.embedding import Embedding, OwnerType, SimilarityResult
from support_engine.models.knowledge import (
    FAQ,
    CaseStudy,
    KnowledgeBase,
    KnowledgeEntry,
    ProductInfo,
    SuccessPattern,
)
from support_engine.models.conversation import (
    ConversationState,
    ConversationTurn,
    InquiryCategory,
    Role,
    Urgency,
)
from support_engine.models.needs import (
    ConversationAnalysis,
    ExtractedNeed,
    NeedType,
    Priority,
    SentimentSignal,
)
from support_engine.models.resolution import KeyStep, ResolutionPath
from support_engine.models.escalation import (
    EscalationDecision,
    EscalationPriority,
    EscalationState,
    NotificationPayload,
)

__all__ = [
    "Embedding",
    "OwnerType",
    "SimilarityResult",
    "FAQ",
    "CaseStudy",
    "KnowledgeBase",
    "KnowledgeEntry",
    "ProductInfo",
    "SuccessPattern",
    "ConversationState",
    "ConversationTurn",
    "InquiryCategory",
    "Role",
    "Urgency",
    "ConversationAnalysis",
    "ExtractedNeed",
    "NeedType",
    "Priority",
    "SentimentSignal",
    "KeyStep",
    "ResolutionPath",
    "EscalationDecision",
    "EscalationPriority",
    "EscalationState",
    "NotificationPayload",
]
