"""
Conversation Models

ConversationState carries the monotonic counters and write-once flags that
drive escalation. Mutations go through ``advance`` which returns a new state
with an incremented version, so persistence can compare-and-set on it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Author of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"
    COMPANY = "company"
    SYSTEM = "system"


class Urgency(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class InquiryCategory(str, Enum):
    MARKETING = "marketing"
    TECH = "tech"
    GENERAL = "general"


class ConversationTurn(BaseModel):
    """A single message in a conversation."""

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None

    class Config:
        frozen = True

    @property
    def is_user(self) -> bool:
        return self.role == Role.USER

    @property
    def is_agent(self) -> bool:
        """True for turns written by the assistant or a human operator."""
        return self.role in (Role.ASSISTANT, Role.COMPANY)


class StateInvariantError(ValueError):
    """Raised when a transition would break a monotonic or write-once field."""
    pass


class ConversationState(BaseModel):
    """Per-conversation escalation state."""

    category: Optional[InquiryCategory] = None
    collected_info: dict[str, Any] = Field(default_factory=dict)
    ai_interaction_count: int = Field(0, ge=0)
    urgency: Urgency = Urgency.NORMAL
    escalation_required: bool = False
    escalated_at: Optional[datetime] = None
    escalation_id: Optional[str] = None
    escalation_reason: Optional[str] = None
    version: int = 0

    class Config:
        frozen = True

    @property
    def escalated(self) -> bool:
        return self.escalated_at is not None

    def advance(self, **changes) -> "ConversationState":
        """
        Return the next state version with ``changes`` applied.

        Raises:
            StateInvariantError: if the interaction count would decrease,
                escalation_required would be reset, or escalated_at cleared.
        """
        count = changes.get("ai_interaction_count", self.ai_interaction_count)
        if count < self.ai_interaction_count:
            raise StateInvariantError("ai_interaction_count cannot decrease")
        if self.escalation_required and changes.get("escalation_required", True) is False:
            raise StateInvariantError("escalation_required is write-once")
        if self.escalated_at is not None and "escalated_at" in changes:
            if changes["escalated_at"] != self.escalated_at:
                raise StateInvariantError("escalated_at cannot change once set")
        if self.urgency == Urgency.HIGH and changes.get("urgency", Urgency.HIGH) != Urgency.HIGH:
            changes["urgency"] = Urgency.HIGH
        return self.model_copy(update={**changes, "version": self.version + 1})
