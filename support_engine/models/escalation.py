"""Escalation decision and notification models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class EscalationState(str, Enum):
    COLLECTING = "collecting"
    READY_TO_ESCALATE = "ready_to_escalate"
    ESCALATED = "escalated"


class EscalationPriority(str, Enum):
    NORMAL = "normal"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationField(BaseModel):
    title: str
    value: str
    short: bool = True


class NotificationPayload(BaseModel):
    """Message handed to the notification collaborator."""

    text: str
    channel: str
    priority_tag: EscalationPriority
    fields: list[NotificationField] = Field(default_factory=list)
    conversation_link: str
    escalation_id: str
    mentions: list[str] = Field(default_factory=list)


class EscalationDecision(BaseModel):
    """Outcome of evaluating a conversation for hand-off to a human."""

    should_escalate: bool
    state: EscalationState
    priority: EscalationPriority = EscalationPriority.NORMAL
    target_channel: Optional[str] = None
    notify_targets: list[str] = Field(default_factory=list)
    reason: Optional[str] = None
    next_question: Optional[str] = None
    escalation_id: Optional[str] = None
    notified: bool = False
