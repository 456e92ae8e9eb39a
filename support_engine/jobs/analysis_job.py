"""Analysis Job - Needs and sentiment for one conversation, then an escalation check."""

from dataclasses import dataclass
from typing import Optional

from support_engine.contracts.collaborators import ConversationRepository
from support_engine.models.escalation import EscalationDecision
from support_engine.models.needs import ConversationAnalysis
from support_engine.services.escalation_engine import EscalationEngine
from support_engine.services.needs_extractor import NeedsExtractor
from support_engine.utils.error_handling import NotFoundError
from support_engine.utils.structured_logging import LogContext, get_logger

logger = get_logger(__name__)


@dataclass
class AnalysisOutcome:
    conversation_id: str
    analysis: ConversationAnalysis
    decision: Optional[EscalationDecision] = None


class AnalysisJob:
    """Run the heuristic extractor over a conversation and re-check escalation."""

    unit_name = "analysis"

    def __init__(
        self,
        conversations: ConversationRepository,
        extractor: NeedsExtractor,
        escalation: Optional[EscalationEngine] = None,
    ):
        self.conversations = conversations
        self.extractor = extractor
        self.escalation = escalation

    @staticmethod
    def key_for(conversation_id: str, message_id: str) -> str:
        return f"analysis:{conversation_id}:{message_id}"

    async def __call__(self, conversation_id: str) -> Optional[AnalysisOutcome]:
        LogContext.bind(conversation_id=conversation_id)
        try:
            turns = self.conversations.get_turns(conversation_id)
        except NotFoundError:
            logger.info(f"Conversation {conversation_id} no longer exists, skipping analysis")
            return None

        analysis = self.extractor.analyze(turns)
        outcome = AnalysisOutcome(conversation_id=conversation_id, analysis=analysis)
        if self.escalation is not None:
            outcome.decision = await self.escalation.evaluate_conversation(conversation_id, analysis)
            if outcome.decision.should_escalate:
                logger.audit(
                    "escalation_check",
                    f"conversation:{conversation_id}",
                    outcome.decision.state.value,
                    {"priority": outcome.decision.priority.value},
                )

        logger.info(
            "Analyzed conversation",
            {
                "needs": [n.type.value for n in analysis.needs],
                "sentiment": analysis.sentiment.value,
                "priority": analysis.priority.value,
            },
        )
        return outcome
