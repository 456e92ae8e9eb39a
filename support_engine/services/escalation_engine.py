"""
Escalation Engine - Hand-off to a human operator

Per conversation state machine: collecting -> ready_to_escalate -> escalated.
Every state change goes through this engine and is committed with
compare-and-set on the conversation state version. A per-conversation lock
keeps a single writer inside one process; the version check covers the rest.
"""

import asyncio
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from support_engine.config.settings import EscalationConfig, config
from support_engine.contracts.collaborators import ConversationRepository, Notifier
from support_engine.models.conversation import ConversationState, InquiryCategory, Urgency
from support_engine.models.escalation import (
    EscalationDecision,
    EscalationPriority,
    EscalationState,
    NotificationField,
    NotificationPayload,
)
from support_engine.models.needs import ConversationAnalysis, Priority, SentimentSignal
from support_engine.observability.metrics import EngineMetrics
from support_engine.services.inquiry_analyzer import InquiryAnalyzer, budget_in_man_yen, is_filled
from support_engine.utils.error_handling import with_timeout

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT_SECONDS = 10.0

CATEGORY_LABELS = {
    InquiryCategory.MARKETING: "マーケティング",
    InquiryCategory.TECH: "技術サポート",
    InquiryCategory.GENERAL: "一般サポート",
}

INFO_FIELDS = (
    ("business_type", "業界/事業", True),
    ("budget_range", "予算", True),
    ("current_tools", "利用ツール", True),
    ("system_type", "システム", True),
    ("error_details", "エラー", False),
    ("challenges", "課題", False),
)


def generate_escalation_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ESC-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


class EscalationEngine:
    """Decides when a conversation leaves automated handling and routes it."""

    def __init__(
        self,
        conversations: ConversationRepository,
        notifier: Optional[Notifier] = None,
        analyzer: Optional[InquiryAnalyzer] = None,
        settings: Optional[EscalationConfig] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.conversations = conversations
        self.notifier = notifier
        self.analyzer = analyzer or InquiryAnalyzer()
        self.settings = settings or config.escalation
        self.metrics = metrics
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Pure decision
    # ------------------------------------------------------------------

    def evaluate(
        self,
        state: ConversationState,
        analysis: Optional[ConversationAnalysis] = None,
    ) -> EscalationDecision:
        """
        Decide on a state without committing anything.

        Returns a decision in ``escalated`` for already escalated
        conversations, ``ready_to_escalate`` when a trigger fires, and
        ``collecting`` with the next clarifying question otherwise.
        """
        category = state.category or InquiryCategory.GENERAL
        if state.escalated:
            return EscalationDecision(
                should_escalate=True,
                state=EscalationState.ESCALATED,
                priority=self.priority_for(state, analysis),
                target_channel=self.route(category),
                reason=state.escalation_reason,
                escalation_id=state.escalation_id,
            )

        reasons = self._triggers(state, analysis)
        if not reasons:
            return EscalationDecision(
                should_escalate=False,
                state=EscalationState.COLLECTING,
                next_question=self.analyzer.generate_next_question(state.collected_info, category),
            )

        priority = self.priority_for(state, analysis)
        return EscalationDecision(
            should_escalate=True,
            state=EscalationState.READY_TO_ESCALATE,
            priority=priority,
            target_channel=self.route(category),
            notify_targets=self._extra_targets(priority),
            reason="; ".join(reasons),
        )

    def _triggers(self, state: ConversationState, analysis: Optional[ConversationAnalysis]) -> list[str]:
        category = state.category or InquiryCategory.GENERAL
        reasons = []
        if state.urgency == Urgency.HIGH:
            reasons.append("urgency is high")
        if self.analyzer.all_required_collected(state.collected_info, category):
            reasons.append("required information collected")
        if state.ai_interaction_count >= self.settings.max_ai_interactions:
            reasons.append(f"reached {self.settings.max_ai_interactions} automated interactions")
        if analysis is not None and analysis.escalation_required:
            reasons.append(analysis.escalation_reason or "sentiment escalation triggers")
        return reasons

    def priority_for(
        self,
        state: ConversationState,
        analysis: Optional[ConversationAnalysis] = None,
    ) -> EscalationPriority:
        if state.urgency == Urgency.HIGH:
            return EscalationPriority.URGENT
        if analysis is not None and (
            analysis.priority == Priority.HIGH or analysis.sentiment == SentimentSignal.FRUSTRATED
        ):
            return EscalationPriority.HIGH
        budget = budget_in_man_yen(state.collected_info.get("budget_range"))
        if budget is not None and budget >= self.settings.medium_budget_man_yen:
            return EscalationPriority.MEDIUM
        return EscalationPriority.NORMAL

    def route(self, category: InquiryCategory) -> str:
        channels = self.settings.channels
        return channels.get(category.value, channels.get("general", "#general-support"))

    def _extra_targets(self, priority: EscalationPriority) -> list[str]:
        if priority == EscalationPriority.URGENT:
            return [self.settings.urgent_channel, self.settings.oncall_target]
        return []

    # ------------------------------------------------------------------
    # Committed transitions
    # ------------------------------------------------------------------

    async def process_message(
        self,
        conversation_id: str,
        message: str,
        analysis: Optional[ConversationAnalysis] = None,
    ) -> EscalationDecision:
        """
        Fold one user message into the conversation state and decide.

        Counts one automated interaction, merges extracted facts, and
        escalates when a trigger fires. Re-evaluating an escalated
        conversation returns the stored decision without notifying again.

        Raises:
            StaleStateError: if another writer committed in between.
        """
        async with self._lock_for(conversation_id):
            state = self.conversations.get_state(conversation_id)
            if state.escalated:
                logger.debug(f"[ESCALATION_SKIPPED] conversation={conversation_id} already escalated")
                return self.evaluate(state, analysis)

            category = state.category or self.analyzer.categorize(message)
            extracted = self.analyzer.extract_information(message, category)
            collected = {**state.collected_info, **{k: v for k, v in extracted.items() if is_filled(v)}}
            urgency = self.analyzer.detect_urgency(message)
            if analysis is not None and analysis.sentiment == SentimentSignal.URGENT:
                urgency = Urgency.HIGH

            candidate = state.advance(
                category=category,
                collected_info=collected,
                ai_interaction_count=state.ai_interaction_count + 1,
                urgency=urgency,
            )
            decision = self.evaluate(candidate, analysis)

            if not decision.should_escalate:
                self.conversations.save_state(conversation_id, candidate, expected_version=state.version)
                return decision

            return await self._escalate(conversation_id, state, candidate, decision)

    async def evaluate_conversation(
        self,
        conversation_id: str,
        analysis: Optional[ConversationAnalysis] = None,
    ) -> EscalationDecision:
        """Re-check the stored state (e.g. after a new analysis) without counting a turn."""
        async with self._lock_for(conversation_id):
            state = self.conversations.get_state(conversation_id)
            decision = self.evaluate(state, analysis)
            if decision.state != EscalationState.READY_TO_ESCALATE:
                return decision
            return await self._escalate(conversation_id, state, state, decision)

    async def _escalate(
        self,
        conversation_id: str,
        stored: ConversationState,
        candidate: ConversationState,
        decision: EscalationDecision,
    ) -> EscalationDecision:
        now = datetime.now(timezone.utc)
        escalation_id = generate_escalation_id(now)
        escalated = candidate.advance(
            escalation_required=True,
            escalated_at=now,
            escalation_id=escalation_id,
            escalation_reason=decision.reason,
        )
        self.conversations.save_state(conversation_id, escalated, expected_version=stored.version)
        logger.info(
            f"[ESCALATED] conversation={conversation_id} id={escalation_id} "
            f"priority={decision.priority.value} channel={decision.target_channel} reason={decision.reason}"
        )
        if self.metrics:
            self.metrics.record_escalation(decision.target_channel, decision.priority.value)

        payload = self.build_payload(conversation_id, escalated, decision, escalation_id)
        notified = await self._notify(payload, decision)

        return decision.model_copy(
            update={
                "state": EscalationState.ESCALATED,
                "escalation_id": escalation_id,
                "notified": notified,
            }
        )

    def build_payload(
        self,
        conversation_id: str,
        state: ConversationState,
        decision: EscalationDecision,
        escalation_id: str,
    ) -> NotificationPayload:
        category = state.category or InquiryCategory.GENERAL
        text = f"新規エスカレーション - {CATEGORY_LABELS[category]}"
        if decision.priority == EscalationPriority.URGENT:
            text = f"🚨 緊急エスカレーション\n{text}"

        fields = []
        for key, title, short in INFO_FIELDS:
            value = state.collected_info.get(key)
            if not is_filled(value):
                continue
            if isinstance(value, (list, tuple)):
                value = ", ".join(str(v) for v in value)
            fields.append(NotificationField(title=title, value=str(value), short=short))

        return NotificationPayload(
            text=text,
            channel=decision.target_channel,
            priority_tag=decision.priority,
            fields=fields,
            conversation_link=f"{self.settings.app_url.rstrip('/')}/conversations/{conversation_id}",
            escalation_id=escalation_id,
            mentions=[t for t in decision.notify_targets if t.startswith("@")],
        )

    async def _notify(self, payload: NotificationPayload, decision: EscalationDecision) -> bool:
        if self.notifier is None:
            logger.warning(f"[ESCALATION_NOTIFY] No notifier configured for {payload.escalation_id}")
            return False

        channels = [payload.channel] + [t for t in decision.notify_targets if t.startswith("#")]
        send = with_timeout(NOTIFY_TIMEOUT_SECONDS, fallback=lambda: False)(self.notifier.send)
        delivered = True
        for channel in channels:
            try:
                ok = await send(channel, payload.model_copy(update={"channel": channel}))
            except Exception as e:
                logger.error(f"[ESCALATION_NOTIFY] Failed to notify {channel} for {payload.escalation_id}: {e}")
                ok = False
            if not ok:
                logger.warning(f"[ESCALATION_NOTIFY] Delivery to {channel} not confirmed")
            delivered = delivered and ok
        return delivered
