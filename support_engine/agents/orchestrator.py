"""Support Orchestrator - coordinates the per-message and closing pipelines"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from support_engine.async_task_manager import AsyncTaskManager
from support_engine.config.settings import Config, config
from support_engine.contracts.collaborators import (
    CompletionClient,
    ConversationRepository,
    KnowledgeRepository,
    Notifier,
    ResolutionPathRepository,
)
from support_engine.core.feedback_loop import ConversationEvaluation, FeedbackLoopEngine
from support_engine.jobs.analysis_job import AnalysisJob
from support_engine.jobs.embedding_job import EmbeddingJob
from support_engine.models.conversation import Urgency
from support_engine.models.escalation import EscalationDecision
from support_engine.models.knowledge import KnowledgeBase, SuccessPattern
from support_engine.models.needs import ConversationAnalysis
from support_engine.models.resolution import ResolutionPath
from support_engine.observability.metrics import EngineMetrics
from support_engine.persistence.memory import (
    InMemoryConversationRepository,
    InMemoryKnowledgeRepository,
    InMemoryResolutionPathRepository,
)
from support_engine.services.context_aggregator import ContextAggregator, RetrievedContext
from support_engine.services.escalation_engine import EscalationEngine
from support_engine.services.inquiry_analyzer import InquiryAnalyzer
from support_engine.services.needs_extractor import NeedsExtractor
from support_engine.services.resolution_path_service import ResolutionPathService
from support_engine.services.response_service import FALLBACK_RESPONSE, ResponseService
from support_engine.tools.embedding_client import EmbeddingClient
from support_engine.tools.vector_store import VectorStore
from support_engine.utils.error_handling import InputError
from support_engine.utils.structured_logging import LogContext, configure_logging

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    reply: str
    analysis: ConversationAnalysis
    decision: EscalationDecision
    context: Optional[RetrievedContext] = None
    embedding_task_id: Optional[str] = None


@dataclass
class ClosureResult:
    evaluation: ConversationEvaluation
    pattern: Optional[SuccessPattern]
    path: Optional[ResolutionPath]


class SupportOrchestrator:
    """
    Wires the engine components together.

    Per user message:
    1. EmbeddingJob is scheduled in the background
    2. NeedsExtractor analyses the conversation
    3. EscalationEngine folds the message into the state and decides
    4. ContextAggregator retrieves knowledge and ResponseService replies

    On close, the FeedbackLoopEngine and ResolutionPathService learn from
    the conversation.
    """

    def __init__(
        self,
        conversations: Optional[ConversationRepository] = None,
        knowledge: Optional[KnowledgeRepository] = None,
        paths: Optional[ResolutionPathRepository] = None,
        embedding_client: Optional[EmbeddingClient] = None,
        vector_store: Optional[VectorStore] = None,
        notifier: Optional[Notifier] = None,
        completion: Optional[CompletionClient] = None,
        task_manager: Optional[AsyncTaskManager] = None,
        settings: Optional[Config] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.settings = settings or config
        self.metrics = metrics or EngineMetrics()
        self.conversations = conversations or InMemoryConversationRepository()
        self.knowledge = knowledge or InMemoryKnowledgeRepository()
        self.paths = paths or InMemoryResolutionPathRepository()

        self.embedding_client = embedding_client or EmbeddingClient(
            self.settings.embedding, metrics=self.metrics
        )
        self.vector_store = vector_store or VectorStore(embedding_client=self.embedding_client)
        self.task_manager = task_manager or AsyncTaskManager(settings=self.settings.worker, metrics=self.metrics)

        self.inquiry_analyzer = InquiryAnalyzer()
        self.extractor = NeedsExtractor(settings=self.settings.extractor)
        self.aggregator = ContextAggregator(self.vector_store, self.settings.retrieval, metrics=self.metrics)
        self.escalation = EscalationEngine(
            self.conversations,
            notifier=notifier,
            analyzer=self.inquiry_analyzer,
            settings=self.settings.escalation,
            metrics=self.metrics,
        )
        self.responses = ResponseService(
            completion=completion,
            aggregator=self.aggregator,
            timeout_seconds=self.settings.completion.timeout_seconds,
        )
        self.feedback = FeedbackLoopEngine(
            self.knowledge,
            self.vector_store,
            settings=self.settings.feedback,
            metrics=self.metrics,
            analyzer=self.inquiry_analyzer,
        )
        self.resolutions = ResolutionPathService(self.paths)

        self.embedding_job = EmbeddingJob(self.conversations, self.embedding_client, self.vector_store)
        self.analysis_job = AnalysisJob(self.conversations, self.extractor, self.escalation)
        self._closed: dict[str, ClosureResult] = {}

    async def start(self):
        configure_logging(self.settings.log_level)
        await self.task_manager.start()

    async def stop(self):
        await self.task_manager.stop()

    def load_knowledge(self, entries: Iterable[KnowledgeBase]) -> list[KnowledgeBase]:
        """Embed, index and store knowledge entries."""
        stored = []
        for entry in entries:
            entry = self.vector_store.add_entry(entry)
            self.knowledge.add(entry)
            stored.append(entry)
        logger.info(f"Loaded {len(stored)} knowledge entries")
        return stored

    async def handle_message(self, conversation_id: str, message_id: str) -> TurnResult:
        """Process a stored user message and produce the automated reply.

        Args:
            conversation_id: Conversation the message belongs to
            message_id: Id of the stored user message

        Returns:
            TurnResult with the reply, analysis and escalation decision
        """
        LogContext.set_correlation_id()
        LogContext.bind(conversation_id=conversation_id, message_id=message_id)
        start_time = datetime.now(timezone.utc)

        turn = self.conversations.get_message(message_id)
        task_id = await self.task_manager.submit(
            self.embedding_job, message_id, key=EmbeddingJob.key_for(message_id, turn.content)
        )

        turns = self.conversations.get_turns(conversation_id)
        analysis = self.extractor.analyze(turns)
        decision = await self.escalation.process_message(conversation_id, turn.content, analysis)
        state = self.conversations.get_state(conversation_id)

        if decision.should_escalate:
            category = state.category or self.inquiry_analyzer.categorize(turn.content)
            reply = self.inquiry_analyzer.generate_summary(state.collected_info, category)
            result = TurnResult(reply=reply, analysis=analysis, decision=decision, embedding_task_id=task_id)
        elif not turn.content.strip():
            reply = decision.next_question or FALLBACK_RESPONSE
            result = TurnResult(reply=reply, analysis=analysis, decision=decision, embedding_task_id=task_id)
        else:
            urgency = "high" if state.urgency == Urgency.HIGH else None
            try:
                context = await self.aggregator.inject_context(turn.content, turns[:-1], urgency)
            except InputError as e:
                logger.warning(f"[CONTEXT_SKIPPED] message {message_id} cannot be embedded: {e}")
                context = self.aggregator.empty_context(turn.content)
            reply = await self._reply(turns[:-1], turn.content, context, analysis, decision)
            result = TurnResult(
                reply=reply, analysis=analysis, decision=decision, context=context, embedding_task_id=task_id
            )

        elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info(
            f"Handled message {message_id}: escalate={decision.should_escalate} "
            f"state={decision.state.value} in {elapsed:.2f}s"
        )
        return result

    async def _reply(
        self,
        history,
        message: str,
        context: RetrievedContext,
        analysis: ConversationAnalysis,
        decision: EscalationDecision,
    ) -> str:
        if self.responses.completion is None and not context.items:
            return decision.next_question or FALLBACK_RESPONSE

        reply = await self.responses.generate_response(history, message, context, analysis)
        if decision.next_question and reply != FALLBACK_RESPONSE:
            reply = f"{reply}\n\n{decision.next_question}"
        return reply

    async def schedule_analysis(self, conversation_id: str, message_id: str) -> str:
        """Queue a background re-analysis of a conversation."""
        return await self.task_manager.submit(
            self.analysis_job, conversation_id, key=AnalysisJob.key_for(conversation_id, message_id)
        )

    async def close_conversation(self, conversation_id: str) -> ClosureResult:
        """Learn from a finished conversation; repeated calls return the first result."""
        if conversation_id in self._closed:
            return self._closed[conversation_id]

        LogContext.bind(conversation_id=conversation_id)
        turns = self.conversations.get_turns(conversation_id)
        evaluation = self.feedback.evaluate_conversation(turns)
        pattern = self.feedback.process_completed_conversation(conversation_id, turns)

        path = self.resolutions.record_path(conversation_id, turns)
        if path is not None and path.successful and path.solution:
            case = self.vector_store.add_entry(self.resolutions.to_case_study(path))
            self.knowledge.add(case)

        result = ClosureResult(evaluation=evaluation, pattern=pattern, path=path)
        self._closed[conversation_id] = result
        logger.info(
            f"Closed conversation {conversation_id}: score={evaluation.success_score} "
            f"pattern={'saved' if pattern else 'none'} path={'recorded' if path else 'none'}"
        )
        return result
