"""
Success-Pattern Feedback Loop

Responsible for:
1. Scoring closed conversations from customer-side success signals
2. Persisting conversations above the threshold as SuccessPattern entries
3. Making those patterns retrievable for similar future inquiries
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from support_engine.config.settings import FeedbackConfig, config
from support_engine.contracts.collaborators import KnowledgeRepository
from support_engine.models.conversation import ConversationTurn
from support_engine.models.knowledge import SuccessPattern
from support_engine.observability.metrics import EngineMetrics
from support_engine.services.inquiry_analyzer import InquiryAnalyzer
from support_engine.services.resolution_path_service import infer_problem_type
from support_engine.tools.vector_store import VectorStore
from support_engine.utils.error_handling import DuplicatePatternError

logger = logging.getLogger(__name__)

POSITIVE_INDICATORS = {
    "positive_feedback": ("ありがとう", "助かりました", "分かりやすい", "解決", "素晴らしい", "良い"),
    "conversion_intent": ("契約", "購入", "導入", "申し込み", "検討します"),
    "clear_resolution": ("解決しました", "理解できました", "分かりました", "了解", "できました"),
    "gratitude_expressed": ("感謝", "お礼", "ありがとうございます"),
    "satisfaction": ("満足", "期待通り", "完璧"),
}

NEGATIVE_INDICATORS = {
    "confusion": ("分からない", "わからない", "理解できない", "意味不明", "難しい"),
    "frustration": ("もういい", "やめます", "諦めます", "いらない"),
    "abandonment": ("さようなら", "終了", "キャンセル", "中止"),
}

SUMMARY_POINTS = (
    (re.compile(r"導入|検討"), "導入検討"),
    (re.compile(r"データ分析|分析機能"), "データ分析"),
    (re.compile(r"エンタープライズ|プラン"), "エンタープライズプラン"),
    (re.compile(r"ログイン|パスワード"), "ログイン"),
    (re.compile(r"支払い|決済|請求"), "支払い"),
)

_NEGATED_RE = re.compile(r"^(しない|しません|できない|できません|ではない)")


def _mentions(content: str, keyword: str) -> bool:
    """Keyword present and not immediately negated (``解決しません``)."""
    start = content.find(keyword)
    while start != -1:
        if not _NEGATED_RE.match(content[start + len(keyword):]):
            return True
        start = content.find(keyword, start + 1)
    return False


@dataclass
class ConversationEvaluation:
    success_score: int
    is_successful: bool
    indicators: List[str]
    factors: Dict[str, Any]
    reasoning: Dict[str, bool]
    key_factors: List[str]
    improvement_areas: List[str] = field(default_factory=list)
    completion_rate: float = 0.0


class FeedbackLoopEngine:
    """Evaluates closed conversations and learns from the successful ones."""

    BASE_SCORE = 50
    HIGH_SCORE = 80
    EFFICIENT_MESSAGES = (4, 8)
    MAX_MESSAGES = 15
    FAST_RESOLUTION = timedelta(minutes=10)
    SLOW_RESOLUTION = timedelta(minutes=30)

    def __init__(
        self,
        knowledge: KnowledgeRepository,
        vector_store: VectorStore,
        settings: Optional[FeedbackConfig] = None,
        metrics: Optional[EngineMetrics] = None,
        analyzer: Optional[InquiryAnalyzer] = None,
    ):
        self.knowledge = knowledge
        self.vector_store = vector_store
        self.settings = settings or config.feedback
        self.metrics = metrics
        self.analyzer = analyzer or InquiryAnalyzer()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_conversation(self, turns: List[ConversationTurn]) -> ConversationEvaluation:
        """Score a conversation from 0 to 100 using customer-side signals."""
        user_turns = [t for t in turns if t.is_user]
        indicators = self._indicators(user_turns)
        factors = self._factors(turns, indicators)
        score = self._score(factors)
        threshold = self.settings.success_threshold

        evaluation = ConversationEvaluation(
            success_score=score,
            is_successful=score >= threshold,
            indicators=indicators,
            factors=factors,
            reasoning=self._reasoning(indicators),
            key_factors=self._key_factors(factors),
            improvement_areas=self._improvement_areas(turns) if score < threshold else [],
            completion_rate=self._completion_rate(user_turns),
        )
        logger.debug(f"[FEEDBACK_EVALUATED] score={score} indicators={indicators}")
        return evaluation

    @staticmethod
    def _indicators(user_turns: List[ConversationTurn]) -> List[str]:
        found = []
        for turn in user_turns:
            for table in (POSITIVE_INDICATORS, NEGATIVE_INDICATORS):
                for name, keywords in table.items():
                    if name not in found and any(_mentions(turn.content, k) for k in keywords):
                        found.append(name)
        return found

    def _factors(self, turns: List[ConversationTurn], indicators: List[str]) -> Dict[str, Any]:
        elapsed = None
        if len(turns) >= 2:
            elapsed = turns[-1].timestamp - turns[0].timestamp
        return {
            "positive_feedback": "positive_feedback" in indicators or "gratitude_expressed" in indicators,
            "goal_achievement": "clear_resolution" in indicators or "conversion_intent" in indicators,
            "clear_resolution": "clear_resolution" in indicators,
            "customer_satisfaction": self._satisfaction_level(indicators),
            "conversion_intent": "conversion_intent" in indicators,
            "confusion": "confusion" in indicators,
            "frustration": "frustration" in indicators,
            "abandonment": "abandonment" in indicators,
            "message_count": len(turns),
            "resolution_time": elapsed,
        }

    @staticmethod
    def _satisfaction_level(indicators: List[str]) -> str:
        positive = sum(1 for i in indicators if i in POSITIVE_INDICATORS)
        negative = sum(1 for i in indicators if i in NEGATIVE_INDICATORS)
        if positive >= 2 and negative == 0:
            return "high"
        if negative >= 2:
            return "low"
        return "medium"

    def _score(self, factors: Dict[str, Any]) -> int:
        score = self.BASE_SCORE

        if factors["positive_feedback"]:
            score += 20
        if factors["goal_achievement"]:
            score += 15
        if factors["clear_resolution"]:
            score += 15
        if factors["customer_satisfaction"] == "high":
            score += 10
        if factors["conversion_intent"]:
            score += 10

        if factors["confusion"]:
            score -= 25
        if factors["frustration"]:
            score -= 30
        if factors["abandonment"]:
            score -= 35

        low, high = self.EFFICIENT_MESSAGES
        if low <= factors["message_count"] <= high:
            score += 5
        elif factors["message_count"] > self.MAX_MESSAGES:
            score -= 10

        elapsed = factors["resolution_time"]
        if elapsed is not None:
            if elapsed < self.FAST_RESOLUTION:
                score += 5
            elif elapsed > self.SLOW_RESOLUTION:
                score -= 5

        if not factors["clear_resolution"] and not factors["positive_feedback"]:
            score -= 15

        return max(0, min(100, score))

    @staticmethod
    def _reasoning(indicators: List[str]) -> Dict[str, bool]:
        reasoning = {}
        if "positive_feedback" in indicators:
            reasoning["customer_satisfaction"] = True
        if "clear_resolution" in indicators:
            reasoning["goal_achievement"] = True
        if "conversion_intent" in indicators:
            reasoning["conversion_potential"] = True
        return reasoning

    def _key_factors(self, factors: Dict[str, Any]) -> List[str]:
        key_factors = []
        if factors["goal_achievement"]:
            key_factors.append("適切な提案")
        if factors["clear_resolution"]:
            key_factors.append("ニーズの把握")
        if factors["customer_satisfaction"] == "high":
            key_factors.append("顧客満足")
        elapsed = factors["resolution_time"]
        if elapsed is not None and elapsed < self.FAST_RESOLUTION:
            key_factors.append("迅速な対応")
        return key_factors

    def _improvement_areas(self, turns: List[ConversationTurn]) -> List[str]:
        areas = []
        if any("分からない" in t.content or "わからない" in t.content for t in turns):
            areas.append("応答の明確化")
        if len(turns) > self.MAX_MESSAGES:
            areas.append("説明の簡潔化")
        if not any(_mentions(t.content, "解決") for t in turns):
            areas.append("顧客ニーズの把握")
        return areas

    @staticmethod
    def _completion_rate(user_turns: List[ConversationTurn]) -> float:
        if not user_turns:
            return 0.0
        last = user_turns[-1].content
        if any(_mentions(last, k) for words in POSITIVE_INDICATORS.values() for k in words):
            return 1.0
        if any(_mentions(last, k) for words in NEGATIVE_INDICATORS.values() for k in words):
            return 0.3
        return 0.7

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_pattern(
        self,
        conversation_ref: str,
        turns: List[ConversationTurn],
        evaluation: Optional[ConversationEvaluation] = None,
    ) -> Optional[SuccessPattern]:
        """
        Persist a conversation as a success pattern when it clears the threshold.

        Returns None below the threshold.

        Raises:
            DuplicatePatternError: if a pattern already exists for the conversation.
        """
        evaluation = evaluation or self.evaluate_conversation(turns)
        if evaluation.success_score < self.settings.success_threshold:
            logger.info(
                f"[FEEDBACK_SKIPPED] conversation={conversation_ref} score={evaluation.success_score} "
                f"below threshold {self.settings.success_threshold}"
            )
            return None

        user_turns = [t for t in turns if t.is_user]
        agent_turns = [t for t in turns if t.is_agent]
        problem = user_turns[0].content.strip() if user_turns else ""
        resolution = agent_turns[-1].content.strip() if agent_turns else ""

        with self._lock:
            if self.knowledge.find_by_conversation(conversation_ref) is not None:
                raise DuplicatePatternError(f"Pattern for conversation {conversation_ref} already saved")

            pattern = SuccessPattern(
                conversation_ref=conversation_ref,
                score=evaluation.success_score,
                success_score=evaluation.success_score,
                summary_text=self.generate_summary(turns),
                problem=problem,
                resolution=resolution[:500],
                tags=frozenset(self.generate_tags(evaluation, problem)),
            )
            pattern = self.vector_store.add_entry(pattern)
            self.knowledge.add(pattern)

        if self.metrics:
            self.metrics.record_pattern_saved()
        logger.info(
            f"[PATTERN_SAVED] conversation={conversation_ref} entry={pattern.entry_id} "
            f"score={evaluation.success_score} tags={sorted(pattern.tags)}"
        )
        return pattern

    def process_completed_conversation(
        self,
        conversation_ref: str,
        turns: List[ConversationTurn],
    ) -> Optional[SuccessPattern]:
        """Evaluate and save once; a repeated call returns the stored pattern."""
        existing = self.knowledge.find_by_conversation(conversation_ref)
        if existing is not None:
            logger.debug(f"[FEEDBACK] conversation={conversation_ref} already has pattern {existing.entry_id}")
            return existing
        try:
            return self.save_pattern(conversation_ref, turns)
        except DuplicatePatternError:
            return self.knowledge.find_by_conversation(conversation_ref)

    def generate_tags(self, evaluation: ConversationEvaluation, problem: str) -> List[str]:
        tags = ["score:high" if evaluation.success_score >= self.HIGH_SCORE else "score:good"]
        indicators = evaluation.indicators
        if "conversion_intent" in indicators:
            tags.append("conversion")
        if {"positive_feedback", "satisfaction", "clear_resolution"} & set(indicators):
            tags.append("satisfaction")
        if problem:
            tags.append(f"topic:{infer_problem_type(problem)}")
            tags.append(f"category:{self.analyzer.categorize(problem).value}")
        return tags

    @staticmethod
    def generate_summary(turns: List[ConversationTurn]) -> str:
        points = []
        for turn in turns:
            for pattern, label in SUMMARY_POINTS:
                if label not in points and pattern.search(turn.content):
                    points.append(label)
        first_user = next((t.content.strip() for t in turns if t.is_user), "")
        if points:
            return f"{'、'.join(points)}: {first_user[:60]}"
        return first_user[:80]

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def find_similar_patterns(
        self,
        query: str,
        tags: Optional[List[str]] = None,
        limit: int = 10,
        min_relevance: float = 0.0,
    ) -> List[SuccessPattern]:
        """Patterns similar to ``query``, best success score first."""
        hits = self.vector_store.search_text(
            query,
            top_k=max(limit * 3, limit),
            score_threshold=min_relevance,
            kind="success_pattern",
            tags=tags or None,
        )
        if not hits and tags:
            hits = self.vector_store.search_text(
                query, top_k=max(limit * 3, limit), score_threshold=min_relevance, kind="success_pattern"
            )

        ranked = []
        for hit in hits:
            entry = self.vector_store.get_entry(hit.entity_id)
            if isinstance(entry, SuccessPattern):
                ranked.append((entry, hit.relevance))
        ranked.sort(key=lambda item: (-item[0].success_score, -item[1]))
        return [entry for entry, _ in ranked[:limit]]
