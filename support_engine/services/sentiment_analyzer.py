"""
Sentiment Analyzer - Per-message sentiment and escalation triggers

Scores each user turn against keyword/phrase families, tracks the trend
across the conversation and reports which escalation triggers fired.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from support_engine.models.conversation import ConversationTurn
from support_engine.models.needs import SentimentSignal
from support_engine.rules.nlu_rules import DEFAULT_RULES, NluRuleSet

logger = logging.getLogger(__name__)

RECENCY_WEIGHT = 0.7
RECENT_WINDOW = 3
TREND_DELTA = 0.5
PRIORITY_ORDER = {"low": 1, "medium": 2, "high": 3, "urgent": 4}


@dataclass
class MessageSentiment:
    signal: SentimentSignal
    score: float
    confidence: float
    raw_scores: dict[SentimentSignal, float] = field(default_factory=dict)


@dataclass
class EscalationSignal:
    required: bool
    reasons: list[str]
    priority: str
    factors: list[str] = field(default_factory=list)


@dataclass
class SentimentReport:
    overall: SentimentSignal
    score: float
    trend: str
    trend_pattern: list[str]
    volatility: float
    escalation: EscalationSignal
    top_keywords: dict[str, int]
    history: list[MessageSentiment]


def score_to_signal(score: float) -> SentimentSignal:
    if score >= 0.5:
        return SentimentSignal.POSITIVE
    if score >= -0.5:
        return SentimentSignal.NEUTRAL
    if score >= -1.5:
        return SentimentSignal.NEGATIVE
    return SentimentSignal.FRUSTRATED


class SentimentAnalyzer:
    """Keyword and phrase based sentiment scoring."""

    def __init__(self, rules: NluRuleSet = DEFAULT_RULES):
        self.rules = rules

    def analyze_message(self, content: Optional[str]) -> MessageSentiment:
        """Classify a single message."""
        if not content or not content.strip():
            return MessageSentiment(signal=SentimentSignal.NEUTRAL, score=0.0, confidence=0.0)

        raw: dict[SentimentSignal, float] = {}
        matches: dict[SentimentSignal, int] = {}
        for category in self.rules.categories:
            score, count = 0.0, 0
            for keyword in category.keywords:
                if keyword in content:
                    score += 1.0
                    count += 1
            for phrase in category.phrases:
                if phrase.search(content):
                    score += 1.5
                    count += 1
            raw[category.signal] = score
            matches[category.signal] = count

        if raw.get(SentimentSignal.URGENT, 0) > 0:
            dominant = SentimentSignal.URGENT
        elif raw.get(SentimentSignal.FRUSTRATED, 0) > 0:
            dominant = SentimentSignal.FRUSTRATED
        else:
            positive = {s: v for s, v in raw.items() if v > 0}
            dominant = max(positive, key=positive.get) if positive else SentimentSignal.NEUTRAL

        total_matches = sum(matches.values())
        confidence = matches.get(dominant, 0) / total_matches if total_matches else 0.0

        if dominant in raw and raw[dominant] > 0:
            score = raw[dominant] * self.rules.category(dominant).score_weight
        else:
            score = 0.0
        if dominant == SentimentSignal.NEUTRAL and abs(score) > 0.5:
            score = 0.5 if score > 0 else -0.5

        return MessageSentiment(
            signal=dominant,
            score=score,
            confidence=round(confidence, 2),
            raw_scores=raw,
        )

    def analyze_conversation(self, turns: list[ConversationTurn]) -> SentimentReport:
        """Aggregate sentiment over the user turns of a conversation."""
        user_turns = [t for t in turns if t.is_user]
        history = [self.analyze_message(t.content) for t in user_turns]
        keyword_frequency = self._keyword_frequency(user_turns)

        score = self._weighted_score(history)
        overall = score_to_signal(score) if history else SentimentSignal.NEUTRAL
        trend, pattern, volatility = self._trend(history)
        escalation = self._escalation(history, keyword_frequency)

        if escalation.required:
            logger.info(f"[SENTIMENT_ESCALATION] priority={escalation.priority} reasons={escalation.reasons}")

        return SentimentReport(
            overall=overall,
            score=round(score, 3),
            trend=trend,
            trend_pattern=pattern,
            volatility=volatility,
            escalation=escalation,
            top_keywords=dict(keyword_frequency.most_common(5)),
            history=history,
        )

    def _keyword_frequency(self, turns: list[ConversationTurn]) -> Counter:
        counter: Counter = Counter()
        keywords = [k for category in self.rules.categories for k in category.keywords]
        for turn in turns:
            for keyword in keywords:
                if keyword in turn.content:
                    counter[keyword] += 1
        return counter

    @staticmethod
    def _weighted_score(history: list[MessageSentiment]) -> float:
        if not history:
            return 0.0
        average = sum(h.score for h in history) / len(history)
        if len(history) <= RECENT_WINDOW:
            return average
        recent = history[-RECENT_WINDOW:]
        recent_average = sum(h.score for h in recent) / len(recent)
        return average * (1 - RECENCY_WEIGHT) + recent_average * RECENCY_WEIGHT

    @staticmethod
    def _trend(history: list[MessageSentiment]) -> tuple[str, list[str], float]:
        if len(history) < 2:
            return "stable", [], 0.0
        pattern = []
        for prev, curr in zip(history, history[1:]):
            if curr.score > prev.score + TREND_DELTA:
                pattern.append("improving")
            elif curr.score < prev.score - TREND_DELTA:
                pattern.append("declining")
            else:
                pattern.append("stable")
        dominant = Counter(pattern).most_common(1)[0][0]
        volatility = round(float(np.std([h.score for h in history])), 2)
        return dominant, pattern, volatility

    def _escalation(self, history: list[MessageSentiment], keyword_frequency: Counter) -> EscalationSignal:
        triggers = self.rules.triggers
        reasons: list[str] = []
        factors: list[str] = []
        priority = "low"

        def raise_to(level: str):
            nonlocal priority
            if PRIORITY_ORDER[level] > PRIORITY_ORDER[priority]:
                priority = level

        total = sum(h.score for h in history)
        if history and total <= triggers.sentiment_threshold:
            reasons.append(f"感情スコアが閾値を下回っています ({total:.2f})")
            raise_to("high")

        frustrated = sum(1 for h in history if h.signal == SentimentSignal.FRUSTRATED)
        if frustrated >= triggers.frustration_count:
            reasons.append(f"フラストレーションが{frustrated}回検出されました")
            raise_to("high")

        urgent = sum(1 for h in history if h.signal == SentimentSignal.URGENT)
        if urgent >= triggers.urgent_count:
            reasons.append(f"緊急性の高い表現が{urgent}回検出されました")
            raise_to("urgent")
            factors.append("urgent_request")

        window = triggers.negative_trend_length
        if len(history) >= window and all(
            h.score < 0 or h.signal in (SentimentSignal.NEGATIVE, SentimentSignal.FRUSTRATED)
            for h in history[-window:]
        ):
            reasons.append(f"ネガティブな感情が{window}メッセージ連続しています")
            raise_to("high")

        complaints = self.rules.complaint_keywords()
        repeated = [
            k for k, count in keyword_frequency.items()
            if k in complaints and count >= triggers.complaint_repetition
        ]
        if repeated:
            reasons.append(f"同じ不満が繰り返されています: {', '.join(sorted(repeated))}")
            raise_to("medium")

        return EscalationSignal(required=bool(reasons), reasons=reasons, priority=priority, factors=factors)
