"""
Needs Extractor - Latent need detection from user turns

Each user turn is matched against every need rule. Confidence grows with
keyword density and with topics the customer keeps coming back to; sentiment
cues nearby raise the priority of the needs they accompany.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from support_engine.config.settings import ExtractorConfig, config
from support_engine.models.conversation import ConversationTurn
from support_engine.models.needs import (
    ConversationAnalysis,
    ExtractedNeed,
    NeedType,
    Priority,
    SentimentSignal,
)
from support_engine.rules.nlu_rules import DEFAULT_RULES, NeedRule, NluRuleSet
from support_engine.services.sentiment_analyzer import SentimentAnalyzer

logger = logging.getLogger(__name__)

_TOPIC_RE = re.compile(r"[一-龠ァ-ヶー]+|[a-zA-Z]+")
_NOUN_RE = re.compile(r"[一-龠ァ-ヶーA-Za-z0-9]{2,}")
DEFAULT_TOPIC = "業務プロセス"


@dataclass
class _Candidate:
    type: NeedType
    evidence: str
    context: str
    confidence: float
    turn_index: int
    suggestion: str
    keywords: list[str]
    boost: int = 0
    sentiments: list[SentimentSignal] = field(default_factory=list)


class NeedsExtractor:
    """Rule-driven need extraction; the rule set is injected."""

    def __init__(
        self,
        rules: NluRuleSet = DEFAULT_RULES,
        settings: Optional[ExtractorConfig] = None,
        sentiment_analyzer: Optional[SentimentAnalyzer] = None,
    ):
        self.rules = rules
        self.settings = settings or config.extractor
        self.sentiment_analyzer = sentiment_analyzer or SentimentAnalyzer(rules)

    def extract_needs(self, turns: list[ConversationTurn]) -> list[ExtractedNeed]:
        """
        Extract needs from a conversation history.

        Returns an empty list for empty or assistant-only histories.
        """
        user_turns = [t for t in turns if t.is_user and t.content and t.content.strip()]
        if not user_turns:
            return []

        candidates: list[_Candidate] = []
        for index, turn in enumerate(user_turns):
            candidates.extend(self._match_turn(turn.content, index))

        if not candidates:
            return []

        topics = self._repeated_topics(user_turns)
        for candidate in candidates:
            self._apply_context(candidate, user_turns, topics)

        needs = self._consolidate(candidates)
        logger.debug(f"[NEEDS_EXTRACTED] rules={self.rules.version} count={len(needs)}")
        return needs

    def analyze(self, turns: list[ConversationTurn]) -> ConversationAnalysis:
        """Needs plus conversation sentiment in the well-formed analysis shape."""
        needs = self.extract_needs(turns)
        report = self.sentiment_analyzer.analyze_conversation(turns)

        priority = max((n.priority for n in needs), key=lambda p: p.rank, default=Priority.LOW)
        if report.escalation.priority in ("high", "urgent"):
            priority = Priority.HIGH
        elif report.escalation.priority == "medium" and priority.rank < Priority.MEDIUM.rank:
            priority = Priority.MEDIUM

        sentiment = report.overall
        if report.escalation.priority == "urgent":
            sentiment = SentimentSignal.URGENT

        return ConversationAnalysis(
            needs=needs,
            sentiment=sentiment,
            priority=priority,
            escalation_required=report.escalation.required,
            escalation_reason="; ".join(report.escalation.reasons) or None,
        )

    def _match_turn(self, content: str, index: int) -> list[_Candidate]:
        scoring = self.rules.scoring
        found = []
        for rule in self.rules.needs:
            matched_keywords = [k for k in rule.keywords if k in content]
            keyword_score = len(matched_keywords) / len(rule.keywords)
            for pattern in rule.patterns:
                match = pattern.search(content)
                if not match:
                    continue
                complexity = min(len(pattern.pattern) / 100.0, scoring.pattern_bonus_cap)
                confidence = min(
                    scoring.base_confidence + keyword_score * scoring.keyword_weight + complexity,
                    1.0,
                )
                context = " ".join(g.strip() for g in match.groups() if g and g.strip())
                found.append(
                    _Candidate(
                        type=rule.type,
                        evidence=content,
                        context=context,
                        confidence=confidence,
                        turn_index=index,
                        suggestion=self._suggestion(rule, match),
                        keywords=matched_keywords,
                    )
                )
        return found

    @staticmethod
    def _suggestion(rule: NeedRule, match: re.Match) -> str:
        if "{topic}" not in rule.suggestion_template:
            return rule.suggestion_template
        lead = match.group(1) or ""
        nouns = _NOUN_RE.findall(lead)
        topic = nouns[-1] if nouns else DEFAULT_TOPIC
        return rule.suggestion_template.format(topic=topic)

    def _repeated_topics(self, user_turns: list[ConversationTurn]) -> Counter:
        counts: Counter = Counter()
        for turn in user_turns:
            for word in _TOPIC_RE.findall(turn.content):
                if len(word) >= 2:
                    counts[word] += 1
        minimum = self.rules.scoring.topic_min_mentions
        return Counter({w: c for w, c in counts.items() if c >= minimum})

    def _apply_context(self, candidate: _Candidate, user_turns: list[ConversationTurn], topics: Counter):
        scoring = self.rules.scoring
        strong = max(scoring.topic_strong_mentions, self.settings.topic_repeat_min)

        best_mentions = 0
        for topic, count in topics.items():
            if topic in candidate.evidence:
                candidate.confidence = min(candidate.confidence + count * scoring.topic_bonus_per_mention, 1.0)
                best_mentions = max(best_mentions, count)
        if best_mentions >= strong:
            candidate.confidence = max(candidate.confidence, scoring.topic_strong_floor)

        window = scoring.context_window
        start = max(0, candidate.turn_index - window)
        end = min(len(user_turns), candidate.turn_index + window + 1)
        for turn in user_turns[start:end]:
            for cue in self.rules.cues:
                if cue.pattern.search(turn.content):
                    candidate.boost = max(candidate.boost, cue.priority_boost)
                    if cue.signal not in candidate.sentiments:
                        candidate.sentiments.append(cue.signal)

    def _priority_score(self, candidate: _Candidate) -> float:
        rule = next(r for r in self.rules.needs if r.type == candidate.type)
        score = candidate.confidence * 100
        score *= 1 + candidate.boost * self.rules.scoring.boost_factor
        return score * rule.type_weight

    def _tier(self, score: float) -> Priority:
        if score >= self.settings.threshold_high:
            return Priority.HIGH
        if score >= self.settings.threshold_medium:
            return Priority.MEDIUM
        return Priority.LOW

    def _consolidate(self, candidates: list[_Candidate]) -> list[ExtractedNeed]:
        strongest: dict[NeedType, tuple[float, _Candidate]] = {}
        for candidate in candidates:
            score = self._priority_score(candidate)
            current = strongest.get(candidate.type)
            if current is None or (score, candidate.confidence) > (current[0], current[1].confidence):
                strongest[candidate.type] = (score, candidate)

        needs = [
            ExtractedNeed(
                type=c.type,
                evidence=c.evidence[:500],
                confidence=round(c.confidence, 4),
                priority=self._tier(score),
                priority_score=round(score, 2),
                suggestion=c.suggestion,
                keywords=c.keywords,
                sentiments=c.sentiments,
            )
            for score, c in strongest.values()
        ]
        needs.sort(key=lambda n: (-n.priority.rank, -n.priority_score, -n.confidence))
        return needs
