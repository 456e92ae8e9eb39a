"""
Unit Tests for NeedsExtractor

Tests:
- Need detection, confidence and priority tiers
- Sentiment cue boosts and repeated topics
- Injected rule sets
- Conversation analysis shape
"""

import dataclasses
import re

import pytest

from support_engine.models.needs import NeedType, Priority, SentimentSignal
from support_engine.rules.nlu_rules import DEFAULT_RULES, NeedRule
from support_engine.services.needs_extractor import NeedsExtractor


@pytest.fixture
def extractor(extractor_settings):
    return NeedsExtractor(settings=extractor_settings)


# ============================================================================
# Extraction Tests
# ============================================================================

class TestExtractNeeds:
    """Tests for need extraction."""

    def test_efficiency_with_frustration_cue(self, extractor, turns_factory):
        needs = extractor.extract_needs(turns_factory(("user", "レポート作成に時間がかかって大変です")))

        assert len(needs) == 1
        need = needs[0]
        assert need.type == NeedType.EFFICIENCY
        assert need.confidence == pytest.approx(0.7)
        assert need.priority_score == pytest.approx(134.4)
        assert need.priority == Priority.HIGH
        assert need.sentiments == [SentimentSignal.FRUSTRATED]
        assert need.suggestion == "レポート作成の効率化・自動化ツールの導入"

    def test_medium_without_cue(self, extractor, turns_factory):
        needs = extractor.extract_needs(turns_factory(("user", "レポート作成に時間がかかります")))

        assert needs[0].priority_score == pytest.approx(84.0)
        assert needs[0].priority == Priority.MEDIUM
        assert needs[0].sentiments == []

    @pytest.mark.parametrize("score,expected", [
        (120.0, Priority.HIGH),
        (119.9, Priority.MEDIUM),
        (80.0, Priority.MEDIUM),
        (79.9, Priority.LOW),
    ])
    def test_tier_boundaries_are_inclusive(self, extractor, score, expected):
        assert extractor._tier(score) == expected

    def test_low_priority_feature_request(self, extractor, turns_factory):
        needs = extractor.extract_needs(turns_factory(("user", "CSV出力の機能が欲しい")))

        assert [n.type for n in needs] == [NeedType.FEATURE_REQUEST]
        assert needs[0].keywords == ["機能", "欲しい"]
        assert needs[0].priority == Priority.LOW

    def test_repeated_topic_raises_confidence(self, extractor, turns_factory):
        single = extractor.extract_needs(turns_factory(("user", "Shopify連携が必要です")))
        repeated = extractor.extract_needs(
            turns_factory(("user", "Shopify連携が必要です"), ("user", "Shopifyを使っています"))
        )

        def integration(needs):
            return next(n for n in needs if n.type == NeedType.INTEGRATION)

        assert integration(repeated).confidence == pytest.approx(integration(single).confidence + 0.1)

    def test_needs_sorted_by_priority(self, extractor, turns_factory):
        needs = extractor.extract_needs(
            turns_factory(("user", "CSV出力の機能が欲しい"), ("user", "レポート作成に時間がかかって大変です"))
        )

        assert needs[0].type == NeedType.EFFICIENCY
        ranks = [n.priority.rank for n in needs]
        assert ranks == sorted(ranks, reverse=True)

    @pytest.mark.parametrize(
        "exchanges",
        [
            (),
            (("assistant", "レポート作成に時間がかかりますか？"),),
            (("user", "こんにちは"),),
        ],
    )
    def test_no_needs(self, extractor, turns_factory, exchanges):
        assert extractor.extract_needs(turns_factory(*exchanges)) == []

    def test_injected_rule_set(self, extractor_settings, turns_factory):
        rules = dataclasses.replace(
            DEFAULT_RULES,
            version="test",
            needs=(
                NeedRule(
                    type=NeedType.OTHER,
                    keywords=("請求",),
                    patterns=(re.compile(r"(.{0,20})(請求)(.{0,20})"),),
                    suggestion_template="請求フローの見直し",
                ),
            ),
        )
        needs = NeedsExtractor(rules=rules, settings=extractor_settings).extract_needs(
            turns_factory(("user", "請求書が届かない"))
        )

        assert len(needs) == 1
        assert needs[0].type == NeedType.OTHER
        assert needs[0].confidence == pytest.approx(1.0)
        assert needs[0].priority == Priority.MEDIUM
        assert needs[0].suggestion == "請求フローの見直し"


# ============================================================================
# Analysis Tests
# ============================================================================

class TestAnalyze:
    """Tests for the combined conversation analysis."""

    def test_urgent_conversation(self, extractor, turns_factory):
        analysis = extractor.analyze(turns_factory(("user", "至急対応してください")))

        assert analysis.sentiment == SentimentSignal.URGENT
        assert analysis.priority == Priority.HIGH
        assert analysis.escalation_required is True
        assert "緊急性の高い表現" in analysis.escalation_reason
        assert analysis.fallback is False

    def test_resolved_conversation(self, extractor, successful_login_turns):
        analysis = extractor.analyze(successful_login_turns)

        assert analysis.needs == []
        assert analysis.sentiment == SentimentSignal.POSITIVE
        assert analysis.priority == Priority.LOW
        assert analysis.escalation_required is False
        assert analysis.escalation_reason is None

    def test_priority_follows_strongest_need(self, extractor, turns_factory):
        analysis = extractor.analyze(turns_factory(("user", "レポート作成に時間がかかります")))
        assert analysis.priority == Priority.MEDIUM
