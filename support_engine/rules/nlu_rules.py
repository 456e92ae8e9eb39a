"""
Language Understanding Rules - Keyword and pattern tables

Rule sets are immutable and versioned. Extractors and analyzers take a rule
set as a constructor argument, so a tuned table can be swapped in without
touching the scoring code.
"""

import re
from dataclasses import dataclass, field

from support_engine.models.needs import NeedType, SentimentSignal


@dataclass(frozen=True)
class NeedRule:
    """Keywords, patterns and weighting for one need category."""

    type: NeedType
    keywords: tuple[str, ...]
    patterns: tuple[re.Pattern, ...]
    suggestion_template: str
    type_weight: float = 1.0


@dataclass(frozen=True)
class SentimentCue:
    """Sentiment cue that boosts the priority of co-occurring needs."""

    signal: SentimentSignal
    name: str
    pattern: re.Pattern
    priority_boost: int


@dataclass(frozen=True)
class SentimentCategory:
    """Per-message sentiment category with its score weight."""

    signal: SentimentSignal
    keywords: tuple[str, ...]
    phrases: tuple[re.Pattern, ...]
    score_weight: float


@dataclass(frozen=True)
class EscalationTriggers:
    sentiment_threshold: float = -3.0
    frustration_count: int = 2
    urgent_count: int = 1
    negative_trend_length: int = 3
    complaint_repetition: int = 2


@dataclass(frozen=True)
class NeedScoring:
    base_confidence: float = 0.5
    keyword_weight: float = 0.3
    pattern_bonus_cap: float = 0.2
    topic_bonus_per_mention: float = 0.05
    topic_min_mentions: int = 2
    topic_strong_mentions: int = 3
    topic_strong_floor: float = 0.75
    context_window: int = 3
    boost_factor: float = 0.3


@dataclass(frozen=True)
class NluRuleSet:
    version: str
    needs: tuple[NeedRule, ...]
    cues: tuple[SentimentCue, ...]
    categories: tuple[SentimentCategory, ...]
    triggers: EscalationTriggers = field(default_factory=EscalationTriggers)
    scoring: NeedScoring = field(default_factory=NeedScoring)

    def category(self, signal: SentimentSignal) -> SentimentCategory:
        for category in self.categories:
            if category.signal == signal:
                return category
        raise KeyError(signal)

    def complaint_keywords(self) -> tuple[str, ...]:
        return (
            self.category(SentimentSignal.NEGATIVE).keywords
            + self.category(SentimentSignal.FRUSTRATED).keywords
        )


def _p(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p) for p in patterns)


NEED_RULES = (
    NeedRule(
        type=NeedType.EFFICIENCY,
        keywords=("遅い", "時間がかかる", "効率", "自動化", "短縮", "スピード", "パフォーマンス", "改善"),
        patterns=_p(
            r"(.{0,20})(遅|重|時間|手間|面倒)(.{0,20})",
            r"(.{0,20})(効率|自動|簡単|楽に)(.{0,20})",
            r"(.{0,20})(速く|早く|短時間)(.{0,20})",
        ),
        suggestion_template="{topic}の効率化・自動化ツールの導入",
        type_weight=1.2,
    ),
    NeedRule(
        type=NeedType.COST_REDUCTION,
        keywords=("高い", "費用", "コスト", "予算", "料金", "価格", "節約", "削減"),
        patterns=_p(
            r"(.{0,20})(高い|高額|費用|コスト)(.{0,20})",
            r"(.{0,20})(予算|料金|価格)(.{0,20})",
            r"(.{0,20})(安く|節約|削減)(.{0,20})",
        ),
        suggestion_template="コスト最適化プランの提案",
        type_weight=1.1,
    ),
    NeedRule(
        type=NeedType.FEATURE_REQUEST,
        keywords=("できない", "機能", "追加", "改善", "欲しい", "必要", "要望"),
        patterns=_p(
            r"(.{0,20})(できない|できません|不可能)(.{0,20})",
            r"(.{0,20})(機能|フィーチャー|feature)(.{0,20})",
            r"(.{0,20})(欲しい|必要|要望|希望)(.{0,20})",
        ),
        suggestion_template="機能追加・カスタマイズの検討",
        type_weight=1.0,
    ),
    NeedRule(
        type=NeedType.INTEGRATION,
        keywords=("連携", "統合", "接続", "API", "連動", "同期", "インテグレーション"),
        patterns=_p(
            r"(.{0,20})(連携|統合|接続)(.{0,20})",
            r"(.{0,20})(API|インテグレーション|integration)(.{0,20})",
            r"(.{0,20})(同期|連動|つなぐ)(.{0,20})",
        ),
        suggestion_template="外部システムとの連携強化",
        type_weight=1.1,
    ),
    NeedRule(
        type=NeedType.SCALABILITY,
        keywords=("増える", "拡大", "成長", "スケール", "大量", "多い", "増加"),
        patterns=_p(
            r"(.{0,20})(増える|増えて|増加)(.{0,20})",
            r"(.{0,20})(拡大|成長|スケール)(.{0,20})",
            r"(.{0,20})(大量|多く|たくさん)(.{0,20})",
        ),
        suggestion_template="スケーラビリティ向上プランの提案",
        type_weight=1.4,
    ),
    NeedRule(
        type=NeedType.USABILITY,
        keywords=("難しい", "複雑", "分かりにくい", "使いにくい", "分からない", "迷う", "混乱"),
        patterns=_p(
            r"(.{0,20})(難しい|複雑|分かりにくい)(.{0,20})",
            r"(.{0,20})(使いにくい|使い方|操作)(.{0,20})",
            r"(.{0,20})(分からない|迷う|混乱)(.{0,20})",
        ),
        suggestion_template="UI/UX改善・トレーニングサポート",
        type_weight=1.1,
    ),
)

SENTIMENT_CUES = (
    SentimentCue(SentimentSignal.FRUSTRATED, "frustrated", re.compile(r"困っ|イライラ|うんざり|疲れ|大変|ストレス"), 2),
    SentimentCue(SentimentSignal.URGENT, "urgent", re.compile(r"至急|緊急|今すぐ|すぐに|早急|急ぎ"), 3),
    SentimentCue(SentimentSignal.NEGATIVE, "disappointed", re.compile(r"がっかり|期待はずれ|残念|不満"), 1),
)

SENTIMENT_CATEGORIES = (
    SentimentCategory(
        signal=SentimentSignal.POSITIVE,
        keywords=("ありがとう", "助かりました", "素晴らしい", "良い", "便利", "嬉しい", "満足", "解決"),
        phrases=_p(
            r"助かり(ました|ます)",
            r"ありがとう(ございます)?",
            r"素晴らしい|すばらしい",
            r"良い|いい(です|ですね)",
            r"便利|べんり",
            r"嬉しい|うれしい",
            r"満足|まんぞく",
            r"解決(しました|できました)",
        ),
        score_weight=1.0,
    ),
    SentimentCategory(
        signal=SentimentSignal.NEUTRAL,
        keywords=("確認", "質問", "教えて", "お願い", "方法", "どうやって", "いつ", "どこ"),
        phrases=_p(
            r"確認(したい|させて|お願い)",
            r"質問(があります|です)",
            r"教えて(ください|もらえ)",
            r"お願い(します|いたします)",
            r"方法(を|は)",
            r"どうやって|どのように",
            r"いつ|どこ|何を",
        ),
        score_weight=0.5,
    ),
    SentimentCategory(
        signal=SentimentSignal.NEGATIVE,
        keywords=("困る", "分からない", "できない", "難しい", "複雑", "面倒", "不便", "遅い",
                  "改善", "悪化", "使えない", "使えません"),
        phrases=_p(
            r"困って(います|いる|る)",
            r"分から(ない|ず)",
            r"でき(ない|ません)",
            r"難しい|むずかしい",
            r"複雑|ふくざつ",
            r"面倒|めんどう",
            r"不便|ふべん",
            r"遅い|おそい",
            r"改善され(てい|ない)",
            r"悪化(して|する)",
            r"(全く|まったく).*(使え|でき)(ない|ません)",
        ),
        score_weight=-1.0,
    ),
    SentimentCategory(
        signal=SentimentSignal.FRUSTRATED,
        keywords=("いつまで", "何度も", "ずっと", "まだ", "もう", "イライラ", "うんざり", "最悪", "全く"),
        phrases=_p(
            r"いつまで(待|かかる)",
            r"何度も|何回も",
            r"ずっと(同じ|続いて)",
            r"まだ(解決|終わら)",
            r"もう(いい|嫌|限界)",
            r"イライラ|いらいら",
            r"うんざり",
            r"最悪|さいあく",
            r"ひどい|酷い",
            r"全く.*(でき|使え)(ない|ません)",
        ),
        score_weight=-2.0,
    ),
    SentimentCategory(
        signal=SentimentSignal.URGENT,
        keywords=("至急", "緊急", "今すぐ", "すぐに", "早急", "急ぎ", "大至急", "今日中"),
        phrases=_p(
            r"至急|しきゅう",
            r"緊急|きんきゅう",
            r"今すぐ|いますぐ",
            r"すぐに|直ちに",
            r"早急|そうきゅう",
            r"急(ぎ|いで)",
            r"大至急",
            r"今日中|本日中",
        ),
        score_weight=-1.5,
    ),
)

DEFAULT_RULES = NluRuleSet(
    version="ja-2024.1",
    needs=NEED_RULES,
    cues=SENTIMENT_CUES,
    categories=SENTIMENT_CATEGORIES,
)
