"""
Response Service - Reply generation with a safe fallback

Uses the completion collaborator when one is configured. Any external
failure degrades to a canned apology for replies and to the neutral
analysis for completion-based need extraction; nothing is raised to the
customer-facing path.
"""

import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from support_engine.contracts.collaborators import CompletionClient
from support_engine.models.conversation import ConversationTurn
from support_engine.models.needs import (
    ConversationAnalysis,
    ExtractedNeed,
    NeedType,
    Priority,
    SentimentSignal,
)
from support_engine.services.context_aggregator import ContextAggregator, RetrievedContext
from support_engine.utils.error_handling import ParseError, with_timeout

logger = logging.getLogger(__name__)

COMPLETION_TIMEOUT_SECONDS = 30.0

FALLBACK_RESPONSE = (
    "お問い合わせありがとうございます。申し訳ございませんが、現在システムに接続できません。"
    "しばらくしてから再度お試しいただくか、サポートチームまでお問い合わせください。"
)

CHATBOT_SYSTEM_PROMPT = """あなたはBtoB SaaSのカスタマーサポートボットです。
親切で専門的な対応を心がけ、顧客の問題解決を支援します。

以下のガイドラインに従ってください：
1. 簡潔で分かりやすい回答を心がける
2. 技術的な内容も噛み砕いて説明する
3. 必要に応じて具体例を提示する
4. 解決できない場合は、人間のサポート担当者への引き継ぎを提案する
5. 顧客の感情に配慮した返答をする"""

ANALYSIS_SYSTEM_PROMPT = """あなたはBtoB SaaSのカスタマーサクセスAIアシスタントです。
顧客との会話を分析し、隠れたニーズや課題を発見して、プロアクティブな提案を行います。

分析結果は必ず以下のJSON形式で出力してください：
{
  "hidden_needs": [
    {
      "need_type": "効率化|自動化|コスト削減|機能改善|その他",
      "evidence": "会話からの具体的な証拠",
      "confidence": 0.0-1.0の数値,
      "proactive_suggestion": "具体的な提案内容"
    }
  ],
  "customer_sentiment": "positive|neutral|negative|frustrated",
  "priority_level": "low|medium|high",
  "escalation_required": true|false,
  "escalation_reason": "エスカレーションが必要な理由（必要な場合のみ）"
}"""

NEED_TYPE_ALIASES = {
    "効率化": NeedType.EFFICIENCY,
    "自動化": NeedType.EFFICIENCY,
    "コスト削減": NeedType.COST_REDUCTION,
    "機能改善": NeedType.FEATURE_REQUEST,
    "機能追加": NeedType.FEATURE_REQUEST,
    "連携": NeedType.INTEGRATION,
    "拡張性": NeedType.SCALABILITY,
    "使いやすさ": NeedType.USABILITY,
    "その他": NeedType.OTHER,
}

_FENCED_JSON_RE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)
_BARE_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)


def _need_type(value: Any) -> NeedType:
    if isinstance(value, str):
        if value in NEED_TYPE_ALIASES:
            return NEED_TYPE_ALIASES[value]
        try:
            return NeedType(value.lower())
        except ValueError:
            pass
    return NeedType.OTHER


def _extract_json(text: str) -> dict:
    match = _FENCED_JSON_RE.search(text) or _BARE_JSON_RE.search(text)
    if not match:
        raise ParseError("No JSON object in completion output")
    raw = match.group(1) if match.re is _FENCED_JSON_RE else match.group(0)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in completion output: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("Completion JSON is not an object")
    return data


def _to_analysis(data: dict) -> ConversationAnalysis:
    needs = []
    for raw in data.get("hidden_needs") or []:
        if not isinstance(raw, dict):
            raise ParseError("hidden_needs items must be objects")
        confidence = float(raw.get("confidence", 0.0))
        needs.append(
            ExtractedNeed(
                type=_need_type(raw.get("need_type")),
                evidence=str(raw.get("evidence", "")),
                confidence=min(max(confidence, 0.0), 1.0),
                priority=Priority(data.get("priority_level", "low")),
                priority_score=round(confidence * 100, 2),
                suggestion=str(raw.get("proactive_suggestion", "")),
            )
        )
    return ConversationAnalysis(
        needs=needs,
        sentiment=SentimentSignal(data.get("customer_sentiment", "neutral")),
        priority=Priority(data.get("priority_level", "low")),
        escalation_required=bool(data.get("escalation_required", False)),
        escalation_reason=data.get("escalation_reason"),
    )


def parse_analysis(text: str) -> ConversationAnalysis:
    """
    Parse completion output into a well-formed analysis.

    Never raises: malformed output yields ``ConversationAnalysis.safe_default()``.
    """
    try:
        try:
            return _to_analysis(_extract_json(text or ""))
        except (ValueError, TypeError, ValidationError) as e:
            raise ParseError(f"Unexpected analysis shape: {e}") from e
    except ParseError as e:
        logger.warning(f"[ANALYSIS_PARSE] Falling back to default analysis: {e}")
        return ConversationAnalysis.safe_default()


def format_conversation(history: list[ConversationTurn]) -> str:
    return "\n".join(f"{'ユーザー' if t.is_user else 'サポート'}: {t.content}" for t in history)


class ResponseService:
    """Assembles replies from retrieved context and the optional completion client."""

    def __init__(
        self,
        completion: Optional[CompletionClient] = None,
        aggregator: Optional[ContextAggregator] = None,
        timeout_seconds: float = COMPLETION_TIMEOUT_SECONDS,
    ):
        self.completion = completion
        self.aggregator = aggregator
        self.timeout_seconds = timeout_seconds

    async def _complete(self, system_prompt: str, history: list[ConversationTurn], user_message: str) -> str:
        complete = with_timeout(self.timeout_seconds)(self.completion.complete)
        return await complete(system_prompt, history, user_message)

    async def generate_response(
        self,
        history: list[ConversationTurn],
        user_message: str,
        context: Optional[RetrievedContext] = None,
        analysis: Optional[ConversationAnalysis] = None,
    ) -> str:
        """
        Reply to ``user_message``.

        Without a completion client the reply is built from the retrieved
        context; when the client fails the canned apology is returned.
        """
        if self.completion is None:
            if context is not None and context.items and self.aggregator is not None:
                return self.aggregator.generate_contextual_response(user_message, context)["content"]
            return FALLBACK_RESPONSE

        system_prompt = CHATBOT_SYSTEM_PROMPT
        if context is not None and self.aggregator is not None:
            system_prompt = (
                f"{CHATBOT_SYSTEM_PROMPT}\n\n"
                f"{self.aggregator.build_augmented_prompt(user_message, context, analysis)}"
            )

        try:
            return await self._complete(system_prompt, history, user_message)
        except Exception as e:
            logger.error(f"[RESPONSE_FALLBACK] Completion failed: {e}")
            return FALLBACK_RESPONSE

    async def analyze_with_completion(
        self,
        history: list[ConversationTurn],
        user_query: Optional[str] = None,
    ) -> ConversationAnalysis:
        """Completion-based need analysis; the safe default on any failure."""
        if self.completion is None:
            return ConversationAnalysis.safe_default()

        prompt = "以下の会話履歴を分析し、顧客の隠れたニーズと推奨アクションを特定してください。\n\n"
        prompt += f"【会話履歴】\n{format_conversation(history)}\n"
        if user_query:
            prompt += f"\n【最新の質問】\n{user_query}\n"

        try:
            text = await self._complete(ANALYSIS_SYSTEM_PROMPT, [], prompt)
        except Exception as e:
            logger.error(f"[ANALYSIS_FALLBACK] Completion failed: {e}")
            return ConversationAnalysis.safe_default()
        return parse_analysis(text)
