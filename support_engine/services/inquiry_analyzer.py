"""
Inquiry Analyzer - Category, structured facts and follow-up questions

Works on single user messages. The escalation engine merges what is
extracted here into the conversation state and asks for whatever essential
field is still missing.
"""

import logging
import re
from typing import Any, Optional

from support_engine.models.conversation import InquiryCategory, Urgency

logger = logging.getLogger(__name__)

REQUIRED_INFO: dict[InquiryCategory, dict[str, tuple[str, ...]]] = {
    InquiryCategory.MARKETING: {
        "essential": ("business_type", "budget_range", "current_tools"),
        "optional": ("target_metrics", "challenges", "timeline"),
    },
    InquiryCategory.TECH: {
        "essential": ("system_type", "error_details", "occurrence_time"),
        "optional": ("affected_users", "attempted_solutions"),
    },
    InquiryCategory.GENERAL: {
        "essential": ("inquiry_type", "company_size"),
        "optional": ("timeline", "budget_consideration"),
    },
}

QUESTION_TEMPLATES = {
    "business_type": "どのような業界・事業を運営されていますか？具体的な商品やサービスも教えていただけますでしょうか。",
    "budget_range": "月額でどの程度のご予算をお考えでしょうか？現在のマーケティング費用でも構いません。",
    "current_tools": "現在お使いのツールやシステムがあれば教えてください。（例：Google Analytics, Shopify等）",
    "target_metrics": "改善したい指標や達成したい目標はありますか？（例：CVR向上、売上拡大等）",
    "challenges": "現在お困りの課題や改善したい点を具体的に教えていただけますか？",
    "timeline": "いつまでに改善を実現したいとお考えですか？",
    "system_type": "どのようなシステムで問題が発生していますか？",
    "error_details": "エラーの詳細や表示されているメッセージを教えてください。",
    "occurrence_time": "いつから、どのような状況で発生していますか？",
    "affected_users": "影響を受けているユーザー数や範囲を教えてください。",
    "attempted_solutions": "これまでに試された対処法があれば教えてください。",
    "inquiry_type": "どのようなご用件でしょうか？",
    "company_size": "貴社の規模（従業員数等）を教えていただけますか？",
}

KNOWN_TOOLS = (
    "Shopify", "Google Analytics", "GA4", "Facebook", "Instagram",
    "Twitter", "LINE", "Salesforce", "HubSpot", "Marketo",
    "WordPress", "EC-CUBE", "BASE", "STORES", "カラーミーショップ",
)

_MARKETING_RE = re.compile(r"広告|マーケティング|SEO|CVR|売上|集客|EC|コンバージョン|リード|キャンペーン")
_TECH_RE = re.compile(r"API|エラー|不具合|システム|サーバー|データベース|バグ|障害|連携|統合")
_URGENT_RE = re.compile(r"至急|緊急|すぐに|今すぐ|システム.*ダウン|業務.*止|全体.*ダウン")

_AMOUNT = r"(\d[\d,]*)\s*(万|千|億)?円"
_REVENUE_RE = re.compile(r"(月商|年商|売上).*?" + _AMOUNT)
_MONTHLY_BUDGET_RE = re.compile(r"月額.*?" + _AMOUNT)
_AD_SPEND_RE = re.compile(r"広告費.*?" + _AMOUNT)
_BUDGET_RE = re.compile(r"(?:予算|費用).*?" + _AMOUNT)

_SYSTEM_RE = re.compile(r"API|データベース|サーバー|フロントエンド|バックエンド|インフラ|システム")
_ERROR_RE = re.compile(r"エラー|不具合|障害|停止|遅延|タイムアウト")
_ERROR_SENTENCE_RE = re.compile(r"[^。]*(?:エラー|不具合|障害)[^。]*")
_OCCURRENCE_RE = re.compile(r"(今朝|昨日|今日|先週|昨晩|\d+時|\d+日前|\d+時間前)(?:から|より|頃)?")
_COMPANY_SIZE_RE = re.compile(r"(?:従業員|社員)?\s*\d+\s*(?:人|名)(?:規模)?")

_BUSINESS_PATTERNS = (
    (re.compile(r"BtoB\s*SaaS", re.IGNORECASE), "BtoB SaaS"),
    (re.compile(r"EC\s*(?:サイト|事業|ショップ)"), "EC事業"),
    (re.compile(r"SaaS(?:企業|事業)?"), "SaaS"),
)
_INDUSTRY_RE = re.compile(r"(?:小売|アパレル|EC|食品|製造|サービス|IT|不動産|医療|教育)業?")


def _unit(match: re.Match) -> str:
    return {"億": "億円", "千": "千円"}.get(match.groups()[-1], "万円")


def _amount(match: re.Match, amount_group: int) -> str:
    return match.group(amount_group).replace(",", "")


def budget_in_man_yen(value: Any) -> Optional[float]:
    """Budget string such as ``月額150万円`` converted to 万円."""
    if not value:
        return None
    match = re.search(r"(\d[\d,]*)\s*(万|千|億)?円?", str(value))
    if not match:
        return None
    amount = float(match.group(1).replace(",", ""))
    unit = match.group(2)
    if unit == "億":
        return amount * 10000
    if unit == "千":
        return amount / 10
    if unit == "万":
        return amount
    return amount / 10000


def is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) > 0
    return True


class InquiryAnalyzer:
    """Heuristic, self-sufficient inquiry analysis."""

    def categorize(self, message: str) -> InquiryCategory:
        if _MARKETING_RE.search(message):
            return InquiryCategory.MARKETING
        if _TECH_RE.search(message):
            return InquiryCategory.TECH
        return InquiryCategory.GENERAL

    def detect_urgency(self, message: str) -> Urgency:
        return Urgency.HIGH if _URGENT_RE.search(message) else Urgency.NORMAL

    def extract_information(self, message: str, category: InquiryCategory) -> dict[str, Any]:
        """Structured facts found in a single message."""
        extracted: dict[str, Any] = {}

        business = self._business_type(message)
        if business:
            extracted["business_type"] = business

        revenue = _REVENUE_RE.search(message)
        if revenue:
            extracted["monthly_revenue"] = f"{_amount(revenue, 2)}{_unit(revenue)}"

        monthly = _MONTHLY_BUDGET_RE.search(message)
        ad_spend = _AD_SPEND_RE.search(message)
        budget = _BUDGET_RE.search(message)
        if monthly:
            extracted["budget_range"] = f"月額{_amount(monthly, 1)}{_unit(monthly)}"
        elif ad_spend:
            prefix = "月" if "月" in message else ""
            extracted["ad_spend"] = f"{prefix}{_amount(ad_spend, 1)}{_unit(ad_spend)}"
        elif budget:
            prefix = "月額" if "月" in message else "年額" if "年" in message else ""
            extracted["budget_range"] = f"{prefix}{_amount(budget, 1)}{_unit(budget)}"

        tools = [tool for tool in KNOWN_TOOLS if tool in message]
        if tools:
            extracted["current_tools"] = tools

        if category == InquiryCategory.TECH:
            system = _SYSTEM_RE.search(message)
            if system:
                extracted["system_type"] = system.group(0)
            if _ERROR_RE.search(message):
                sentence = _ERROR_SENTENCE_RE.search(message)
                extracted["error_details"] = sentence.group(0).strip() if sentence else "不具合が発生"
            occurrence = _OCCURRENCE_RE.search(message)
            if occurrence:
                extracted["occurrence_time"] = occurrence.group(0)

        if category == InquiryCategory.GENERAL:
            size = _COMPANY_SIZE_RE.search(message)
            if size:
                extracted["company_size"] = size.group(0).strip()

        return extracted

    @staticmethod
    def _business_type(message: str) -> Optional[str]:
        for pattern, label in _BUSINESS_PATTERNS:
            if pattern.search(message):
                return label
        industry = _INDUSTRY_RE.search(message)
        if industry:
            return industry.group(0)
        operated = re.search(r"([^、。\s]+(?:サイト|ショップ|店舗))を?(?:運営|経営|営業)", message)
        return operated.group(1) if operated else None

    def missing_fields(self, collected_info: dict, category: InquiryCategory) -> list[str]:
        required = REQUIRED_INFO.get(category, REQUIRED_INFO[InquiryCategory.GENERAL])
        return [key for key in required["essential"] if not is_filled(collected_info.get(key))]

    def required_info(self, collected_info: dict, category: InquiryCategory) -> list[str]:
        """Missing essential fields followed by missing optional ones."""
        required = REQUIRED_INFO.get(category, REQUIRED_INFO[InquiryCategory.GENERAL])
        optional = [key for key in required["optional"] if not is_filled(collected_info.get(key))]
        return self.missing_fields(collected_info, category) + optional

    def all_required_collected(self, collected_info: dict, category: InquiryCategory) -> bool:
        return not self.missing_fields(collected_info, category)

    def generate_next_question(self, collected_info: dict, category: InquiryCategory) -> Optional[str]:
        """Question for the first missing essential field, or None when complete."""
        missing = self.missing_fields(collected_info, category)
        if not missing:
            return None
        template = QUESTION_TEMPLATES[missing[0]]
        business = collected_info.get("business_type")
        if business and "業界・事業" in template:
            template = template.replace("業界・事業", f"{business}における具体的な事業内容")
        return template

    def completion_rate(self, collected_info: dict, category: InquiryCategory) -> int:
        required = REQUIRED_INFO.get(category, REQUIRED_INFO[InquiryCategory.GENERAL])
        essential = required["essential"]
        collected = sum(1 for key in essential if is_filled(collected_info.get(key)))
        return round(collected / len(essential) * 100)

    def generate_summary(self, collected_info: dict, category: InquiryCategory) -> str:
        lines = ["ご相談内容を確認させていただきました。", "", "【お客様情報】"]
        if is_filled(collected_info.get("business_type")):
            lines.append(f"・業界/事業: {collected_info['business_type']}")
        if is_filled(collected_info.get("budget_range")):
            lines.append(f"・ご予算: {collected_info['budget_range']}")
        tools = collected_info.get("current_tools")
        if is_filled(tools):
            lines.append(f"・利用中のツール: {', '.join(tools) if isinstance(tools, (list, tuple)) else tools}")
        if is_filled(collected_info.get("challenges")):
            lines.append(f"・課題: {collected_info['challenges']}")
        if category == InquiryCategory.TECH:
            if is_filled(collected_info.get("system_type")):
                lines.append(f"・システム: {collected_info['system_type']}")
            if is_filled(collected_info.get("error_details")):
                lines.append(f"・エラー: {collected_info['error_details']}")
        lines.append("")
        lines.append("専門のスタッフが詳細なご提案をさせていただきます。しばらくお待ちください。")
        return "\n".join(lines)

    def process_initial_message(self, message: str) -> dict:
        """First-turn triage: category, extracted facts, what is still needed."""
        category = self.categorize(message)
        collected = self.extract_information(message, category)
        return {
            "category": category,
            "urgency": self.detect_urgency(message),
            "collected_info": collected,
            "required_info": self.required_info(collected, category),
            "next_question": self.generate_next_question(collected, category),
            "completion_rate": self.completion_rate(collected, category),
        }
