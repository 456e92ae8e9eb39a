"""
Resolution Path Service - Record, analyse and optimise problem-solving paths

Every closed conversation becomes an append-only ResolutionPath. Paths are
grouped by problem type to answer "what is the shortest / best known route
to solve this kind of problem" and to spot loops in live conversations.
"""

import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from support_engine.contracts.collaborators import ResolutionPathRepository
from support_engine.models.conversation import ConversationTurn
from support_engine.models.knowledge import CaseStudy
from support_engine.models.resolution import KeyStep, ResolutionPath

logger = logging.getLogger(__name__)

SUCCESS_KEYWORDS = ("解決", "ありました", "できました", "うまくいきました", "届きました")
FAILURE_KEYWORDS = ("もういいです", "諦めます", "わかりません", "解決しません", "解決しない", "できません")

KEY_ACTIONS = (
    ("スパムフォルダ", "スパムフォルダ確認"),
    ("パスワード", "パスワードリセット"),
    ("キャッシュ", "キャッシュクリア"),
    ("カード", "カード情報更新"),
    ("再起動", "再起動"),
    ("ログアウト", "再ログイン"),
)

PROBLEM_TYPES = (
    ("login_issue", ("ログイン", "パスワード", "認証")),
    ("payment_issue", ("支払い", "決済", "請求")),
    ("error_issue", ("エラー", "不具合", "障害")),
)

CRITERIA = ("speed", "reliability", "simplicity")
DEPENDENCY_MARKERS = ("結果", "確認後")
DEFAULT_FIRST_ACTION = "状況確認"

_NOUN_RE = re.compile(r"[一-龠ァ-ヶーA-Za-z0-9]{2,}")


def infer_problem_type(text: str) -> str:
    """Coarse problem category for a problem statement."""
    for problem_type, keywords in PROBLEM_TYPES:
        if any(k in text for k in keywords):
            return problem_type
    return "general_issue"


def extract_topic(content: str) -> str:
    nouns = _NOUN_RE.findall(content)
    return nouns[0] if nouns else content.strip()[:10]


@dataclass
class PathRecommendation:
    path: ResolutionPath
    total_score: float
    breakdown: dict[str, float] = field(default_factory=dict)


class ResolutionPathService:
    """Tracker and optimiser over a resolution path repository."""

    def __init__(self, repository: ResolutionPathRepository):
        self.repository = repository
        self._performance: dict[str, dict] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_path(
        self,
        conversation_ref: str,
        turns: list[ConversationTurn],
        problem_type: Optional[str] = None,
    ) -> Optional[ResolutionPath]:
        """
        Build and store the resolution path of a conversation.

        Returns None for an empty history or one without a user turn.
        """
        user_turns = [t for t in turns if t.is_user]
        if not turns or not user_turns:
            return None

        problem = user_turns[0].content.strip()[:200]
        pairs = self._exchange_pairs(turns)
        successful = self._is_successful(user_turns[-1].content)
        elapsed = max((turns[-1].timestamp - turns[0].timestamp).total_seconds(), 0.0)

        path = ResolutionPath(
            conversation_ref=conversation_ref,
            problem_type=problem_type or infer_problem_type(problem),
            problem=problem,
            solution=self._solution(turns),
            steps_count=len(pairs),
            resolution_time=elapsed,
            successful=successful,
            key_steps=self._key_steps(turns),
        )
        self.repository.add(path)
        logger.info(
            f"[RESOLUTION_RECORDED] conversation={conversation_ref} type={path.problem_type} "
            f"steps={path.steps_count} successful={successful}"
        )
        return path

    def path_report(self, path: ResolutionPath, turns: list[ConversationTurn]) -> dict:
        """Efficiency score, bottlenecks and, for failures, where the customer gave up."""
        report = {
            "efficiency_score": self.efficiency_score(path),
            "bottlenecks": self._bottlenecks(turns),
            "optimal_path_suggested": self._suggested_route(path.problem_type),
        }
        if not path.successful:
            report["abandonment_point"] = self._abandonment_point(turns)
            report["improvement_suggestions"] = self._improvement_suggestions(turns)
        return report

    @staticmethod
    def efficiency_score(path: ResolutionPath) -> float:
        if not path.successful:
            return 0.0
        step_score = max(100 - path.steps_count * 15, 0)
        time_score = max(100 - (path.resolution_time / 60.0) * 5, 0)
        return (step_score + time_score) / 2

    @staticmethod
    def _exchange_pairs(turns: list[ConversationTurn]) -> list[tuple[ConversationTurn, ConversationTurn]]:
        pairs = []
        pending_user = None
        for turn in turns:
            if turn.is_user:
                pending_user = turn
            elif turn.is_agent and pending_user is not None:
                pairs.append((pending_user, turn))
                pending_user = None
        return pairs

    @staticmethod
    def _is_successful(content: str) -> bool:
        if any(k in content for k in FAILURE_KEYWORDS):
            return False
        return any(k in content for k in SUCCESS_KEYWORDS)

    @staticmethod
    def _solution(turns: list[ConversationTurn]) -> Optional[str]:
        last_agent = None
        for turn in turns:
            if turn.is_agent:
                last_agent = turn
            elif turn.is_user and last_agent is not None and ResolutionPathService._is_successful(turn.content):
                return last_agent.content.strip()[:200]
        return last_agent.content.strip()[:200] if last_agent else None

    @staticmethod
    def _key_steps(turns: list[ConversationTurn]) -> list[KeyStep]:
        steps = []
        for index, turn in enumerate(turns):
            if not turn.is_agent:
                continue
            action = next((name for marker, name in KEY_ACTIONS if marker in turn.content), None)
            if action is None:
                continue
            reply = next((t.content for t in turns[index + 1:] if t.is_user), None)
            steps.append(KeyStep(action=action, result=ResolutionPathService._step_result(reply)))
        return steps

    @staticmethod
    def _step_result(reply: Optional[str]) -> str:
        if reply is None:
            return "不明"
        if "届きません" in reply or any(k in reply for k in FAILURE_KEYWORDS):
            return "未解決"
        if any(k in reply for k in SUCCESS_KEYWORDS):
            return "解決"
        return "継続"

    @staticmethod
    def _bottlenecks(turns: list[ConversationTurn]) -> list[str]:
        found = []
        for turn in turns[:-1]:
            if turn.is_user and ("わかりません" in turn.content or "できません" in turn.content):
                found.append("情報不足による停滞")
        return list(dict.fromkeys(found))

    @staticmethod
    def _suggested_route(problem_type: str) -> str:
        if problem_type == "login_issue":
            return "パスワードリセット → メール確認 → スパムフォルダ確認"
        if problem_type == "payment_issue":
            return "カード情報確認 → 有効期限チェック → 情報更新"
        return "状況確認 → 基本対処 → エスカレーション"

    @staticmethod
    def _abandonment_point(turns: list[ConversationTurn]) -> str:
        last_user = next((t for t in reversed(turns) if t.is_user), None)
        if last_user is None:
            return "不明"
        if "わかりません" in last_user.content:
            return "情報不足"
        if "もういいです" in last_user.content or "諦めます" in last_user.content:
            return "諦め"
        return "不明"

    @staticmethod
    def _improvement_suggestions(turns: list[ConversationTurn]) -> list[str]:
        suggestions = []
        if any("わかりません" in t.content for t in turns):
            suggestions.append("より詳細な説明を提供")
        if any("もういいです" in t.content or "諦めます" in t.content for t in turns):
            suggestions.append("早期のエスカレーション")
        return suggestions or ["継続的なサポート"]

    # ------------------------------------------------------------------
    # Analysis over stored paths
    # ------------------------------------------------------------------

    def analyze_pattern(self, problem_type: str) -> dict:
        """Most common successful solution, average steps, success rate, first action."""
        paths = self.repository.list(problem_type)
        if not paths:
            return {}
        successful = [p for p in paths if p.successful]
        solutions = Counter(p.solution for p in successful if p.solution)
        first_actions = Counter(p.key_steps[0].action for p in successful if p.key_steps)
        return {
            "most_common_solution": solutions.most_common(1)[0][0] if solutions else None,
            "average_steps": round(sum(p.steps_count for p in paths) / len(paths), 1),
            "success_rate": len(successful) / len(paths),
            "recommended_first_action": (
                first_actions.most_common(1)[0][0] if first_actions else DEFAULT_FIRST_ACTION
            ),
        }

    def find_shortest_path(self, problem_type: str) -> Optional[PathRecommendation]:
        """Successful path with the fewest steps; ties go to the faster one."""
        successful = [p for p in self.repository.list(problem_type) if p.successful]
        if not successful:
            return None
        best = min(successful, key=lambda p: (p.steps_count, p.resolution_time, p.created_at))
        reliability = 50 + 25 + (25 if best.steps_count < 5 else 0)
        return PathRecommendation(path=best, total_score=reliability, breakdown={"reliability": reliability})

    def find_optimal_path(
        self,
        problem_type: str,
        weights: Optional[dict[str, float]] = None,
    ) -> Optional[PathRecommendation]:
        """
        Best successful path under caller-selected criteria weights.

        Args:
            problem_type: Problem category to search.
            weights: Mapping of ``speed``, ``reliability`` and/or ``simplicity``
                to non-negative weights; all three equally when None.

        Raises:
            ValueError: for unknown criteria or weights that sum to zero.
        """
        weights = weights or {c: 1.0 for c in CRITERIA}
        unknown = set(weights) - set(CRITERIA)
        if unknown:
            raise ValueError(f"Unknown criteria: {sorted(unknown)}")
        total_weight = sum(w for w in weights.values() if w > 0)
        if total_weight <= 0:
            raise ValueError("At least one criterion needs a positive weight")

        paths = [p for p in self.repository.list(problem_type) if p.successful]
        if not paths:
            return None

        scored = []
        for path in paths:
            breakdown = {
                "speed": max(100 - path.resolution_time / 60.0, 0.0),
                "reliability": 100.0 if path.successful else 0.0,
                "simplicity": float(max(100 - path.steps_count * 20, 0)),
            }
            selected = {c: breakdown[c] for c, w in weights.items() if w > 0}
            total = sum(selected[c] * weights[c] for c in selected) / total_weight
            scored.append(PathRecommendation(path=path, total_score=round(total, 2), breakdown=selected))
        return max(scored, key=lambda r: (r.total_score, -r.path.steps_count))

    def compare_paths(self, paths: list[ResolutionPath]) -> dict:
        if not paths:
            return {}

        def overall(p: ResolutionPath) -> int:
            score = 0
            score += 30 if p.resolution_time < 300 else 0
            score += 30 if p.steps_count < 5 else 0
            score += 40 if p.successful else 0
            return score

        return {
            "fastest": min(paths, key=lambda p: p.resolution_time).path_id,
            "most_reliable": max(paths, key=lambda p: (p.successful, -p.steps_count)).path_id,
            "simplest": min(paths, key=lambda p: p.steps_count).path_id,
            "overall_best": max(paths, key=overall).path_id,
            "trade_offs": "スピードを優先すると信頼性が下がる可能性があります",
        }

    def learn_from_failures(self, problem_type: Optional[str] = None) -> dict:
        """Where failed paths stall, and checks that would have prevented it."""
        paths = self.repository.list(problem_type)
        failed = [p for p in paths if not p.successful]
        if not failed:
            return {}
        points = Counter(
            next((k.action for k in reversed(p.key_steps) if k.result != "解決"), "初期対応")
            for p in failed
        )
        common = [point for point, _ in points.most_common(3)]
        return {
            "common_failure_points": common,
            "pre_checks": [f"{point}の前に前提条件を確認" for point in common],
            "preventive_measures": ["早期のエスカレーション"] if len(failed) * 2 > len(paths) else [],
            "success_rate_improvement": round(len(failed) * 0.5 / len(paths), 3),
        }

    def generate_resolution_guide(self, problem_type: str) -> dict:
        paths = self.repository.list(problem_type)
        successful = [p for p in paths if p.successful]
        if not successful:
            return {
                "recommended_steps": [
                    {"action": "問題の詳細を確認", "expected_outcome": "原因特定"},
                    {"action": "基本的な対処法を試行", "expected_outcome": "問題解決"},
                ],
                "estimated_time": 600,
                "success_probability": 0.5,
                "alternative_paths": [],
                "escalation_trigger": "15分経過後にエスカレーション",
            }

        best = self.find_optimal_path(problem_type, {"speed": 1.0, "simplicity": 1.0, "reliability": 1.0})
        alternatives = [p for p in successful if p.path_id != best.path.path_id][:3]
        return {
            "recommended_steps": [
                {"action": step.action, "expected_outcome": step.result or "問題の部分的解決"}
                for step in best.path.key_steps
            ] or [{"action": best.path.solution or DEFAULT_FIRST_ACTION, "expected_outcome": "問題解決"}],
            "estimated_time": best.path.resolution_time or 300,
            "success_probability": len(successful) / len(paths),
            "alternative_paths": [
                {"solution": p.solution, "steps_count": p.steps_count} for p in alternatives
            ],
            "escalation_trigger": "エラーが解決しない場合は、10分後にエスカレーション",
        }

    # ------------------------------------------------------------------
    # Live conversation checks
    # ------------------------------------------------------------------

    def detect_inefficiencies(self, turns: list[ConversationTurn]) -> dict:
        """Topic loops and repeated questions in the user turns."""
        topics = [extract_topic(t.content) for t in turns if t.is_user and t.content.strip()]

        loops = []
        for i, topic in enumerate(topics):
            later = topics[i + 2:]
            if topic in later and any(t != topic for t in topics[i + 1:i + 2 + later.index(topic)]):
                if topic not in loops:
                    loops.append(topic)

        counts = Counter(topics)
        repeated = [t for t, c in counts.items() if c > 1]
        wasted = sum(counts[t] - 1 for t in repeated)
        loss = min(len(loops) * 20 + len(repeated) * 15, 100)

        improvements = []
        if loops or repeated:
            improvements.append({"type": "consolidate_questions", "description": "質問を事前にまとめる"})

        return {
            "loops_detected": bool(loops),
            "loops": loops,
            "repeated_topics": repeated,
            "wasted_interactions": wasted,
            "efficiency_loss": loss,
            "improvements": improvements,
            "optimal_sequence": "1. 全ての要件を最初に確認 2. 一度に回答を提供 3. 確認と完了",
        }

    def optimize_path(self, steps: list[dict]) -> dict:
        """
        Drop duplicate steps and group independent neighbours to run in parallel.

        Each step is a mapping with ``action``, optional ``time`` (seconds)
        and optional ``depends_on`` (list of actions).
        """
        seen = set()
        kept, removed = [], []
        for step in steps:
            key = step["action"].strip()
            if key in seen:
                removed.append(step["action"])
                continue
            seen.add(key)
            kept.append(step)

        groups: list[list[dict]] = []
        for step in kept:
            if groups and self._independent(groups[-1], step):
                groups[-1].append(step)
            else:
                groups.append([step])

        original_time = sum(s.get("time", 0) for s in steps)
        total_time = sum(max(s.get("time", 0) for s in group) for group in groups)
        rationale = []
        if removed:
            rationale.append("重複ステップを削除しました")
        if any(len(g) > 1 for g in groups):
            rationale.append("依存関係のないステップを並列化しました")

        return {
            "steps": kept,
            "removed_steps": removed,
            "parallel_steps": [[s["action"] for s in g] for g in groups if len(g) > 1],
            "total_time": total_time,
            "time_saved": original_time - total_time,
            "optimization_rationale": "、".join(rationale) or "最適化の余地はありません",
            "new_flow": " → ".join(" + ".join(s["action"] for s in g) for g in groups),
        }

    @staticmethod
    def _independent(group: list[dict], step: dict) -> bool:
        if any(marker in step["action"] for marker in DEPENDENCY_MARKERS):
            return False
        depends = set(step.get("depends_on") or [])
        return not any(s["action"] in depends for s in group)

    # ------------------------------------------------------------------
    # Performance tracking
    # ------------------------------------------------------------------

    def track_path_performance(
        self,
        path_id: str,
        outcome: str,
        actual_time: float,
        user_satisfaction: Optional[float] = None,
    ) -> dict:
        with self._lock:
            data = self._performance.setdefault(
                path_id,
                {"usage_count": 0, "successful": 0, "failed": 0, "total_time": 0.0, "satisfaction": []},
            )
            data["usage_count"] += 1
            if outcome == "successful":
                data["successful"] += 1
            elif outcome == "failed":
                data["failed"] += 1
            data["total_time"] += actual_time
            if user_satisfaction is not None:
                data["satisfaction"].append(user_satisfaction)
            snapshot = dict(data, satisfaction=list(data["satisfaction"]))

        return {
            "usage_count": snapshot["usage_count"],
            "success_rate": snapshot["successful"] / snapshot["usage_count"],
            "average_time": snapshot["total_time"] / snapshot["usage_count"],
            "satisfaction_score": (
                sum(snapshot["satisfaction"]) / len(snapshot["satisfaction"]) if snapshot["satisfaction"] else None
            ),
        }

    def path_statistics(self, path_id: str) -> dict:
        with self._lock:
            data = self._performance.get(path_id)
            if not data:
                return {"total_uses": 0, "success_rate": 0.0, "average_time": 0.0}
            return {
                "total_uses": data["usage_count"],
                "success_rate": round(data["successful"] / data["usage_count"], 2),
                "average_time": round(data["total_time"] / data["usage_count"], 1),
            }

    @staticmethod
    def to_case_study(path: ResolutionPath) -> CaseStudy:
        """Retrievable case study for a recorded path."""
        return CaseStudy(
            problem=path.problem,
            solution=path.solution or "",
            steps=[k.action for k in path.key_steps],
            success=path.successful,
            success_rate=1.0 if path.successful else 0.0,
            success_score=100.0 if path.successful else 0.0,
            tags=frozenset({path.problem_type, f"conversation:{path.conversation_ref}"}),
        )
