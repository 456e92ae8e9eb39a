"""
Context Aggregator - Retrieval-augmented context for a customer query

Fetches FAQ, case-study, product and success-pattern entries concurrently
under one shared deadline, filters them by a relevance floor, merges and
dedupes them, and ranks the result by source-weighted relevance and quality.
Sources that miss the deadline or fail are excluded and reported.
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional

from support_engine.config.settings import RetrievalConfig, config
from support_engine.models.conversation import ConversationTurn
from support_engine.models.embedding import SimilarityResult
from support_engine.models.knowledge import KnowledgeBase
from support_engine.models.needs import ConversationAnalysis
from support_engine.observability.metrics import EngineMetrics
from support_engine.services.context_cache import TTLCache
from support_engine.tools.embedding_client import create_embedding_text
from support_engine.tools.vector_store import VectorStore
from support_engine.utils.error_handling import EmptyInputError, ExternalServiceError, InputError

logger = logging.getLogger(__name__)

SourceFetch = Callable[[list[float], int], Awaitable[list[SimilarityResult]]]

SOURCE_KINDS = {
    "faq": "faq",
    "case": "case_study",
    "product": "product_info",
    "pattern": "success_pattern",
}
SOURCE_WEIGHTS = {"faq": 0.35, "case": 0.35, "product": 0.30, "pattern": 0.35}
SIMILARITY_WEIGHT = 0.7
QUALITY_WEIGHT = 0.3
EMPTY_CONFIDENCE = 0.1
MULTI_STAGE_COUNT = 3

_SPLIT_RE = re.compile(r"[、。,.\s　]+")
_CLAUSE_RE = re.compile(r"[、。!?！？\n]|かつ|また")
COMPLEX_MARKERS = ("かつ", "また", "失敗", "通らない", "複雑", "複数")


@dataclass
class InjectionPlan:
    complexity: str
    injection_depth: int
    max_items: int
    timeout_seconds: float
    parallel_fetch: bool = True


@dataclass
class RetrievalStrategy:
    strategy: str
    stages: int
    limit: int
    threshold: float


@dataclass
class ContextItem:
    entry: KnowledgeBase
    source: str
    relevance: float
    importance: float


@dataclass
class RetrievedContext:
    query: str
    items: list[ContextItem]
    integrated_context: str
    sources: dict[str, int]
    confidence: float
    excluded_sources: list[str] = field(default_factory=list)
    relevance_floor: float = 0.7
    from_cache: bool = False

    def by_source(self, source: str) -> list[ContextItem]:
        return [item for item in self.items if item.source == source]


def assess_query_complexity(query: str) -> str:
    words = [w for w in _SPLIT_RE.split(query) if w]
    if len(words) > 10 or any(marker in query for marker in COMPLEX_MARKERS):
        return "complex"
    return "simple"


class ContextAggregator:
    """Concurrent retrieval over the knowledge sources of a vector store."""

    def __init__(
        self,
        vector_store: VectorStore,
        settings: Optional[RetrievalConfig] = None,
        sources: Optional[dict[str, SourceFetch]] = None,
        cache: Optional[TTLCache] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.store = vector_store
        self.settings = settings or config.retrieval
        self.sources = sources if sources is not None else self._default_sources()
        self.cache = cache or TTLCache(ttl=self.settings.cache_ttl_seconds)
        self.metrics = metrics

    def _default_sources(self) -> dict[str, SourceFetch]:
        def make(kind: str) -> SourceFetch:
            async def fetch(vector: list[float], limit: int) -> list[SimilarityResult]:
                return await asyncio.to_thread(self.store.search, vector, top_k=limit, score_threshold=-1.0, kind=kind)
            return fetch
        return {name: make(kind) for name, kind in SOURCE_KINDS.items()}

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def optimize_context_injection(self, query: str) -> InjectionPlan:
        """Depth, item cap and deadline for a query, by its complexity."""
        budget = self.settings.fetch_timeout_seconds
        cap = self.settings.max_items
        if assess_query_complexity(query) == "complex":
            return InjectionPlan("complex", 5, min(15, cap), min(3.0, budget), True)
        return InjectionPlan("simple", 3, min(8, cap), min(2.0, budget), True)

    def adaptive_retrieval(self, query: str, urgency: Optional[str] = None) -> RetrievalStrategy:
        """Wider, looser retrieval for urgent queries; multi-stage for complex ones."""
        if urgency == "high":
            limit, threshold = 10, self.settings.urgent_relevance_floor
        else:
            limit, threshold = self.settings.top_n, self.settings.relevance_floor
        if assess_query_complexity(query) == "complex":
            return RetrievalStrategy("multi_stage", MULTI_STAGE_COUNT, limit, threshold)
        return RetrievalStrategy("single_stage", 1, limit, threshold)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def inject_context(
        self,
        query: str,
        conversation: Optional[list[ConversationTurn]] = None,
        urgency: Optional[str] = None,
    ) -> RetrievedContext:
        """
        Retrieve, filter, merge and rank context for ``query``.

        Raises:
            InputError: if the query is empty or too long to embed.
        """
        if not query or not query.strip():
            raise EmptyInputError("Cannot retrieve context for an empty query")
        self.store.embedder.validate(query)

        plan = self.optimize_context_injection(query)
        strategy = self.adaptive_retrieval(query, urgency)
        depth = max(plan.injection_depth, strategy.limit)
        stage_texts = self._stage_queries(query.strip(), conversation, strategy.stages)

        # Earlier turns shape stage one, so they are part of the key
        stages_digest = hashlib.sha256("\x1f".join(stage_texts).encode("utf-8")).hexdigest()
        cache_key = (query.strip(), urgency, stages_digest)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Context cache hit for query '{query[:30]}'")
            return replace(cached, from_cache=True)

        try:
            vectors = await asyncio.wait_for(
                asyncio.to_thread(self.store.embedder.embed_many, stage_texts),
                timeout=plan.timeout_seconds,
            )
        except (asyncio.TimeoutError, ExternalServiceError) as e:
            logger.warning(f"[CONTEXT_EMBED_FAILED] budget={plan.timeout_seconds}s error={e!r}")
            return self.empty_context(query, excluded=sorted(self.sources), relevance_floor=strategy.threshold)

        if self.metrics:
            with self.metrics.time_retrieval():
                hits, excluded = await self._fetch_all(vectors, depth, plan.timeout_seconds)
        else:
            hits, excluded = await self._fetch_all(vectors, depth, plan.timeout_seconds)

        items = self._rank(hits, strategy.threshold)[: plan.max_items]
        context = RetrievedContext(
            query=query,
            items=items,
            integrated_context=self._integrate(items),
            sources={name: len([i for i in items if i.source == name]) for name in self.sources},
            confidence=self._confidence(items),
            excluded_sources=excluded,
            relevance_floor=strategy.threshold,
        )
        if not excluded:
            self.cache.put(cache_key, context)
        logger.info(
            f"[CONTEXT_INJECTED] items={len(items)} excluded={excluded} "
            f"floor={strategy.threshold} strategy={strategy.strategy}"
        )
        return context

    def empty_context(
        self,
        query: str,
        excluded: Optional[list[str]] = None,
        relevance_floor: Optional[float] = None,
    ) -> RetrievedContext:
        return RetrievedContext(
            query=query,
            items=[],
            integrated_context=self._integrate([]),
            sources={name: 0 for name in self.sources},
            confidence=EMPTY_CONFIDENCE,
            excluded_sources=excluded or [],
            relevance_floor=self.settings.relevance_floor if relevance_floor is None else relevance_floor,
        )

    def _stage_queries(
        self,
        query: str,
        conversation: Optional[list[ConversationTurn]],
        stages: int,
    ) -> list[str]:
        first = query
        if conversation:
            earlier = [t.content for t in conversation if t.is_user and t.content != query]
            # Drop older turns until the combined text fits the embedding limits
            for window in (earlier[-2:], earlier[-1:]):
                combined = create_embedding_text(query, window)
                try:
                    first = self.store.embedder.validate(combined)
                    break
                except InputError:
                    logger.debug(f"Context prefix of {len(window)} turn(s) too long to embed")
        texts = [first]
        if stages > 1:
            clauses = [c.strip() for c in _CLAUSE_RE.split(query) if c and len(c.strip()) > 1]
            for clause in clauses:
                if clause != query and clause not in texts:
                    texts.append(clause)
                if len(texts) >= stages:
                    break
        return texts

    async def _fetch_all(
        self,
        vectors: list[list[float]],
        depth: int,
        timeout: float,
    ) -> tuple[list[tuple[str, SimilarityResult]], list[str]]:
        tasks: dict[asyncio.Task, str] = {}
        for name, fetch in self.sources.items():
            for vector in vectors:
                tasks[asyncio.ensure_future(fetch(vector, depth))] = name
        if not tasks:
            return [], []

        done, pending = await asyncio.wait(tasks.keys(), timeout=timeout)

        excluded: set[str] = set()
        for task in pending:
            task.cancel()
            excluded.add(tasks[task])
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for name in sorted(excluded):
            logger.warning(f"[CONTEXT_SOURCE_TIMEOUT] source={name} budget={timeout}s")
            if self.metrics:
                self.metrics.record_source_timeout(name)

        hits: list[tuple[str, SimilarityResult]] = []
        for task in done:
            name = tasks[task]
            if task.exception() is not None:
                logger.warning(f"[CONTEXT_SOURCE_FAILED] source={name} error={task.exception()}")
                excluded.add(name)
                continue
            hits.extend((name, hit) for hit in task.result())
        return [h for h in hits if h[0] not in excluded], sorted(excluded)

    def _rank(self, hits: list[tuple[str, SimilarityResult]], floor: float) -> list[ContextItem]:
        best: dict[tuple, ContextItem] = {}
        seen_ids: dict[str, tuple] = {}
        for source, hit in hits:
            relevance = hit.relevance
            if relevance < floor:
                continue
            entry = self.store.get_entry(hit.entity_id)
            if entry is None:
                continue
            weight = SOURCE_WEIGHTS.get(source, 0.3)
            importance = weight * (SIMILARITY_WEIGHT * relevance + QUALITY_WEIGHT * entry.quality_signal()) * 100
            key = seen_ids.get(entry.entry_id, entry.dedupe_key())
            seen_ids[entry.entry_id] = key
            current = best.get(key)
            if current is None or importance > current.importance:
                best[key] = ContextItem(entry=entry, source=source, relevance=relevance, importance=importance)
        return sorted(best.values(), key=lambda i: (-i.importance, -i.relevance, i.entry.entry_id))

    @staticmethod
    def _integrate(items: list[ContextItem]) -> str:
        labels = {"faq": ("FAQ", "件の関連情報"), "case": ("事例", "件の類似ケース"),
                  "product": ("製品", "件の関連製品"), "pattern": ("成功パターン", "件の参考会話")}
        parts = []
        for source, (label, suffix) in labels.items():
            count = sum(1 for i in items if i.source == source)
            if count:
                parts.append(f"{label}: {count}{suffix}")
        return "、".join(parts) if parts else "関連情報は見つかりませんでした"

    @staticmethod
    def _confidence(items: list[ContextItem]) -> float:
        if not items:
            return EMPTY_CONFIDENCE
        return round(sum(i.relevance for i in items) / len(items), 4)

    # ------------------------------------------------------------------
    # Response shaping
    # ------------------------------------------------------------------

    def generate_contextual_response(self, query: str, context: RetrievedContext) -> dict:
        """Structured answer scaffold: content, references, actions and ordered steps."""
        references = []
        for item in context.items:
            entry = item.entry
            if item.source == "faq":
                references.append({"type": "faq", "content": entry.question, "link": None})
            elif item.source == "case":
                references.append({"type": "case", "content": entry.solution, "link": None})
            elif item.source == "product":
                references.append({"type": "product", "content": entry.name, "link": entry.docs or None})
            else:
                references.append({"type": "pattern", "content": entry.summary(), "link": None})

        actions = []
        if context.by_source("faq"):
            actions.append("FAQを確認する")
        if context.by_source("case") or context.by_source("pattern"):
            actions.append("類似事例を参考にする")
        if context.by_source("product"):
            actions.append("製品ドキュメントを参照する")

        steps = [{"action": "問題の詳細を確認", "expected_result": "問題の原因を特定"}]
        if context.by_source("case") or context.by_source("pattern"):
            steps.append({"action": "類似事例の解決策を試す", "expected_result": "問題が解決される"})
        steps.append({"action": "サポートに連絡", "expected_result": "専門的なサポートを受ける"})
        for number, step in enumerate(steps, start=1):
            step["step_number"] = number

        content = [f"「{query}」についてお答えします。"]
        faqs = context.by_source("faq")
        if faqs:
            content.append(faqs[0].entry.answer)
        cases = context.by_source("case")
        if cases:
            content.append(f"類似の事例では「{cases[0].entry.solution}」で解決しています。")

        return {
            "content": "\n".join(content),
            "references": references,
            "suggested_actions": actions,
            "resolution_steps": steps,
        }

    def augment_query(self, query: str, context: RetrievedContext) -> dict:
        """Query expanded with related problems and known solutions."""
        keywords = [w for w in _SPLIT_RE.split(query) if len(w) > 1]
        parts = [query]
        related = [i.entry.summary() for i in context.items[:2]]
        if related:
            parts.append(f"関連する過去の問い合わせ: {', '.join(related)}")
        solutions = [i.entry.solution for i in context.by_source("case")]
        if solutions:
            parts.append(f"推奨される解決策: {', '.join(solutions[:2])}")

        approaches = []
        if solutions or context.by_source("pattern"):
            approaches.append("過去の成功事例に基づく解決")
        if context.items:
            approaches.append("類似ケースの参照")
        if not approaches:
            approaches.append("段階的なトラブルシューティング")

        return {
            "original_query": query,
            "augmented_query": " ".join(parts),
            "context_used": bool(context.items),
            "keywords": list(dict.fromkeys(keywords)),
            "suggested_approaches": approaches,
        }

    def build_augmented_prompt(
        self,
        query: str,
        context: RetrievedContext,
        analysis: Optional[ConversationAnalysis] = None,
    ) -> str:
        """System prompt for the completion collaborator."""
        lines = [
            "あなたは丁寧なカスタマーサポート担当です。以下の参考情報を踏まえて回答してください。",
            f"参考情報: {context.integrated_context}",
        ]
        for item in context.items:
            lines.append(f"- [{item.source}] {item.entry.summary()}")
        if analysis and analysis.needs:
            needs = "、".join(n.suggestion for n in analysis.needs[:3])
            lines.append(f"顧客の潜在ニーズ: {needs}")
        if analysis and analysis.sentiment.value in ("frustrated", "urgent"):
            lines.append("顧客は不満や緊急性を示しています。簡潔かつ迅速に対応してください。")
        lines.append(f"質問: {query}")
        return "\n".join(lines)
