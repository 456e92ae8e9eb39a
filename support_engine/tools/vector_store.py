"""
Vector Store - Retrieval index over knowledge and message embeddings

Keeps an in-process index (always) and optionally writes through to Qdrant,
which then serves searches. Results are ordered by descending similarity.
"""

import logging
import threading
from typing import Optional

import numpy as np

from support_engine.models.embedding import SimilarityResult
from support_engine.models.knowledge import KnowledgeBase
from support_engine.services.similarity_service import SimilarityService
from support_engine.tools.embedding_client import EmbeddingClient
from support_engine.tools.qdrant_client import QdrantClientWrapper, QdrantConnectionError

logger = logging.getLogger(__name__)


class VectorStoreError(Exception):
    """Raised when vector store operations fail."""
    pass


class VectorStore:
    """
    Nearest-neighbour search with threshold and tag filtering.

    Entries are keyed by entity id; indexing the same id again replaces the
    previous vector.
    """

    def __init__(
        self,
        embedding_client: Optional[EmbeddingClient] = None,
        qdrant_client: Optional[QdrantClientWrapper] = None,
        top_k: int = 5,
        score_threshold: float = 0.0,
    ):
        self._embedder = embedding_client or EmbeddingClient()
        self._qdrant = qdrant_client
        self._similarity = SimilarityService()
        self._top_k = top_k
        self._score_threshold = score_threshold
        self._lock = threading.Lock()
        self._vectors: dict[str, np.ndarray] = {}
        self._payloads: dict[str, dict] = {}
        self._entries: dict[str, KnowledgeBase] = {}

    @property
    def embedder(self) -> EmbeddingClient:
        return self._embedder

    def connect(self) -> "VectorStore":
        """Connect the Qdrant backend, if one is configured."""
        if self._qdrant is None:
            return self
        try:
            self._qdrant.connect()
            self._qdrant.ensure_collection()
            logger.info("VectorStore connected to Qdrant backend")
            return self
        except QdrantConnectionError as e:
            raise VectorStoreError(f"Failed to connect: {e}") from e

    def index(
        self,
        entity_id: str,
        vector: list[float],
        kind: str,
        tags: Optional[frozenset[str]] = None,
        payload: Optional[dict] = None,
    ) -> None:
        """Add or replace a vector."""
        arr = np.asarray(vector, dtype=np.float64)
        if arr.shape != (self._embedder.vector_dimension,):
            raise VectorStoreError(
                f"Expected {self._embedder.vector_dimension} dimensions, got {arr.shape}"
            )
        record = {**(payload or {}), "kind": kind, "tags": sorted(tags or ())}
        with self._lock:
            self._vectors[entity_id] = arr
            self._payloads[entity_id] = record
        if self._qdrant is not None:
            self._qdrant.upsert_point(entity_id, arr.tolist(), record)
        logger.debug(f"Indexed {kind} {entity_id}")

    def add_entry(self, entry: KnowledgeBase) -> KnowledgeBase:
        """Embed (if needed) and index a knowledge entry; returns it with its embedding."""
        if entry.embedding is None:
            entry = entry.with_embedding(self._embedder.embed(entry.embedding_text()))
        self.index(
            entry.entry_id,
            entry.embedding,
            kind=entry.kind,
            tags=entry.tags,
            payload={"success_score": entry.success_score, "summary": entry.summary()},
        )
        with self._lock:
            if entry.supersedes:
                self._drop_locked(entry.supersedes)
            self._entries[entry.entry_id] = entry
        if entry.supersedes and self._qdrant is not None:
            self._qdrant.delete_point(entry.supersedes)
        return entry

    def get_entry(self, entity_id: str) -> Optional[KnowledgeBase]:
        with self._lock:
            return self._entries.get(entity_id)

    def remove(self, entity_id: str) -> None:
        with self._lock:
            self._drop_locked(entity_id)
        if self._qdrant is not None:
            self._qdrant.delete_point(entity_id)

    def _drop_locked(self, entity_id: str) -> None:
        self._vectors.pop(entity_id, None)
        self._payloads.pop(entity_id, None)
        self._entries.pop(entity_id, None)

    def search(
        self,
        query_vector: list[float],
        top_k: Optional[int] = None,
        score_threshold: Optional[float] = None,
        kind: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> list[SimilarityResult]:
        """
        Nearest neighbours of ``query_vector``.

        Args:
            query_vector: Query embedding.
            top_k: Maximum number of hits.
            score_threshold: Minimum cosine similarity.
            kind: Only entries of this knowledge kind.
            tags: Only entries carrying at least one of these tags.
        """
        limit = top_k or self._top_k
        threshold = self._score_threshold if score_threshold is None else score_threshold

        if self._qdrant is not None:
            hits = self._qdrant.search(query_vector, top_k=limit, score_threshold=threshold, kind=kind, tags=tags)
            return [
                SimilarityResult(
                    entity_id=str(hit["id"]),
                    score=max(-1.0, min(1.0, hit["score"])),
                    payload=hit["payload"],
                )
                for hit in hits
            ]

        with self._lock:
            candidates = [
                (entity_id, vector, self._payloads[entity_id])
                for entity_id, vector in self._vectors.items()
                if self._matches(self._payloads[entity_id], kind, tags)
            ]
        if not candidates:
            return []

        scores = self._similarity.batch_similarity([query_vector], [c[1] for c in candidates])[0]
        ranked = sorted(
            zip(candidates, scores),
            key=lambda item: (-item[1], item[0][0]),
        )
        return [
            SimilarityResult(entity_id=entity_id, score=score, payload=payload, content=payload.get("summary"))
            for (entity_id, _, payload), score in ranked
            if score >= threshold
        ][:limit]

    def search_text(self, query_text: str, **kwargs) -> list[SimilarityResult]:
        """Embed ``query_text`` and search."""
        return self.search(self._embedder.embed(query_text), **kwargs)

    @staticmethod
    def _matches(payload: dict, kind: Optional[str], tags: Optional[list[str]]) -> bool:
        if kind and payload.get("kind") != kind:
            return False
        if tags and not set(tags) & set(payload.get("tags", ())):
            return False
        return True

    def count(self) -> int:
        if self._qdrant is not None:
            return self._qdrant.count()
        with self._lock:
            return len(self._vectors)
