"""
Similarity Service - Vector math over embeddings

Cosine similarity, distances, weighted similarity, interpolation, chunked
batch comparison, k-means clustering and density-based anomaly scoring.
All functions are pure; degenerate input never produces NaN.
"""

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

Vector = Sequence[float]

DISTANCE_METRICS = ("euclidean", "manhattan", "cosine")
DEFAULT_BATCH_SIZE = 100
DEFAULT_ANOMALY_THRESHOLD = 0.8
KMEANS_MAX_ITERATIONS = 10

_KEYWORD_RE = re.compile(r"[一-鿿]{2,}|[゠-ヿー]{2,}|[A-Za-z0-9]{3,}")
_SENTENCE_SPLIT_RE = re.compile(r"[。．.!?！？\n]+")


@dataclass
class Cluster:
    members: list[int]
    centroid: list[float]
    label: str
    cohesion: float


@dataclass
class AnomalyResult:
    score: float
    is_anomaly: bool
    density: float
    z_score: float = 0.0


@dataclass
class DocumentSimilarity:
    overall: float
    sentence_pairs: list[dict] = field(default_factory=list)


def _as_array(vector: Optional[Vector]) -> Optional[np.ndarray]:
    if vector is None:
        return None
    arr = np.asarray(vector, dtype=np.float64)
    if arr.ndim != 1 or arr.size == 0 or not np.all(np.isfinite(arr)):
        return None
    return arr


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    # Rows with NaN or inf are treated as zero vectors
    matrix = np.where(np.isfinite(matrix).all(axis=1, keepdims=True), matrix, 0.0)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0, 1.0, norms)
    return np.where(norms == 0, 0.0, matrix / safe)


class SimilarityService:
    """Pure vector operations used by retrieval, clustering and anomaly checks."""

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE):
        self.batch_size = batch_size

    # ------------------------------------------------------------------
    # Pairwise measures
    # ------------------------------------------------------------------

    def cosine_similarity(self, a: Optional[Vector], b: Optional[Vector]) -> float:
        """Cosine similarity in [-1, 1]; 0.0 for missing, mismatched or zero vectors."""
        va, vb = _as_array(a), _as_array(b)
        if va is None or vb is None or va.shape != vb.shape:
            return 0.0
        na, nb = np.linalg.norm(va), np.linalg.norm(vb)
        if na == 0 or nb == 0:
            return 0.0
        value = float(np.dot(va, vb) / (na * nb))
        if math.isnan(value):
            return 0.0
        return max(-1.0, min(1.0, value))

    def distance(self, a: Vector, b: Vector, metric: str = "euclidean") -> float:
        """
        Distance between two vectors.

        Raises:
            ValueError: for an unknown metric or mismatched dimensions.
        """
        if metric not in DISTANCE_METRICS:
            raise ValueError(f"Unknown distance metric: {metric}")
        if metric == "cosine":
            return 1.0 - self.cosine_similarity(a, b)
        va, vb = _as_array(a), _as_array(b)
        if va is None or vb is None or va.shape != vb.shape:
            raise ValueError("Vectors must be non-empty and of equal dimension")
        if metric == "euclidean":
            return float(np.linalg.norm(va - vb))
        return float(np.sum(np.abs(va - vb)))

    def weighted_similarity(
        self,
        a: Vector,
        b: Vector,
        weights: Optional[Vector] = None,
    ) -> float:
        """Cosine similarity with per-dimension weights (uniform when None)."""
        va, vb = _as_array(a), _as_array(b)
        if va is None or vb is None or va.shape != vb.shape:
            return 0.0
        if weights is None:
            return self.cosine_similarity(va, vb)
        w = np.asarray(weights, dtype=np.float64)
        if w.shape != va.shape:
            return 0.0
        w = np.clip(w, 0.0, None)
        total = w.sum()
        if total <= 0:
            return 0.0
        scale = np.sqrt(w / total)
        return self.cosine_similarity(va * scale, vb * scale)

    def interpolate(self, a: Vector, b: Vector, alpha: float) -> list[float]:
        """Point at ``alpha`` in [0, 1] on the path from a to b, re-normalized."""
        if not 0.0 <= alpha <= 1.0:
            raise ValueError("alpha must be between 0 and 1")
        va, vb = _as_array(a), _as_array(b)
        if va is None or vb is None or va.shape != vb.shape:
            raise ValueError("Vectors must be non-empty and of equal dimension")
        mixed = (1.0 - alpha) * va + alpha * vb
        norm = np.linalg.norm(mixed)
        if norm == 0:
            return mixed.tolist()
        return (mixed / norm).tolist()

    def interpolation_path(self, a: Vector, b: Vector, steps: int = 5) -> list[list[float]]:
        """``steps`` evenly spaced points from a to b, both ends included."""
        if steps < 2:
            raise ValueError("steps must be at least 2")
        return [self.interpolate(a, b, float(alpha)) for alpha in np.linspace(0.0, 1.0, steps)]

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    def batch_similarity(
        self,
        vectors_a: Sequence[Vector],
        vectors_b: Sequence[Vector],
        batch_size: Optional[int] = None,
    ) -> list[list[float]]:
        """Cosine similarity matrix between two lists, computed in row chunks."""
        if not vectors_a or not vectors_b:
            return []
        size = batch_size or self.batch_size
        b = _normalize_rows(np.asarray(vectors_b, dtype=np.float64))
        rows: list[list[float]] = []
        for start in range(0, len(vectors_a), size):
            chunk = _normalize_rows(np.asarray(vectors_a[start:start + size], dtype=np.float64))
            block = np.clip(chunk @ b.T, -1.0, 1.0)
            rows.extend(block.tolist())
        return rows

    def similarity_matrix(self, vectors: Sequence[Vector]) -> list[list[float]]:
        return self.batch_similarity(vectors, vectors)

    def semantic_neighbors(
        self,
        query: Vector,
        candidates: Sequence[Vector],
        k: int = 5,
        radius: float = 0.0,
    ) -> list[tuple[int, float]]:
        """Indices and scores of the ``k`` most similar candidates at or above ``radius``."""
        if not candidates:
            return []
        scores = self.batch_similarity([query], candidates)[0]
        ranked = sorted(enumerate(scores), key=lambda item: (-item[1], item[0]))
        return [(i, s) for i, s in ranked if s >= radius][:k]

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    def cluster(
        self,
        vectors: Sequence[Vector],
        k: int,
        texts: Optional[Sequence[str]] = None,
        max_iterations: int = KMEANS_MAX_ITERATIONS,
    ) -> list[Cluster]:
        """
        Deterministic spherical k-means.

        Seeds with the first vector then farthest points, so identical input
        always yields identical clusters. Empty clusters are dropped.
        """
        if not vectors or k <= 0:
            return []
        data = _normalize_rows(np.asarray(vectors, dtype=np.float64))
        n = data.shape[0]
        k = min(k, n)

        seeds = [0]
        while len(seeds) < k:
            sims = data @ data[seeds].T
            closest = sims.max(axis=1)
            closest[seeds] = np.inf
            seeds.append(int(np.argmin(closest)))
        centroids = data[seeds].copy()

        assignment = np.full(n, -1)
        for _ in range(max_iterations):
            new_assignment = np.argmax(data @ centroids.T, axis=1)
            if np.array_equal(new_assignment, assignment):
                break
            assignment = new_assignment
            for c in range(k):
                members = data[assignment == c]
                if len(members):
                    centroids[c] = _normalize_rows(members.mean(axis=0, keepdims=True))[0]

        clusters = []
        for c in range(k):
            members = [int(i) for i in np.where(assignment == c)[0]]
            if not members:
                continue
            centroid = centroids[c]
            distances = 1.0 - np.clip(data[members] @ centroid, -1.0, 1.0)
            cohesion = 1.0 / (1.0 + float(distances.mean()))
            clusters.append(
                Cluster(
                    members=members,
                    centroid=centroid.tolist(),
                    label=self._cluster_label(members, texts, len(clusters)),
                    cohesion=cohesion,
                )
            )
        return clusters

    @staticmethod
    def _cluster_label(members: list[int], texts: Optional[Sequence[str]], index: int) -> str:
        if texts:
            words = Counter()
            for i in members:
                if i < len(texts) and texts[i]:
                    words.update(_KEYWORD_RE.findall(texts[i]))
            if words:
                return sorted(words.items(), key=lambda item: (-item[1], item[0]))[0][0]
        return f"cluster-{index}"

    # ------------------------------------------------------------------
    # Anomaly detection
    # ------------------------------------------------------------------

    def _densities(self, data: np.ndarray, k: int) -> np.ndarray:
        sims = data @ data.T
        np.fill_diagonal(sims, -np.inf)
        k = max(1, min(k, data.shape[0] - 1))
        top = np.sort(sims, axis=1)[:, -k:]
        return top.mean(axis=1)

    @staticmethod
    def _squash(z: float) -> float:
        return 1.0 - math.exp(-max(z, 0.0) / 1.5)

    def anomaly_scores(
        self,
        population: Sequence[Vector],
        threshold: float = DEFAULT_ANOMALY_THRESHOLD,
        k: int = 5,
    ) -> list[AnomalyResult]:
        """
        Score each vector by how sparse its neighbourhood is.

        Density is the mean similarity to the ``k`` nearest neighbours; the
        score squashes the density z-score into [0, 1].
        """
        if len(population) < 3:
            return [AnomalyResult(score=0.0, is_anomaly=False, density=1.0) for _ in population]
        data = _normalize_rows(np.asarray(population, dtype=np.float64))
        densities = self._densities(data, k)
        mean, std = float(densities.mean()), float(densities.std())
        results = []
        for density in densities:
            z = (mean - float(density)) / std if std > 0 else 0.0
            score = self._squash(z)
            results.append(
                AnomalyResult(score=score, is_anomaly=score >= threshold, density=float(density), z_score=z)
            )
        return results

    def anomaly_score(
        self,
        vector: Vector,
        population: Sequence[Vector],
        threshold: float = DEFAULT_ANOMALY_THRESHOLD,
        k: int = 5,
    ) -> AnomalyResult:
        """Score a single vector against a reference population."""
        if len(population) < 3:
            return AnomalyResult(score=0.0, is_anomaly=False, density=1.0)
        data = _normalize_rows(np.asarray(population, dtype=np.float64))
        densities = self._densities(data, k)
        query = _normalize_rows(np.asarray([vector], dtype=np.float64))[0]
        sims = np.sort(data @ query)[-max(1, min(k, len(population))):]
        density = float(sims.mean())
        mean, std = float(densities.mean()), float(densities.std())
        z = (mean - density) / std if std > 0 else (1e9 if density < mean else 0.0)
        score = self._squash(z)
        return AnomalyResult(score=score, is_anomaly=score >= threshold, density=density, z_score=z)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def document_similarity(
        self,
        doc_a: str,
        doc_b: str,
        embed: Callable[[str], list[float]],
        detailed: bool = False,
    ) -> DocumentSimilarity:
        """Whole-document similarity, plus best sentence matches when ``detailed``."""
        overall = self.cosine_similarity(embed(doc_a), embed(doc_b))
        if not detailed:
            return DocumentSimilarity(overall=overall)

        sentences_a = [s.strip() for s in _SENTENCE_SPLIT_RE.split(doc_a) if s.strip()]
        sentences_b = [s.strip() for s in _SENTENCE_SPLIT_RE.split(doc_b) if s.strip()]
        if not sentences_a or not sentences_b:
            return DocumentSimilarity(overall=overall)

        matrix = self.batch_similarity(
            [embed(s) for s in sentences_a],
            [embed(s) for s in sentences_b],
        )
        pairs = []
        for i, row in enumerate(matrix):
            j = int(np.argmax(row))
            pairs.append({"sentence_a": sentences_a[i], "sentence_b": sentences_b[j], "similarity": row[j]})
        pairs.sort(key=lambda p: -p["similarity"])
        return DocumentSimilarity(overall=overall, sentence_pairs=pairs)
