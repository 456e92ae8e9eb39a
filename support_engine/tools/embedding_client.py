"""
Embedding Client - Text to Vector Conversion

Two providers, selected with ``EMBEDDING_PROVIDER``:
  - "hashing": local, deterministic feature hashing of character n-grams and
    word tokens (default; no network, stable across processes)
  - "openai": remote embeddings endpoint over HTTP

Both return L2-normalized vectors of the configured dimensionality.
"""

import hashlib
import logging
import math
import re
import unicodedata
from typing import Optional

import httpx
import numpy as np
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from support_engine.config.settings import EmbeddingConfig, config
from support_engine.utils.error_handling import (
    BatchTooLargeError,
    EmptyBatchError,
    EmptyInputError,
    ExternalServiceError,
    InputError,
    InputTooLongError,
    InvalidBatchItemError,
)

logger = logging.getLogger(__name__)


HASHING_MODEL_NAME = "hashing-ngram-v1"
REMOTE_BATCH_SLICE = 100
NGRAM_SIZES = (1, 2, 3)
_WORD_RE = re.compile(r"[a-z0-9]+|[一-鿿]+|[゠-ヿ]+|[぀-ゟ]+")


class EmbeddingModelError(ExternalServiceError):
    """Raised when the embedding provider fails to produce a vector."""
    pass


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 ASCII chars per token, ~1 token per other char."""
    ascii_chars = sum(1 for ch in text if ord(ch) < 128)
    return math.ceil(ascii_chars / 4) + (len(text) - ascii_chars)


def _normalize_text(text: str) -> str:
    return unicodedata.normalize("NFKC", text).lower()


def _l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0 or not np.isfinite(norm):
        unit = np.zeros_like(vector)
        unit[0] = 1.0
        return unit
    return vector / norm


class HashingProvider:
    """Deterministic local embeddings from hashed n-gram features."""

    def __init__(self, dimensions: int):
        self.dimensions = dimensions
        self.model_name = HASHING_MODEL_NAME

    def _features(self, text: str) -> list[str]:
        norm = _normalize_text(text)
        compact = re.sub(r"\s+", " ", norm).strip()
        features = []
        for size in NGRAM_SIZES:
            for i in range(len(compact) - size + 1):
                gram = compact[i:i + size]
                if gram.strip():
                    features.append(f"c{size}:{gram}")
        features.extend(f"w:{word}" for word in _WORD_RE.findall(norm))
        return features

    def embed(self, text: str) -> list[float]:
        vector = np.zeros(self.dimensions, dtype=np.float64)
        for feature in self._features(text):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "big")
            index = value % self.dimensions
            sign = 1.0 if (value >> 63) & 1 == 0 else -1.0
            weight = 1.5 if feature.startswith("w:") else 1.0
            vector[index] += sign * weight
        return _l2_normalize(vector).tolist()

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]


class OpenAIProvider:
    """Remote embeddings over HTTP (OpenAI-compatible endpoint)."""

    def __init__(self, settings: EmbeddingConfig, http_client: Optional[httpx.Client] = None):
        self.settings = settings
        self.dimensions = settings.dimensions
        self.model_name = settings.model_name
        self._client = http_client

    def _http(self) -> httpx.Client:
        if self._client is None:
            if not self.settings.api_key:
                raise EmbeddingModelError("OPENAI_API_KEY is not set in the environment")
            self._client = httpx.Client(
                timeout=self.settings.timeout_seconds,
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _post(self, inputs: list[str]) -> list[list[float]]:
        response = self._http().post(
            self.settings.api_url,
            json={
                "model": self.model_name,
                "input": inputs,
                "dimensions": self.dimensions,
            },
        )
        response.raise_for_status()
        data = response.json().get("data") or []
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in ordered]

    def _request(self, inputs: list[str]) -> list[list[float]]:
        truncated = [text[: self.settings.remote_truncate_chars] for text in inputs]
        try:
            raw = self._post(truncated)
        except httpx.HTTPError as e:
            raise EmbeddingModelError(f"Embedding request failed: {e}") from e
        if len(raw) != len(inputs):
            raise EmbeddingModelError(
                f"Embedding response has {len(raw)} vectors for {len(inputs)} inputs"
            )
        vectors = []
        for vector in raw:
            if len(vector) != self.dimensions:
                raise EmbeddingModelError(
                    f"Expected {self.dimensions} dimensions, got {len(vector)}"
                )
            vectors.append(_l2_normalize(np.asarray(vector, dtype=np.float64)).tolist())
        return vectors

    def embed(self, text: str) -> list[float]:
        return self._request([text])[0]

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        out: list[list[float]] = []
        for start in range(0, len(texts), REMOTE_BATCH_SLICE):
            out.extend(self._request(texts[start:start + REMOTE_BATCH_SLICE]))
        return out


class EmbeddingClient:
    """
    Embedding client with pluggable provider.

    Validates input before any provider call; identical input always yields
    the identical vector.
    """

    def __init__(
        self,
        settings: Optional[EmbeddingConfig] = None,
        provider: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        metrics=None,
    ):
        self.settings = settings or config.embedding
        self._provider_name = (provider or self.settings.provider).lower()
        if self._provider_name == "openai":
            self._provider = OpenAIProvider(self.settings, http_client=http_client)
        elif self._provider_name == "hashing":
            self._provider = HashingProvider(self.settings.dimensions)
        else:
            raise ValueError(f"Unknown embedding provider: {self._provider_name}")
        self._metrics = metrics

    def validate(self, text: Optional[str]) -> str:
        """Return ``text`` or raise the matching InputError."""
        if text is None or not isinstance(text, str) or not text.strip():
            raise EmptyInputError("Cannot embed empty text")
        if len(text) > self.settings.max_chars:
            raise InputTooLongError(
                f"Text is too long ({len(text)} chars, max {self.settings.max_chars})"
            )
        if estimate_tokens(text) > self.settings.max_tokens:
            raise InputTooLongError(
                f"Text exceeds the {self.settings.max_tokens} token limit"
            )
        return text

    def embed(self, text: Optional[str]) -> list[float]:
        """Generate embedding for a single text."""
        self.validate(text)
        try:
            vector = self._provider.embed(text)
        except EmbeddingModelError:
            self._record("failure")
            raise
        self._record("success")
        return vector

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts, in order."""
        if not texts:
            raise EmptyBatchError("Cannot embed an empty batch")
        if len(texts) > self.settings.max_batch_size:
            raise BatchTooLargeError(
                f"Batch of {len(texts)} exceeds the maximum of {self.settings.max_batch_size}"
            )
        for i, text in enumerate(texts):
            try:
                self.validate(text)
            except InputError as e:
                raise InvalidBatchItemError(i, str(e)) from e
        try:
            vectors = self._provider.embed_many(texts)
        except EmbeddingModelError:
            self._record("failure")
            raise
        self._record("success")
        return vectors

    def embedding_info(self) -> dict:
        return {
            "model": self.model_name,
            "dimensions": self.vector_dimension,
            "max_tokens": self.settings.max_tokens,
            "max_chars": self.settings.max_chars,
            "provider": self._provider_name,
        }

    def _record(self, status: str):
        if self._metrics is not None:
            self._metrics.record_embedding(self._provider_name, status)

    @property
    def vector_dimension(self) -> int:
        return self._provider.dimensions

    @property
    def model_name(self) -> str:
        return self._provider.model_name


def create_embedding_text(content: str, context: Optional[list[str]] = None) -> str:
    """
    Format a message for embedding, prefixed with up to two preceding turns.

    Args:
        content: Message text.
        context: Earlier turn texts, oldest first.
    """
    if not context:
        return content
    recent = [c for c in context[-2:] if c and c.strip()]
    if not recent:
        return content
    return "\n".join(["[context] " + " / ".join(recent), content])


def create_resolution_text(problem: str, solution: Optional[str], steps: list[str]) -> str:
    """Format a resolution record for embedding."""
    parts = [f"problem: {problem}"]
    if solution:
        parts.append(f"solution: {solution}")
    if steps:
        parts.append("steps: " + " > ".join(steps))
    return "\n".join(parts)
