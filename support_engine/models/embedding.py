"""
Embedding Model - Semantic representation of messages and knowledge

An embedding is owned by exactly one message, knowledge entry or resolution
record. It is regenerated only when the hash of its source text changes.
"""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class OwnerType(str, Enum):
    """Kind of record an embedding belongs to."""
    MESSAGE = "message"
    KNOWLEDGE = "knowledge"
    RESOLUTION = "resolution"


def source_hash(text: str) -> str:
    """Stable hash of the text an embedding was generated from."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class Embedding(BaseModel):
    """Vector stored for a message or knowledge entry."""

    embedding_id: UUID = Field(default_factory=uuid4, description="Unique identifier for the embedding")
    owner_type: OwnerType = Field(..., description="Kind of record the vector belongs to")
    owner_id: str = Field(..., description="Id of the owning record")
    vector: list[float] = Field(..., description="L2-normalized vector")
    source_hash: str = Field(..., description="sha256 of the source text")
    model_name: str = Field(..., description="Embedding model that produced the vector")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        frozen = True

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    def is_stale(self, text: str) -> bool:
        """True when ``text`` differs from the text this vector was built from."""
        return self.source_hash != source_hash(text)


class SimilarityResult(BaseModel):
    """One hit from a similarity search."""

    entity_id: str = Field(..., description="Id of the matched record")
    score: float = Field(..., ge=-1.0, le=1.0, description="Cosine similarity")
    payload: dict[str, Any] = Field(default_factory=dict)
    content: Optional[str] = Field(None, description="Matched text, when available")

    class Config:
        frozen = True

    @property
    def relevance(self) -> float:
        """Similarity clipped to [0, 1]."""
        return max(0.0, min(1.0, self.score))
