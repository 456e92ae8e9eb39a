"""
Knowledge Models - Retrievable context for the aggregator

Knowledge entries form a closed tagged variant discriminated by ``kind``.
Entries are immutable; a change produces a new entry that supersedes the
previous one.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter


def _new_entry_id() -> str:
    return uuid4().hex


class KnowledgeBase(BaseModel):
    """Common projection shared by every knowledge variant."""

    entry_id: str = Field(default_factory=_new_entry_id)
    tags: frozenset[str] = Field(default_factory=frozenset)
    embedding: Optional[list[float]] = Field(None, description="Vector of embedding_text()")
    success_score: float = Field(0.0, ge=0.0, le=100.0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    supersedes: Optional[str] = Field(None, description="entry_id of the entry this one replaces")

    class Config:
        frozen = True

    def embedding_text(self) -> str:
        raise NotImplementedError

    def quality_signal(self) -> float:
        """Quality in [0, 1] used alongside similarity when ranking."""
        return self.success_score / 100.0

    def summary(self) -> str:
        return self.embedding_text()[:200]

    def dedupe_key(self) -> tuple:
        """Identity of the payload, independent of entry_id."""
        return (self.kind, self.embedding_text())

    def with_embedding(self, vector: list[float]):
        return self.model_copy(update={"embedding": list(vector)})

    def supersede(self, **changes):
        """Return a new entry replacing this one."""
        changes.setdefault("embedding", None)
        return self.model_copy(
            update={
                **changes,
                "entry_id": _new_entry_id(),
                "supersedes": self.entry_id,
                "created_at": datetime.now(timezone.utc),
            }
        )


class FAQ(KnowledgeBase):
    kind: Literal["faq"] = "faq"
    question: str
    answer: str

    def embedding_text(self) -> str:
        return f"{self.question}\n{self.answer}"

    def summary(self) -> str:
        return f"Q: {self.question} A: {self.answer}"

    def quality_signal(self) -> float:
        # FAQs without feedback are curated content; treat as fully trusted.
        return self.success_score / 100.0 if self.success_score else 1.0


class CaseStudy(KnowledgeBase):
    kind: Literal["case_study"] = "case_study"
    problem: str
    solution: str
    steps: list[str] = Field(default_factory=list)
    success: bool = True
    success_rate: float = Field(0.0, ge=0.0, le=1.0)

    def embedding_text(self) -> str:
        return f"{self.problem}\n{self.solution}"

    def summary(self) -> str:
        return f"{self.problem} → {self.solution}"

    def quality_signal(self) -> float:
        if self.success_rate:
            return self.success_rate
        return 1.0 if self.success else 0.0


class ProductInfo(KnowledgeBase):
    kind: Literal["product_info"] = "product_info"
    name: str
    features: list[str] = Field(default_factory=list)
    docs: str = ""

    def embedding_text(self) -> str:
        return " ".join([self.name, *self.features, self.docs]).strip()

    def summary(self) -> str:
        features = "、".join(self.features)
        return f"{self.name}: {features}" if features else self.name

    def quality_signal(self) -> float:
        return self.success_score / 100.0 if self.success_score else 1.0


class SuccessPattern(KnowledgeBase):
    kind: Literal["success_pattern"] = "success_pattern"
    conversation_ref: str
    score: float = Field(..., ge=0.0, le=100.0)
    summary_text: str = ""
    problem: str = ""
    resolution: str = ""

    def embedding_text(self) -> str:
        return self.problem or self.summary_text

    def summary(self) -> str:
        return self.summary_text or self.problem

    def dedupe_key(self) -> tuple:
        return (self.kind, self.conversation_ref)


KnowledgeEntry = Annotated[
    Union[FAQ, CaseStudy, ProductInfo, SuccessPattern],
    Field(discriminator="kind"),
]

KNOWLEDGE_KINDS = ("faq", "case_study", "product_info", "success_pattern")

_entry_adapter = TypeAdapter(KnowledgeEntry)


def parse_entry(data: dict) -> KnowledgeBase:
    """Build the right variant from a plain mapping."""
    return _entry_adapter.validate_python(data)
