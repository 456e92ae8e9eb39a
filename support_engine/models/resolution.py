"""Resolution path models."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class KeyStep(BaseModel):
    action: str
    result: str = ""

    class Config:
        frozen = True


class ResolutionPath(BaseModel):
    """Recorded route from a problem statement to its outcome."""

    path_id: str = Field(default_factory=lambda: uuid4().hex)
    conversation_ref: str
    problem_type: str
    problem: str
    solution: Optional[str] = None
    steps_count: int = Field(0, ge=0)
    resolution_time: float = Field(0.0, ge=0.0, description="Elapsed seconds, first to last turn")
    successful: bool = False
    key_steps: list[KeyStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        frozen = True
