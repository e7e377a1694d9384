"""Pydantic models shared by the gateway, ranking engine and HTTP service."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

FAILED_SCORE = -1.0


class ModelDescriptor(BaseModel):
    id: str


class ModelOption(BaseModel):
    id: str
    name: str
    description: str
    recommended: bool = False


AVAILABLE_MODELS: List[ModelOption] = [
    ModelOption(
        id="sentence-transformers/all-MiniLM-L6-v2",
        name="MiniLM-L6-v2",
        description="Fastest (90MB)",
        recommended=True,
    ),
    ModelOption(
        id="BAAI/bge-small-en-v1.5",
        name="BGE-Small-EN",
        description="Accurate (133MB)",
    ),
]


class ProgressStatus(str, Enum):
    INITIATE = "initiate"
    DOWNLOAD = "download"
    PROGRESS = "progress"
    READY = "ready"
    ERROR = "error"


class ProgressEvent(BaseModel):
    status: ProgressStatus
    file: str
    percent: float = Field(default=0.0, ge=0.0, le=100.0)
    model_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProgressStatus.READY, ProgressStatus.ERROR)


class CandidateDocument(BaseModel):
    id: str
    name: str
    text: str
    embedding: Optional[List[float]] = Field(
        default=None, description="Embedding cached by a previous ranking pass"
    )


class RankedResult(BaseModel):
    candidate_id: str
    name: str = ""
    score: float
    embedding: List[float] = Field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.score == FAILED_SCORE

    def to_record(self) -> Dict[str, Any]:
        """JSON-safe representation for persistence collaborators."""
        return self.model_dump(mode="json")
