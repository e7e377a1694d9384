"""
cv_rank
=======

Rank candidate documents against a job description with locally computed
embeddings.

- Model host running one embedding pipeline in an isolated process
- Async inference gateway correlating replies by request id
- Download progress fan-out for the model weights
- Cosine-similarity ranking that tolerates per-candidate failures
- FastAPI service and CLI runner on top
"""

from .errors import (
    DimensionMismatch,
    EmbeddingFailed,
    ModelUnavailable,
    ProtocolMismatch,
    RankerError,
)
from .gateway import InferenceGateway
from .host import ModelHost
from .progress import ProgressBroadcaster
from .ranking import AnalysisStatus, JobAnalysis, rank_candidates
from .schemas import CandidateDocument, ModelDescriptor, ProgressEvent, RankedResult
from .vector_math import cosine_similarity

__all__ = [
    "AnalysisStatus",
    "CandidateDocument",
    "DimensionMismatch",
    "EmbeddingFailed",
    "InferenceGateway",
    "JobAnalysis",
    "ModelDescriptor",
    "ModelHost",
    "ModelUnavailable",
    "ProgressBroadcaster",
    "ProgressEvent",
    "ProtocolMismatch",
    "RankedResult",
    "RankerError",
    "cosine_similarity",
    "rank_candidates",
]
