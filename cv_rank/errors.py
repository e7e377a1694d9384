"""
Exception taxonomy for the ranking engine.

A failure to embed one candidate is recovered by the ranking
engine; everything else surfaces to the caller.
"""

from __future__ import annotations

from typing import Optional


class RankerError(Exception):
    """Base class for all cv_rank errors."""


class ModelUnavailable(RankerError):
    """A model could not be loaded on any execution path."""

    def __init__(self, model_id: str, message: str) -> None:
        super().__init__(f"Model {model_id!r} unavailable: {message}")
        self.model_id = model_id
        self.message = message


class EmbeddingFailed(RankerError):
    """A single generate request failed inside the model host."""

    def __init__(self, message: str, request_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class ProtocolMismatch(RankerError):
    """A reply arrived for a request id nobody is waiting on."""

    def __init__(self, request_id: Optional[str], reply_type: str) -> None:
        super().__init__(f"No pending request for reply {request_id!r} ({reply_type})")
        self.request_id = request_id
        self.reply_type = reply_type


class DimensionMismatch(RankerError, ValueError):
    """Two vectors of different length were compared."""


class ModelFetchError(RankerError):
    """Model files could not be downloaded."""


class ExtractionError(RankerError):
    """Plain text could not be extracted from a document."""
