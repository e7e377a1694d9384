"""
Embedding pipelines and the loaders that build them.

A loader works in two steps so that model files are acquired once per load
even when the pipeline has to be built twice:

- `prepare(model_id, on_progress)` acquires whatever the model needs and
  returns a source the loader understands (a local directory, an id).
- `build(source, device)` materialises a pipeline on one device.

`load_with_fallback` drives `build` through an explicit PRIMARY -> FALLBACK
-> FATAL sequence.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

import numpy as np

from .errors import ModelUnavailable
from .schemas import ProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


@runtime_checkable
class EmbeddingPipeline(Protocol):
    """A loaded model turning text into one normalized vector."""

    @property
    def dimension(self) -> int:
        ...

    def embed(self, text: str) -> np.ndarray:
        """Return a 1-D float32, mean-pooled, L2-normalized embedding."""
        ...


class ModelLoader(Protocol):
    def prepare(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> str:
        ...

    def build(self, source: str, device: str) -> EmbeddingPipeline:
        ...


class SentenceTransformerPipeline:
    def __init__(self, model) -> None:
        self._model = model

    @property
    def dimension(self) -> int:
        return int(self._model.get_sentence_embedding_dimension())

    def embed(self, text: str) -> np.ndarray:
        vectors = self._model.encode(
            [text],
            batch_size=1,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return np.asarray(vectors[0], dtype=np.float32)


@dataclass
class SentenceTransformerLoader:
    """
    Build a mean-pooling, normalizing sentence-transformers encoder.

    The model is assembled from Transformer -> Pooling(mean) -> Normalize
    modules rather than the repository's own pooling config, so every model
    yields mean-pooled unit vectors. sentence-transformers is imported lazily
    so that only the host pays for it.
    """

    cache_dir: str
    endpoint: str = "https://huggingface.co"
    revision: str = "main"

    def prepare(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> str:
        local = Path(model_id).expanduser()
        if local.is_dir():
            logger.info("Using local model directory %s", local)
            return str(local)

        from .fetch import ModelFetcher

        with ModelFetcher(self.cache_dir, endpoint=self.endpoint, revision=self.revision) as fetcher:
            return str(fetcher.fetch(model_id, on_progress=on_progress))

    def build(self, source: str, device: str) -> SentenceTransformerPipeline:
        from sentence_transformers import SentenceTransformer, models

        transformer = models.Transformer(source)
        pooling = models.Pooling(
            transformer.get_word_embedding_dimension(),
            pooling_mode="mean",
        )
        model = SentenceTransformer(
            modules=[transformer, pooling, models.Normalize()],
            device=device,
        )
        return SentenceTransformerPipeline(model)


HASH_MODEL_PREFIX = "hash/"
DEFAULT_HASH_DIM = 32


class HashingPipeline:
    """Deterministic token-hashing embeddings; no model weights involved."""

    def __init__(self, dim: int = DEFAULT_HASH_DIM) -> None:
        if dim <= 0:
            raise ValueError("dim must be > 0")
        self._dim = dim

    @property
    def dimension(self) -> int:
        return self._dim

    def _token_vector(self, token: str) -> np.ndarray:
        digest = hashlib.md5(token.encode("utf-8")).hexdigest()
        base = int(digest[:8], 16) / 0xFFFFFFFF
        return (base * np.arange(1, self._dim + 1, dtype=np.float64)) % 1.0

    def embed(self, text: str) -> np.ndarray:
        tokens = text.lower().split()
        if not tokens:
            return np.zeros(self._dim, dtype=np.float32)
        pooled = np.mean([self._token_vector(t) for t in tokens], axis=0)
        norm = float(np.linalg.norm(pooled)) or 1.0
        return (pooled / norm).astype(np.float32)


def hash_model_dim(model_id: str) -> int:
    """`hash/64` -> 64; anything without a numeric suffix gets the default."""
    suffix = model_id[len(HASH_MODEL_PREFIX):] if model_id.startswith(HASH_MODEL_PREFIX) else ""
    if suffix.isdigit():
        return int(suffix)
    return DEFAULT_HASH_DIM


@dataclass
class HashingLoader:
    """Loader for offline runs and tests. Model ids look like `hash/<dim>`."""

    def prepare(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> str:
        return model_id

    def build(self, source: str, device: str) -> HashingPipeline:
        return HashingPipeline(hash_model_dim(source))


class LoadStage(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    FATAL = "fatal"


_TRANSITIONS: Dict[LoadStage, LoadStage] = {
    LoadStage.PRIMARY: LoadStage.FALLBACK,
    LoadStage.FALLBACK: LoadStage.FATAL,
    LoadStage.FATAL: LoadStage.FATAL,
}


def next_stage(stage: LoadStage, primary_device: str, fallback_device: str) -> LoadStage:
    """Stage to enter after `stage` failed."""
    if stage is LoadStage.PRIMARY and primary_device == fallback_device:
        return LoadStage.FATAL
    return _TRANSITIONS[stage]


@dataclass
class LoadOutcome:
    pipeline: EmbeddingPipeline
    device: str
    stage: LoadStage
    errors: List[str] = field(default_factory=list)


def load_with_fallback(
    build: Callable[[str, str], EmbeddingPipeline],
    source: str,
    primary_device: str,
    fallback_device: str,
    model_id: Optional[str] = None,
) -> LoadOutcome:
    """
    Build a pipeline on the primary device, falling back to the fallback device once.

    Raises `ModelUnavailable` when both attempts fail. There is no retry
    loop; callers retry by loading again.
    """
    devices = {LoadStage.PRIMARY: primary_device, LoadStage.FALLBACK: fallback_device}
    errors: List[str] = []
    stage = LoadStage.PRIMARY

    while stage is not LoadStage.FATAL:
        device = devices[stage]
        try:
            pipeline = build(source, device)
        except Exception as exc:
            logger.warning("Loading %s on %s failed (%s stage): %s", source, device, stage.value, exc)
            errors.append(f"{device}: {exc}")
            stage = next_stage(stage, primary_device, fallback_device)
            continue
        if stage is LoadStage.FALLBACK:
            logger.info("Loaded %s on fallback device %s", source, device)
        return LoadOutcome(pipeline=pipeline, device=device, stage=stage, errors=errors)

    raise ModelUnavailable(model_id or source, "; ".join(errors))
