"""
Runtime configuration.

Values come from environment variables with sensible defaults, mirroring how
the embedding helpers pick their model name. `build_loader` and `build_host`
turn a config into the collaborators the gateway needs.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict

_MODEL_ENV = "CV_RANK_MODEL"
_BACKEND_ENV = "CV_RANK_BACKEND"
_ISOLATION_ENV = "CV_RANK_ISOLATION"
_DEVICE_ENV = "CV_RANK_DEVICE"
_FALLBACK_DEVICE_ENV = "CV_RANK_FALLBACK_DEVICE"
_CACHE_DIR_ENV = "CV_RANK_CACHE_DIR"
_REVISION_ENV = "CV_RANK_REVISION"
_ENDPOINT_ENV = "HF_ENDPOINT"

DEFAULT_MODEL_ID = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_ENDPOINT = "https://huggingface.co"

BACKEND_SENTENCE_TRANSFORMERS = "sentence-transformers"
BACKEND_HASH = "hash"
BACKENDS = [BACKEND_SENTENCE_TRANSFORMERS, BACKEND_HASH]

ISOLATION_PROCESS = "process"
ISOLATION_THREAD = "thread"
ISOLATION_MODES = [ISOLATION_PROCESS, ISOLATION_THREAD]


def _default_cache_dir() -> str:
    return str(Path.home() / ".cache" / "cv_rank")


@dataclass
class EngineConfig:
    """Configuration for the model host and gateway."""

    model_id: str = DEFAULT_MODEL_ID
    backend: str = BACKEND_SENTENCE_TRANSFORMERS
    isolation: str = ISOLATION_PROCESS
    device: str = "cuda"
    fallback_device: str = "cpu"
    cache_dir: str = field(default_factory=_default_cache_dir)
    endpoint: str = DEFAULT_ENDPOINT
    revision: str = "main"

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend {self.backend!r}; expected one of {BACKENDS}")
        if self.isolation not in ISOLATION_MODES:
            raise ValueError(
                f"Unknown isolation {self.isolation!r}; expected one of {ISOLATION_MODES}"
            )
        if not self.model_id:
            raise ValueError("model_id must not be empty")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            model_id=os.environ.get(_MODEL_ENV, DEFAULT_MODEL_ID),
            backend=os.environ.get(_BACKEND_ENV, BACKEND_SENTENCE_TRANSFORMERS),
            isolation=os.environ.get(_ISOLATION_ENV, ISOLATION_PROCESS),
            device=os.environ.get(_DEVICE_ENV, "cuda"),
            fallback_device=os.environ.get(_FALLBACK_DEVICE_ENV, "cpu"),
            cache_dir=os.environ.get(_CACHE_DIR_ENV, _default_cache_dir()),
            endpoint=os.environ.get(_ENDPOINT_ENV, DEFAULT_ENDPOINT),
            revision=os.environ.get(_REVISION_ENV, "main"),
        )

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


def build_loader(config: EngineConfig):
    """Return the model loader selected by `config.backend`."""
    from .loaders import HashingLoader, SentenceTransformerLoader

    if config.backend == BACKEND_HASH:
        return HashingLoader()
    return SentenceTransformerLoader(
        cache_dir=config.cache_dir,
        endpoint=config.endpoint,
        revision=config.revision,
    )


def build_host(config: EngineConfig):
    """Return an unstarted `ModelHost` for `config`."""
    from .host import ModelHost

    return ModelHost(
        build_loader(config),
        isolation=config.isolation,
        primary_device=config.device,
        fallback_device=config.fallback_device,
    )
