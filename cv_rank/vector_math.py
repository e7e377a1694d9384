"""Cosine similarity between two embedding vectors."""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

from .errors import DimensionMismatch

VectorLike = Union[Sequence[float], np.ndarray]


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """
    Dot product of `a` and `b` divided by the product of their magnitudes.

    Returns 0.0 when either vector has zero magnitude. Raises
    `DimensionMismatch` when the lengths differ.
    """
    vec_a = np.asarray(a, dtype=np.float64).reshape(-1)
    vec_b = np.asarray(b, dtype=np.float64).reshape(-1)
    if vec_a.shape[0] != vec_b.shape[0]:
        raise DimensionMismatch(
            f"Vectors must have the same dimensionality: {vec_a.shape[0]} != {vec_b.shape[0]}"
        )

    norm_a = float(np.linalg.norm(vec_a))
    norm_b = float(np.linalg.norm(vec_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    score = float(np.dot(vec_a, vec_b)) / (norm_a * norm_b)
    return float(np.clip(score, -1.0, 1.0))
