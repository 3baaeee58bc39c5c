"""Vector helpers used to compare embeddings."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray

_EPSILON = 1e-12


def l2_normalize(vector: ArrayLike) -> NDArray[np.float32]:
    """Return ``vector`` scaled to unit length; zero vectors are returned unchanged."""

    array = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.sqrt(np.dot(array, array)))
    if norm <= 0.0:
        return array.copy()
    return array / norm


def cosine_similarity(lhs: ArrayLike, rhs: ArrayLike) -> float:
    """Cosine similarity of two vectors.

    Mismatched lengths or empty inputs yield ``0.0`` instead of raising.
    """

    a = np.asarray(lhs, dtype=np.float64).reshape(-1)
    b = np.asarray(rhs, dtype=np.float64).reshape(-1)
    if a.size == 0 or a.size != b.size:
        return 0.0
    denominator = max(float(np.linalg.norm(a)) * float(np.linalg.norm(b)), _EPSILON)
    return float(np.dot(a, b) / denominator)


def softmax(logits: Sequence[float] | NDArray[np.floating]) -> list[float]:
    """Numerically stable softmax; an empty input gives an empty list."""

    values = np.asarray(logits, dtype=np.float64).reshape(-1)
    if values.size == 0:
        return []
    exps = np.exp(values - values.max())
    total = float(exps.sum())
    denominator = total if total > 0.0 else 1.0
    return [float(value) for value in exps / denominator]


__all__ = ["cosine_similarity", "l2_normalize", "softmax"]
