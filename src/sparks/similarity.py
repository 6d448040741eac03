"""Similarity comparator for spark embeddings."""

from __future__ import annotations

import math
from collections.abc import Sequence


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two dense vectors, clamped to [0, 1].

    Vectors of different length or with zero norm score 0.0.
    """
    if len(a) != len(b) or not a:
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b, strict=True):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    score = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    return min(max(score, 0.0), 1.0)


def similarity_scores(
    candidate: Sequence[float],
    priors: Sequence[Sequence[float]],
) -> list[float]:
    """Score ``candidate`` against each prior embedding, in order."""
    return [cosine_similarity(candidate, prior) for prior in priors]
