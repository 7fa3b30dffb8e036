from typing import Optional, Sequence

import numpy as np


def cosine_similarity(
    a: Optional[Sequence[float]],
    b: Optional[Sequence[float]],
) -> float:
    """
    Cosine similarity of two embedding vectors.

    Returns 0.0 for empty vectors, vectors of different length,
    or a zero-norm vector. Never NaN.
    """
    if a is None or b is None:
        return 0.0
    if len(a) == 0 or len(a) != len(b):
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(va, vb) / (norm_a * norm_b))
    if not np.isfinite(similarity):
        return 0.0
    return similarity
