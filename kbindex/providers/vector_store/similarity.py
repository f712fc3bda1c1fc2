"""Vector serialization and cosine ranking shared by the vector backends."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from kbindex.utils.errors import ValidationError

# Fixed-width little-endian float32: 4 bytes per dimension.
VECTOR_DTYPE = np.dtype("<f4")
SCORE_PRECISION = 4


def serialize_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def deserialize_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=VECTOR_DTYPE)


def rank_by_cosine(
    query_vector: Sequence[float],
    chunk_ids: Sequence[int],
    matrix: np.ndarray,
    top_k: int,
) -> list[tuple[int, float]]:
    """Return the *top_k* ``(chunk_id, score)`` pairs by cosine similarity.

    Rows (or a query) with zero norm score 0.  Ties break on chunk id so
    rankings are stable.  Scores are rounded to four decimals.
    """
    if not len(chunk_ids):
        return []

    query = np.asarray(query_vector, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
        raise ValidationError(
            message=(
                f"Query vector has {query.shape[0]} dimensions, "
                f"index holds {matrix.shape[1] if matrix.ndim == 2 else 0}"
            ),
        )

    vectors = matrix.astype(np.float64, copy=False)
    dots = vectors @ query
    denominators = np.linalg.norm(vectors, axis=1) * np.linalg.norm(query)
    scores = np.divide(
        dots,
        denominators,
        out=np.zeros_like(dots),
        where=denominators > 0,
    )

    ranked = sorted(zip(chunk_ids, scores.tolist()), key=lambda pair: (-pair[1], pair[0]))
    return [
        (int(chunk_id), round(float(score), SCORE_PRECISION)) for chunk_id, score in ranked[:top_k]
    ]
