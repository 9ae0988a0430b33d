"""Vector helpers shared by the knowledge-store backends."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np


def cosine_similarities(matrix: np.ndarray, vector: Sequence[float] | np.ndarray) -> np.ndarray:
    """Return the cosine similarity of each row of *matrix* to *vector*.

    Rows or queries with zero norm score 0.0.  Results are clipped to
    0.0-1.0 because negative similarity is meaningless for ranking.
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    query = np.asarray(vector, dtype=np.float32)
    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = float(np.linalg.norm(query))
    denominators = row_norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denominators > 0, (matrix @ query) / denominators, 0.0)
    return np.clip(sims, 0.0, 1.0)


def to_blob(vector: Sequence[float]) -> bytes:
    """Pack *vector* as little-endian float32 bytes."""
    return np.asarray(vector, dtype="<f4").tobytes()


def from_blob(blob: bytes) -> list[float]:
    """Unpack float32 bytes written by :func:`to_blob`."""
    return np.frombuffer(blob, dtype="<f4").astype(float).tolist()
