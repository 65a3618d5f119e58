"""
Vector helpers: compact BLOB encoding and cosine similarity via numpy.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


def vec_to_bytes(vec: Sequence[float]) -> bytes:
    """Serialise a float sequence to compact float32 bytes."""
    return np.asarray(vec, dtype=np.float32).tobytes()


def bytes_to_vec(buf: bytes) -> np.ndarray:
    """Deserialise bytes written by :func:`vec_to_bytes`."""
    return np.frombuffer(buf, dtype=np.float32).copy()


def cosine_similarity_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between *query* (1-D) and each row of *matrix*."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0 or matrix.size == 0:
        return np.zeros(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * query_norm)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity for one pair; 0.0 when either vector is zero or sizes differ."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        return 0.0
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    return float(va @ vb / (na * nb))
