"""Cosine similarity and centroid helpers for face embeddings.

All functions accept lists or numpy arrays and compute in float64 so the
results are reproducible across runs.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from py_clipcast.errors import DimensionMismatch, EmptyInput

VectorLike = Sequence[float] | np.ndarray


def as_vector(values: VectorLike) -> np.ndarray:
    """Return a 1-D float64 copy of ``values``."""
    return np.asarray(values, dtype=np.float64).reshape(-1)


def l2_normalize(vector: VectorLike) -> np.ndarray:
    """L2-normalize a vector; zero vectors are returned unchanged."""
    arr = as_vector(vector)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr
    return arr / norm


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Cosine similarity in [-1, 1].

    Raises:
        DimensionMismatch: if the vectors differ in length.

    Returns 0.0 when either vector has zero magnitude.
    """
    va = as_vector(a)
    vb = as_vector(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(va.shape[0], vb.shape[0], context="cosine_similarity")
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    sim = float(np.dot(va, vb)) / (norm_a * norm_b)
    return float(min(1.0, max(-1.0, sim)))


def cosine_distance(a: VectorLike, b: VectorLike) -> float:
    """Cosine distance ``1 - cosine_similarity`` in [0, 2]."""
    return 1.0 - cosine_similarity(a, b)


def centroid(vectors: Sequence[VectorLike]) -> np.ndarray:
    """Component-wise arithmetic mean of a non-empty sequence of vectors.

    Raises:
        EmptyInput: if ``vectors`` is empty.
        DimensionMismatch: if the vectors differ in length.
    """
    if len(vectors) == 0:
        raise EmptyInput("Cannot compute centroid from empty list")
    rows = [as_vector(v) for v in vectors]
    expected = rows[0].shape[0]
    for row in rows[1:]:
        if row.shape[0] != expected:
            raise DimensionMismatch(expected, row.shape[0], context="centroid")
    return np.mean(np.vstack(rows), axis=0)


def running_mean(previous: VectorLike, count: int, sample: VectorLike) -> np.ndarray:
    """Fold one more sample into a mean of ``count`` samples.

    ``new = (previous * count + sample) / (count + 1)``. Pure: neither input
    is modified.
    """
    prev = as_vector(previous)
    new = as_vector(sample)
    if prev.shape[0] != new.shape[0]:
        raise DimensionMismatch(prev.shape[0], new.shape[0], context="running_mean")
    n = max(int(count), 0)
    return (prev * n + new) / (n + 1)


def pairwise_cosine_distances(matrix: np.ndarray) -> np.ndarray:
    """Symmetric cosine distance matrix for the rows of ``matrix``.

    Zero rows have similarity 0 to everything else (distance 1). Values are
    clipped to [0, 2] and the diagonal is exactly 0.
    """
    arr = np.asarray(matrix, dtype=np.float64)
    if arr.ndim != 2:
        raise ValueError(f"Expected a 2-D matrix, got shape {arr.shape}")
    n = arr.shape[0]
    if n == 0:
        return np.zeros((0, 0), dtype=np.float64)

    norms = np.linalg.norm(arr, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    unit = arr / safe
    sims = np.clip(unit @ unit.T, -1.0, 1.0)
    # Average with the transpose so floating-point noise cannot break symmetry
    sims = (sims + sims.T) / 2.0
    distances = np.clip(1.0 - sims, 0.0, 2.0)
    np.fill_diagonal(distances, 0.0)
    return distances


__all__ = [
    "VectorLike",
    "as_vector",
    "l2_normalize",
    "cosine_similarity",
    "cosine_distance",
    "centroid",
    "running_mean",
    "pairwise_cosine_distances",
]
