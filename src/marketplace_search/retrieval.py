from __future__ import annotations

import numpy as np


def top_k_cosine(
    query: np.ndarray,
    embeddings: np.ndarray,
    norms: np.ndarray,
    k: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Return (indices, scores) for top-k cosine similarity."""
    if query.ndim != 1:
        raise ValueError("query must be 1D")
    if embeddings.ndim != 2:
        raise ValueError("embeddings must be 2D")
    if embeddings.shape[0] != norms.shape[0]:
        raise ValueError("norms must match embeddings rows")

    query = query.astype(np.float32, copy=False)
    qn = np.linalg.norm(query).astype(np.float32)
    if qn == 0:
        raise ValueError("zero-norm query embedding")

    scores = (embeddings @ query) / (norms * qn + 1e-8)
    k = min(int(k), scores.shape[0])
    idx = np.argpartition(-scores, k - 1)[:k]
    idx = idx[np.argsort(-scores[idx], kind="stable")]
    return idx, scores[idx]


def top_k_dot(query: np.ndarray, embeddings: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
    scores = embeddings @ query.astype(np.float32, copy=False)
    k = min(int(k), scores.shape[0])
    idx = np.argsort(-scores, kind="stable")[:k]
    return idx, scores[idx]


def top_k_euclidean(query: np.ndarray, embeddings: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
    """Smallest distances first; the returned scores are distances."""
    distances = np.linalg.norm(embeddings - query.astype(np.float32, copy=False), axis=1)
    k = min(int(k), distances.shape[0])
    idx = np.argsort(distances, kind="stable")[:k]
    return idx, distances[idx]


def rank(
    query: list[float],
    candidates: list[list[float]],
    *,
    metric: str,
    k: int,
) -> list[tuple[int, float]]:
    """Rank candidate vectors against ``query``; returns (candidate index, score) pairs."""
    if not candidates or k <= 0:
        return []
    q = np.asarray(query, dtype=np.float32)
    matrix = np.asarray(candidates, dtype=np.float32)
    if matrix.ndim != 2 or matrix.shape[1] != q.shape[0]:
        raise ValueError("candidate vectors must match the query dimension")

    if metric == "euclidean":
        idx, scores = top_k_euclidean(q, matrix, k)
    elif metric == "dot":
        idx, scores = top_k_dot(q, matrix, k)
    elif metric == "cosine":
        norms = np.linalg.norm(matrix, axis=1).astype(np.float32)
        idx, scores = top_k_cosine(q, matrix, norms, k)
    else:
        raise ValueError(f"unknown similarity metric: {metric}")
    return [(int(i), float(s)) for i, s in zip(idx.tolist(), scores.tolist())]
