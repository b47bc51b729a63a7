from __future__ import annotations

import numpy as np


def l2_normalize(vec: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """L2-normalize a vector (or 2D array row-wise) safely."""
    arr = np.asarray(vec, dtype=np.float32)
    if arr.ndim == 1:
        denom = float(np.linalg.norm(arr))
        if denom < eps:
            return arr
        return arr / denom
    if arr.ndim == 2:
        norms = np.linalg.norm(arr, axis=1, keepdims=True)
        norms = np.maximum(norms, eps)
        return arr / norms
    raise ValueError(f"Unsupported ndim={arr.ndim}")


def euclidean_distances(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Row-wise Euclidean distance between an (N, D) matrix and a (D,) query."""
    mat = np.asarray(matrix, dtype=np.float32)
    q = np.asarray(query, dtype=np.float32).reshape(-1)
    if mat.ndim != 2:
        raise ValueError(f"Unsupported ndim={mat.ndim}")
    if mat.shape[1] != q.shape[0]:
        raise ValueError(f"Descriptor length mismatch: gallery={mat.shape[1]}, query={q.shape[0]}")
    diff = mat - q[None, :]
    return np.sqrt(np.einsum("ij,ij->i", diff, diff))
