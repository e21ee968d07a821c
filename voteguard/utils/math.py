from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np


def as_descriptor(vec) -> Optional[np.ndarray]:
    """Coerce an array-like into a flat float64 descriptor, or None if it is unusable."""
    if vec is None:
        return None
    try:
        arr = np.asarray(vec, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError):
        return None
    if arr.size == 0:
        return None
    return arr


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


def euclidean_distance(a, b) -> float:
    """Euclidean distance between two descriptors.

    Mismatched lengths, empty or non-finite input yield ``math.inf`` so a bad
    comparison can never look like a match.
    """
    va = as_descriptor(a)
    vb = as_descriptor(b)
    if va is None or vb is None or va.shape != vb.shape:
        return math.inf
    d = float(np.linalg.norm(va - vb))
    if not math.isfinite(d):
        return math.inf
    return d


def mean_descriptor(descriptors: Sequence) -> Optional[np.ndarray]:
    """Element-wise arithmetic mean of equal-length descriptors."""
    rows = [as_descriptor(d) for d in descriptors]
    rows = [r for r in rows if r is not None]
    if not rows:
        return None
    dim = rows[0].shape[0]
    if any(r.shape[0] != dim for r in rows):
        raise ValueError("descriptors must share one dimensionality")
    return np.mean(np.stack(rows, axis=0), axis=0)
