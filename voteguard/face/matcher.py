from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from voteguard.utils.math import as_descriptor, euclidean_distance

__all__ = ["DescriptorMatcher", "euclidean_distance"]


class DescriptorMatcher:
    """Vectorized nearest-neighbour matcher over one user's enrolled descriptors.

    Every retained enrollment sample is a candidate, not just their average,
    to tolerate lighting and pose drift between sessions.
    """

    def __init__(self, expected_dim: Optional[int] = None):
        # When set, descriptors of any other length are rejected.
        self.expected_dim = expected_dim

    def _stack(self, enrolled: Sequence, dim: int) -> Tuple[Optional[np.ndarray], List[int]]:
        rows: List[np.ndarray] = []
        index: List[int] = []
        for i, d in enumerate(enrolled):
            vec = as_descriptor(d)
            if vec is None:
                continue
            # Skip incompatible dims; they can never match.
            if int(vec.shape[0]) != dim:
                continue
            rows.append(vec)
            index.append(i)
        if not rows:
            return None, []
        return np.stack(rows, axis=0), index

    def best_match(self, live, enrolled: Sequence) -> Tuple[float, int]:
        """Return (best_distance, index into ``enrolled``); (inf, -1) when nothing is comparable."""
        q = as_descriptor(live)
        if q is None:
            return math.inf, -1
        dim = int(q.shape[0])
        if self.expected_dim is not None and dim != int(self.expected_dim):
            return math.inf, -1

        matrix, index = self._stack(enrolled, dim)
        if matrix is None:
            return math.inf, -1

        dists = np.linalg.norm(matrix - q[None, :], axis=1)
        finite = np.isfinite(dists)
        if not finite.any():
            return math.inf, -1
        dists = np.where(finite, dists, np.inf)
        best = int(np.argmin(dists))
        return float(dists[best]), int(index[best])
