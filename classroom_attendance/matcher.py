from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from .config import RECOGNITION_THRESHOLD
from .exceptions import DimensionMismatch
from .types import GalleryEntry, MatchResult, SignatureLike


def _as_vector(values: SignatureLike, identity_id: str | None = None) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1:
        raise DimensionMismatch(expected=1, actual=vector.ndim, identity_id=identity_id)
    return vector


def euclidean_distance(a: SignatureLike, b: SignatureLike) -> float:
    left = _as_vector(a)
    right = _as_vector(b)
    if left.size != right.size:
        raise DimensionMismatch(expected=left.size, actual=right.size)
    return float(np.linalg.norm(left - right))


def confidence_from_distance(distance: float) -> float:
    return max(0.0, 1.0 - float(distance))


class FaceMatcher:
    """Nearest-neighbour lookup of a query signature in a gallery.

    The gallery is passed on every call and never cached, so callers own
    staleness. A match is accepted only when the closest entry lies strictly
    below ``threshold``; equal distances resolve to the earliest entry.
    """

    def __init__(self, threshold: float = RECOGNITION_THRESHOLD) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive.")
        self.threshold = float(threshold)

    def distances(self, query: SignatureLike, gallery: Sequence[GalleryEntry]) -> np.ndarray:
        vector = _as_vector(query)
        if not gallery:
            return np.empty((0,), dtype=np.float64)

        for entry in gallery:
            signature = _as_vector(entry.signature, identity_id=entry.identity_id)
            if signature.size != vector.size:
                raise DimensionMismatch(
                    expected=vector.size,
                    actual=signature.size,
                    identity_id=entry.identity_id,
                )

        matrix = np.vstack([entry.signature for entry in gallery]).astype(np.float64, copy=False)
        return np.linalg.norm(matrix - vector, axis=1)

    def match(self, query: SignatureLike, gallery: Sequence[GalleryEntry]) -> Optional[MatchResult]:
        distances = self.distances(query, gallery)
        if distances.size == 0:
            return None

        # NaN never wins and never passes the threshold.
        distances = np.where(np.isnan(distances), np.inf, distances)
        idx = int(np.argmin(distances))
        best = float(distances[idx])
        if not best < self.threshold:
            return None

        entry = gallery[idx]
        return MatchResult(identity_id=entry.identity_id, display_name=entry.display_name, distance=best)
