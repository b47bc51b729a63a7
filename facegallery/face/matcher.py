from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from facegallery.config import MATCH_THRESHOLD, UNKNOWN_LABEL
from facegallery.face.gallery import Gallery
from facegallery.utils.math import euclidean_distances


@dataclass
class MatcherConfig:
    # Maximum Euclidean distance still accepted as the same person (inclusive).
    threshold: float = MATCH_THRESHOLD
    unknown_label: str = UNKNOWN_LABEL


@dataclass(frozen=True)
class MatchResult:
    label: str
    # None only when the gallery is empty.
    distance: Optional[float]
    unknown_label: str = UNKNOWN_LABEL

    @property
    def is_known(self) -> bool:
        return self.label != self.unknown_label

    def similarity_percent(self) -> int:
        if self.distance is None:
            return 0
        return int(max(0, min(100, round((1.0 - float(self.distance)) * 100))))


class EuclideanMatcher:
    """Nearest-neighbour identity matcher over a frozen gallery snapshot.

    Each identity is represented by its closest sample (minimum distance over its
    descriptors). Ties between identities go to the one inserted first into the
    gallery. Build a new matcher after every gallery change.
    """

    def __init__(self, gallery: Gallery, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()
        if self.config.threshold < 0:
            raise ValueError(f"threshold must be >= 0, got {self.config.threshold}")

        # Flattened index:
        # - matrix: (N, D) float32
        # - person_ids: (N,) int32, mapping row -> label index
        # - names: list[str] length P, gallery insertion order
        self._names: List[str] = []
        self._matrix: Optional[np.ndarray] = None
        self._person_ids: Optional[np.ndarray] = None
        self._build_index(gallery)

    def _build_index(self, gallery: Gallery) -> None:
        mats: List[np.ndarray] = []
        ids: List[np.ndarray] = []
        for rec in gallery.records():
            if not rec.descriptors:
                continue
            mat = rec.as_matrix()
            self._names.append(rec.label)
            mats.append(mat)
            ids.append(np.full((int(mat.shape[0]),), len(self._names) - 1, dtype=np.int32))

        if not mats:
            return
        # np.concatenate copies, so later gallery mutation cannot leak in
        self._matrix = np.ascontiguousarray(np.concatenate(mats, axis=0).astype(np.float32, copy=False))
        self._matrix.flags.writeable = False
        self._person_ids = np.concatenate(ids, axis=0)

    @property
    def labels(self) -> List[str]:
        return list(self._names)

    @property
    def descriptor_length(self) -> Optional[int]:
        return None if self._matrix is None else int(self._matrix.shape[1])

    @property
    def threshold(self) -> float:
        return float(self.config.threshold)

    def __len__(self) -> int:
        return len(self._names)

    def _per_person_min(self, query: np.ndarray) -> np.ndarray:
        dists = euclidean_distances(self._matrix, query)
        best = np.full((len(self._names),), np.inf, dtype=np.float64)
        np.minimum.at(best, self._person_ids, dists.astype(np.float64, copy=False))
        return best

    def find_best_match(self, query: np.ndarray) -> MatchResult:
        unknown = self.config.unknown_label
        if self._matrix is None:
            return MatchResult(unknown, None, unknown)

        best = self._per_person_min(np.asarray(query, dtype=np.float32).reshape(-1))
        # argmin returns the first minimum -> earliest inserted label wins ties
        idx = int(np.argmin(best))
        dist = float(best[idx])
        if dist <= self.threshold:
            return MatchResult(self._names[idx], dist, unknown)
        return MatchResult(unknown, dist, unknown)

    def find_best_matches(self, queries: Sequence[np.ndarray]) -> List[MatchResult]:
        return [self.find_best_match(q) for q in queries]

    def ranked(self, query: np.ndarray, topk: int = 5) -> List[Tuple[str, float]]:
        """Per-identity minimum distances, closest first (debug helper)."""
        if self._matrix is None:
            return []
        best = self._per_person_min(np.asarray(query, dtype=np.float32).reshape(-1))
        order = np.argsort(best, kind="stable")[: int(max(1, topk))]
        return [(self._names[int(i)], float(best[int(i)])) for i in order]
