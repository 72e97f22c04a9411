"""
Top-K selection shared by the linear scan and the cluster-pruned scan.
Ordering is descending similarity, ties broken by insertion sequence.
"""

import bisect
from typing import Iterable, List, Optional, Tuple

import numpy as np

from .index import IVectorStorage
from .similarity import cosine_similarity
from .types import EmbeddingRecord, VectorQueryResult


class TopK:
    """Bounded, stably ordered collection of the best matches seen so far."""

    def __init__(self, k: int):
        self.k = k
        self._keys: List[Tuple[float, int]] = []
        self._results: List[VectorQueryResult] = []

    def push(self, record: EmbeddingRecord, similarity: float) -> None:
        if self.k <= 0:
            return
        key = (-similarity, record.seq)
        if len(self._keys) >= self.k and key >= self._keys[-1]:
            return

        position = bisect.bisect_left(self._keys, key)
        self._keys.insert(position, key)
        self._results.insert(position, VectorQueryResult(
            id=record.id,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            similarity=similarity,
        ))
        if len(self._keys) > self.k:
            self._keys.pop()
            self._results.pop()

    def extend(self, records: Iterable[EmbeddingRecord], query: np.ndarray) -> int:
        scanned = 0
        for record in records:
            self.push(record, cosine_similarity(query, record.vector))
            scanned += 1
        return scanned

    @property
    def full(self) -> bool:
        return len(self._results) >= self.k

    def kth_similarity(self) -> Optional[float]:
        if not self.full or not self._results:
            return None
        return self._results[-1].similarity

    def results(self) -> List[VectorQueryResult]:
        return list(self._results)


def linear_scan(storage: IVectorStorage, owner_id: str, query: np.ndarray, k: int) -> List[VectorQueryResult]:
    """Ground-truth ranking over every record in the partition."""
    if k <= 0:
        return []
    ranker = TopK(k)
    ranker.extend(storage.list_records(owner_id), query)
    return ranker.results()
