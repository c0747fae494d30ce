"""
Similarity index interface and the exact brute-force implementation.
Cosine distance over L2-normalized vectors; deletes are tombstones until compaction.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..core.errors import DimensionMismatchError, ValidationError
from .types import IndexState, SearchHit


def normalize_vector(vector, dimension: int, allow_zero: bool = False) -> Optional[np.ndarray]:
    """Validate a vector against the index dimension and L2-normalize it.

    A zero vector raises ValidationError, or returns None with ``allow_zero``.
    """
    try:
        array = np.asarray(vector, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Vector is not numeric: {e}") from e

    if array.ndim != 1:
        raise ValidationError(f"Vector must be one-dimensional, got shape {array.shape}")
    if array.shape[0] != dimension:
        raise DimensionMismatchError(dimension, array.shape[0])
    if not np.all(np.isfinite(array)):
        raise ValidationError("Vector contains NaN or infinite values")

    norm = np.linalg.norm(array)
    if norm == 0:
        if allow_zero:
            return None
        raise ValidationError("Zero-norm vector has no direction")
    return array / norm


def rank_hits(candidates: Iterable[Tuple[str, float]], k: int) -> List[SearchHit]:
    """Order candidates by ascending distance, ties by identity, and keep k."""
    ordered = sorted(candidates, key=lambda item: (item[1], item[0]))
    return [SearchHit(identity=identity, distance=float(distance)) for identity, distance in ordered[:k]]


class RowTable:
    """Row bookkeeping shared by index implementations.

    Rows are append-only; a row is either live (the current row for its
    identity) or tombstoned.
    """

    def __init__(self, dimension: int, capacity: int = 64):
        self.dimension = dimension
        self.matrix = np.zeros((max(capacity, 1), dimension), dtype=np.float32)
        self.tombstones = np.zeros(max(capacity, 1), dtype=bool)
        self.row_ids: List[str] = []
        self.live: Dict[str, int] = {}

    @property
    def size(self) -> int:
        """Number of physical rows, live and tombstoned."""
        return len(self.row_ids)

    @property
    def tombstone_count(self) -> int:
        return self.size - len(self.live)

    def _grow(self) -> None:
        capacity = self.matrix.shape[0] * 2
        matrix = np.zeros((capacity, self.dimension), dtype=np.float32)
        matrix[:self.size] = self.matrix[:self.size]
        tombstones = np.zeros(capacity, dtype=bool)
        tombstones[:self.size] = self.tombstones[:self.size]
        self.matrix = matrix
        self.tombstones = tombstones

    def append(self, identity: str, normalized: np.ndarray) -> int:
        if self.size >= self.matrix.shape[0]:
            self._grow()
        row = self.size
        self.matrix[row] = normalized
        self.tombstones[row] = False
        self.row_ids.append(identity)
        self.live[identity] = row
        return row

    def tombstone(self, identity: str) -> bool:
        row = self.live.pop(identity, None)
        if row is None:
            return False
        self.tombstones[row] = True
        return True

    def restore(self, row_ids: Sequence[str], vectors: np.ndarray, tombstones: Sequence[bool]) -> None:
        """Load rows exported by ``export``."""
        count = len(row_ids)
        capacity = max(64, count)
        self.matrix = np.zeros((capacity, self.dimension), dtype=np.float32)
        self.tombstones = np.zeros(capacity, dtype=bool)
        if count:
            self.matrix[:count] = np.asarray(vectors, dtype=np.float32).reshape(count, self.dimension)
            self.tombstones[:count] = np.asarray(tombstones, dtype=bool)
        self.row_ids = list(row_ids)
        self.live = {}
        for row, identity in enumerate(self.row_ids):
            if not self.tombstones[row]:
                if identity in self.live:
                    raise ValidationError(f"Two live rows for identity {identity}")
                self.live[identity] = row

    def export(self) -> Tuple[List[str], np.ndarray, List[bool]]:
        return (
            list(self.row_ids),
            self.matrix[:self.size].copy(),
            [bool(flag) for flag in self.tombstones[:self.size]],
        )

    def live_rows(self) -> Tuple[List[str], np.ndarray]:
        """Identities and vectors of live rows, in row order."""
        rows = sorted(self.live.values())
        return [self.row_ids[row] for row in rows], self.matrix[rows].copy()

    def vector(self, identity: str) -> Optional[np.ndarray]:
        row = self.live.get(identity)
        if row is None:
            return None
        return self.matrix[row].copy()


class ISimilarityIndex(ABC):
    """Abstract interface for approximate nearest-neighbor indexes."""

    kind = "abstract"
    dimension: int

    @abstractmethod
    def insert(self, identity: str, vector) -> None:
        """Insert a vector; an existing identity is tombstoned first."""
        pass

    @abstractmethod
    def delete(self, identity: str) -> bool:
        """Tombstone an identity. Returns True if it was live."""
        pass

    @abstractmethod
    def search(self, query_vector, k: int = 5) -> List[SearchHit]:
        """Return at most k hits ordered by ascending cosine distance."""
        pass

    @abstractmethod
    def contains(self, identity: str) -> bool:
        pass

    @abstractmethod
    def live_ids(self) -> Set[str]:
        pass

    @abstractmethod
    def get_vector(self, identity: str) -> Optional[np.ndarray]:
        """Normalized vector of a live identity, or None."""
        pass

    @property
    @abstractmethod
    def tombstone_count(self) -> int:
        pass

    @abstractmethod
    def export_state(self) -> IndexState:
        pass

    @classmethod
    @abstractmethod
    def from_state(cls, state: IndexState) -> "ISimilarityIndex":
        pass

    @abstractmethod
    def compacted(self) -> "ISimilarityIndex":
        """Build a new index of the same kind holding only live rows."""
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    @abstractmethod
    def __len__(self) -> int:
        """Number of live entries."""
        pass

    def __contains__(self, identity: str) -> bool:
        return self.contains(identity)


class BruteForceIndex(ISimilarityIndex):
    """Exact cosine search over a numpy matrix. Suited to small corpora and tests."""

    kind = "memory"

    def __init__(self, dimension: int = 384):
        if dimension < 1:
            raise ValidationError("dimension must be >= 1")
        self.dimension = dimension
        self._rows = RowTable(dimension)

    def insert(self, identity: str, vector) -> None:
        normalized = normalize_vector(vector, self.dimension)
        self._rows.tombstone(identity)
        self._rows.append(identity, normalized)

    def delete(self, identity: str) -> bool:
        return self._rows.tombstone(identity)

    def search(self, query_vector, k: int = 5) -> List[SearchHit]:
        query = normalize_vector(query_vector, self.dimension, allow_zero=True)
        if query is None or k <= 0 or not self._rows.live:
            return []

        size = self._rows.size
        distances = 1.0 - self._rows.matrix[:size] @ query
        live_mask = ~self._rows.tombstones[:size]
        rows = np.nonzero(live_mask)[0]
        live_distances = distances[rows]

        if len(rows) > k:
            # Keep every row tied with the k-th distance so ties break by identity
            kth = np.partition(live_distances, k - 1)[k - 1]
            keep = live_distances <= kth
            rows = rows[keep]
            live_distances = live_distances[keep]

        return rank_hits(
            ((self._rows.row_ids[row], distance) for row, distance in zip(rows, live_distances)),
            k,
        )

    def contains(self, identity: str) -> bool:
        return identity in self._rows.live

    def live_ids(self) -> Set[str]:
        return set(self._rows.live)

    def get_vector(self, identity: str) -> Optional[np.ndarray]:
        return self._rows.vector(identity)

    @property
    def tombstone_count(self) -> int:
        return self._rows.tombstone_count

    def export_state(self) -> IndexState:
        row_ids, vectors, tombstones = self._rows.export()
        return IndexState(
            kind=self.kind,
            dimension=self.dimension,
            row_ids=row_ids,
            vectors=vectors,
            tombstones=tombstones,
        )

    @classmethod
    def from_state(cls, state: IndexState) -> "BruteForceIndex":
        index = cls(dimension=state.dimension)
        index._rows.restore(state.row_ids, state.vectors, state.tombstones)
        return index

    def compacted(self) -> "BruteForceIndex":
        index = BruteForceIndex(dimension=self.dimension)
        identities, vectors = self._rows.live_rows()
        index._rows.restore(identities, vectors, [False] * len(identities))
        return index

    def clear(self) -> None:
        self._rows = RowTable(self.dimension)

    def __len__(self) -> int:
        return len(self._rows.live)
