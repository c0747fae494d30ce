"""
FAISS HNSW similarity index.
Approximate cosine search via inner product over normalized vectors.
"""

from typing import List, Optional, Set

import numpy as np

from ..core.errors import ValidationError
from .index import ISimilarityIndex, RowTable, normalize_vector, rank_hits
from .types import IndexState, SearchHit


class FaissVectorStore(ISimilarityIndex):
    """FAISS-backed implementation of ISimilarityIndex.

    FAISS rows are append-only, so deletes are tombstones tracked in the row
    table; searches over-fetch by the tombstone count and drop dead rows.
    Compaction builds a fresh HNSW graph from live rows only.
    """

    kind = "faiss"

    def __init__(self, dimension: int = 384, m: int = 32, ef_construction: int = 200, ef_search: int = 128):
        """
        Initialize FAISS HNSW index.

        Args:
            dimension: Dimension of the vectors
            m: HNSW graph degree
            ef_construction: Candidate list size while building the graph
            ef_search: Minimum candidate list size at query time
        """
        try:
            import faiss
        except ImportError:
            raise ImportError("FAISS not installed. Please install faiss-cpu package.")

        if dimension < 1:
            raise ValidationError("dimension must be >= 1")

        self.faiss = faiss
        self.dimension = dimension
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self.index = self._new_index()
        self._rows = RowTable(dimension)

    def _new_index(self):
        index = self.faiss.IndexHNSWFlat(self.dimension, self.m, self.faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efConstruction = self.ef_construction
        index.hnsw.efSearch = self.ef_search
        return index

    @property
    def params(self):
        return {"m": self.m, "ef_construction": self.ef_construction, "ef_search": self.ef_search}

    def insert(self, identity: str, vector) -> None:
        """Add a vector to the graph, tombstoning any previous row for the identity."""
        normalized = normalize_vector(vector, self.dimension)
        self.index.add(normalized.reshape(1, -1))
        self._rows.tombstone(identity)
        self._rows.append(identity, normalized)

    def delete(self, identity: str) -> bool:
        return self._rows.tombstone(identity)

    def search(self, query_vector, k: int = 5) -> List[SearchHit]:
        """Search for similar vectors and return ranked results."""
        query = normalize_vector(query_vector, self.dimension, allow_zero=True)
        if query is None or k <= 0 or not self._rows.live:
            return []

        fetch = min(self.index.ntotal, k + self._rows.tombstone_count)
        params = self.faiss.SearchParametersHNSW(efSearch=max(self.ef_search, fetch))
        scores, labels = self.index.search(query.reshape(1, -1), fetch, params=params)

        candidates = []
        for score, label in zip(scores[0], labels[0]):
            row = int(label)
            if row < 0 or self._rows.tombstones[row]:
                continue
            # Inner product of unit vectors is cosine similarity
            candidates.append((self._rows.row_ids[row], 1.0 - float(score)))

        return rank_hits(candidates, k)

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
        structure = self.faiss.serialize_index(self.index).tobytes()
        return IndexState(
            kind=self.kind,
            dimension=self.dimension,
            row_ids=row_ids,
            vectors=vectors,
            tombstones=tombstones,
            params=self.params,
            structure=structure,
        )

    @classmethod
    def from_state(cls, state: IndexState) -> "FaissVectorStore":
        params = state.params or {}
        store = cls(
            dimension=state.dimension,
            m=params.get("m", 32),
            ef_construction=params.get("ef_construction", 200),
            ef_search=params.get("ef_search", 128),
        )
        store._rows.restore(state.row_ids, state.vectors, state.tombstones)

        index = None
        if state.structure:
            index = store.faiss.deserialize_index(np.frombuffer(state.structure, dtype=np.uint8))
            if index.ntotal != len(state.row_ids) or index.d != state.dimension:
                index = None
        if index is None:
            # Structure missing or out of step with the rows: rebuild from vectors
            index = store._new_index()
            if state.row_ids:
                index.add(store._rows.matrix[:store._rows.size])
        store.index = index
        return store

    def compacted(self) -> "FaissVectorStore":
        """Build a replacement graph containing only live rows."""
        store = FaissVectorStore(self.dimension, self.m, self.ef_construction, self.ef_search)
        identities, vectors = self._rows.live_rows()
        store._rows.restore(identities, vectors, [False] * len(identities))
        if identities:
            store.index.add(vectors)
        return store

    def clear(self) -> None:
        """Clear all records from the FAISS store."""
        self.index = self._new_index()
        self._rows = RowTable(self.dimension)

    def __len__(self) -> int:
        return len(self._rows.live)
