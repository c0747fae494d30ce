"""
Filtered top-k retrieval over the knowledge store.
"""

import time
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .metadata_store import normalize_filter
from .schema import EnrichedResult
from ..vector.index import normalize_vector
from ..util.logging import logger


class QueryEngine:
    """Runs similarity search and applies metadata filters to the candidates.

    The index knows nothing about metadata, so filtering happens after the
    search. To keep selective filters from starving the result, the engine
    over-fetches ``k * candidate_factor`` candidates and, if fewer than k
    survive, multiplies the candidate count and searches again.
    """

    def __init__(self, store, candidate_factor: int = 3, max_rounds: int = 4):
        if candidate_factor < 3:
            raise ValidationError("candidate_factor must be >= 3")
        if max_rounds < 1:
            raise ValidationError("max_rounds must be >= 1")
        self.store = store
        self.candidate_factor = candidate_factor
        self.max_rounds = max_rounds

    def query(self, query_vector, filters: Optional[Dict[str, Any]] = None, k: int = 5,
              timeout: Optional[float] = None) -> List[EnrichedResult]:
        """Return up to k results matching ``filters``, nearest first.

        Args:
            query_vector: Vector of the store dimension
            filters: ``{field: value | [values]}`` predicate, conjunctive
            k: Maximum number of results
            timeout: Seconds after which no further over-fetch round starts

        Raises:
            ValidationError: negative k, wrong dimension or bad filter
        """
        if isinstance(k, bool) or not isinstance(k, int) or k < 0:
            raise ValidationError(f"k must be a non-negative integer, got {k!r}")
        if timeout is not None and timeout < 0:
            raise ValidationError("timeout must be non-negative")
        criteria = normalize_filter(filters)
        query = normalize_vector(query_vector, self.store.dimension, allow_zero=True)

        if k == 0 or query is None:
            return []

        start = time.monotonic()
        deadline = start + timeout if timeout is not None else None
        rounds = 0
        timed_out = False

        with self.store.read_view() as view:
            allowed = view.metadata.filter(criteria) if criteria else None
            if allowed is not None and not allowed:
                logger.log_query(k, 0, 0, (time.monotonic() - start) * 1000, {"filters": list(criteria)})
                return []

            live = len(view.index)
            wanted = min(k, live if allowed is None else len(allowed))
            fetch = k * self.candidate_factor
            survivors = []

            while True:
                rounds += 1
                hits = view.index.search(query, fetch)
                survivors = [hit for hit in hits if allowed is None or hit.identity in allowed]

                exhausted = len(hits) < fetch or fetch >= live
                if len(survivors) >= wanted or exhausted or rounds >= self.max_rounds:
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                    break
                fetch *= self.candidate_factor

            results = []
            for hit in survivors[:k]:
                record = view.metadata.get(hit.identity)
                if record is None:
                    continue
                results.append(EnrichedResult(
                    identity=hit.identity,
                    content=view.metadata.get_content(hit.identity) or "",
                    metadata=record,
                    distance=hit.distance,
                ))

        details = {"candidates": fetch}
        if criteria:
            details["filters"] = list(criteria)
        if timed_out:
            details["timed_out"] = True
        logger.log_query(k, len(results), rounds, (time.monotonic() - start) * 1000, details)
        return results
