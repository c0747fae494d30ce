"""
Value types exchanged with similarity index implementations.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np


@dataclass(frozen=True)
class SearchHit:
    """Represents a search result from a similarity index."""

    identity: str
    """Identity of the matching document"""

    distance: float
    """Cosine distance to the query (0 = same direction, 2 = opposite)"""


@dataclass
class IndexState:
    """Exported structural state of an index, used for snapshots and compaction.

    ``row_ids[i]`` is the identity stored in row ``i`` of ``vectors``;
    ``tombstones[i]`` marks rows that were logically deleted.
    """

    kind: str
    dimension: int
    row_ids: List[str]
    vectors: np.ndarray
    tombstones: List[bool]
    params: Dict[str, int] = field(default_factory=dict)
    structure: Optional[bytes] = None

    def live_entries(self):
        """Yield (identity, vector) for every live row."""
        for row, identity in enumerate(self.row_ids):
            if not self.tombstones[row]:
                yield identity, self.vectors[row]
