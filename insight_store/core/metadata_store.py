"""
In-memory metadata side-table with inverted indexes for filtering.
Holds MetadataRecords and document content, kept apart from vector data.
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import ValidationError
from .schema import METADATA_FIELDS, MetadataRecord

# Fields with an inverted index; other fields are filtered by scan
INDEXED_FIELDS = ("source", "category")


def normalize_filter(predicate: Optional[Dict[str, Any]]) -> Dict[str, Set[str]]:
    """Turn a ``{field: value | [values]}`` predicate into ``{field: {values}}``.

    Raises ValidationError for unknown fields or unusable values.
    """
    if predicate is None:
        return {}
    if not isinstance(predicate, dict):
        raise ValidationError("filter must be a mapping of field to value(s)")

    normalized = {}
    for field_name, value in predicate.items():
        if field_name not in METADATA_FIELDS:
            raise ValidationError(f"Unknown filter field '{field_name}'; expected one of {list(METADATA_FIELDS)}")
        if isinstance(value, (list, tuple, set, frozenset)):
            values = set()
            for item in value:
                if not isinstance(item, str):
                    raise ValidationError(f"Filter values for '{field_name}' must be strings")
                values.add(item)
        elif isinstance(value, str):
            values = {value}
        else:
            raise ValidationError(f"Filter value for '{field_name}' must be a string or list of strings")
        normalized[field_name] = values
    return normalized


class MetadataStore:
    """Identity -> MetadataRecord mapping with O(1) lookups and indexed filters."""

    def __init__(self):
        self._records: Dict[str, MetadataRecord] = {}
        self._content: Dict[str, str] = {}
        self._by_field: Dict[str, Dict[str, Set[str]]] = {name: defaultdict(set) for name in INDEXED_FIELDS}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, identity: str) -> bool:
        return identity in self._records

    def put(self, identity: str, record: MetadataRecord, content: str = "") -> Optional[MetadataRecord]:
        """Insert or replace a record. Returns the previous record, if any."""
        if record.identity != identity:
            raise ValidationError(f"Record identity {record.identity} does not match {identity}")

        previous = self._records.get(identity)
        if previous is not None:
            self._unindex(previous)

        self._records[identity] = record
        self._content[identity] = content
        self._index(record)
        return previous

    def get(self, identity: str) -> Optional[MetadataRecord]:
        return self._records.get(identity)

    def get_content(self, identity: str) -> Optional[str]:
        return self._content.get(identity)

    def remove(self, identity: str) -> Optional[MetadataRecord]:
        """Remove a record. Returns it, or None if it was absent."""
        record = self._records.pop(identity, None)
        if record is not None:
            self._content.pop(identity, None)
            self._unindex(record)
        return record

    def filter(self, predicate: Optional[Dict[str, Any]]) -> Set[str]:
        """Identities whose record matches every field of the predicate."""
        criteria = normalize_filter(predicate)
        if not criteria:
            return set(self._records)

        candidates = None
        # Narrow with inverted indexes first
        for field_name in INDEXED_FIELDS:
            if field_name not in criteria:
                continue
            matched = set()
            for value in criteria[field_name]:
                matched |= self._by_field[field_name].get(value, set())
            candidates = matched if candidates is None else candidates & matched
            if not candidates:
                return set()

        if candidates is None:
            candidates = set(self._records)

        remaining = [(name, values) for name, values in criteria.items() if name not in INDEXED_FIELDS]
        if not remaining:
            return set(candidates)

        return {
            identity for identity in candidates
            if all(getattr(self._records[identity], name) in values for name, values in remaining)
        }

    def matches(self, identity: str, predicate: Optional[Dict[str, Any]]) -> bool:
        record = self._records.get(identity)
        if record is None:
            return False
        criteria = normalize_filter(predicate)
        return all(getattr(record, name) in values for name, values in criteria.items())

    def identities(self) -> Set[str]:
        return set(self._records)

    def items(self) -> List[Tuple[MetadataRecord, str]]:
        """(record, content) pairs, in insertion order."""
        return [(record, self._content.get(identity, "")) for identity, record in self._records.items()]

    def counts_by(self, field_name: str) -> Dict[str, int]:
        if field_name in INDEXED_FIELDS:
            return {value: len(ids) for value, ids in self._by_field[field_name].items() if ids}
        if field_name not in METADATA_FIELDS:
            raise ValidationError(f"Unknown metadata field '{field_name}'")
        counts: Dict[str, int] = {}
        for record in self._records.values():
            value = getattr(record, field_name)
            counts[value] = counts.get(value, 0) + 1
        return counts

    def load(self, entries: Iterable[Tuple[MetadataRecord, str]]) -> None:
        """Replace the whole table."""
        self.clear()
        for record, content in entries:
            self.put(record.identity, record, content)

    def copy(self) -> "MetadataStore":
        clone = MetadataStore()
        clone.load(self.items())
        return clone

    def clear(self) -> None:
        self._records.clear()
        self._content.clear()
        for name in INDEXED_FIELDS:
            self._by_field[name].clear()

    def _index(self, record: MetadataRecord) -> None:
        for name in INDEXED_FIELDS:
            self._by_field[name][getattr(record, name)].add(record.identity)

    def _unindex(self, record: MetadataRecord) -> None:
        for name in INDEXED_FIELDS:
            value = getattr(record, name)
            ids = self._by_field[name].get(value)
            if ids is not None:
                ids.discard(record.identity)
                if not ids:
                    del self._by_field[name][value]
