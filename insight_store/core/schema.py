"""
Record types shared by the knowledge store components.
Documents are immutable; identity is derived from content and source.
"""

import hashlib
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import ValidationError

DEFAULT_CATEGORY = "uncategorized"

METADATA_FIELDS = ("identity", "title", "source", "source_url", "category", "timestamp")


def content_identity(content: str, source: str) -> str:
    """Stable identity for a piece of content from a given source."""
    if not isinstance(content, str) or not isinstance(source, str):
        raise ValidationError("content and source must be strings")
    digest = hashlib.sha256()
    digest.update(source.strip().encode("utf-8"))
    digest.update(b"\x1f")
    digest.update(content.strip().encode("utf-8"))
    return digest.hexdigest()[:32]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class MetadataRecord:
    """Lightweight projection of a Document used for filtering."""
    identity: str
    title: str
    source: str
    source_url: str
    category: str
    timestamp: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetadataRecord":
        return cls(**{name: str(data.get(name) or "") for name in METADATA_FIELDS})


@dataclass(frozen=True)
class Document:
    """Input record handed over by the content pipeline."""
    identity: str
    title: str
    content: str
    source: str
    source_url: str = ""
    category: str = DEFAULT_CATEGORY
    timestamp: str = ""

    @classmethod
    def create(
        cls,
        content: str,
        source: str,
        title: Optional[str] = None,
        source_url: str = "",
        category: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> "Document":
        """Validate fields and derive the identity."""
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("document content cannot be empty")
        if not isinstance(source, str) or not source.strip():
            raise ValidationError("document source cannot be empty")
        for name, value in (("title", title), ("source_url", source_url),
                            ("category", category), ("timestamp", timestamp)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"document {name} must be a string")

        source = source.strip()
        return cls(
            identity=content_identity(content, source),
            title=(title or "").strip() or f"{source} - Document",
            content=content,
            source=source,
            source_url=(source_url or "").strip(),
            category=(category or "").strip() or DEFAULT_CATEGORY,
            timestamp=(timestamp or "").strip() or _utc_now(),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        """Build a Document from a pipeline payload.

        Accepts snake_case keys or the camelCase ``sourceUrl`` shape. Any
        ``id`` in the payload is ignored; identity is always re-derived.
        """
        if not isinstance(data, dict):
            raise ValidationError("document payload must be a mapping")
        return cls.create(
            content=data.get("content"),
            source=data.get("source"),
            title=data.get("title"),
            source_url=data.get("source_url", data.get("sourceUrl", "")) or "",
            category=data.get("category"),
            timestamp=data.get("timestamp"),
        )

    def metadata(self) -> MetadataRecord:
        return MetadataRecord(
            identity=self.identity,
            title=self.title,
            source=self.source,
            source_url=self.source_url,
            category=self.category,
            timestamp=self.timestamp,
        )


@dataclass
class EnrichedResult:
    """A query hit joined with its metadata and content."""
    identity: str
    content: str
    metadata: MetadataRecord
    distance: float

    @property
    def score(self) -> float:
        """Cosine similarity of the match."""
        return 1.0 - self.distance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "distance": self.distance,
            "score": self.score,
        }


@dataclass
class StoreStats:
    total_documents: int
    category_counts: Dict[str, int] = field(default_factory=dict)
    source_counts: Dict[str, int] = field(default_factory=dict)
    tombstones: int = 0
    dimension: int = 0
    sequence: int = 0
    last_snapshot_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


INGEST_STATUSES = ("ingested", "replaced", "unchanged", "failed")


@dataclass
class IngestOutcome:
    identity: Optional[str]
    status: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize_outcomes(outcomes: List[IngestOutcome]) -> Dict[str, int]:
    """Count batch outcomes by status."""
    summary = {status: 0 for status in INGEST_STATUSES}
    for outcome in outcomes:
        summary[outcome.status] = summary.get(outcome.status, 0) + 1
    return summary
