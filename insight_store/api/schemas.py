"""
Request and response models for the knowledge store HTTP API.
"""

from pydantic import BaseModel, field_validator, model_validator
from typing import Optional, List, Dict, Any


class DocumentRequest(BaseModel):
    content: str
    source: str
    title: Optional[str] = None
    source_url: Optional[str] = None
    category: Optional[str] = None
    timestamp: Optional[str] = None
    vector: Optional[List[float]] = None  # pre-computed embedding

    @field_validator('content')
    @classmethod
    def content_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('content cannot be empty')
        return v

    @field_validator('source')
    @classmethod
    def source_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('source cannot be empty')
        return v

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"vector"}, exclude_none=True)


class DocumentResponse(BaseModel):
    identity: str
    status: str


class BatchRequest(BaseModel):
    documents: List[Dict[str, Any]]

    @field_validator('documents')
    @classmethod
    def documents_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('documents cannot be empty')
        return v


class IngestOutcomeModel(BaseModel):
    identity: Optional[str] = None
    status: str
    error: Optional[str] = None


class BatchResponse(BaseModel):
    outcomes: List[IngestOutcomeModel]
    summary: Dict[str, int]


class MetadataModel(BaseModel):
    identity: str
    title: str
    source: str
    source_url: str
    category: str
    timestamp: str


class StoredDocumentResponse(BaseModel):
    identity: str
    title: str
    content: str
    source: str
    source_url: str
    category: str
    timestamp: str


class QueryRequest(BaseModel):
    """Similarity query by vector or by text (embedded server-side)."""
    vector: Optional[List[float]] = None
    text: Optional[str] = None
    filters: Optional[Dict[str, Any]] = None
    k: int = 5
    timeout_ms: Optional[int] = None

    @field_validator('k')
    @classmethod
    def k_must_be_non_negative(cls, v):
        if v < 0:
            raise ValueError('k must be >= 0')
        return v

    @field_validator('timeout_ms')
    @classmethod
    def timeout_must_be_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError('timeout_ms must be > 0')
        return v

    @model_validator(mode='after')
    def exactly_one_query(self):
        if (self.vector is None) == (self.text is None):
            raise ValueError('provide exactly one of vector or text')
        return self


class QueryHit(BaseModel):
    identity: str
    content: str
    metadata: MetadataModel
    distance: float
    score: float


class QueryResponse(BaseModel):
    results: List[QueryHit]


class DeleteResponse(BaseModel):
    identity: str
    deleted: bool


class StatsResponse(BaseModel):
    total_documents: int
    category_counts: Dict[str, int]
    source_counts: Dict[str, int]
    tombstones: int
    dimension: int
    sequence: int
    last_snapshot_id: Optional[int] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    documents: int
    consistent: bool
    error: Optional[str] = None


class SnapshotResponse(BaseModel):
    snapshot_id: int
    sequence: int
    document_count: int
    created_at: str


class CompactResponse(BaseModel):
    reclaimed: int
