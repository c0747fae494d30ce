"""
HTTP API over the knowledge store: ingestion, retrieval and admin endpoints.
"""

from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .schemas import (
    DocumentRequest,
    DocumentResponse,
    BatchRequest,
    BatchResponse,
    IngestOutcomeModel,
    StoredDocumentResponse,
    QueryRequest,
    QueryHit,
    QueryResponse,
    DeleteResponse,
    StatsResponse,
    HealthResponse,
    SnapshotResponse,
    CompactResponse,
)
from ..core.config import VERSION, debug_enabled, get_embedding_provider
from ..core.errors import (
    ConsistencyError,
    KnowledgeStoreError,
    ProviderError,
    ProviderUnavailable,
    RateLimited,
    StorageError,
    ValidationError,
)
from ..core.knowledge_store import CONFIG_TIMEOUT, KnowledgeStore
from ..core.schema import Document, summarize_outcomes
from ..util.logging import logger

_store: Optional[KnowledgeStore] = None


def get_store() -> KnowledgeStore:
    """Process-wide store, opened from STORE_DIR on first use."""
    global _store
    if _store is None:
        _store = KnowledgeStore.open(embedding_provider=get_embedding_provider())
    return _store


# Initialize the FastAPI application
app = FastAPI(
    title="Insight Store API",
    version=VERSION,
    description="Vector-indexed knowledge store with filtered semantic retrieval",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def status_for(exc: KnowledgeStoreError) -> int:
    """HTTP status code for a knowledge store error."""
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (RateLimited, ProviderUnavailable)):
        return 503
    if isinstance(exc, ProviderError):
        return 502
    if isinstance(exc, StorageError):
        return 503
    if isinstance(exc, ConsistencyError):
        return 500
    return 500


@app.exception_handler(KnowledgeStoreError)
async def knowledge_store_exception_handler(request: Request, exc: KnowledgeStoreError):
    status_code = status_for(exc)
    logger.log_operation("api.request", "failed", {
        "path": request.url.path,
        "error_type": type(exc).__name__,
        "status_code": status_code
    })
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
        headers=headers,
    )


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(store: KnowledgeStore = Depends(get_store)):
    """Check store health: metadata and index must agree."""
    try:
        store.check_consistency()
    except ConsistencyError as e:
        return HealthResponse(status="unhealthy", version=VERSION, documents=len(store),
                              consistent=False, error=str(e))

    return HealthResponse(status="healthy", version=VERSION, documents=len(store), consistent=True)


@app.get("/stats", response_model=StatsResponse)
def stats_endpoint(store: KnowledgeStore = Depends(get_store)):
    return StatsResponse(**store.stats().to_dict())


@app.post("/documents", response_model=DocumentResponse)
def ingest_document_endpoint(request: DocumentRequest, store: KnowledgeStore = Depends(get_store)):
    """Ingest one document, embedding it unless a vector is supplied."""
    document = Document.from_dict(request.to_payload())
    identity, status = store.ingest_with_status(document, request.vector)
    return DocumentResponse(identity=identity, status=status)


@app.post("/documents/batch", response_model=BatchResponse)
def ingest_batch_endpoint(request: BatchRequest, store: KnowledgeStore = Depends(get_store)):
    """Ingest documents independently; failures are reported per document."""
    outcomes = store.ingest_batch(request.documents)
    return BatchResponse(
        outcomes=[IngestOutcomeModel(**outcome.to_dict()) for outcome in outcomes],
        summary=summarize_outcomes(outcomes),
    )


@app.get("/documents/{identity}", response_model=StoredDocumentResponse)
def get_document_endpoint(identity: str, store: KnowledgeStore = Depends(get_store)):
    document = store.get(identity)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return StoredDocumentResponse(
        identity=document.identity,
        title=document.title,
        content=document.content,
        source=document.source,
        source_url=document.source_url,
        category=document.category,
        timestamp=document.timestamp,
    )


@app.delete("/documents/{identity}", response_model=DeleteResponse)
def delete_document_endpoint(identity: str, store: KnowledgeStore = Depends(get_store)):
    deleted = store.delete(identity)
    return DeleteResponse(identity=identity, deleted=deleted)


@app.post("/query", response_model=QueryResponse)
def query_endpoint(request: QueryRequest, store: KnowledgeStore = Depends(get_store)):
    """Filtered top-k similarity query by vector or text."""
    timeout = request.timeout_ms / 1000.0 if request.timeout_ms else CONFIG_TIMEOUT
    if request.vector is not None:
        results = store.query(request.vector, filters=request.filters, k=request.k, timeout=timeout)
    else:
        results = store.query_text(request.text, filters=request.filters, k=request.k, timeout=timeout)

    return QueryResponse(results=[QueryHit(**result.to_dict()) for result in results])


@app.post("/admin/snapshot", response_model=SnapshotResponse)
def snapshot_endpoint(store: KnowledgeStore = Depends(get_store)):
    manifest = store.snapshot()
    return SnapshotResponse(
        snapshot_id=manifest.snapshot_id,
        sequence=manifest.sequence,
        document_count=manifest.document_count,
        created_at=manifest.created_at,
    )


@app.post("/admin/compact", response_model=CompactResponse)
def compact_endpoint(store: KnowledgeStore = Depends(get_store)):
    return CompactResponse(reclaimed=store.compact())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    content = {"detail": "Internal server error"}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(
        status_code=500,
        content=content,
    )
