import enum
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from supportrag.models import IngestionOperation, JobStatus, Sensitivity, SourceType
from supportrag.services.intent import Intent

# ============================================================================
# Retrieval Results
# ============================================================================


class Confidence(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ScoreBreakdown(BaseModel):
    fts_rank: float | None = None
    vector_score: float | None = None
    fusion_score: float | None = None
    recency_boost: float | None = None
    final_score: float = 0.0


class RagResultItem(BaseModel):
    source_id: str
    source_type: SourceType
    source_uri: str
    title: str | None = None
    snippet: str
    metadata: dict[str, Any] = {}
    customer_id: int | None = None
    ticket_id: int | None = None
    sensitivity: Sensitivity | None = None
    source_created_at: datetime
    source_updated_at: datetime | None = None
    score: ScoreBreakdown
    rag_source_id: UUID | None = None  # rag_sources.id, used for snippet expansion
    chunk_index: int | None = None


class RagTruthResult(BaseModel):
    """An exact record match from structured lookup."""

    type: str
    label: str
    source_uri: str | None = None
    snippet: str | None = None
    data: dict[str, Any] = {}
    score: ScoreBreakdown = ScoreBreakdown()
    # Key of the rag_sources row describing the same record, when one would exist
    source_type: SourceType | None = None
    source_id: str | None = None


class RagQueryFilters(BaseModel):
    customer_id: int | None = None
    ticket_id: int | None = None
    source_types: list[SourceType] | None = None
    include_internal: bool = False
    allow_global: bool = False
    exclude_ticket_id: int | None = None
    outgoing_replies_only: bool = False
    top_k: int | None = Field(default=None, ge=1, le=50)
    debug: bool = False


class RagQueryResult(BaseModel):
    intent: Intent
    structured_results: list[RagTruthResult] = []
    evidence_results: list[RagResultItem] = []
    confidence: Confidence = Confidence.LOW
    debug: dict[str, Any] | None = None


# ============================================================================
# Query Schemas
# ============================================================================


class RagQueryRequest(RagQueryFilters):
    query: str


class SimilarTicketsResponse(BaseModel):
    ticket_id: int
    results: list[RagResultItem]


class AccessDeniedResponse(BaseModel):
    detail: str = "RAG access denied"
    deny_reason: str
    intent: Intent | None = None
    filters_applied: dict[str, Any] = {}


# ============================================================================
# Ingestion Schemas
# ============================================================================


class EnqueueJobRequest(BaseModel):
    source_type: SourceType
    source_id: str
    operation: IngestionOperation = IngestionOperation.UPSERT
    priority: int = Field(default=0, ge=0, le=100)


class JobResponse(BaseModel):
    id: UUID
    source_type: SourceType
    source_id: str
    operation: IngestionOperation
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    result_source_id: UUID | None = None
    result_chunk_count: int | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class ProcessJobsRequest(BaseModel):
    limit: int = Field(default=25, ge=1, le=500)


class ProcessJobsResponse(BaseModel):
    selected: int
    claimed: int
    completed: int
    skipped: int
    failed: int
    requeued: int


# ============================================================================
# Admin Schemas
# ============================================================================


class ReindexRequest(BaseModel):
    customer_id: int | None = None
    source_type: SourceType | None = None
    since_days: int | None = Field(default=None, ge=1, le=365)


class ReindexResponse(BaseModel):
    status: str = "queued"
    scope: str
    enqueued: dict[str, int]


class SyncRequest(BaseModel):
    source_types: list[SourceType] | None = None


class SyncResponse(BaseModel):
    enqueued: dict[str, int]
    errors: dict[str, str] = {}


class CleanupResponse(BaseModel):
    deleted: dict[str, int]


class SyncCursorInfo(BaseModel):
    source_type: SourceType
    cursor_value: dict[str, Any]
    items_synced: int
    last_success_at: datetime | None = None
    last_error: str | None = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class DiagnosticsResponse(BaseModel):
    sources_by_type: dict[str, int]
    chunk_count: int
    chunks_missing_embedding: int
    jobs_by_status: dict[str, int]
    failed_jobs: list[JobResponse]
    cursors: list[SyncCursorInfo]
    query_stats: dict[str, Any] = {}
