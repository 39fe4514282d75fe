import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select

from supportrag.auth import ViewerContext, require_privileged_viewer
from supportrag.models import (
    JobStatus,
    RagChunk,
    RagIngestionJob,
    RagSource,
    RagSyncCursor,
    SourceType,
)
from supportrag.schemas import (
    CleanupResponse,
    DiagnosticsResponse,
    JobResponse,
    ReindexRequest,
    ReindexResponse,
    SyncCursorInfo,
    SyncRequest,
    SyncResponse,
)
from supportrag.services.cleanup import cleanup_orphaned_sources
from supportrag.services.observability import get_query_stats
from supportrag.services.sync import reindex_customer, reindex_source_type, sync_all

logger = logging.getLogger(__name__)
router = APIRouter()

FAILED_JOBS_LIMIT = 20


@router.post("/reindex", response_model=ReindexResponse, status_code=status.HTTP_202_ACCEPTED)
async def reindex(
    data: ReindexRequest,
    ctx: ViewerContext = Depends(require_privileged_viewer),
) -> ReindexResponse:
    """
    Queue forced re-embedding for one customer's records or one source type.
    Exactly one of customer_id or source_type is required.
    """
    if (data.customer_id is None) == (data.source_type is None):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide exactly one of customer_id or source_type",
        )

    if data.customer_id is not None:
        enqueued = await reindex_customer(ctx.session, data.customer_id)
        scope = f"customer:{data.customer_id}"
    else:
        count = await reindex_source_type(ctx.session, data.source_type, data.since_days)
        enqueued = {data.source_type.value: count}
        scope = f"source_type:{data.source_type.value}"

    logger.info(f"Reindex requested by {ctx.identity.user_id}: {scope}, enqueued={enqueued}")
    return ReindexResponse(scope=scope, enqueued=enqueued)


@router.post("/sync", response_model=SyncResponse)
async def sync(
    data: SyncRequest,
    ctx: ViewerContext = Depends(require_privileged_viewer),
) -> SyncResponse:
    """Advance sync cursors now instead of waiting for the sync worker."""
    result = await sync_all(ctx.session, data.source_types)
    return SyncResponse(enqueued=result.enqueued, errors=result.errors)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(
    ctx: ViewerContext = Depends(require_privileged_viewer),
) -> CleanupResponse:
    deleted = await cleanup_orphaned_sources(ctx.session)
    return CleanupResponse(deleted=deleted)


@router.get("/diagnostics", response_model=DiagnosticsResponse)
async def diagnostics(
    days: int = 7,
    ctx: ViewerContext = Depends(require_privileged_viewer),
) -> DiagnosticsResponse:
    """Index coverage, queue health, cursor state and recent query statistics."""
    session = ctx.session

    result = await session.execute(
        select(RagSource.source_type, func.count(RagSource.id)).group_by(RagSource.source_type)
    )
    sources_by_type = {SourceType(row[0]).value: row[1] for row in result.fetchall()}

    result = await session.execute(
        select(
            func.count(RagChunk.id),
            func.count(RagChunk.id).filter(RagChunk.embedding.is_(None)),
        )
    )
    chunk_count, missing_embedding = result.one()

    result = await session.execute(
        select(RagIngestionJob.status, func.count(RagIngestionJob.id)).group_by(
            RagIngestionJob.status
        )
    )
    jobs_by_status = {JobStatus(row[0]).value: row[1] for row in result.fetchall()}

    result = await session.execute(
        select(RagIngestionJob)
        .where(RagIngestionJob.status == JobStatus.FAILED)
        .order_by(RagIngestionJob.completed_at.desc().nulls_last())
        .limit(FAILED_JOBS_LIMIT)
    )
    failed_jobs = [JobResponse.model_validate(job) for job in result.scalars().all()]

    result = await session.execute(select(RagSyncCursor).order_by(RagSyncCursor.source_type))
    cursors = [SyncCursorInfo.model_validate(c) for c in result.scalars().all()]

    return DiagnosticsResponse(
        sources_by_type=sources_by_type,
        chunk_count=chunk_count or 0,
        chunks_missing_embedding=missing_embedding or 0,
        jobs_by_status=jobs_by_status,
        failed_jobs=failed_jobs,
        cursors=cursors,
        query_stats=await get_query_stats(session, days),
    )
