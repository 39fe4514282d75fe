from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from supportrag.auth import ViewerContext, get_viewer_context, require_privileged_viewer
from supportrag.models import RagIngestionJob
from supportrag.schemas import (
    EnqueueJobRequest,
    JobResponse,
    ProcessJobsRequest,
    ProcessJobsResponse,
)
from supportrag.services.ingestion import enqueue_ingestion_job, process_ingestion_batch

router = APIRouter()


@router.post("/jobs", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(
    data: EnqueueJobRequest,
    ctx: ViewerContext = Depends(get_viewer_context),
) -> JobResponse:
    """
    Enqueue ingestion work for one source record.
    Returns the live job for the key if one already exists.
    """
    job = await enqueue_ingestion_job(
        ctx.session, data.source_type, data.source_id, data.operation, data.priority
    )
    return JobResponse.model_validate(job)


@router.post("/jobs/process", response_model=ProcessJobsResponse)
async def process_jobs(
    data: ProcessJobsRequest,
    ctx: ViewerContext = Depends(require_privileged_viewer),
) -> ProcessJobsResponse:
    """Run one ingestion batch inline (for cron triggers and backfills)."""
    batch = await process_ingestion_batch(ctx.session_factory, limit=data.limit)
    return ProcessJobsResponse(**batch.to_dict())


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    ctx: ViewerContext = Depends(get_viewer_context),
) -> JobResponse:
    job = await ctx.session.get(RagIngestionJob, job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return JobResponse.model_validate(job)
