"""
Ingestion pipeline.

Jobs on rag_ingestion_jobs are claimed atomically, the originating record is
fetched and extracted into a RagSourceInput, and the source row plus its
embedded chunks are upserted. Unchanged content is a no-op unless a reindex
is forced.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID, uuid4

from sqlalchemy import delete, insert, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from supportrag.config import settings
from supportrag.db import async_session_factory
from supportrag.models import (
    LIVE_JOB_STATUSES,
    IngestionOperation,
    JobStatus,
    RagChunk,
    RagIngestionJob,
    RagSource,
    SourceType,
    utcnow,
)
from supportrag.services.chunking import build_chunk_specs, hash_text
from supportrag.services.embedding import EmbeddingService, get_embedding_service
from supportrag.services.extractors import RagSourceInput, extract_source
from supportrag.services.fetchers import fetch_source_payload

logger = logging.getLogger(__name__)

CHUNK_INSERT_BATCH_SIZE = 200

ERROR_SOURCE_NOT_FOUND = "source_not_found"
ERROR_RETRYABLE = "retryable_error"
ERROR_FATAL = "fatal_error"


@dataclass
class UpsertResult:
    source_id: UUID
    chunk_count: int
    changed: bool


@dataclass
class JobOutcome:
    job_id: UUID
    status: JobStatus
    chunk_count: int | None = None
    error_code: str | None = None


@dataclass
class BatchResult:
    """Counts for one pass over the queue."""

    selected: int = 0
    claimed: int = 0
    outcomes: list[JobOutcome] = field(default_factory=list)

    def count(self, status: JobStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def to_dict(self) -> dict[str, int]:
        return {
            "selected": self.selected,
            "claimed": self.claimed,
            "completed": self.count(JobStatus.COMPLETED),
            "skipped": self.count(JobStatus.SKIPPED),
            "failed": self.count(JobStatus.FAILED),
            "requeued": self.count(JobStatus.PENDING),
        }


def compute_backoff(attempts: int) -> timedelta:
    """Delay before the next attempt: base * 2^attempts, exponent capped."""
    exponent = min(attempts, settings.retry_max_exponent)
    return timedelta(seconds=settings.retry_base_seconds * (2**exponent))


# ============================================================================
# Queue
# ============================================================================


async def find_live_job(
    session: AsyncSession, source_type: SourceType, source_id: str
) -> RagIngestionJob | None:
    result = await session.execute(
        select(RagIngestionJob).where(
            RagIngestionJob.source_type == source_type,
            RagIngestionJob.source_id == source_id,
            RagIngestionJob.status.in_(LIVE_JOB_STATUSES),
        )
    )
    return result.scalars().first()


def _upgrade_live_job(
    job: RagIngestionJob, operation: IngestionOperation, priority: int
) -> bool:
    upgraded = False
    if operation.rank > IngestionOperation(job.operation).rank:
        job.operation = operation
        upgraded = True
    if priority > (job.priority or 0):
        job.priority = priority
        upgraded = True
    return upgraded


async def enqueue_ingestion_job(
    session: AsyncSession,
    source_type: SourceType,
    source_id: str,
    operation: IngestionOperation = IngestionOperation.UPSERT,
    priority: int = 0,
) -> RagIngestionJob:
    """
    Enqueue work for a source, never creating a second live job for the same key.

    An existing pending or processing job is returned, with its operation and
    priority raised in place when the request dominates it. A job upgraded
    while processing is re-queued by the worker once its current run ends.
    """
    source_id = str(source_id)
    existing = await find_live_job(session, source_type, source_id)
    if existing:
        if _upgrade_live_job(existing, operation, priority):
            await session.commit()
            logger.info(
                f"Upgraded {existing.status} job {existing.id} for {source_type.value}:{source_id} "
                f"to operation={existing.operation}, priority={existing.priority}"
            )
        return existing

    job = RagIngestionJob(
        id=uuid4(),
        source_type=source_type,
        source_id=source_id,
        operation=operation,
        status=JobStatus.PENDING,
        priority=priority,
        attempts=0,
        max_attempts=settings.max_job_attempts,
        created_at=utcnow(),
    )
    try:
        async with session.begin_nested():
            session.add(job)
    except IntegrityError:
        # Lost an enqueue race on uq_rag_jobs_inflight
        winner = await find_live_job(session, source_type, source_id)
        if winner is None:
            raise
        if _upgrade_live_job(winner, operation, priority):
            await session.commit()
        return winner

    await session.commit()
    logger.debug(f"Enqueued {operation.value} job {job.id} for {source_type.value}:{source_id}")
    return job


CLAIMABLE_SQL = """
    (status = 'pending'
     OR (status = 'failed' AND next_retry_at IS NOT NULL AND next_retry_at <= now()))
"""


async def select_claimable_job_ids(session: AsyncSession, limit: int) -> list[UUID]:
    result = await session.execute(
        text(f"""
            SELECT id
            FROM rag_ingestion_jobs
            WHERE {CLAIMABLE_SQL}
            ORDER BY priority DESC, created_at
            LIMIT :limit
        """),
        {"limit": limit},
    )
    return [row.id for row in result.fetchall()]


async def claim_job(session: AsyncSession, job_id: UUID) -> RagIngestionJob | None:
    """
    Move a job to processing if it is still claimable.

    Returns None when another worker won the race.
    """
    result = await session.execute(
        text(f"""
            UPDATE rag_ingestion_jobs
            SET status = 'processing',
                attempts = attempts + 1,
                started_at = now()
            WHERE id = :job_id
              AND {CLAIMABLE_SQL}
            RETURNING id
        """),
        {"job_id": job_id},
    )
    row = result.fetchone()
    if not row:
        await session.rollback()
        return None

    await session.commit()
    return await session.get(RagIngestionJob, row.id)


# ============================================================================
# Source upsert
# ============================================================================


async def resolve_parent_id(session: AsyncSession, source_input: RagSourceInput) -> UUID | None:
    """Link replies to the previous thread entry, emails to the message they answer."""
    if source_input.source_type == SourceType.TICKET_COMMENT and source_input.thread_id:
        result = await session.execute(
            select(RagSource.id)
            .where(
                RagSource.thread_id == source_input.thread_id,
                RagSource.source_created_at < source_input.source_created_at,
            )
            .order_by(RagSource.source_created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    if source_input.source_type == SourceType.EMAIL:
        in_reply_to = source_input.metadata.get("inReplyTo")
        if not isinstance(in_reply_to, str) or not in_reply_to:
            return None
        result = await session.execute(
            select(RagSource.id)
            .where(RagSource.meta["internetMessageId"].astext == in_reply_to)
            .limit(1)
        )
        return result.scalar_one_or_none()

    return None


async def fetch_existing_embeddings(
    session: AsyncSession, chunk_hashes: list[str]
) -> dict[str, list[float]]:
    if not chunk_hashes:
        return {}
    result = await session.execute(
        select(RagChunk.chunk_hash, RagChunk.embedding).where(
            RagChunk.chunk_hash.in_(chunk_hashes), RagChunk.embedding.is_not(None)
        )
    )
    embeddings: dict[str, list[float]] = {}
    for chunk_hash, embedding in result.all():
        embeddings.setdefault(chunk_hash, list(embedding))
    return embeddings


async def upsert_source_with_chunks(
    session: AsyncSession,
    source_input: RagSourceInput,
    operation: IngestionOperation,
    embedder: EmbeddingService,
) -> UpsertResult:
    """
    Upsert the source row and, when its content changed, rebuild its chunks.

    Runs inside the caller's transaction; nothing is committed here.
    """
    content_hash = hash_text(source_input.content_text)
    now = utcnow()
    table = RagSource.__table__

    existing = (
        await session.execute(
            select(RagSource.id, RagSource.content_hash, RagSource.reindexed_at).where(
                RagSource.source_type == source_input.source_type,
                RagSource.source_id == source_input.source_id,
            )
        )
    ).one_or_none()

    reindexed_at = now if operation == IngestionOperation.REINDEX else (
        existing.reindexed_at if existing else None
    )
    values = {
        "source_uri": source_input.source_uri,
        "customer_id": source_input.customer_id,
        "ticket_id": source_input.ticket_id,
        "thread_id": source_input.thread_id,
        "parent_id": source_input.parent_id,
        "sensitivity": source_input.sensitivity,
        "owner_user_id": source_input.owner_user_id,
        "title": source_input.title,
        "content_text": source_input.content_text,
        "content_hash": content_hash,
        "metadata": source_input.metadata,
        "source_created_at": source_input.source_created_at,
        "source_updated_at": source_input.source_updated_at,
        "indexed_at": now,
        "reindexed_at": reindexed_at,
    }
    stmt = pg_insert(table).values(
        id=existing.id if existing else uuid4(),
        source_type=source_input.source_type,
        source_id=source_input.source_id,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        constraint="uq_rag_sources_type_id",
        set_={name: stmt.excluded[name] for name in values},
    ).returning(table.c.id)
    source_pk = (await session.execute(stmt)).scalar_one()

    changed = (
        existing is None
        or existing.content_hash != content_hash
        or operation == IngestionOperation.REINDEX
    )
    if not changed:
        return UpsertResult(source_id=source_pk, chunk_count=0, changed=False)

    specs = build_chunk_specs(source_input.source_type, source_input.content_text)

    # A forced reindex re-embeds everything; otherwise identical chunk text reuses its vector
    reusable: dict[str, list[float]] = {}
    if operation != IngestionOperation.REINDEX:
        reusable = await fetch_existing_embeddings(
            session, list(dict.fromkeys(spec.chunk_hash for spec in specs))
        )

    await session.execute(delete(RagChunk).where(RagChunk.source_id == source_pk))
    if not specs:
        return UpsertResult(source_id=source_pk, chunk_count=0, changed=True)

    to_embed = [spec for spec in specs if spec.chunk_hash not in reusable]
    vectors = await embedder.embed([spec.text for spec in to_embed])
    embeddings = dict(reusable)
    for spec, vector in zip(to_embed, vectors):
        embeddings[spec.chunk_hash] = vector

    rows = [
        {
            "id": uuid4(),
            "source_id": source_pk,
            "chunk_index": spec.index,
            "chunk_count": spec.count,
            "chunk_text": spec.text,
            "chunk_hash": spec.chunk_hash,
            "token_count": spec.token_count,
            "embedding": embeddings.get(spec.chunk_hash),
            "embedded_at": now if embeddings.get(spec.chunk_hash) is not None else None,
        }
        for spec in specs
    ]
    for start in range(0, len(rows), CHUNK_INSERT_BATCH_SIZE):
        await session.execute(insert(RagChunk), rows[start : start + CHUNK_INSERT_BATCH_SIZE])

    logger.debug(
        f"Indexed {source_input.source_type.value}:{source_input.source_id} "
        f"into {len(rows)} chunks ({len(reusable)} embeddings reused)"
    )
    return UpsertResult(source_id=source_pk, chunk_count=len(rows), changed=True)


async def build_source_for_job(
    session: AsyncSession, source_type: SourceType, source_id: str
) -> RagSourceInput | None:
    payload = await fetch_source_payload(session, source_type, source_id)
    if payload is None:
        return None
    return extract_source(source_type, payload)


# ============================================================================
# Job processing
# ============================================================================


async def _finish_job(
    session: AsyncSession, job: RagIngestionJob, ran: IngestionOperation
) -> JobStatus:
    # The operation may have been upgraded by an enqueue while this run was in flight
    await session.refresh(job, attribute_names=["operation", "priority"])
    if IngestionOperation(job.operation) != ran:
        job.status = JobStatus.PENDING
        job.started_at = None
        logger.info(f"Job {job.id} upgraded to {job.operation} while processing, re-queued")
    else:
        job.status = JobStatus.COMPLETED
        job.completed_at = utcnow()
    job.next_retry_at = None
    job.error_code = None
    job.error_message = None
    return JobStatus(job.status)


async def _record_failure(
    session: AsyncSession, job: RagIngestionJob, error: Exception
) -> JobOutcome:
    await session.rollback()
    await session.refresh(job)

    attempts = job.attempts or 0
    max_attempts = job.max_attempts or settings.max_job_attempts
    retry = attempts < max_attempts

    job.status = JobStatus.FAILED
    job.error_message = str(error)
    if retry:
        job.error_code = ERROR_RETRYABLE
        job.next_retry_at = utcnow() + compute_backoff(attempts)
        job.completed_at = None
    else:
        job.error_code = ERROR_FATAL
        job.next_retry_at = None
        job.completed_at = utcnow()
    await session.commit()

    if retry:
        logger.warning(
            f"Job {job.id} ({job.source_type.value}:{job.source_id}) failed on attempt "
            f"{attempts}/{max_attempts}, retry at {job.next_retry_at.isoformat()}: {error}"
        )
    else:
        logger.error(
            f"Job {job.id} ({job.source_type.value}:{job.source_id}) failed permanently "
            f"after {attempts} attempts: {error}"
        )
    return JobOutcome(job_id=job.id, status=JobStatus.FAILED, error_code=job.error_code)


async def process_job(
    session: AsyncSession, job: RagIngestionJob, embedder: EmbeddingService
) -> JobOutcome:
    """Run one claimed job to completion, skip, or scheduled retry."""
    operation = IngestionOperation(job.operation)
    source_type = SourceType(job.source_type)
    logger.info(
        f"Processing job {job.id} ({operation.value} {source_type.value}:{job.source_id}, "
        f"attempt={job.attempts})"
    )

    try:
        if operation == IngestionOperation.DELETE:
            await session.execute(
                delete(RagSource).where(
                    RagSource.source_type == source_type,
                    RagSource.source_id == job.source_id,
                )
            )
            status = await _finish_job(session, job, operation)
            await session.commit()
            logger.info(f"Deleted source {source_type.value}:{job.source_id}")
            return JobOutcome(job_id=job.id, status=status, chunk_count=0)

        source_input = await build_source_for_job(session, source_type, job.source_id)
        if source_input is None:
            job.status = JobStatus.SKIPPED
            job.error_code = ERROR_SOURCE_NOT_FOUND
            job.error_message = "Source not found"
            job.completed_at = utcnow()
            await session.commit()
            logger.warning(f"Job {job.id} skipped: {source_type.value}:{job.source_id} not found")
            return JobOutcome(
                job_id=job.id, status=JobStatus.SKIPPED, error_code=ERROR_SOURCE_NOT_FOUND
            )

        parent_id = await resolve_parent_id(session, source_input)
        if parent_id:
            source_input.parent_id = parent_id

        result = await upsert_source_with_chunks(session, source_input, operation, embedder)

        job.result_source_id = result.source_id
        job.result_chunk_count = result.chunk_count
        status = await _finish_job(session, job, operation)
        await session.commit()
        return JobOutcome(job_id=job.id, status=status, chunk_count=result.chunk_count)
    except Exception as e:
        logger.debug(f"Job {job.id} raised", exc_info=True)
        return await _record_failure(session, job, e)


async def process_ingestion_batch(
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    limit: int | None = None,
    embedder: EmbeddingService | None = None,
) -> BatchResult:
    """
    Claim and process up to `limit` jobs, highest priority first.

    Every job runs in its own session so a failure never affects the others.
    """
    limit = limit or settings.worker_batch_size
    embedder = embedder or get_embedding_service()
    batch = BatchResult()

    async with session_factory() as session:
        job_ids = await select_claimable_job_ids(session, limit)
    batch.selected = len(job_ids)

    for job_id in job_ids:
        async with session_factory() as session:
            job = await claim_job(session, job_id)
            if job is None:
                logger.debug(f"Job {job_id} claimed by another worker")
                continue
            batch.claimed += 1
            batch.outcomes.append(await process_job(session, job, embedder))

    if batch.claimed:
        logger.info(f"Ingestion batch: {batch.to_dict()}")
    return batch


# ============================================================================
# Seed helpers for record-change hooks
# ============================================================================


async def seed_email_job(session: AsyncSession, message_id: str) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.EMAIL, message_id, priority=1)


async def seed_ticket_job(session: AsyncSession, ticket_id: int) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.TICKET, str(ticket_id))


async def seed_ticket_comment_job(session: AsyncSession, comment_id: int) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.TICKET_COMMENT, str(comment_id))


async def seed_interaction_job(session: AsyncSession, interaction_id: int) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.INTERACTION, str(interaction_id))


async def seed_order_job(
    session: AsyncSession, source_type: SourceType, source_id: str
) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, source_type, source_id)


async def seed_qbo_invoice_job(session: AsyncSession, qbo_invoice_id: str) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.QBO_INVOICE, qbo_invoice_id)


async def seed_qbo_estimate_job(session: AsyncSession, qbo_estimate_id: str) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.QBO_ESTIMATE, qbo_estimate_id)


async def seed_qbo_customer_job(session: AsyncSession, qbo_customer_id: str) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.QBO_CUSTOMER, qbo_customer_id)


async def seed_shopify_customer_job(
    session: AsyncSession, shopify_customer_id: str
) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.SHOPIFY_CUSTOMER, shopify_customer_id)


async def seed_shipstation_shipment_job(
    session: AsyncSession, shipment_id: str
) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.SHIPSTATION_SHIPMENT, shipment_id)


async def seed_amazon_shipment_job(session: AsyncSession, external_id: str) -> RagIngestionJob:
    return await enqueue_ingestion_job(session, SourceType.AMAZON_SHIPMENT, external_id)
