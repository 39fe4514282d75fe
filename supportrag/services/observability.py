"""RAG observability service.

Records one rag_query_log row per retrieval call, denials included, for audit
and relevance debugging.
"""

import logging
import time
from datetime import timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from supportrag.config import settings
from supportrag.models import RagQueryLog, utcnow
from supportrag.services.access import RagAccessError, ViewerScope

logger = logging.getLogger(__name__)


class RetrievalTracker:
    """
    Context manager for tracking retrieval calls.

    Usage:
        async with RetrievalTracker(session_factory, query, scope, filters) as tracker:
            result = await run_retrieval(...)
            tracker.record_result(result.intent, result.confidence, path, ...)

    A RagAccessError leaving the block is recorded as a denial and re-raised.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        query_text: str,
        scope: ViewerScope | None = None,
        filters: dict[str, Any] | None = None,
    ):
        self.session_factory = session_factory
        self.query_text = query_text
        self.scope = scope
        self.filters = filters

        self.log_id = uuid4()
        self.intent: str | None = None
        self.customer_id: int | None = None
        self.ticket_id: int | None = None
        self.confidence: str | None = None
        self.retrieval_path: str | None = None
        self.structured_count = 0
        self.evidence_count = 0
        self.deny_reason: str | None = None
        self.latency_ms: int | None = None
        self._start_time: float | None = None

    def set_context(
        self, intent: str | None, customer_id: int | None = None, ticket_id: int | None = None
    ) -> None:
        self.intent = intent
        self.customer_id = customer_id
        self.ticket_id = ticket_id

    def record_result(
        self,
        confidence: str,
        retrieval_path: str,
        structured_count: int,
        evidence_count: int,
    ) -> None:
        """Record the outcome of a completed retrieval."""
        self.confidence = confidence
        self.retrieval_path = retrieval_path
        self.structured_count = structured_count
        self.evidence_count = evidence_count

    def elapsed_ms(self) -> int:
        if self._start_time is None:
            return 0
        return int((time.perf_counter() - self._start_time) * 1000)

    async def __aenter__(self) -> "RetrievalTracker":
        self._start_time = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.latency_ms = self.elapsed_ms()

        if isinstance(exc_val, RagAccessError):
            self.deny_reason = exc_val.deny_reason
            self.intent = self.intent or exc_val.intent
        elif exc_val is not None:
            # Failed calls are not logged; the exception carries the story
            return

        if not settings.query_log_enabled:
            return

        entry = RagQueryLog(
            id=self.log_id,
            user_id=self.scope.user_id if self.scope else None,
            query_text=self.query_text,
            intent=self.intent,
            customer_id=self.customer_id,
            ticket_id=self.ticket_id,
            confidence=self.confidence,
            retrieval_path=self.retrieval_path,
            structured_count=self.structured_count,
            evidence_count=self.evidence_count,
            deny_reason=self.deny_reason,
            latency_ms=self.latency_ms,
            filters=self.filters,
        )

        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as e:
            # The query already has its answer; a lost log row must not fail it
            logger.warning(f"Failed to record query log {self.log_id}: {e}")
            return

        logger.info(
            f"Recorded query {self.log_id}: intent={self.intent}, "
            f"path={self.retrieval_path}, structured={self.structured_count}, "
            f"evidence={self.evidence_count}, deny={self.deny_reason}, "
            f"latency={self.latency_ms}ms"
        )


async def get_query_stats(session: AsyncSession, days: int = 7) -> dict[str, Any]:
    """Aggregate query log statistics over a trailing window."""
    since = utcnow() - timedelta(days=days)

    result = await session.execute(
        select(func.count(RagQueryLog.id), func.avg(RagQueryLog.latency_ms)).where(
            RagQueryLog.created_at >= since
        )
    )
    total, avg_latency = result.one()

    result = await session.execute(
        select(RagQueryLog.retrieval_path, func.count(RagQueryLog.id))
        .where(RagQueryLog.created_at >= since, RagQueryLog.retrieval_path.is_not(None))
        .group_by(RagQueryLog.retrieval_path)
    )
    by_path = {row[0]: row[1] for row in result.fetchall()}

    result = await session.execute(
        select(RagQueryLog.deny_reason, func.count(RagQueryLog.id))
        .where(RagQueryLog.created_at >= since, RagQueryLog.deny_reason.is_not(None))
        .group_by(RagQueryLog.deny_reason)
    )
    denials = {row[0]: row[1] for row in result.fetchall()}

    return {
        "period_days": days,
        "total_queries": total or 0,
        "avg_latency_ms": float(avg_latency) if avg_latency is not None else None,
        "queries_by_path": by_path,
        "denials_by_reason": denials,
    }
