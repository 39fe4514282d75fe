"""
Hybrid retrieval engine.

Answers a free-text query with access-filtered evidence from rag_sources:

1. Resolve the query context against the viewer's scope (deny early)
2. Structured lookup for precision intents, alongside the query embedding
3. Full-text and vector search concurrently, each on its own session
4. Reciprocal rank fusion, intent and recency boosts, best chunk per source
5. Snippet expansion from neighbouring chunks and thread entries
6. Metadata identifier search and merging with structured results
"""

import asyncio
import logging
import math
import statistics
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Hashable, Sequence
from uuid import UUID

from sqlalchemy import ColumnElement, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from supportrag.config import settings
from supportrag.models import (
    NARRATIVE_SOURCE_TYPES,
    RagChunk,
    RagSource,
    SourceType,
    Ticket,
    utcnow,
)
from supportrag.schemas import (
    Confidence,
    RagQueryFilters,
    RagQueryResult,
    RagResultItem,
    RagTruthResult,
    ScoreBreakdown,
)
from supportrag.services.access import (
    AccessContext,
    AccessPredicateBuilder,
    RagAccessError,
    ViewerScope,
    can_view_rag_row,
)
from supportrag.services.embedding import EmbeddingService, EmbeddingTask, get_embedding_service
from supportrag.services.intent import (
    STRUCTURED_INTENTS,
    Identifiers,
    Intent,
    classify_intent,
    extract_identifiers,
)
from supportrag.services.observability import RetrievalTracker
from supportrag.services.structured_lookup import structured_lookup

logger = logging.getLogger(__name__)

RECENCY_DECAY_DAYS = 60.0
RECENCY_WEIGHT = 0.2
REQUESTED_TICKET_BOOST = 1.1
SNIPPET_MAX_CHARS = 800
MEDIUM_CONFIDENCE_THRESHOLD = 0.05

METADATA_EXACT_WEIGHT = 10.0
METADATA_RECENCY_WEIGHT = 0.1

SIMILAR_TICKET_COMMENT_LIMIT = 6
SIMILAR_TICKET_TYPES = [SourceType.TICKET, SourceType.TICKET_COMMENT, SourceType.EMAIL]

# Retrieval paths recorded in debug output and the query log
PATH_STRUCTURED_PLUS_HYBRID = "structured_plus_hybrid"
PATH_STRUCTURED_ONLY = "structured_only"
PATH_HYBRID_ONLY = "hybrid_only"
PATH_NO_RESULTS = "no_results"

INTENT_BOOSTS: dict[Intent, dict[SourceType, float]] = {
    Intent.IDENTIFIER_LOOKUP: {
        SourceType.QBO_INVOICE: 1.4,
        SourceType.QBO_ESTIMATE: 1.3,
        SourceType.QBO_CUSTOMER: 1.2,
        SourceType.SHOPIFY_ORDER: 1.3,
        SourceType.AMAZON_ORDER: 1.3,
        SourceType.SHIPSTATION_SHIPMENT: 1.4,
    },
    Intent.LOGISTICS_SHIPPING: {
        SourceType.SHIPSTATION_SHIPMENT: 1.5,
        SourceType.TICKET: 1.1,
        SourceType.TICKET_COMMENT: 1.1,
        SourceType.EMAIL: 1.05,
    },
    Intent.PAYMENTS_TERMS: {
        SourceType.QBO_INVOICE: 1.5,
        SourceType.QBO_CUSTOMER: 1.4,
        SourceType.QBO_ESTIMATE: 1.2,
        SourceType.TICKET_COMMENT: 1.05,
    },
    Intent.ACCOUNT_HISTORY: {
        SourceType.EMAIL: 1.3,
        SourceType.TICKET: 1.2,
        SourceType.TICKET_COMMENT: 1.2,
        SourceType.INTERACTION: 1.1,
    },
    Intent.POLICY_SOP: {},
    Intent.TROUBLESHOOTING: {
        SourceType.TICKET: 1.15,
        SourceType.TICKET_COMMENT: 1.1,
        SourceType.EMAIL: 1.05,
    },
}

# Metadata keys searched per identifier kind
METADATA_IDENTIFIER_FIELDS: dict[str, tuple[str, ...]] = {
    "order_numbers": ("orderNumber", "externalId"),
    "invoice_numbers": ("invoiceNumber", "qboInvoiceId"),
    "po_numbers": ("poNumber", "estimateNumber", "qboEstimateId"),
    "tracking_numbers": ("trackingNumber",),
    "skus": ("sku",),
}


# ============================================================================
# Scoring
# ============================================================================


def reciprocal_rank_fusion(
    rankings: Sequence[Sequence[Hashable]], k: int | None = None
) -> dict[Hashable, float]:
    """Sum of 1 / (k + rank) over every ranking a key appears in (ranks start at 1)."""
    k = settings.rrf_k if k is None else k
    scores: dict[Hashable, float] = {}
    for ranking in rankings:
        for rank, key in enumerate(ranking, start=1):
            scores[key] = scores.get(key, 0.0) + 1.0 / (k + rank)
    return scores


def recency_score(timestamp: datetime | None, now: datetime | None = None) -> float:
    if timestamp is None:
        return 0.0
    now = now or utcnow()
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    age_days = max((now - timestamp).total_seconds() / 86400.0, 0.0)
    return math.exp(-age_days / RECENCY_DECAY_DAYS)


def intent_boost(intent: Intent, source_type: SourceType) -> float:
    return INTENT_BOOSTS.get(intent, {}).get(source_type, 1.0)


def final_score(
    fusion: float,
    intent: Intent,
    source_type: SourceType,
    recency: float,
    is_requested_ticket: bool = False,
) -> float:
    score = fusion * intent_boost(intent, source_type) * (1 + RECENCY_WEIGHT * recency)
    if is_requested_ticket:
        score *= REQUESTED_TICKET_BOOST
    return score


def truncate_snippet(text: str, max_chars: int = SNIPPET_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def compute_confidence(
    intent: Intent, structured: list[RagTruthResult], evidence: list[RagResultItem]
) -> Confidence:
    if structured and intent in STRUCTURED_INTENTS:
        return Confidence.HIGH
    top = max((item.score.final_score for item in evidence), default=0.0)
    if top > MEDIUM_CONFIDENCE_THRESHOLD:
        return Confidence.MEDIUM
    return Confidence.LOW


def retrieval_path(structured: list[RagTruthResult], evidence: list[RagResultItem]) -> str:
    if structured and evidence:
        return PATH_STRUCTURED_PLUS_HYBRID
    if structured:
        return PATH_STRUCTURED_ONLY
    if evidence:
        return PATH_HYBRID_ONLY
    return PATH_NO_RESULTS


def score_stats(scores: list[float]) -> dict[str, float] | None:
    if not scores:
        return None
    return {"min": min(scores), "max": max(scores), "median": statistics.median(scores)}


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


# ============================================================================
# Query context
# ============================================================================


def _deny(
    reason: str, scope: ViewerScope, intent: Intent | None, filters_applied: dict | None
) -> RagAccessError:
    logger.warning(
        f"RAG access denied for user {scope.user_id} (role={scope.role}): {reason}, "
        f"filters={filters_applied}"
    )
    return RagAccessError(reason, filters_applied, intent.value if intent else None)


async def resolve_query_context(
    session: AsyncSession,
    scope: ViewerScope,
    customer_id: int | None = None,
    ticket_id: int | None = None,
    include_internal: bool = False,
    allow_global: bool = False,
    intent: Intent | None = None,
    filters_applied: dict | None = None,
) -> AccessContext:
    """
    Validate the requested customer/ticket against the viewer's scope.

    Denials are checked in a fixed order so the reported reason is stable:
    ticket_not_found, ticket_missing_customer, ticket_customer_mismatch,
    ticket_out_of_scope, customer_out_of_scope, missing_context,
    global_not_allowed.
    """
    if ticket_id:
        ticket = await session.get(Ticket, ticket_id)
        if ticket is None:
            raise _deny("ticket_not_found", scope, intent, filters_applied)

        ticket_customer_id = ticket.customer_id
        if ticket_customer_id is None and not scope.is_privileged:
            raise _deny("ticket_missing_customer", scope, intent, filters_applied)
        if customer_id and ticket_customer_id and customer_id != ticket_customer_id:
            raise _deny("ticket_customer_mismatch", scope, intent, filters_applied)

        customer_id = customer_id or ticket_customer_id
        if not scope.can_access_customer(ticket_customer_id):
            raise _deny("ticket_out_of_scope", scope, intent, filters_applied)

    if customer_id and not scope.can_access_customer(customer_id):
        raise _deny("customer_out_of_scope", scope, intent, filters_applied)

    if not customer_id and not ticket_id:
        if not scope.is_privileged:
            raise _deny("missing_context", scope, intent, filters_applied)
        if not allow_global:
            raise _deny("global_not_allowed", scope, intent, filters_applied)

    return AccessContext(
        customer_id=customer_id,
        ticket_id=ticket_id,
        include_internal=scope.allow_internal and include_internal,
        allow_global=scope.is_privileged and allow_global,
        enforce_ticket_id=bool(ticket_id) and not customer_id,
    )


# ============================================================================
# Hybrid search
# ============================================================================


@dataclass
class SearchRequest:
    query_text: str
    intent: Intent
    context: AccessContext
    top_k: int
    source_types: list[SourceType] | None = None
    exclude_ticket_id: int | None = None
    outgoing_replies_only: bool = False

    def conditions(self, scope: ViewerScope) -> list[ColumnElement[bool]]:
        """Access predicate first, then the request's own filters."""
        conditions = [AccessPredicateBuilder(scope).build(self.context)]
        if self.source_types:
            conditions.append(RagSource.source_type.in_(self.source_types))
        if self.exclude_ticket_id:
            conditions.append(RagSource.ticket_id.is_distinct_from(self.exclude_ticket_id))
        if self.outgoing_replies_only:
            conditions.append(RagSource.meta["isOutgoingReply"].astext == "true")
        return conditions


@dataclass
class Candidate:
    """One chunk hit, carrying its source row and per-retriever scores."""

    chunk_id: UUID
    chunk_index: int
    chunk_text: str
    source: RagSource
    fts_rank: float | None = None
    vector_score: float | None = None
    fusion_score: float = 0.0
    recency: float = 0.0
    final_score: float = 0.0

    @property
    def matched_by(self) -> list[str]:
        matched = []
        if self.fts_rank is not None:
            matched.append("fts")
        if self.vector_score is not None:
            matched.append("vector")
        return matched


@dataclass
class SearchOutcome:
    results: list[RagResultItem] = field(default_factory=list)
    fts_count: int = 0
    vector_count: int = 0
    fused_count: int = 0
    timings: dict[str, int] = field(default_factory=dict)
    matched_by: dict[str, list[str]] = field(default_factory=dict)


async def fts_search(
    session_factory: async_sessionmaker[AsyncSession],
    query_text: str,
    conditions: list[ColumnElement[bool]],
) -> list[Candidate]:
    ts_query = func.websearch_to_tsquery("english", query_text)
    rank = func.ts_rank_cd(RagChunk.tsv, ts_query)
    query = (
        select(
            RagChunk.id,
            RagChunk.chunk_index,
            RagChunk.chunk_text,
            RagSource,
            rank.label("rank"),
        )
        .join(RagSource, RagChunk.source_id == RagSource.id)
        .where(RagChunk.tsv.bool_op("@@")(ts_query), *conditions)
        .order_by(rank.desc())
        .limit(settings.fts_limit)
    )

    async with session_factory() as session:
        result = await session.execute(query)
        rows = result.all()

    return [
        Candidate(
            chunk_id=row.id,
            chunk_index=row.chunk_index,
            chunk_text=row.chunk_text,
            source=row.RagSource,
            fts_rank=float(row.rank),
        )
        for row in rows
    ]


async def vector_search(
    session_factory: async_sessionmaker[AsyncSession],
    query_vector: list[float],
    conditions: list[ColumnElement[bool]],
) -> list[Candidate]:
    distance = RagChunk.embedding.cosine_distance(query_vector)
    query = (
        select(
            RagChunk.id,
            RagChunk.chunk_index,
            RagChunk.chunk_text,
            RagSource,
            (1 - distance).label("similarity"),
        )
        .join(RagSource, RagChunk.source_id == RagSource.id)
        .where(RagChunk.embedding.is_not(None), *conditions)
        .order_by(distance)
        .limit(settings.vector_limit)
    )

    async with session_factory() as session:
        result = await session.execute(query)
        rows = result.all()

    return [
        Candidate(
            chunk_id=row.id,
            chunk_index=row.chunk_index,
            chunk_text=row.chunk_text,
            source=row.RagSource,
            vector_score=float(row.similarity),
        )
        for row in rows
    ]


def fuse_candidates(
    fts_hits: list[Candidate],
    vector_hits: list[Candidate],
    intent: Intent,
    requested_ticket_id: int | None = None,
    now: datetime | None = None,
) -> list[Candidate]:
    """Fuse both rankings by chunk, score, and keep the best chunk per source."""
    fusion = reciprocal_rank_fusion(
        [[c.chunk_id for c in fts_hits], [c.chunk_id for c in vector_hits]]
    )

    by_chunk: dict[UUID, Candidate] = {}
    for hit in [*fts_hits, *vector_hits]:
        existing = by_chunk.get(hit.chunk_id)
        if existing is None:
            by_chunk[hit.chunk_id] = replace(hit)
            continue
        if hit.fts_rank is not None:
            existing.fts_rank = hit.fts_rank
        if hit.vector_score is not None:
            existing.vector_score = hit.vector_score

    now = now or utcnow()
    best_by_source: dict[UUID, Candidate] = {}
    for chunk_id, candidate in by_chunk.items():
        source = candidate.source
        candidate.fusion_score = fusion.get(chunk_id, 0.0)
        candidate.recency = recency_score(
            source.source_updated_at or source.source_created_at, now
        )
        candidate.final_score = final_score(
            candidate.fusion_score,
            intent,
            SourceType(source.source_type),
            candidate.recency,
            is_requested_ticket=(
                bool(requested_ticket_id) and source.ticket_id == requested_ticket_id
            ),
        )
        best = best_by_source.get(source.id)
        if best is None or candidate.final_score > best.final_score:
            best_by_source[source.id] = candidate

    return sorted(best_by_source.values(), key=lambda c: c.final_score, reverse=True)


async def expand_snippet(
    session_factory: async_sessionmaker[AsyncSession],
    candidate: Candidate,
    access_condition: ColumnElement[bool],
) -> str:
    """Matched chunk with its neighbours, then the previous and next entries in its thread."""
    source = candidate.source
    parts: list[str] = []

    async with session_factory() as session:
        result = await session.execute(
            select(RagChunk.chunk_text)
            .where(
                RagChunk.source_id == source.id,
                RagChunk.chunk_index.between(candidate.chunk_index - 1, candidate.chunk_index + 1),
            )
            .order_by(RagChunk.chunk_index)
        )
        parts.extend(result.scalars().all() or [candidate.chunk_text])

        if source.thread_id:
            thread = select(RagSource.content_text).where(
                RagSource.thread_id == source.thread_id,
                RagSource.id != source.id,
                access_condition,
            )
            previous = await session.execute(
                thread.where(RagSource.source_created_at < source.source_created_at)
                .order_by(RagSource.source_created_at.desc())
                .limit(1)
            )
            following = await session.execute(
                thread.where(RagSource.source_created_at > source.source_created_at)
                .order_by(RagSource.source_created_at.asc())
                .limit(1)
            )
            parts.extend(previous.scalars().all())
            parts.extend(following.scalars().all())

    unique = list(dict.fromkeys(p.strip() for p in parts if p and p.strip()))
    return truncate_snippet("\n\n".join(unique))


def to_result_item(
    source: RagSource, snippet: str, score: ScoreBreakdown, chunk_index: int | None = None
) -> RagResultItem:
    return RagResultItem(
        source_id=source.source_id,
        source_type=source.source_type,
        source_uri=source.source_uri,
        title=source.title,
        snippet=snippet,
        metadata=source.meta or {},
        customer_id=source.customer_id,
        ticket_id=source.ticket_id,
        sensitivity=source.sensitivity,
        source_created_at=source.source_created_at,
        source_updated_at=source.source_updated_at,
        score=score,
        rag_source_id=source.id,
        chunk_index=chunk_index,
    )


async def hybrid_search(
    session_factory: async_sessionmaker[AsyncSession],
    scope: ViewerScope,
    request: SearchRequest,
    embedder: EmbeddingService | None = None,
    query_vector: list[float] | None = None,
) -> SearchOutcome:
    outcome = SearchOutcome()
    conditions = request.conditions(scope)

    if query_vector is None:
        embedder = embedder or get_embedding_service()
        [query_vector] = await embedder.embed([request.query_text], EmbeddingTask.RETRIEVAL_QUERY)

    async def timed(name: str, coro):
        started = time.perf_counter()
        hits = await coro
        outcome.timings[name] = _elapsed_ms(started)
        return hits

    fts_hits, vector_hits = await asyncio.gather(
        timed("fts_ms", fts_search(session_factory, request.query_text, conditions)),
        timed("vector_ms", vector_search(session_factory, query_vector, conditions)),
    )
    outcome.fts_count = len(fts_hits)
    outcome.vector_count = len(vector_hits)

    started = time.perf_counter()
    fused = fuse_candidates(fts_hits, vector_hits, request.intent, request.context.ticket_id)
    outcome.fused_count = len(fused)

    # Second, in-process access check on every row the SQL predicate let through
    visible = [
        c
        for c in fused
        if can_view_rag_row(
            scope,
            c.source.customer_id,
            c.source.sensitivity,
            c.source.meta,
            include_internal=request.context.include_internal,
        )
    ][: request.top_k]
    outcome.timings["fusion_ms"] = _elapsed_ms(started)

    snippets = await asyncio.gather(
        *(expand_snippet(session_factory, c, conditions[0]) for c in visible)
    )

    for candidate, snippet in zip(visible, snippets):
        outcome.results.append(
            to_result_item(
                candidate.source,
                snippet,
                ScoreBreakdown(
                    fts_rank=candidate.fts_rank,
                    vector_score=candidate.vector_score,
                    fusion_score=candidate.fusion_score,
                    recency_boost=candidate.recency,
                    final_score=candidate.final_score,
                ),
                chunk_index=candidate.chunk_index,
            )
        )
        outcome.matched_by[candidate.source.source_id] = candidate.matched_by

    return outcome


# ============================================================================
# Metadata identifier search
# ============================================================================


def metadata_match_expressions(identifiers: Identifiers):
    """Match conditions plus trigram and exact-match score terms over source metadata."""
    conditions = []
    similarities = []
    exact_matches = []

    for kind, keys in METADATA_IDENTIFIER_FIELDS.items():
        for value in getattr(identifiers, kind):
            for key in keys:
                expr = RagSource.meta[key].astext
                conditions.append(expr.icontains(value, autoescape=True))
                similarities.append(func.similarity(func.coalesce(expr, ""), value))
                exact_matches.append(case((func.lower(expr) == value.lower(), 1), else_=0))
            if kind == "skus":
                has_sku = RagSource.meta["itemSkus"].has_key(value)
                conditions.append(has_sku)
                exact_matches.append(case((has_sku, 1), else_=0))

    return conditions, similarities, exact_matches


async def metadata_identifier_search(
    session_factory: async_sessionmaker[AsyncSession],
    scope: ViewerScope,
    identifiers: Identifiers,
    request: SearchRequest,
    now: datetime | None = None,
) -> list[RagResultItem]:
    """Sources whose metadata carries one of the identifiers, exact matches first."""
    conditions, similarities, exact_matches = metadata_match_expressions(identifiers)
    if not conditions:
        return []

    similarity = func.greatest(*similarities) if len(similarities) > 1 else similarities[0]
    match_score = similarity + sum(exact_matches) * METADATA_EXACT_WEIGHT
    query = (
        select(RagSource, match_score.label("match_score"))
        .where(or_(*conditions), *request.conditions(scope))
        .order_by(match_score.desc())
        .limit(request.top_k)
    )

    async with session_factory() as session:
        result = await session.execute(query)
        rows = result.all()

    now = now or utcnow()
    items = []
    for row in rows:
        source = row.RagSource
        if not can_view_rag_row(
            scope,
            source.customer_id,
            source.sensitivity,
            source.meta,
            include_internal=request.context.include_internal,
        ):
            continue
        recency = recency_score(source.source_updated_at or source.source_created_at, now)
        items.append(
            to_result_item(
                source,
                truncate_snippet(source.content_text),
                ScoreBreakdown(
                    recency_boost=recency,
                    final_score=float(row.match_score) * (1 + METADATA_RECENCY_WEIGHT * recency),
                ),
            )
        )
    return items


# ============================================================================
# Merging
# ============================================================================


def _rag_key(
    source_type: SourceType | str | None, source_id: str | None
) -> tuple[str, str] | None:
    if source_type is None or source_id is None:
        return None
    return (SourceType(source_type).value, source_id)


def merge_evidence_results(
    primary: list[RagResultItem], secondary: list[RagResultItem], top_k: int
) -> list[RagResultItem]:
    """Union by source, keeping the higher-scoring copy, best first."""
    merged: dict[tuple[str, str], RagResultItem] = {}
    for item in [*primary, *secondary]:
        key = _rag_key(item.source_type, item.source_id)
        existing = merged.get(key)
        if existing is None or item.score.final_score > existing.score.final_score:
            merged[key] = item
    return sorted(merged.values(), key=lambda i: i.score.final_score, reverse=True)[:top_k]


def merge_structured_with_evidence(
    structured: list[RagTruthResult], evidence: list[RagResultItem]
) -> tuple[list[RagTruthResult], list[RagResultItem]]:
    """
    A record present in both lists is kept only on the side with the higher score.

    Truth results without a RAG key never collide with evidence.
    """
    evidence_by_key = {_rag_key(item.source_type, item.source_id): item for item in evidence}
    dropped_evidence: set[tuple[str, str]] = set()
    kept_structured = []

    for truth in structured:
        key = _rag_key(truth.source_type, truth.source_id)
        match = evidence_by_key.get(key) if key else None
        if match is None or truth.score.final_score >= match.score.final_score:
            kept_structured.append(truth)
            if match is not None:
                dropped_evidence.add(key)

    kept_evidence = [
        item
        for item in evidence
        if _rag_key(item.source_type, item.source_id) not in dropped_evidence
    ]
    return kept_structured, kept_evidence


# ============================================================================
# Entry points
# ============================================================================


async def query_rag(
    session_factory: async_sessionmaker[AsyncSession],
    query_text: str,
    scope: ViewerScope,
    filters: RagQueryFilters | None = None,
    embedder: EmbeddingService | None = None,
) -> RagQueryResult:
    """
    Answer a query with structured truth records and ranked evidence.

    Raises RagAccessError when the requested context is outside the viewer's scope.
    """
    filters = filters or RagQueryFilters()
    top_k = filters.top_k or settings.default_top_k
    filters_applied = {**filters.model_dump(mode="json", exclude={"debug"}), "top_k": top_k}

    async with RetrievalTracker(session_factory, query_text, scope, filters_applied) as tracker:
        if not (query_text or "").strip():
            tracker.set_context(
                Intent.ACCOUNT_HISTORY.value, filters.customer_id, filters.ticket_id
            )
            tracker.record_result(Confidence.LOW.value, PATH_NO_RESULTS, 0, 0)
            return RagQueryResult(intent=Intent.ACCOUNT_HISTORY)

        identifiers = extract_identifiers(query_text)
        intent = classify_intent(query_text, identifiers)
        tracker.set_context(intent.value, filters.customer_id, filters.ticket_id)

        async with session_factory() as session:
            context = await resolve_query_context(
                session,
                scope,
                customer_id=filters.customer_id,
                ticket_id=filters.ticket_id,
                include_internal=filters.include_internal,
                allow_global=filters.allow_global,
                intent=intent,
                filters_applied=filters_applied,
            )
        tracker.set_context(intent.value, context.customer_id, context.ticket_id)

        embedder = embedder or get_embedding_service()
        timings: dict[str, int] = {}

        async def run_structured() -> list[RagTruthResult]:
            if intent not in STRUCTURED_INTENTS:
                return []
            started = time.perf_counter()
            async with session_factory() as session:
                results = await structured_lookup(
                    session, identifiers, intent, scope, context.customer_id
                )
            timings["structured_ms"] = _elapsed_ms(started)
            return results

        structured, [query_vector] = await asyncio.gather(
            run_structured(),
            embedder.embed([query_text], EmbeddingTask.RETRIEVAL_QUERY),
        )

        source_types = filters.source_types
        if structured and not source_types:
            source_types = list(NARRATIVE_SOURCE_TYPES)

        request = SearchRequest(
            query_text=query_text,
            intent=intent,
            context=context,
            top_k=top_k,
            source_types=source_types,
            exclude_ticket_id=filters.exclude_ticket_id,
            outgoing_replies_only=filters.outgoing_replies_only,
        )

        searches = [hybrid_search(session_factory, scope, request, query_vector=query_vector)]
        if intent == Intent.IDENTIFIER_LOOKUP and identifiers.has_any:
            metadata_request = replace(request, source_types=filters.source_types)
            searches.append(
                metadata_identifier_search(session_factory, scope, identifiers, metadata_request)
            )
        outcome, *metadata_results = await asyncio.gather(*searches)
        timings.update(outcome.timings)

        started = time.perf_counter()
        evidence = outcome.results
        metadata_items = metadata_results[0] if metadata_results else []
        if metadata_items:
            evidence = merge_evidence_results(evidence, metadata_items, top_k)
        structured, evidence = merge_structured_with_evidence(structured, evidence)
        timings["merge_ms"] = _elapsed_ms(started)

        confidence = compute_confidence(intent, structured, evidence)
        path = retrieval_path(structured, evidence)
        tracker.record_result(confidence.value, path, len(structured), len(evidence))

        if path == PATH_NO_RESULTS:
            logger.info(
                f"No RAG results: intent={intent.value}, customer={context.customer_id}, "
                f"ticket={context.ticket_id}, user={scope.user_id}"
            )

        debug = None
        if filters.debug:
            metadata_ids = {item.source_id for item in metadata_items}
            debug = {
                "retrieval_path": path,
                "identifiers": identifiers.to_dict(),
                "timings": {**timings, "total_ms": tracker.elapsed_ms()},
                "counts": {
                    "fts_count": outcome.fts_count,
                    "vector_count": outcome.vector_count,
                    "fused_count": outcome.fused_count,
                    "metadata_count": len(metadata_items),
                    "structured_count": len(structured),
                    "final_count": len(evidence),
                },
                "score_stats": score_stats([item.score.final_score for item in evidence]),
                "filters_applied": {
                    **filters_applied,
                    "customer_id": context.customer_id,
                    "include_internal": context.include_internal,
                    "source_types": [t.value for t in source_types] if source_types else None,
                },
                "evidence_reasons": [
                    {
                        "source_id": item.source_id,
                        "source_type": item.source_type.value,
                        "matched_by": [
                            *outcome.matched_by.get(item.source_id, []),
                            *(["metadata"] if item.source_id in metadata_ids else []),
                        ],
                        "intent_boost": intent_boost(intent, item.source_type),
                        "recency_boost": item.score.recency_boost,
                        "requested_ticket": bool(context.ticket_id)
                        and item.ticket_id == context.ticket_id,
                    }
                    for item in evidence
                ],
            }

        return RagQueryResult(
            intent=intent,
            structured_results=structured,
            evidence_results=evidence,
            confidence=confidence,
            debug=debug,
        )


async def _load_ticket(
    session_factory: async_sessionmaker[AsyncSession], ticket_id: int
) -> Ticket | None:
    async with session_factory() as session:
        result = await session.execute(
            select(Ticket).where(Ticket.id == ticket_id).options(selectinload(Ticket.comments))
        )
        return result.scalar_one_or_none()


async def _ticket_context(
    session_factory: async_sessionmaker[AsyncSession],
    scope: ViewerScope,
    ticket: Ticket,
    include_internal: bool,
    intent: Intent,
) -> AccessContext:
    async with session_factory() as session:
        return await resolve_query_context(
            session,
            scope,
            customer_id=ticket.customer_id,
            ticket_id=ticket.id,
            include_internal=include_internal,
            intent=intent,
            filters_applied={"ticket_id": ticket.id},
        )


async def find_similar_tickets(
    session_factory: async_sessionmaker[AsyncSession],
    ticket_id: int,
    scope: ViewerScope,
    top_k: int | None = None,
    embedder: EmbeddingService | None = None,
) -> list[RagResultItem]:
    """Other tickets that resemble this one, best match per related ticket."""
    ticket = await _load_ticket(session_factory, ticket_id)
    if ticket is None:
        return []

    top_k = top_k or settings.default_top_k
    include_internal = scope.allow_internal
    context = await _ticket_context(
        session_factory, scope, ticket, include_internal, Intent.ACCOUNT_HISTORY
    )

    comments = [
        c.comment_text
        for c in ticket.comments
        if include_internal or not c.is_internal_note
    ][:SIMILAR_TICKET_COMMENT_LIMIT]
    query_text = "\n".join(p for p in [ticket.title, ticket.description or "", *comments] if p)

    outcome = await hybrid_search(
        session_factory,
        scope,
        SearchRequest(
            query_text=query_text,
            intent=Intent.ACCOUNT_HISTORY,
            context=context,
            top_k=min(top_k * 3, 50),
            source_types=SIMILAR_TICKET_TYPES,
            exclude_ticket_id=ticket_id,
        ),
        embedder=embedder,
    )

    by_ticket: dict[int, RagResultItem] = {}
    for item in outcome.results:
        related_id = item.metadata.get("ticketId") or item.ticket_id
        if not related_id or related_id == ticket_id:
            continue
        existing = by_ticket.get(related_id)
        if existing is None or item.score.final_score > existing.score.final_score:
            by_ticket[related_id] = item.model_copy(
                update={
                    "source_uri": f"/tickets/{related_id}",
                    "title": item.title or f"Ticket #{related_id}",
                }
            )

    return sorted(by_ticket.values(), key=lambda i: i.score.final_score, reverse=True)[:top_k]


async def find_similar_replies(
    session_factory: async_sessionmaker[AsyncSession],
    ticket_id: int,
    scope: ViewerScope,
    top_k: int | None = None,
    include_internal: bool = False,
    embedder: EmbeddingService | None = None,
) -> list[RagResultItem]:
    """Outgoing replies on other tickets that answered a similar customer message."""
    ticket = await _load_ticket(session_factory, ticket_id)
    if ticket is None:
        return []

    context = await _ticket_context(
        session_factory, scope, ticket, include_internal, Intent.TROUBLESHOOTING
    )

    customer_comment = next((c for c in ticket.comments if c.is_from_customer), None)
    query_text = "\n".join(
        p
        for p in [
            ticket.title,
            ticket.description or "",
            customer_comment.comment_text if customer_comment else "",
        ]
        if p
    )

    outcome = await hybrid_search(
        session_factory,
        scope,
        SearchRequest(
            query_text=query_text,
            intent=Intent.TROUBLESHOOTING,
            context=context,
            top_k=top_k or settings.default_top_k,
            source_types=[SourceType.TICKET_COMMENT],
            exclude_ticket_id=ticket_id,
            outgoing_replies_only=True,
        ),
        embedder=embedder,
    )
    return outcome.results
