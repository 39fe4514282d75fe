import asyncio
import math
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest
from conftest import (
    FakeRedis,
    FakeResult,
    FakeSession,
    FakeSessionFactory,
    compile_sql,
    make_scope,
)
from test_embedding import BrokenProvider

from supportrag.models import (
    NARRATIVE_SOURCE_TYPES,
    RagSource,
    Sensitivity,
    SourceType,
    Ticket,
    TicketComment,
)
from supportrag.schemas import (
    Confidence,
    RagQueryFilters,
    RagResultItem,
    RagTruthResult,
    ScoreBreakdown,
)
from supportrag.services import retrieval
from supportrag.services.access import AccessContext, RagAccessError
from supportrag.services.embedding import (
    DeterministicEmbeddingProvider,
    EmbeddingCache,
    EmbeddingService,
    EmbeddingTask,
)
from supportrag.services.intent import Identifiers, Intent
from supportrag.services.retrieval import (
    PATH_HYBRID_ONLY,
    PATH_NO_RESULTS,
    PATH_STRUCTURED_ONLY,
    PATH_STRUCTURED_PLUS_HYBRID,
    Candidate,
    SearchOutcome,
    SearchRequest,
    compute_confidence,
    final_score,
    find_similar_tickets,
    fuse_candidates,
    merge_evidence_results,
    merge_structured_with_evidence,
    metadata_match_expressions,
    query_rag,
    reciprocal_rank_fusion,
    recency_score,
    resolve_query_context,
    retrieval_path,
    score_stats,
    truncate_snippet,
)

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def make_source(source_id: str = "5", source_type=SourceType.TICKET, **overrides) -> RagSource:
    fields = dict(
        id=uuid4(),
        source_type=source_type,
        source_id=source_id,
        source_uri=f"/tickets/{source_id}",
        customer_id=7,
        ticket_id=int(source_id) if source_id.isdigit() else None,
        sensitivity=Sensitivity.PUBLIC,
        content_text=f"Content of {source_id}",
        meta={},
        source_created_at=NOW,
    )
    fields.update(overrides)
    return RagSource(**fields)


def make_item(source_id: str, score: float, source_type=SourceType.TICKET) -> RagResultItem:
    return RagResultItem(
        source_id=source_id,
        source_type=source_type,
        source_uri=f"/tickets/{source_id}",
        snippet="...",
        source_created_at=NOW,
        score=ScoreBreakdown(final_score=score),
    )


def make_truth(label: str, score: float, source_type=None, source_id=None) -> RagTruthResult:
    return RagTruthResult(
        type="order",
        label=label,
        score=ScoreBreakdown(final_score=score),
        source_type=source_type,
        source_id=source_id,
    )


def offline_embedder() -> EmbeddingService:
    return EmbeddingService(DeterministicEmbeddingProvider(dim=8))


# ============================================================================
# Scoring
# ============================================================================


def test_reciprocal_rank_fusion_uses_one_based_ranks():
    scores = reciprocal_rank_fusion([["a", "b"], ["b"]], k=60)
    assert scores["a"] == pytest.approx(1 / 61)
    assert scores["b"] == pytest.approx(1 / 62 + 1 / 61)


def test_fusion_rewards_agreement_between_retrievers():
    scores = reciprocal_rank_fusion([["a", "b", "c"], ["c", "b"]])
    assert scores["b"] > scores["a"]
    assert scores["c"] > scores["a"]


def test_recency_decays_over_sixty_days():
    assert recency_score(NOW, NOW) == 1.0
    assert recency_score(NOW - timedelta(days=60), NOW) == pytest.approx(math.exp(-1))
    assert recency_score(NOW + timedelta(days=3), NOW) == 1.0
    assert recency_score(None, NOW) == 0.0
    assert recency_score(datetime(2026, 3, 1), NOW) == 1.0


def test_final_score_applies_boosts():
    assert final_score(0.5, Intent.PAYMENTS_TERMS, SourceType.QBO_INVOICE, 1.0) == (
        pytest.approx(0.5 * 1.5 * 1.2)
    )
    assert final_score(1.0, Intent.POLICY_SOP, SourceType.TICKET, 0.0) == 1.0
    assert final_score(
        1.0, Intent.POLICY_SOP, SourceType.TICKET, 0.0, is_requested_ticket=True
    ) == pytest.approx(1.1)


def test_truncate_snippet():
    assert truncate_snippet("short") == "short"
    long_text = "x" * 900
    assert truncate_snippet(long_text) == "x" * 800 + "..."
    assert truncate_snippet("a" * 799 + " " + "b" * 50) == "a" * 799 + "..."


def test_compute_confidence():
    truth = [make_truth("Order A1001", 150)]
    weak = [make_item("5", 0.01)]
    strong = [make_item("5", 0.06)]

    assert compute_confidence(Intent.IDENTIFIER_LOOKUP, truth, []) == Confidence.HIGH
    assert compute_confidence(Intent.ACCOUNT_HISTORY, truth, weak) == Confidence.LOW
    assert compute_confidence(Intent.ACCOUNT_HISTORY, [], strong) == Confidence.MEDIUM
    assert compute_confidence(Intent.TROUBLESHOOTING, [], []) == Confidence.LOW


def test_retrieval_path():
    truth = [make_truth("Order A1001", 150)]
    evidence = [make_item("5", 0.1)]
    assert retrieval_path(truth, evidence) == PATH_STRUCTURED_PLUS_HYBRID
    assert retrieval_path(truth, []) == PATH_STRUCTURED_ONLY
    assert retrieval_path([], evidence) == PATH_HYBRID_ONLY
    assert retrieval_path([], []) == PATH_NO_RESULTS


def test_score_stats():
    assert score_stats([]) is None
    assert score_stats([1.0, 3.0, 2.0]) == {"min": 1.0, "max": 3.0, "median": 2.0}


# ============================================================================
# Fusion
# ============================================================================


def candidate(source, chunk_index=0, chunk_id=None, fts_rank=None, vector_score=None):
    return Candidate(
        chunk_id=chunk_id or uuid4(),
        chunk_index=chunk_index,
        chunk_text=f"chunk {chunk_index}",
        source=source,
        fts_rank=fts_rank,
        vector_score=vector_score,
    )


def test_fusion_keeps_best_chunk_per_source():
    source_a = make_source("1")
    source_b = make_source("2")
    a1, a2, b1 = uuid4(), uuid4(), uuid4()

    fts_hits = [
        candidate(source_a, 0, a1, fts_rank=0.9),
        candidate(source_b, 0, b1, fts_rank=0.4),
    ]
    vector_hits = [
        candidate(source_a, 0, a1, vector_score=0.8),
        candidate(source_a, 1, a2, vector_score=0.7),
    ]

    fused = fuse_candidates(fts_hits, vector_hits, Intent.POLICY_SOP, now=NOW)

    assert [c.source.source_id for c in fused] == ["1", "2"]
    best = fused[0]
    assert best.chunk_id == a1
    assert best.matched_by == ["fts", "vector"]
    assert best.fusion_score == pytest.approx(2 / 61)
    assert best.final_score == pytest.approx(2 / 61 * 1.2)
    assert fused[1].matched_by == ["fts"]


def test_requested_ticket_outranks_equal_match():
    other = make_source("1", ticket_id=1)
    requested = make_source("2", ticket_id=2)
    chunk_other, chunk_requested = uuid4(), uuid4()

    fused = fuse_candidates(
        [candidate(other, 0, chunk_other, fts_rank=0.5)],
        [candidate(requested, 0, chunk_requested, vector_score=0.5)],
        Intent.POLICY_SOP,
        requested_ticket_id=2,
        now=NOW,
    )

    assert fused[0].source.source_id == "2"


def test_chunk_with_fallback_vector_is_still_retrieved():
    # Provider down at ingestion and at query time
    text = "Pallet arrived crushed, customer wants a replacement"
    embedder = EmbeddingService(
        BrokenProvider("broken-model", 8), cache=EmbeddingCache(client=FakeRedis())
    )
    [stored] = asyncio.run(embedder.embed([text]))
    [query_vector] = asyncio.run(embedder.embed([text], EmbeddingTask.RETRIEVAL_QUERY))
    assert embedder.fallback_count == 2

    row = SimpleNamespace(
        id=uuid4(),
        chunk_index=0,
        chunk_text=text,
        RagSource=make_source("5"),
        similarity=sum(a * b for a, b in zip(stored, query_vector)),
    )
    factory = FakeSessionFactory(FakeSession(results=[FakeResult(rows=[row])]))

    hits = asyncio.run(retrieval.vector_search(factory, query_vector, []))
    [best] = fuse_candidates([], hits, Intent.TROUBLESHOOTING, now=NOW)

    assert "embedding IS NOT NULL" in str(factory.session.executed[0][0])
    assert best.chunk_id == row.id
    assert best.matched_by == ["vector"]
    assert 0 < best.vector_score <= 1 + 1e-9
    assert best.fusion_score == pytest.approx(1 / 61)
    assert best.final_score > 0


# ============================================================================
# Merging
# ============================================================================


def test_merge_evidence_keeps_higher_copy_and_top_k():
    primary = [make_item("1", 0.2), make_item("2", 0.1)]
    secondary = [make_item("2", 10.5), make_item("3", 0.05)]

    merged = merge_evidence_results(primary, secondary, top_k=2)

    assert [(i.source_id, i.score.final_score) for i in merged] == [("2", 10.5), ("1", 0.2)]


def test_structured_wins_ties_with_evidence():
    truth = [make_truth("Order A1001", 1.0, SourceType.SHOPIFY_ORDER, "998877")]
    evidence = [make_item("998877", 1.0, SourceType.SHOPIFY_ORDER), make_item("5", 0.5)]

    kept_truth, kept_evidence = merge_structured_with_evidence(truth, evidence)

    assert kept_truth == truth
    assert [i.source_id for i in kept_evidence] == ["5"]


def test_higher_scoring_evidence_replaces_truth():
    truth = [make_truth("Order A1001", 1.0, SourceType.SHOPIFY_ORDER, "998877")]
    evidence = [make_item("998877", 2.0, SourceType.SHOPIFY_ORDER)]

    kept_truth, kept_evidence = merge_structured_with_evidence(truth, evidence)

    assert kept_truth == []
    assert kept_evidence == evidence


def test_truth_without_rag_key_never_collides():
    truth = [make_truth("AR snapshot", 0.0)]
    evidence = [make_item("5", 1.0)]
    assert merge_structured_with_evidence(truth, evidence) == (truth, evidence)


def test_metadata_match_expressions_cover_identifier_fields():
    conditions, similarities, exact = metadata_match_expressions(
        Identifiers(order_numbers=["A1001"], skus=["SKU-1"])
    )

    sql = " ".join(compile_sql(c) for c in conditions)
    assert "'orderNumber'" in sql
    assert "'externalId'" in sql
    assert "'itemSkus'" in sql
    assert len(similarities) == 3
    assert len(exact) == 4


# ============================================================================
# Query context
# ============================================================================


def resolve(scope, tickets=(), **kwargs) -> AccessContext:
    session = FakeSession(objects={(Ticket, t.id): t for t in tickets})
    return asyncio.run(resolve_query_context(session, scope, **kwargs))


def deny_reason(scope, tickets=(), **kwargs) -> str:
    with pytest.raises(RagAccessError) as exc_info:
        resolve(scope, tickets, **kwargs)
    return exc_info.value.deny_reason


def test_customer_outside_scope_is_denied(agent_scope):
    assert deny_reason(agent_scope, customer_id=8) == "customer_out_of_scope"


def test_ticket_denials_in_order(agent_scope):
    own = Ticket(id=1, customer_id=7)
    foreign = Ticket(id=2, customer_id=8)
    orphan = Ticket(id=3, customer_id=None)
    tickets = [own, foreign, orphan]

    assert deny_reason(agent_scope, tickets, ticket_id=99) == "ticket_not_found"
    assert deny_reason(agent_scope, tickets, ticket_id=3) == "ticket_missing_customer"
    assert deny_reason(agent_scope, tickets, ticket_id=2, customer_id=7) == (
        "ticket_customer_mismatch"
    )
    assert deny_reason(agent_scope, tickets, ticket_id=2) == "ticket_out_of_scope"


def test_missing_context_and_global(agent_scope, admin_scope):
    assert deny_reason(agent_scope) == "missing_context"
    assert deny_reason(agent_scope, allow_global=True) == "missing_context"
    assert deny_reason(admin_scope) == "global_not_allowed"

    context = resolve(admin_scope, allow_global=True, include_internal=True)
    assert context.allow_global
    assert context.include_internal


def test_ticket_context_inherits_customer(agent_scope):
    context = resolve(agent_scope, [Ticket(id=1, customer_id=7)], ticket_id=1)

    assert context.customer_id == 7
    assert context.ticket_id == 1
    assert not context.enforce_ticket_id


def test_external_viewer_never_gets_internal():
    scope = make_scope(customers=(7,), is_external=True)
    context = resolve(scope, customer_id=7, include_internal=True)
    assert not context.include_internal


def test_search_request_conditions(agent_scope):
    request = SearchRequest(
        query_text="refund",
        intent=Intent.TROUBLESHOOTING,
        context=AccessContext(customer_id=7),
        top_k=5,
        source_types=[SourceType.TICKET_COMMENT],
        exclude_ticket_id=5,
        outgoing_replies_only=True,
    )

    sql = [compile_sql(c) for c in request.conditions(agent_scope)]

    assert len(sql) == 4
    assert "rag_sources.customer_id IN (7)" in sql[0]
    assert sql[1] == "rag_sources.source_type IN ('ticket_comment')"
    assert sql[2] == "rag_sources.ticket_id IS DISTINCT FROM 5"
    assert "'isOutgoingReply'" in sql[3]
    assert sql[3].endswith("= 'true'")


# ============================================================================
# Entry points
# ============================================================================


@pytest.fixture
def captured(monkeypatch):
    """Replace the database-bound searches with canned results."""
    calls = {}
    ticket_item = make_item("5", 0.04)

    async def fake_structured(session, identifiers, intent, scope, customer_id=None):
        calls["structured"] = identifiers
        return [make_truth("Order A1001", 150.0, SourceType.SHOPIFY_ORDER, "998877")]

    async def fake_hybrid(session_factory, scope, request, embedder=None, query_vector=None):
        calls["hybrid"] = request
        calls["query_vector"] = query_vector
        return SearchOutcome(results=[ticket_item], fts_count=1, vector_count=1, fused_count=1)

    async def fake_metadata(session_factory, scope, identifiers, request, now=None):
        calls["metadata"] = request
        return []

    monkeypatch.setattr(retrieval, "structured_lookup", fake_structured)
    monkeypatch.setattr(retrieval, "hybrid_search", fake_hybrid)
    monkeypatch.setattr(retrieval, "metadata_identifier_search", fake_metadata)
    return calls


def test_identifier_query_returns_truth_and_narrative_evidence(admin_scope, captured):
    factory = FakeSessionFactory()
    filters = RagQueryFilters(allow_global=True, debug=True)

    result = asyncio.run(query_rag(factory, "A1001", admin_scope, filters, offline_embedder()))

    assert result.intent == Intent.IDENTIFIER_LOOKUP
    assert [t.label for t in result.structured_results] == ["Order A1001"]
    assert [e.source_id for e in result.evidence_results] == ["5"]
    assert result.confidence == Confidence.HIGH
    assert captured["structured"].order_numbers == ["A1001"]
    assert set(captured["hybrid"].source_types) == set(NARRATIVE_SOURCE_TYPES)
    assert captured["metadata"].source_types is None
    assert len(captured["query_vector"]) == 8
    assert result.debug["retrieval_path"] == PATH_STRUCTURED_PLUS_HYBRID
    assert result.debug["counts"]["structured_count"] == 1

    [log] = factory.session.added
    assert log.intent == "identifier_lookup"
    assert log.retrieval_path == PATH_STRUCTURED_PLUS_HYBRID
    assert log.deny_reason is None


def test_explicit_source_types_are_not_narrowed(admin_scope, captured):
    filters = RagQueryFilters(allow_global=True, source_types=[SourceType.QBO_INVOICE])
    result = asyncio.run(
        query_rag(FakeSessionFactory(), "A1001", admin_scope, filters, offline_embedder())
    )

    assert captured["hybrid"].source_types == [SourceType.QBO_INVOICE]
    assert result.debug is None


def test_out_of_scope_customer_is_denied_and_logged(agent_scope, captured):
    factory = FakeSessionFactory()
    filters = RagQueryFilters(customer_id=8)

    with pytest.raises(RagAccessError) as exc_info:
        asyncio.run(query_rag(factory, "refund history", agent_scope, filters, offline_embedder()))

    assert exc_info.value.deny_reason == "customer_out_of_scope"
    assert exc_info.value.filters_applied["customer_id"] == 8
    assert "hybrid" not in captured
    [log] = factory.session.added
    assert log.deny_reason == "customer_out_of_scope"
    assert log.intent == "account_history"


def test_blank_query_returns_empty_low_confidence(agent_scope, captured):
    result = asyncio.run(query_rag(FakeSessionFactory(), "   ", agent_scope))

    assert result.intent == Intent.ACCOUNT_HISTORY
    assert result.confidence == Confidence.LOW
    assert result.structured_results == []
    assert result.evidence_results == []
    assert "hybrid" not in captured


def test_similar_tickets_grouped_by_related_ticket(agent_scope, monkeypatch):
    ticket = Ticket(id=5, customer_id=7, title="Pallet damaged", description="Crushed corner")
    ticket.comments = [
        TicketComment(id=1, ticket_id=5, comment_text="Photos attached", is_internal_note=False)
    ]
    captured = {}

    async def load_ticket(session_factory, ticket_id):
        return ticket if ticket_id == 5 else None

    def item(source_id, related, score):
        result = make_item(source_id, score, SourceType.TICKET_COMMENT)
        return result.model_copy(update={"metadata": {"ticketId": related}})

    async def fake_hybrid(session_factory, scope, request, embedder=None, query_vector=None):
        captured["request"] = request
        return SearchOutcome(
            results=[item("101", 11, 0.3), item("102", 11, 0.5), item("103", 12, 0.2)]
        )

    monkeypatch.setattr(retrieval, "_load_ticket", load_ticket)
    monkeypatch.setattr(retrieval, "hybrid_search", fake_hybrid)
    factory = FakeSessionFactory(FakeSession(objects={(Ticket, 5): ticket}))

    results = asyncio.run(find_similar_tickets(factory, 5, agent_scope, top_k=5))

    assert [(r.source_id, r.source_uri) for r in results] == [
        ("102", "/tickets/11"),
        ("103", "/tickets/12"),
    ]
    request = captured["request"]
    assert request.top_k == 15
    assert request.exclude_ticket_id == 5
    assert "Pallet damaged" in request.query_text
    assert "Photos attached" in request.query_text
    assert request.context.customer_id == 7

    assert asyncio.run(find_similar_tickets(factory, 99, agent_scope)) == []
