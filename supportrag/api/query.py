import logging

from fastapi import APIRouter, Depends, Query

from supportrag.auth import ViewerContext, get_viewer_context
from supportrag.schemas import (
    AccessDeniedResponse,
    RagQueryFilters,
    RagQueryRequest,
    RagQueryResult,
    SimilarTicketsResponse,
)
from supportrag.services.retrieval import find_similar_replies, find_similar_tickets, query_rag

logger = logging.getLogger(__name__)
router = APIRouter()

DENIED = {403: {"model": AccessDeniedResponse}}


@router.post("/query", response_model=RagQueryResult, responses=DENIED)
async def rag_query(
    request: RagQueryRequest,
    ctx: ViewerContext = Depends(get_viewer_context),
) -> RagQueryResult:
    """
    Answer a support question for the calling viewer.

    Structured results are exact record matches; evidence results are ranked
    narrative chunks. Out-of-scope requests fail with 403 and a deny reason.
    """
    filters = RagQueryFilters(**request.model_dump(exclude={"query"}))
    return await query_rag(ctx.session_factory, request.query, ctx.scope, filters)


@router.get(
    "/tickets/{ticket_id}/similar", response_model=SimilarTicketsResponse, responses=DENIED
)
async def similar_tickets(
    ticket_id: int,
    top_k: int | None = Query(default=None, ge=1, le=50),
    ctx: ViewerContext = Depends(get_viewer_context),
) -> SimilarTicketsResponse:
    """Other tickets resembling this one, one result per ticket."""
    results = await find_similar_tickets(ctx.session_factory, ticket_id, ctx.scope, top_k=top_k)
    return SimilarTicketsResponse(ticket_id=ticket_id, results=results)


@router.get(
    "/tickets/{ticket_id}/similar-replies",
    response_model=SimilarTicketsResponse,
    responses=DENIED,
)
async def similar_replies(
    ticket_id: int,
    top_k: int | None = Query(default=None, ge=1, le=50),
    include_internal: bool = False,
    ctx: ViewerContext = Depends(get_viewer_context),
) -> SimilarTicketsResponse:
    results = await find_similar_replies(
        ctx.session_factory,
        ticket_id,
        ctx.scope,
        top_k=top_k,
        include_internal=include_internal,
    )
    return SimilarTicketsResponse(ticket_id=ticket_id, results=results)
