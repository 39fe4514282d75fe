import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from supportrag.api import admin, ingest, query
from supportrag.services.access import RagAccessError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(
    title="Support RAG",
    description="Retrieval and ingestion engine for CRM support records",
    version="0.1.0",
)

app.include_router(query.router, prefix="/v1/rag", tags=["query"])
app.include_router(ingest.router, prefix="/v1/rag", tags=["ingest"])
app.include_router(admin.router, prefix="/v1/admin/rag", tags=["admin"])


@app.exception_handler(RagAccessError)
async def rag_access_error_handler(request: Request, exc: RagAccessError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": "RAG access denied",
            "deny_reason": exc.deny_reason,
            "intent": exc.intent,
            "filters_applied": exc.filters_applied,
        },
    )


@app.get("/health")
async def health():
    return {"status": "ok"}
