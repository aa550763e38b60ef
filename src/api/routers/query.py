"""POST /query -- spending questions; /cache/* -- cache stats and invalidation."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from src.core.logging import get_logger
from src.query_engine.service import QueryOrchestrator

logger = get_logger(__name__)
router = APIRouter()


def get_orchestrator(request: Request) -> QueryOrchestrator:
    return request.app.state.orchestrator


class QueryRequest(BaseModel):
    question: str = Field(..., max_length=500, description="Natural-language spending question")
    user_id: str = Field(..., min_length=1, max_length=64, description="Owner of the receipts being queried")


class IntentResponse(BaseModel):
    kind: str
    vendor: str | None
    category: str | None
    top_n: int | None
    start: str
    end: str
    fallback: bool


class QueryResponse(BaseModel):
    question: str
    message: str
    data: dict[str, Any]
    error: str | None
    success: bool
    cached: bool
    latency_ms: int
    intent: IntentResponse | None


class CacheStatsResponse(BaseModel):
    enabled: bool = True
    size: int = 0
    hit_count: int = 0
    miss_count: int = 0
    hit_rate: float = 0.0
    coalesced: int = 0
    evictions: int = 0
    expirations: int = 0
    in_flight: int = 0
    bytes: int = 0
    max_bytes: int = 0
    max_entries: int = 0
    ttl_seconds: float = 0.0


@router.post("/query", response_model=QueryResponse)
def query_endpoint(req: QueryRequest, orchestrator: QueryOrchestrator = Depends(get_orchestrator)):
    """Classify, aggregate (or hit the cache) and compose an answer.

    Query failures come back as a normal answer with ``error`` set, never as 5xx.
    """
    answer = orchestrator.handle_query(req.question, req.user_id)

    intent_resp = None
    if answer.intent is not None:
        intent = answer.intent
        intent_resp = IntentResponse(
            kind=intent.kind.value,
            vendor=intent.vendor,
            category=intent.category,
            top_n=intent.top_n,
            start=intent.timeframe.start.isoformat(),
            end=intent.timeframe.end.isoformat(),
            fallback=intent.fallback,
        )

    return QueryResponse(
        question=req.question,
        message=answer.message,
        data=answer.data,
        error=answer.error,
        success=answer.success,
        cached=answer.cached,
        latency_ms=answer.latency_ms,
        intent=intent_resp,
    )


@router.get("/cache/stats", response_model=CacheStatsResponse)
def cache_stats_endpoint(orchestrator: QueryOrchestrator = Depends(get_orchestrator)):
    """Return result cache statistics."""
    stats = orchestrator.cache_stats()
    return CacheStatsResponse(enabled=bool(stats), **stats)


@router.post("/cache/invalidate/{user_id}")
def cache_invalidate_endpoint(user_id: str, orchestrator: QueryOrchestrator = Depends(get_orchestrator)):
    """Drop a user's cached results -- called by ingestion after a receipt is saved."""
    removed = orchestrator.invalidate_user(user_id)
    return {"user_id": user_id, "invalidated": removed}


@router.post("/cache/clear")
def cache_clear_endpoint(orchestrator: QueryOrchestrator = Depends(get_orchestrator)):
    """Flush the result cache and reset its counters."""
    removed = orchestrator.cache.clear() if orchestrator.cache is not None else 0
    logger.info("Cache cleared via API removed=%d", removed)
    return {"cleared": removed}
