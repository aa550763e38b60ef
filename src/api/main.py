"""
FastAPI application entry-point.

One QueryOrchestrator (and its result cache) is built per process in the
lifespan and shut down on exit.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routers import catalog, query
from src.core.logging import get_logger
from src.query_engine.service import build_orchestrator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.orchestrator = build_orchestrator()
    logger.info("Receipt spend query API started")
    try:
        yield
    finally:
        app.state.orchestrator.close()
        logger.info("Receipt spend query API stopped")


app = FastAPI(
    title="Receipt Spend Query",
    version="0.1.0",
    description="Natural-language questions over a user's receipts, with a result cache",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query.router, tags=["Query"])
app.include_router(catalog.router, tags=["Catalog"])


@app.get("/health")
def health():
    return {"status": "ok"}
