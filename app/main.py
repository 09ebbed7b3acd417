"""
LATTICE Knowledge Base — Application Entry Point

FastAPI application for the personal knowledge base: ingestion with
knowledge-graph extraction, hybrid retrieval and grounded chat.

Start locally:
    uvicorn app.main:app --host 0.0.0.0 --port 8001 --reload

Start in Docker:
    docker compose up lattice-api
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import text

from app.api.v1.chat import router as chat_router
from app.api.v1.documents import router as documents_router
from app.api.v1.graph import router as graph_router
from app.api.v1.ingest import router as ingest_router
from app.core.config import settings
from app.core.database import dispose_engine, get_engine
from app.core.logging import setup_logging
from app.services import streaming
from app.services.maintenance import sweep_stale_documents
from app.services.vector import VectorService

logger = logging.getLogger(__name__)


async def wait_for_db() -> None:
    """Fail fast if the database is unreachable."""
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection verified")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
        1. Configure logging.
        2. Validate database connectivity.
        3. Pre-load the local embedding model, if that provider is used.
        4. Sweep documents abandoned in ``processing``.

    Shutdown:
        1. Drain in-flight ingestion runs and chat turns.
        2. Release the embedding model / client.
        3. Dispose database engine.
    """
    setup_logging()
    logger.info("Starting %s...", settings.PROJECT_NAME)

    try:
        await wait_for_db()
    except Exception:
        logger.exception("Database connection failed")
        raise

    if VectorService.provider() == "local":
        logger.info("Pre-loading embedding model...")
        await asyncio.to_thread(VectorService._get_model)
        logger.info("Embedding model ready")

    await sweep_stale_documents()

    yield

    # Shutdown
    await streaming.drain()
    VectorService.reset()
    await dispose_engine()
    logger.info("LATTICE shutdown complete")


app = FastAPI(
    title=settings.PROJECT_NAME,
    description=(
        "Personal knowledge base: ingestion, knowledge graph, "
        "hybrid retrieval and grounded chat."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(ingest_router, prefix="/api/v1", tags=["Ingestion"])
app.include_router(documents_router, prefix="/api/v1", tags=["Documents"])
app.include_router(chat_router, prefix="/api/v1", tags=["Chat"])
app.include_router(graph_router, prefix="/api/v1/graph", tags=["Graph"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check for load balancers and orchestrators."""
    return {
        "status": "ok",
        "service": "lattice",
        "environment": os.getenv("ENVIRONMENT", "local"),
    }
