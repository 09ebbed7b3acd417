"""
Ingestion API Router

Endpoints:
    POST /ingest  — Ingest a URL or a note; streams progress as NDJSON.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends
from fastapi.responses import StreamingResponse

from app.schemas.ingest import IngestRequest
from app.services.pipeline import IngestionPipeline
from app.services.streaming import ndjson_lines

logger = logging.getLogger(__name__)

router = APIRouter()

STREAM_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def _get_pipeline() -> IngestionPipeline:
    """FastAPI dependency — returns an IngestionPipeline instance."""
    return IngestionPipeline()


@router.post(
    "/ingest",
    summary="Ingest a URL or a note",
    response_class=StreamingResponse,
    responses={
        200: {
            "description": "Progress events, one JSON object per line",
            "content": {"application/x-ndjson": {}},
        },
    },
)
async def ingest(
    payload: IngestRequest = Body(..., discriminator="type"),
    pipeline: IngestionPipeline = Depends(_get_pipeline),
) -> StreamingResponse:
    """
    Run the ingestion pipeline and stream its progress.

    The run continues in the background if the client disconnects; the
    last line is either ``{"step": "done", "documentId": ...}`` or an
    ``error`` event.
    """
    logger.info("Ingest request: type=%s", payload.type)
    run = pipeline.start(payload)
    return StreamingResponse(
        ndjson_lines(run.events()),
        media_type="application/x-ndjson",
        headers=STREAM_HEADERS,
    )
