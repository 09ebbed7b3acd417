"""
Chat API Router

Endpoints:
    POST   /chat          — One chat turn; streams NDJSON events.
    POST   /chats         — Create a (scoped) thread.
    GET    /chats         — List threads by recent activity.
    GET    /chats/{id}    — Thread with its messages.
    DELETE /chats/{id}    — Delete a thread and its messages.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.repositories.chat import ChatRepository
from app.schemas.chat import (
    ChatRequest,
    MessageResponse,
    ThreadCreateRequest,
    ThreadDetailResponse,
    ThreadResponse,
)
from app.services.chat import ChatService, ScopeTargetNotFoundError, ThreadNotFoundError
from app.services.streaming import ndjson_lines

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_chat_service() -> ChatService:
    """FastAPI dependency — returns a ChatService instance."""
    return ChatService()


def _get_chat_repository() -> ChatRepository:
    """FastAPI dependency — returns a ChatRepository instance."""
    return ChatRepository()


@router.post(
    "/chat",
    summary="Send a chat message",
    response_class=StreamingResponse,
    responses={
        200: {
            "description": (
                "NDJSON events: metadata, delta*, finish (or error). "
                "The X-Thread-Id header carries the thread id."
            ),
            "content": {"application/x-ndjson": {}},
        },
        404: {"description": "Thread not found"},
    },
)
async def chat(
    request: ChatRequest,
    db: AsyncSession = Depends(get_db),
    service: ChatService = Depends(_get_chat_service),
) -> StreamingResponse:
    """
    Answer the last user message, grounded in the knowledge base.

    Without ``threadId`` a new general thread is created. If Ollama is
    unavailable the stream carries a notice with ``mocked: true``.
    """
    try:
        turn = await service.start_turn(db, request.messages, request.thread_id)
    except ThreadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    logger.info("Chat turn started in thread %s", turn.thread_id)
    return StreamingResponse(
        ndjson_lines(turn.events()),
        media_type="application/x-ndjson",
        headers={
            "X-Thread-Id": str(turn.thread_id),
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.post(
    "/chats",
    response_model=ThreadResponse,
    status_code=201,
    summary="Create a chat thread",
)
async def create_thread(
    request: ThreadCreateRequest,
    db: AsyncSession = Depends(get_db),
    service: ChatService = Depends(_get_chat_service),
) -> ThreadResponse:
    """
    Create a general, entity or document thread.

    Entity and document threads start with a welcome message describing
    what they are bound to.
    """
    try:
        thread = await service.create_scoped_thread(db, request.to_scope(), request.title)
    except ScopeTargetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return ThreadResponse.model_validate(thread)


@router.get("/chats", response_model=list[ThreadResponse], summary="List chat threads")
async def list_threads(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    repo: ChatRepository = Depends(_get_chat_repository),
) -> list[ThreadResponse]:
    threads = await repo.list_threads(db, skip=skip, limit=limit)
    return [ThreadResponse.model_validate(t) for t in threads]


@router.get(
    "/chats/{thread_id}",
    response_model=ThreadDetailResponse,
    summary="Get a thread with its messages",
)
async def get_thread(
    thread_id: UUID,
    db: AsyncSession = Depends(get_db),
    repo: ChatRepository = Depends(_get_chat_repository),
) -> ThreadDetailResponse:
    thread = await repo.get_by_id(db, thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")
    messages = await repo.list_messages(db, thread_id)
    return ThreadDetailResponse(
        thread=ThreadResponse.model_validate(thread),
        messages=[MessageResponse.model_validate(m) for m in messages],
    )


@router.delete("/chats/{thread_id}", status_code=204, summary="Delete a thread")
async def delete_thread(
    thread_id: UUID,
    db: AsyncSession = Depends(get_db),
    repo: ChatRepository = Depends(_get_chat_repository),
) -> Response:
    thread = await repo.get_by_id(db, thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")
    await repo.delete(db, thread)
    logger.info("Deleted thread %s", thread_id)
    return Response(status_code=204)
