"""
Documents API Router

Endpoints:
    GET    /documents               — List documents, newest first.
    GET    /documents/{id}          — Document with full content.
    GET    /documents/{id}/chunks   — Chunks of a document in order.
    DELETE /documents/{id}          — Delete a document and everything derived from it.
    POST   /search                  — Inspect hybrid retrieval for a query.
    GET    /lookup                  — Title/name lookup across documents, entities, threads.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.orm import DocumentRecord
from app.repositories.chat import ChatRepository
from app.repositories.knowledge import KnowledgeRepository
from app.schemas.graph import (
    ChunkMatchResponse,
    ChunkResponse,
    DocumentDetail,
    DocumentSummary,
    EntityMatchResponse,
    LookupResult,
    SearchRequest,
    SearchResponse,
)
from app.services.retrieval import ContextRetriever, build_prompt_context

logger = logging.getLogger(__name__)

router = APIRouter()

LOOKUP_DESCRIPTION_CHARS = 100


def _get_repository() -> KnowledgeRepository:
    """FastAPI dependency — returns a KnowledgeRepository instance."""
    return KnowledgeRepository()


def _get_retriever() -> ContextRetriever:
    """FastAPI dependency — returns a ContextRetriever instance."""
    return ContextRetriever()


def _get_chat_repository() -> ChatRepository:
    """FastAPI dependency — returns a ChatRepository instance."""
    return ChatRepository()


async def _document_or_404(
    db: AsyncSession,
    repo: KnowledgeRepository,
    document_id: UUID,
) -> DocumentRecord:
    document = await repo.get_by_id(db, document_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
    return document


@router.get("/documents", response_model=list[DocumentSummary], summary="List documents")
async def list_documents(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    repo: KnowledgeRepository = Depends(_get_repository),
) -> list[DocumentSummary]:
    documents = await repo.get_all(db, skip=skip, limit=limit)
    return [DocumentSummary.model_validate(d) for d in documents]


@router.get(
    "/documents/{document_id}",
    response_model=DocumentDetail,
    summary="Get a document",
)
async def get_document(
    document_id: UUID,
    db: AsyncSession = Depends(get_db),
    repo: KnowledgeRepository = Depends(_get_repository),
) -> DocumentDetail:
    document = await _document_or_404(db, repo, document_id)
    detail = DocumentDetail.model_validate(document)
    detail.chunk_count = await repo.count_chunks(db, document_id)
    return detail


@router.get(
    "/documents/{document_id}/chunks",
    response_model=list[ChunkResponse],
    summary="List the chunks of a document",
)
async def get_document_chunks(
    document_id: UUID,
    db: AsyncSession = Depends(get_db),
    repo: KnowledgeRepository = Depends(_get_repository),
) -> list[ChunkResponse]:
    await _document_or_404(db, repo, document_id)
    chunks = await repo.get_chunks_by_document(db, document_id)
    return [
        ChunkResponse(
            id=chunk.id,
            chunk_index=chunk.chunk_index,
            content=chunk.content,
            token_count=chunk.token_count,
            has_embedding=chunk.embedding is not None,
        )
        for chunk in chunks
    ]


@router.delete("/documents/{document_id}", status_code=204, summary="Delete a document")
async def delete_document(
    document_id: UUID,
    db: AsyncSession = Depends(get_db),
    repo: KnowledgeRepository = Depends(_get_repository),
) -> Response:
    """
    Delete a document. Its chunks, mentions, relationships and the threads
    scoped to it go with it; entities stay.
    """
    document = await _document_or_404(db, repo, document_id)
    await repo.delete(db, document)
    logger.info("Deleted document %s", document_id)
    return Response(status_code=204)


@router.post("/search", response_model=SearchResponse, summary="Inspect hybrid retrieval")
async def search(
    request: SearchRequest,
    db: AsyncSession = Depends(get_db),
    retriever: ContextRetriever = Depends(_get_retriever),
) -> SearchResponse:
    """
    Run the retrieval used for chat grounding and return it as-is,
    together with the markdown block the chat prompt would embed.
    """
    logger.info("Search request: query='%s', k=%d", request.query[:50], request.k)
    context = await retriever.retrieve(db, request.query, limit=request.k)
    return SearchResponse(
        chunks=[
            ChunkMatchResponse(
                chunk_id=c.chunk_id,
                document_id=c.document_id,
                document_title=c.document_title,
                content=c.content,
                score=c.score,
            )
            for c in context.chunks
        ],
        entities=[
            EntityMatchResponse(
                id=e.id, name=e.name, type=e.type, description=e.description, score=e.score
            )
            for e in context.entities
        ],
        graph_context=context.graph_context,
        prompt_context=build_prompt_context(context),
    )


@router.get("/lookup", response_model=list[LookupResult], summary="Look up by title or name")
async def lookup(
    q: str = Query(default="", max_length=200),
    db: AsyncSession = Depends(get_db),
    repo: KnowledgeRepository = Depends(_get_repository),
    chats: ChatRepository = Depends(_get_chat_repository),
) -> list[LookupResult]:
    """
    Substring match on document titles/summaries, entity names/descriptions
    and thread titles. At most five hits per kind, documents first.
    """
    if not q.strip():
        return []

    documents = await repo.search_documents(db, q)
    entities = await repo.search_entities(db, q)
    threads = await chats.search_threads(db, q)

    return (
        [
            LookupResult(
                id=d.id,
                title=d.title,
                type="document",
                subtype=d.kind,
                description=(d.summary or "")[:LOOKUP_DESCRIPTION_CHARS] or None,
            )
            for d in documents
        ]
        + [
            LookupResult(
                id=e.id,
                title=e.name,
                type="entity",
                subtype=e.type,
                description=(e.description or "")[:LOOKUP_DESCRIPTION_CHARS] or None,
            )
            for e in entities
        ]
        + [LookupResult(id=t.id, title=t.title, type="chat", subtype=t.category) for t in threads]
    )
