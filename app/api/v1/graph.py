"""
Knowledge Graph API Router

Endpoints:
    GET /graph                   — All entities (with mention counts) and relationships.
    GET /graph/stats             — Entity/relationship counts and type distribution.
    GET /graph/documents/{id}    — Subgraph of entities mentioned in a document.
    GET /graph/entities/{id}     — Entity, its documents and direct connections.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.repositories.knowledge import KnowledgeRepository
from app.schemas.graph import (
    ConnectedEntityResponse,
    DocumentSummary,
    EntityDetailResponse,
    GraphLink,
    GraphNode,
    GraphResponse,
    GraphStatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_repository() -> KnowledgeRepository:
    """FastAPI dependency — returns a KnowledgeRepository instance."""
    return KnowledgeRepository()


@router.get("", response_model=GraphResponse, summary="Full knowledge graph")
async def get_graph(
    db: AsyncSession = Depends(get_db),
    repo: KnowledgeRepository = Depends(_get_repository),
) -> GraphResponse:
    entities, relationships = await repo.get_graph(db)
    return GraphResponse(
        nodes=[
            GraphNode(
                id=entity.id,
                name=entity.name,
                type=entity.type,
                description=entity.description,
                mention_count=count,
            )
            for entity, count in entities
        ],
        links=[GraphLink.model_validate(r) for r in relationships],
    )


@router.get("/stats", response_model=GraphStatsResponse, summary="Graph statistics")
async def get_graph_stats(
    db: AsyncSession = Depends(get_db),
    repo: KnowledgeRepository = Depends(_get_repository),
) -> GraphStatsResponse:
    return GraphStatsResponse(**await repo.graph_stats(db))


@router.get(
    "/documents/{document_id}",
    response_model=GraphResponse,
    summary="Entities and relationships of one document",
)
async def get_document_graph(
    document_id: UUID,
    db: AsyncSession = Depends(get_db),
    repo: KnowledgeRepository = Depends(_get_repository),
) -> GraphResponse:
    if await repo.get_by_id(db, document_id) is None:
        raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
    nodes, links = await repo.get_document_graph(db, document_id)
    return GraphResponse(
        nodes=[GraphNode.model_validate(n) for n in nodes],
        links=[GraphLink.model_validate(r) for r in links],
    )


@router.get(
    "/entities/{entity_id}",
    response_model=EntityDetailResponse,
    summary="Entity details",
)
async def get_entity_details(
    entity_id: UUID,
    db: AsyncSession = Depends(get_db),
    repo: KnowledgeRepository = Depends(_get_repository),
) -> EntityDetailResponse:
    entity = await repo.get_entity(db, entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"Entity {entity_id} not found")

    documents = await repo.get_entity_documents(db, entity_id)
    mention_count = await repo.count_mentions(db, entity_id)
    connections = await repo.get_connected_entities(db, entity_id)
    return EntityDetailResponse(
        entity=GraphNode(
            id=entity.id,
            name=entity.name,
            type=entity.type,
            description=entity.description,
            mention_count=mention_count,
        ),
        documents=[DocumentSummary.model_validate(d) for d in documents],
        connections=[
            ConnectedEntityResponse(
                id=c.entity.id,
                name=c.entity.name,
                type=c.entity.type,
                relation_type=c.relation_type,
                direction=c.direction,
            )
            for c in connections
        ],
    )
