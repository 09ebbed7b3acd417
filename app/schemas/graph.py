"""
Graph, Document and Search API Schemas
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentSummary(ORMModel):
    id: UUID
    url: str | None = None
    title: str
    kind: str
    summary: str | None = None
    processing_status: str = Field(serialization_alias="processingStatus")
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")


class DocumentDetail(DocumentSummary):
    content: str
    chunk_count: int = Field(default=0, serialization_alias="chunkCount")


class ChunkResponse(ORMModel):
    id: UUID
    chunk_index: int = Field(serialization_alias="chunkIndex")
    content: str
    token_count: int = Field(serialization_alias="tokenCount")
    has_embedding: bool = Field(default=False, serialization_alias="hasEmbedding")


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class SearchRequest(BaseModel):
    """Request body for retrieval inspection."""

    query: str = Field(..., min_length=1, description="Natural language query")
    k: int = Field(default=3, ge=1, le=20, description="Number of results")


class ChunkMatchResponse(BaseModel):
    chunk_id: UUID = Field(serialization_alias="chunkId")
    document_id: UUID = Field(serialization_alias="documentId")
    document_title: str = Field(serialization_alias="documentTitle")
    content: str
    score: float = Field(description="Combined relevance score (higher = more relevant)")


class EntityMatchResponse(BaseModel):
    id: UUID
    name: str
    type: str
    description: str | None = None
    score: float


class SearchResponse(BaseModel):
    chunks: list[ChunkMatchResponse]
    entities: list[EntityMatchResponse]
    graph_context: str = Field(serialization_alias="graphContext")
    prompt_context: str = Field(serialization_alias="promptContext")


class LookupResult(BaseModel):
    """One hit of the title/name lookup across documents, entities and threads."""

    id: UUID
    title: str
    type: Literal["document", "entity", "chat"]
    subtype: str
    description: str | None = None


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class GraphNode(ORMModel):
    id: UUID
    name: str
    type: str
    description: str | None = None
    mention_count: int = Field(default=0, serialization_alias="mentionCount")


class GraphLink(ORMModel):
    id: UUID
    source: UUID = Field(validation_alias="source_entity_id")
    target: UUID = Field(validation_alias="target_entity_id")
    type: str = Field(validation_alias="relation_type")
    description: str | None = None
    weight: float = 1.0


class GraphResponse(BaseModel):
    nodes: list[GraphNode]
    links: list[GraphLink]


class ConnectedEntityResponse(BaseModel):
    id: UUID
    name: str
    type: str
    relation_type: str = Field(serialization_alias="relationType")
    direction: str


class EntityDetailResponse(BaseModel):
    entity: GraphNode
    documents: list[DocumentSummary]
    connections: list[ConnectedEntityResponse]


class GraphStatsResponse(BaseModel):
    entity_count: int = Field(serialization_alias="entityCount")
    relationship_count: int = Field(serialization_alias="relationshipCount")
    type_distribution: dict[str, int] = Field(serialization_alias="typeDistribution")
