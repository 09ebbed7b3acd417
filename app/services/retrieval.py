"""
Retrieval Context Builder

Hybrid retrieval for chat grounding:

    1. Vector search: pgvector cosine similarity over chunk embeddings.
    2. Lexical search: PostgreSQL full-text rank over chunk content.
    3. Graph: entities named in the query or close to it in embedding
       space, plus their direct neighbours, rendered as a narrative.

Both chunk signals are merged by chunk id into one weighted score.
An optional focus (entity or document) augments the query and moves
chunks and entities tied to it ahead of unrelated ones.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.orm import EntityRecord
from app.models.schemas import DocumentScope, EntityScope, ThreadScope
from app.repositories.knowledge import KnowledgeRepository
from app.services.enrichment import attempt
from app.services.vector import VectorService

logger = logging.getLogger(__name__)

# Neighbours kept per entity and direction when building the graph narrative
NEIGHBORS_PER_DIRECTION: int = 3
# Candidates fetched per signal, as a multiple of the requested limit
CANDIDATE_MULTIPLIER: int = 4
MIN_CANDIDATES: int = 10


@dataclass(frozen=True)
class ChunkMatch:
    chunk_id: uuid.UUID
    document_id: uuid.UUID
    document_title: str
    content: str
    score: float


@dataclass(frozen=True)
class EntityMatch:
    id: uuid.UUID
    name: str
    type: str
    description: str | None
    score: float


@dataclass
class RetrievedContext:
    """Grounding material for one chat turn."""

    chunks: list[ChunkMatch] = field(default_factory=list)
    entities: list[EntityMatch] = field(default_factory=list)
    graph_context: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.chunks or self.entities or self.graph_context)


@dataclass(frozen=True)
class EntityFocus:
    entity_id: uuid.UUID
    name: str
    type: str
    description: str | None = None


@dataclass(frozen=True)
class DocumentFocus:
    document_id: uuid.UUID
    title: str
    summary: str | None = None


Focus = EntityFocus | DocumentFocus


def build_prompt_context(context: RetrievedContext) -> str:
    """Render retrieved context as a markdown block for the system prompt."""
    parts: list[str] = []

    if context.chunks:
        parts.append("## Relevant Content from Knowledge Base:\n")
        for chunk in context.chunks:
            parts.append(f'### From "{chunk.document_title}":\n{chunk.content}\n')

    if context.graph_context:
        parts.append(f"\n## {context.graph_context}\n")

    if context.entities:
        parts.append("\n## Relevant Entities:\n")
        for entity in context.entities:
            suffix = f": {entity.description}" if entity.description else ""
            parts.append(f"- **{entity.name}** ({entity.type}){suffix}")

    return "\n".join(parts)


class ContextRetriever:
    """
    Builds a ``RetrievedContext`` for a query.

    Usage::

        retriever = ContextRetriever()
        focus = await retriever.resolve_focus(session, thread.scope)
        context = await retriever.retrieve(session, "Where does Alice work?", focus=focus)
        prompt_block = build_prompt_context(context)
    """

    def __init__(
        self,
        repository: KnowledgeRepository | None = None,
        embedder: Any = None,
        vector_weight: float | None = None,
        lexical_weight: float | None = None,
    ) -> None:
        self._repo = repository or KnowledgeRepository()
        self._embedder = embedder or VectorService
        self._vector_weight = settings.VECTOR_WEIGHT if vector_weight is None else vector_weight
        self._lexical_weight = (
            settings.LEXICAL_WEIGHT if lexical_weight is None else lexical_weight
        )

    async def resolve_focus(
        self,
        session: AsyncSession,
        scope: ThreadScope,
    ) -> Focus | None:
        """Load the entity or document a thread is bound to (``None`` for general)."""
        match scope:
            case EntityScope(entity_id=entity_id):
                entity = await self._repo.get_entity(session, entity_id)
                if entity is None:
                    return None
                return EntityFocus(entity.id, entity.name, entity.type, entity.description)
            case DocumentScope(document_id=document_id):
                document = await self._repo.get_by_id(session, document_id)
                if document is None:
                    return None
                return DocumentFocus(document.id, document.title, document.summary)
        return None

    async def retrieve(
        self,
        session: AsyncSession,
        query: str,
        limit: int | None = None,
        focus: Focus | None = None,
    ) -> RetrievedContext:
        """
        Retrieve chunks, entities and graph narrative for ``query``.

        An unavailable embedding service degrades to lexical-only chunk
        scores and name-matched entities. Storage errors propagate.
        """
        limit = limit or settings.RETRIEVAL_LIMIT
        search_query = augment_query(query, focus)
        candidates = max(limit * CANDIDATE_MULTIPLIER, MIN_CANDIDATES)

        embedded = await attempt(
            "embed query",
            lambda: self._embedder.embed_query(search_query),
            None,
            retries=0,
        )
        query_vector: list[float] | None = embedded.value if embedded.ok else None

        focus_documents = await self._focus_documents(session, focus)
        chunks = await self._rank_chunks(
            session, search_query, query_vector, candidates, focus_documents
        )

        focus_entities = await self._focus_entities(session, focus)
        entities = await self._rank_entities(
            session, query, query_vector, limit, focus, focus_entities
        )

        graph_context = await self._graph_context(session, entities)

        logger.info(
            "Retrieved %d chunks, %d entities (vector=%s, focus=%s)",
            min(len(chunks), limit),
            len(entities),
            query_vector is not None,
            type(focus).__name__ if focus else None,
        )
        return RetrievedContext(
            chunks=chunks[:limit],
            entities=entities,
            graph_context=graph_context,
        )

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def _rank_chunks(
        self,
        session: AsyncSession,
        search_query: str,
        query_vector: list[float] | None,
        candidates: int,
        focus_documents: set[uuid.UUID],
    ) -> list[ChunkMatch]:
        vector_hits = (
            await self._repo.search_chunks_by_vector(session, query_vector, candidates)
            if query_vector is not None
            else []
        )
        lexical_hits = await self._repo.search_chunks_by_text(
            session, search_query, candidates
        )

        merged: dict[uuid.UUID, dict[str, Any]] = {}
        for hit in vector_hits:
            merged[hit.chunk_id] = {"hit": hit, "vector": hit.score, "lexical": 0.0}
        for hit in lexical_hits:
            entry = merged.setdefault(hit.chunk_id, {"hit": hit, "vector": 0.0, "lexical": 0.0})
            entry["lexical"] = hit.score

        matches: list[ChunkMatch] = []
        for entry in merged.values():
            if query_vector is not None:
                score = (
                    self._vector_weight * entry["vector"]
                    + self._lexical_weight * entry["lexical"]
                )
            else:
                score = entry["lexical"]
            hit = entry["hit"]
            matches.append(
                ChunkMatch(
                    chunk_id=hit.chunk_id,
                    document_id=hit.document_id,
                    document_title=hit.document_title,
                    content=hit.content,
                    score=round(score, 4),
                )
            )

        matches.sort(key=lambda m: (m.document_id not in focus_documents, -m.score))
        return matches

    async def _focus_documents(
        self,
        session: AsyncSession,
        focus: Focus | None,
    ) -> set[uuid.UUID]:
        match focus:
            case DocumentFocus(document_id=document_id):
                return {document_id}
            case EntityFocus(entity_id=entity_id):
                return await self._repo.document_ids_mentioning(session, entity_id)
        return set()

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def _rank_entities(
        self,
        session: AsyncSession,
        query: str,
        query_vector: list[float] | None,
        limit: int,
        focus: Focus | None,
        focus_entities: set[uuid.UUID],
    ) -> list[EntityMatch]:
        scored: dict[uuid.UUID, EntityMatch] = {}

        def keep(entity: EntityRecord, score: float) -> None:
            current = scored.get(entity.id)
            if current is None or score > current.score:
                scored[entity.id] = EntityMatch(
                    entity.id, entity.name, entity.type, entity.description, round(score, 4)
                )

        for entity in await self._repo.match_entities_by_name(session, query):
            keep(entity, 1.0)
        if query_vector is not None:
            for entity, score in await self._repo.search_entities_by_vector(
                session, query_vector, limit * 2
            ):
                keep(entity, score)

        if isinstance(focus, EntityFocus) and focus.entity_id not in scored:
            scored[focus.entity_id] = EntityMatch(
                focus.entity_id, focus.name, focus.type, focus.description, 1.0
            )

        ranked = sorted(
            scored.values(), key=lambda e: (e.id not in focus_entities, -e.score)
        )
        return ranked[:limit]

    async def _focus_entities(
        self,
        session: AsyncSession,
        focus: Focus | None,
    ) -> set[uuid.UUID]:
        match focus:
            case EntityFocus(entity_id=entity_id):
                return {entity_id}
            case DocumentFocus(document_id=document_id):
                return await self._repo.entity_ids_in_document(session, document_id)
        return set()

    # ------------------------------------------------------------------
    # Graph narrative
    # ------------------------------------------------------------------

    async def _graph_context(
        self,
        session: AsyncSession,
        entities: list[EntityMatch],
    ) -> str:
        if not entities:
            return ""
        names = {e.id: e.name for e in entities}
        neighbours = await self._repo.get_neighbors(
            session, list(names), per_entity=NEIGHBORS_PER_DIRECTION
        )
        for neighbour in neighbours:
            names.setdefault(neighbour.id, neighbour.name)

        relationships = await self._repo.get_relationships_among(session, list(names))
        lines: list[str] = []
        for rel in relationships:
            line = (
                f"{names[rel.source_entity_id]} --[{rel.relation_type}]--> "
                f"{names[rel.target_entity_id]}"
            )
            if line not in lines:
                lines.append(line)

        if not lines:
            return ""
        return "Knowledge Graph Context:\n" + "\n".join(lines)


def augment_query(query: str, focus: Focus | None) -> str:
    """Append the focus name and a short description to the search query."""
    snippet_chars = settings.FOCUS_SNIPPET_CHARS
    match focus:
        case EntityFocus(name=name, description=description):
            extra = f"{name} {(description or '')[:snippet_chars]}"
        case DocumentFocus(title=title, summary=summary):
            extra = f"{title} {(summary or '')[:snippet_chars]}"
        case _:
            return query
    return f"{query} {extra.strip()}"
