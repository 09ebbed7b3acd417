"""
Knowledge Repository

Data access layer for documents, chunks and the knowledge graph.
Covers the ingestion writes, the retrieval reads (pgvector cosine search,
PostgreSQL full-text search, graph neighbourhoods) and the graph views.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime
from typing import Any, NamedTuple

from sqlalchemy import String, and_, func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.orm import (
    ChunkRecord,
    DocumentRecord,
    EntityMentionRecord,
    EntityRecord,
    RelationshipRecord,
)
from app.models.schemas import (
    ExtractedEntity,
    NormalizedContent,
    ProcessingStatus,
    ResolvedRelationship,
    TextChunk,
)
from app.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

# Full-text configuration used by both the query and the GIN index
TEXT_SEARCH_CONFIG: str = "english"
WORD_PATTERN = re.compile(r"\w+")


class ChunkHit(NamedTuple):
    """A scored chunk candidate returned by one retrieval signal."""

    chunk_id: uuid.UUID
    document_id: uuid.UUID
    document_title: str
    content: str
    chunk_index: int
    score: float


class ConnectedEntity(NamedTuple):
    """A direct graph neighbour of an entity."""

    entity: EntityRecord
    relation_type: str
    direction: str  # "outgoing" | "incoming"


class KnowledgeRepository(BaseRepository[DocumentRecord]):
    """
    Repository for the knowledge store.

    All methods expect an externally managed ``AsyncSession``. Write
    methods commit, so each pipeline stage is durable on its own.

    Key guarantees:
        - ``get_or_create_entity``: conflict-tolerant insert on the
          (name, type) unique constraint; concurrent ingestions resolve to
          the same row.
        - ``search_chunks_by_vector``: cosine similarity, highest first.
        - ``search_chunks_by_text``: ``ts_rank_cd`` normalized to [0, 1).
    """

    def __init__(self) -> None:
        super().__init__(DocumentRecord)

    # ------------------------------------------------------------------
    # Document writes
    # ------------------------------------------------------------------

    async def create_document(
        self,
        session: AsyncSession,
        content: NormalizedContent,
    ) -> DocumentRecord:
        """Insert a document in ``processing`` state."""
        document = DocumentRecord(
            id=uuid.uuid4(),
            url=content.url,
            title=content.title,
            kind=content.kind.value,
            content=content.content,
            processing_status=ProcessingStatus.PROCESSING.value,
        )
        session.add(document)
        await session.commit()
        await session.refresh(document)
        logger.info("Created document %s ('%s')", document.id, document.title[:50])
        return document

    async def update_document_summary(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
        summary: str,
    ) -> None:
        stmt = (
            update(DocumentRecord)
            .where(DocumentRecord.id == document_id)
            .values(summary=summary)
        )
        await session.execute(stmt)
        await session.commit()

    async def set_document_status(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
        status: ProcessingStatus,
    ) -> None:
        stmt = (
            update(DocumentRecord)
            .where(DocumentRecord.id == document_id)
            .values(processing_status=status.value)
        )
        await session.execute(stmt)
        await session.commit()

    async def mark_stale_documents_failed(
        self,
        session: AsyncSession,
        older_than: datetime,
    ) -> int:
        """
        Flip documents stuck in ``processing`` since before ``older_than``
        to ``failed``.

        Returns:
            Number of documents updated.
        """
        stmt = (
            update(DocumentRecord)
            .where(
                DocumentRecord.processing_status == ProcessingStatus.PROCESSING.value,
                DocumentRecord.updated_at < older_than,
            )
            .values(processing_status=ProcessingStatus.FAILED.value)
        )
        result = await session.execute(stmt)
        await session.commit()
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Chunk writes / reads
    # ------------------------------------------------------------------

    async def save_chunks(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
        chunks: Sequence[TextChunk],
        embeddings: Sequence[list[float] | None],
    ) -> list[ChunkRecord]:
        """
        Persist all chunks of a document in one transaction.

        ``embeddings[i]`` belongs to ``chunks[i]``; ``None`` stores a NULL
        vector.
        """
        records = [
            ChunkRecord(
                id=uuid.uuid4(),
                document_id=document_id,
                chunk_index=chunk.index,
                content=chunk.content,
                token_count=chunk.token_count,
                embedding=embeddings[i],
            )
            for i, chunk in enumerate(chunks)
        ]
        session.add_all(records)
        await session.commit()
        return records

    async def get_chunks_by_document(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
    ) -> Sequence[ChunkRecord]:
        """Get all chunks for a document, ordered by index."""
        stmt = (
            select(ChunkRecord)
            .where(ChunkRecord.document_id == document_id)
            .order_by(ChunkRecord.chunk_index)
        )
        result = await session.execute(stmt)
        return result.scalars().all()

    async def count_chunks(self, session: AsyncSession, document_id: uuid.UUID) -> int:
        stmt = select(func.count(ChunkRecord.id)).where(
            ChunkRecord.document_id == document_id
        )
        return (await session.execute(stmt)).scalar_one()

    # ------------------------------------------------------------------
    # Entity / graph writes
    # ------------------------------------------------------------------

    async def find_entity(
        self,
        session: AsyncSession,
        name: str,
        entity_type: str,
    ) -> EntityRecord | None:
        """Exact (name, type) lookup."""
        stmt = select(EntityRecord).where(
            EntityRecord.name == name,
            EntityRecord.type == entity_type,
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def get_or_create_entity(
        self,
        session: AsyncSession,
        entity: ExtractedEntity,
        embedding: list[float] | None,
    ) -> tuple[EntityRecord, bool]:
        """
        Insert an entity unless (name, type) already exists.

        Returns:
            Tuple of (entity, created).
        """
        stmt = (
            pg_insert(EntityRecord)
            .values(
                id=uuid.uuid4(),
                name=entity.name,
                type=entity.type,
                description=entity.description,
                embedding=embedding,
            )
            .on_conflict_do_nothing(index_elements=["name", "type"])
            .returning(EntityRecord.id)
        )
        inserted_id = (await session.execute(stmt)).scalar_one_or_none()
        await session.commit()

        record = await self.find_entity(session, entity.name, entity.type)
        if record is None:  # pragma: no cover - row vanished between statements
            raise RuntimeError(f"Entity {entity.name}:{entity.type} not found after upsert")
        if inserted_id is None:
            logger.debug("Entity %s:%s created concurrently, reusing", entity.name, entity.type)
        return record, inserted_id is not None

    async def add_mentions(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
        mentions: Sequence[tuple[uuid.UUID, uuid.UUID | None]],
    ) -> int:
        """Insert one mention row per (entity_id, chunk_id) pair."""
        records = [
            EntityMentionRecord(
                id=uuid.uuid4(),
                entity_id=entity_id,
                document_id=document_id,
                chunk_id=chunk_id,
            )
            for entity_id, chunk_id in mentions
        ]
        session.add_all(records)
        await session.commit()
        return len(records)

    async def add_relationships(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
        relationships: Sequence[ResolvedRelationship],
    ) -> int:
        records = [
            RelationshipRecord(
                id=uuid.uuid4(),
                source_entity_id=rel.source_id,
                target_entity_id=rel.target_id,
                relation_type=rel.relation_type,
                description=rel.description,
                source_document_id=document_id,
            )
            for rel in relationships
        ]
        session.add_all(records)
        await session.commit()
        return len(records)

    # ------------------------------------------------------------------
    # Retrieval reads
    # ------------------------------------------------------------------

    async def search_chunks_by_vector(
        self,
        session: AsyncSession,
        query_embedding: list[float],
        limit: int = 10,
    ) -> list[ChunkHit]:
        """
        Search chunks by cosine similarity against a query vector.

        Uses pgvector's ``cosine_distance`` operator (HNSW index on
        ``chunks.embedding``); ``score = 1 - distance``.
        """
        distance = ChunkRecord.embedding.cosine_distance(query_embedding).label(
            "distance"
        )
        stmt = (
            select(
                ChunkRecord.id,
                ChunkRecord.document_id,
                DocumentRecord.title,
                ChunkRecord.content,
                ChunkRecord.chunk_index,
                distance,
            )
            .join(DocumentRecord, DocumentRecord.id == ChunkRecord.document_id)
            .where(ChunkRecord.embedding.isnot(None))
            .order_by(distance)
            .limit(limit)
        )
        rows = (await session.execute(stmt)).all()
        return [
            ChunkHit(row[0], row[1], row[2], row[3], row[4], round(1.0 - float(row[5]), 4))
            for row in rows
        ]

    async def search_chunks_by_text(
        self,
        session: AsyncSession,
        query: str,
        limit: int = 10,
    ) -> list[ChunkHit]:
        """
        Full-text search over chunk content.

        Normalization flag 32 makes ``ts_rank_cd`` return ``rank / (rank + 1)``
        so lexical scores share the [0, 1) range with cosine similarity.
        Query terms are OR-ed; ranking rewards chunks covering more of them.
        """
        terms = WORD_PATTERN.findall(query)
        if not terms:
            return []
        ts_query = func.websearch_to_tsquery(TEXT_SEARCH_CONFIG, " or ".join(terms))
        ts_vector = func.to_tsvector(TEXT_SEARCH_CONFIG, ChunkRecord.content)
        rank = func.ts_rank_cd(ts_vector, ts_query, 32).label("rank")
        stmt = (
            select(
                ChunkRecord.id,
                ChunkRecord.document_id,
                DocumentRecord.title,
                ChunkRecord.content,
                ChunkRecord.chunk_index,
                rank,
            )
            .join(DocumentRecord, DocumentRecord.id == ChunkRecord.document_id)
            .where(ts_vector.op("@@")(ts_query))
            .order_by(rank.desc())
            .limit(limit)
        )
        rows = (await session.execute(stmt)).all()
        return [
            ChunkHit(row[0], row[1], row[2], row[3], row[4], round(float(row[5]), 4))
            for row in rows
        ]

    async def match_entities_by_name(
        self,
        session: AsyncSession,
        text: str,
        limit: int = 10,
    ) -> Sequence[EntityRecord]:
        """Entities whose name occurs (case-insensitively) inside ``text``."""
        haystack = func.lower(literal(text, String))
        stmt = (
            select(EntityRecord)
            .where(
                func.length(EntityRecord.name) >= 2,
                func.strpos(haystack, func.lower(EntityRecord.name)) > 0,
            )
            .order_by(func.length(EntityRecord.name).desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return result.scalars().all()

    async def search_entities_by_vector(
        self,
        session: AsyncSession,
        query_embedding: list[float],
        limit: int = 10,
    ) -> list[tuple[EntityRecord, float]]:
        distance = EntityRecord.embedding.cosine_distance(query_embedding).label(
            "distance"
        )
        stmt = (
            select(EntityRecord, distance)
            .where(EntityRecord.embedding.isnot(None))
            .order_by(distance)
            .limit(limit)
        )
        rows = (await session.execute(stmt)).all()
        return [(row[0], round(1.0 - float(row[1]), 4)) for row in rows]

    async def get_entity(
        self,
        session: AsyncSession,
        entity_id: uuid.UUID,
    ) -> EntityRecord | None:
        stmt = select(EntityRecord).where(EntityRecord.id == entity_id)
        return (await session.execute(stmt)).scalars().first()

    async def get_neighbors(
        self,
        session: AsyncSession,
        entity_ids: Sequence[uuid.UUID],
        per_entity: int = 3,
    ) -> list[EntityRecord]:
        """
        Direct neighbours of ``entity_ids`` in both directions.

        At most ``per_entity`` neighbours are kept per seed and direction.
        Seeds themselves are never returned.
        """
        if not entity_ids:
            return []
        seeds = set(entity_ids)
        outgoing = await session.execute(
            select(RelationshipRecord.source_entity_id, EntityRecord)
            .join(EntityRecord, EntityRecord.id == RelationshipRecord.target_entity_id)
            .where(RelationshipRecord.source_entity_id.in_(seeds))
        )
        incoming = await session.execute(
            select(RelationshipRecord.target_entity_id, EntityRecord)
            .join(EntityRecord, EntityRecord.id == RelationshipRecord.source_entity_id)
            .where(RelationshipRecord.target_entity_id.in_(seeds))
        )

        neighbours: dict[uuid.UUID, EntityRecord] = {}
        for rows in (outgoing.all(), incoming.all()):
            taken: dict[uuid.UUID, int] = defaultdict(int)
            for seed_id, entity in rows:
                if entity.id in seeds or taken[seed_id] >= per_entity:
                    continue
                taken[seed_id] += 1
                neighbours.setdefault(entity.id, entity)
        return list(neighbours.values())

    async def get_relationships_among(
        self,
        session: AsyncSession,
        entity_ids: Sequence[uuid.UUID],
    ) -> Sequence[RelationshipRecord]:
        """Relationships whose both endpoints are in ``entity_ids``."""
        if not entity_ids:
            return []
        ids = list(entity_ids)
        stmt = select(RelationshipRecord).where(
            and_(
                RelationshipRecord.source_entity_id.in_(ids),
                RelationshipRecord.target_entity_id.in_(ids),
            )
        )
        return (await session.execute(stmt)).scalars().all()

    async def document_ids_mentioning(
        self,
        session: AsyncSession,
        entity_id: uuid.UUID,
    ) -> set[uuid.UUID]:
        stmt = (
            select(EntityMentionRecord.document_id)
            .where(EntityMentionRecord.entity_id == entity_id)
            .distinct()
        )
        return set((await session.execute(stmt)).scalars().all())

    async def count_mentions(self, session: AsyncSession, entity_id: uuid.UUID) -> int:
        """Mention rows of an entity; the same count ``get_graph`` reports."""
        stmt = select(func.count(EntityMentionRecord.id)).where(
            EntityMentionRecord.entity_id == entity_id
        )
        return (await session.execute(stmt)).scalar_one()

    async def entity_ids_in_document(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
    ) -> set[uuid.UUID]:
        stmt = (
            select(EntityMentionRecord.entity_id)
            .where(EntityMentionRecord.document_id == document_id)
            .distinct()
        )
        return set((await session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Graph views
    # ------------------------------------------------------------------

    async def get_graph(
        self,
        session: AsyncSession,
    ) -> tuple[list[tuple[EntityRecord, int]], Sequence[RelationshipRecord]]:
        """All entities with mention counts, and all relationships."""
        mention_count = (
            select(func.count(EntityMentionRecord.id))
            .where(EntityMentionRecord.entity_id == EntityRecord.id)
            .correlate(EntityRecord)
            .scalar_subquery()
            .label("mention_count")
        )
        rows = (await session.execute(select(EntityRecord, mention_count))).all()
        links = (await session.execute(select(RelationshipRecord))).scalars().all()
        return [(row[0], int(row[1] or 0)) for row in rows], links

    async def get_document_graph(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
    ) -> tuple[Sequence[EntityRecord], Sequence[RelationshipRecord]]:
        """Entities mentioned in a document and the edges strictly between them."""
        stmt = (
            select(EntityRecord)
            .join(EntityMentionRecord, EntityMentionRecord.entity_id == EntityRecord.id)
            .where(EntityMentionRecord.document_id == document_id)
            .distinct()
        )
        nodes = (await session.execute(stmt)).scalars().all()
        if not nodes:
            return [], []
        links = await self.get_relationships_among(session, [e.id for e in nodes])
        return nodes, links

    async def get_entity_documents(
        self,
        session: AsyncSession,
        entity_id: uuid.UUID,
    ) -> Sequence[DocumentRecord]:
        """Documents mentioning an entity, newest first."""
        mentioned = (
            select(EntityMentionRecord.document_id)
            .where(EntityMentionRecord.entity_id == entity_id)
            .scalar_subquery()
        )
        stmt = (
            select(DocumentRecord)
            .where(DocumentRecord.id.in_(mentioned))
            .order_by(DocumentRecord.created_at.desc())
        )
        return (await session.execute(stmt)).scalars().all()

    async def get_connected_entities(
        self,
        session: AsyncSession,
        entity_id: uuid.UUID,
    ) -> list[ConnectedEntity]:
        """Entities directly connected to ``entity_id`` in both directions."""
        outgoing = await session.execute(
            select(EntityRecord, RelationshipRecord.relation_type)
            .join(RelationshipRecord, EntityRecord.id == RelationshipRecord.target_entity_id)
            .where(RelationshipRecord.source_entity_id == entity_id)
        )
        incoming = await session.execute(
            select(EntityRecord, RelationshipRecord.relation_type)
            .join(RelationshipRecord, EntityRecord.id == RelationshipRecord.source_entity_id)
            .where(RelationshipRecord.target_entity_id == entity_id)
        )
        return [
            ConnectedEntity(entity, relation_type, "outgoing")
            for entity, relation_type in outgoing.all()
        ] + [
            ConnectedEntity(entity, relation_type, "incoming")
            for entity, relation_type in incoming.all()
        ]

    async def graph_stats(self, session: AsyncSession) -> dict[str, Any]:
        entity_count = (
            await session.execute(select(func.count(EntityRecord.id)))
        ).scalar_one()
        relationship_count = (
            await session.execute(select(func.count(RelationshipRecord.id)))
        ).scalar_one()
        distribution = (
            await session.execute(
                select(EntityRecord.type, func.count(EntityRecord.id)).group_by(
                    EntityRecord.type
                )
            )
        ).all()
        return {
            "entity_count": int(entity_count),
            "relationship_count": int(relationship_count),
            "type_distribution": {row[0]: int(row[1]) for row in distribution},
        }

    async def search_documents(
        self,
        session: AsyncSession,
        text: str,
        limit: int = 5,
    ) -> Sequence[DocumentRecord]:
        """Documents whose title or summary contains ``text``, newest first."""
        pattern = f"%{text.strip()}%"
        stmt = (
            select(DocumentRecord)
            .where(
                or_(
                    DocumentRecord.title.ilike(pattern),
                    DocumentRecord.summary.ilike(pattern),
                )
            )
            .order_by(DocumentRecord.created_at.desc())
            .limit(limit)
        )
        return (await session.execute(stmt)).scalars().all()

    async def search_entities(
        self,
        session: AsyncSession,
        text: str,
        limit: int = 5,
    ) -> Sequence[EntityRecord]:
        """Entities whose name or description contains ``text``."""
        pattern = f"%{text.strip()}%"
        stmt = (
            select(EntityRecord)
            .where(
                or_(
                    EntityRecord.name.ilike(pattern),
                    EntityRecord.description.ilike(pattern),
                )
            )
            .order_by(EntityRecord.name)
            .limit(limit)
        )
        return (await session.execute(stmt)).scalars().all()


# Module-level singleton for convenience imports
knowledge_repository = KnowledgeRepository()
