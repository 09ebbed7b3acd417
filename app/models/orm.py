"""
LATTICE Database Models

SQLAlchemy 2.0 ORM models for the knowledge store.
Uses pgvector for similarity search on chunk and entity embeddings.

Tables:
    documents        — Ingested units of content (article, video, note).
    chunks           — Ordered document segments with optional embeddings.
    entities         — Knowledge graph nodes, unique per (name, type).
    relationships    — Directed, typed edges sourced from a document.
    entity_mentions  — Entity ↔ document (and chunk) bridge.
    chat_threads     — Conversations, optionally scoped to an entity/document.
    chat_messages    — Thread messages with provenance metadata.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.config import settings
from app.models.base import Base, TimestampMixin
from app.models.schemas import ProcessingStatus, ThreadScope, scope_from_columns

EMBEDDING_DIMENSION: int = settings.EMBEDDING_DIMENSION


class DocumentRecord(Base, TimestampMixin):
    """
    Persistent storage for ingested documents.

    ``content`` always holds the full normalized text, even when only a
    prefix of it was sent to the summarizer and extractor.
    """

    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    url: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ProcessingStatus.PROCESSING.value,
        index=True,
    )

    # Deletes rely on the ON DELETE CASCADE foreign keys
    chunks: Mapped[list[ChunkRecord]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChunkRecord.chunk_index",
    )

    def __repr__(self) -> str:
        return f"<DocumentRecord(id={self.id!s:.8}, title='{self.title[:30]}')>"


class ChunkRecord(Base):
    """
    A segment of a document, the atomic unit of retrieval.

    ``embedding`` stays NULL when the embedding stage failed for this chunk;
    such chunks are still reachable through lexical search.
    """

    __tablename__ = "chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_document_index"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(EMBEDDING_DIMENSION),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    document: Mapped[DocumentRecord] = relationship(back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<ChunkRecord(id={self.id!s:.8}, "
            f"doc={self.document_id!s:.8}, idx={self.chunk_index})>"
        )


class EntityRecord(Base, TimestampMixin):
    """Knowledge graph node. At most one row per (name, type)."""

    __tablename__ = "entities"
    __table_args__ = (
        UniqueConstraint("name", "type", name="uq_entities_name_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(EMBEDDING_DIMENSION),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<EntityRecord(id={self.id!s:.8}, {self.name}:{self.type})>"


class RelationshipRecord(Base):
    """Directed edge ``source --[relation_type]--> target``."""

    __tablename__ = "relationships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source_entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target_entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    relation_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    source_document_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class EntityMentionRecord(Base):
    """Evidence that an entity appeared in a document (optionally a chunk)."""

    __tablename__ = "entity_mentions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chunk_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("chunks.id", ondelete="CASCADE"),
        nullable=True,
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class ChatThreadRecord(Base, TimestampMixin):
    """
    A conversation. Its scope is fixed at creation.

    The flattened (category, entity_id, document_id) columns are guarded by a
    check constraint; code reads them through :attr:`scope`.
    """

    __tablename__ = "chat_threads"
    __table_args__ = (
        CheckConstraint(
            "(category = 'general' AND entity_id IS NULL AND document_id IS NULL)"
            " OR (category = 'entity' AND entity_id IS NOT NULL AND document_id IS NULL)"
            " OR (category = 'document' AND document_id IS NOT NULL AND entity_id IS NULL)",
            name="ck_chat_threads_scope",
        ),
        Index("ix_chat_threads_last_message_at", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=True,
    )
    document_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=True,
    )
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    @property
    def scope(self) -> ThreadScope:
        return scope_from_columns(self.category, self.entity_id, self.document_id)


class ChatMessageRecord(Base):
    """One message in a thread; assistant messages carry provenance."""

    __tablename__ = "chat_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    thread_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("chat_threads.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
