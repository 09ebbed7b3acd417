"""Models package — Pydantic schemas and SQLAlchemy ORM for the knowledge store."""

from app.models.base import Base, TimestampMixin
from app.models.orm import (
    EMBEDDING_DIMENSION,
    ChatMessageRecord,
    ChatThreadRecord,
    ChunkRecord,
    DocumentRecord,
    EntityMentionRecord,
    EntityRecord,
    RelationshipRecord,
)
from app.models.schemas import (
    ContentKind,
    DocumentScope,
    EntityScope,
    ExtractedEntity,
    ExtractedRelationship,
    ExtractionResult,
    GeneralScope,
    NormalizedContent,
    ProcessingStatus,
    ResolvedRelationship,
    TextChunk,
    ThreadCategory,
    ThreadScope,
)

__all__ = [
    # Pydantic schemas / value types (pipeline)
    "ContentKind",
    "DocumentScope",
    "EntityScope",
    "ExtractedEntity",
    "ExtractedRelationship",
    "ExtractionResult",
    "GeneralScope",
    "NormalizedContent",
    "ProcessingStatus",
    "ResolvedRelationship",
    "TextChunk",
    "ThreadCategory",
    "ThreadScope",
    # SQLAlchemy ORM (persistence layer)
    "Base",
    "TimestampMixin",
    "ChatMessageRecord",
    "ChatThreadRecord",
    "ChunkRecord",
    "DocumentRecord",
    "EntityMentionRecord",
    "EntityRecord",
    "RelationshipRecord",
    "EMBEDDING_DIMENSION",
]
