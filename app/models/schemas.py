"""
LATTICE Pipeline Schemas

Pydantic models and value types for data flowing through the
ingestion pipeline and the chat controller. These never touch the
database directly; repositories translate them to ORM records.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ContentKind(StrEnum):
    """What an ingested document originally was."""

    ARTICLE = "article"
    VIDEO = "video"
    NOTE = "note"


class ProcessingStatus(StrEnum):
    """Document lifecycle within the ingestion pipeline."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ThreadCategory(StrEnum):
    GENERAL = "general"
    ENTITY = "entity"
    DOCUMENT = "document"


class NormalizedContent(BaseModel):
    """Output of the content normalizer: what gets stored as a Document."""

    title: str = Field(min_length=1)
    content: str = Field(min_length=1, description="Plain-text body")
    kind: ContentKind
    url: str | None = None


class TextChunk(BaseModel):
    """
    A span of document text produced by the chunker.

    Attributes:
        index: Zero-based position; indices of one document are contiguous.
        content: Chunk text.
        token_count: Estimated token count for the span.
    """

    index: int = Field(ge=0)
    content: str = Field(min_length=1)
    token_count: int = Field(ge=0)


class ExtractedEntity(BaseModel):
    """An entity as returned by the extractor, before resolution."""

    name: str = Field(min_length=1, description="The name of the entity")
    type: str = Field(
        min_length=1,
        description="Category such as person, organization, concept, technology",
    )
    description: str | None = Field(
        default=None,
        description="A brief description of the entity",
    )

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return value.strip().lower()


class ExtractedRelationship(BaseModel):
    """A directed edge between two extracted entity names."""

    source: str = Field(description="The source entity name")
    target: str = Field(description="The target entity name")
    type: str = Field(description="The type of relationship, e.g. works_at")
    description: str | None = Field(
        default=None,
        description="A brief description of the relationship",
    )


class ExtractionResult(BaseModel):
    """Structured output of the entity/relationship extractor."""

    entities: list[ExtractedEntity] = Field(default_factory=list)
    relationships: list[ExtractedRelationship] = Field(default_factory=list)


@dataclass(frozen=True)
class ResolvedRelationship:
    """Relationship whose endpoints have been resolved to entity ids."""

    source_id: UUID
    target_id: UUID
    relation_type: str
    description: str | None = None


# ---------------------------------------------------------------------------
# Chat thread scope (closed tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GeneralScope:
    """Thread not bound to anything in the knowledge base."""

    category: ClassVar[ThreadCategory] = ThreadCategory.GENERAL


@dataclass(frozen=True)
class EntityScope:
    """Thread bound to one Entity."""

    entity_id: UUID
    category: ClassVar[ThreadCategory] = ThreadCategory.ENTITY


@dataclass(frozen=True)
class DocumentScope:
    """Thread bound to one Document."""

    document_id: UUID
    category: ClassVar[ThreadCategory] = ThreadCategory.DOCUMENT


ThreadScope = GeneralScope | EntityScope | DocumentScope


def scope_from_columns(
    category: str,
    entity_id: UUID | None,
    document_id: UUID | None,
) -> ThreadScope:
    """
    Rebuild a ThreadScope from its flattened storage columns.

    Raises:
        ValueError: If the columns violate the scope invariants.
    """
    match ThreadCategory(category):
        case ThreadCategory.GENERAL if entity_id is None and document_id is None:
            return GeneralScope()
        case ThreadCategory.ENTITY if entity_id is not None and document_id is None:
            return EntityScope(entity_id=entity_id)
        case ThreadCategory.DOCUMENT if document_id is not None and entity_id is None:
            return DocumentScope(document_id=document_id)
    raise ValueError(
        f"Inconsistent thread scope: category={category!r}, "
        f"entity_id={entity_id}, document_id={document_id}"
    )
