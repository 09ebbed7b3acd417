"""
Chat API Schemas

Pydantic models for chat turns, thread management and the streamed
chat events. JSON field names are camelCase.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.schemas import (
    DocumentScope,
    EntityScope,
    GeneralScope,
    ThreadCategory,
    ThreadScope,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class ChatMessageIn(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1, max_length=20000)


def last_user_message(messages: Sequence[ChatMessageIn]) -> str:
    """
    Content of the most recent user message.

    Raises:
        ValueError: If no message has the ``user`` role.
    """
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    raise ValueError("messages must contain at least one user message")


class ChatRequest(CamelModel):
    """Request body for one chat turn."""

    messages: list[ChatMessageIn] = Field(..., min_length=1)
    thread_id: UUID | None = Field(default=None, alias="threadId")

    @model_validator(mode="after")
    def _require_user_message(self) -> ChatRequest:
        last_user_message(self.messages)
        return self


class ThreadCreateRequest(CamelModel):
    """
    Request body for creating a scoped thread.

    ``entity`` threads need ``entityId``, ``document`` threads need
    ``documentId``, ``general`` threads take neither.
    """

    category: ThreadCategory
    entity_id: UUID | None = Field(default=None, alias="entityId")
    document_id: UUID | None = Field(default=None, alias="documentId")
    title: str | None = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _check_scope(self) -> ThreadCreateRequest:
        match self.category:
            case ThreadCategory.ENTITY:
                if self.entity_id is None:
                    raise ValueError("entityId is required for entity chats")
                if self.document_id is not None:
                    raise ValueError("documentId is not allowed for entity chats")
            case ThreadCategory.DOCUMENT:
                if self.document_id is None:
                    raise ValueError("documentId is required for document chats")
                if self.entity_id is not None:
                    raise ValueError("entityId is not allowed for document chats")
            case ThreadCategory.GENERAL:
                if self.entity_id is not None or self.document_id is not None:
                    raise ValueError("general chats cannot reference an entity or document")
        return self

    def to_scope(self) -> ThreadScope:
        if self.entity_id is not None:
            return EntityScope(entity_id=self.entity_id)
        if self.document_id is not None:
            return DocumentScope(document_id=self.document_id)
        return GeneralScope()


class ThreadResponse(CamelModel):
    id: UUID
    title: str
    category: ThreadCategory
    entity_id: UUID | None = Field(default=None, serialization_alias="entityId")
    document_id: UUID | None = Field(default=None, serialization_alias="documentId")
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")
    last_message_at: datetime = Field(serialization_alias="lastMessageAt")


class MessageResponse(CamelModel):
    id: UUID
    role: str
    content: str
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias="message_metadata",
    )
    created_at: datetime = Field(serialization_alias="createdAt")


class ThreadDetailResponse(BaseModel):
    thread: ThreadResponse
    messages: list[MessageResponse]


class ChatEventType(StrEnum):
    METADATA = "metadata"
    DELTA = "delta"
    FINISH = "finish"
    ERROR = "error"


class ChatEvent(BaseModel):
    """One line of the streamed chat response."""

    event: ChatEventType
    data: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {"event": self.event.value, **self.data}
