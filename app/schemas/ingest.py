"""
Ingestion API Schemas

Request bodies for ``POST /api/v1/ingest`` and the progress events it
streams back (one JSON object per line).
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class UrlIngestRequest(BaseModel):
    """Ingest a web page or video by URL."""

    type: Literal["url"]
    url: str = Field(..., min_length=1, max_length=2048, description="Page URL")


class TextIngestRequest(BaseModel):
    """Ingest a free-form note."""

    type: Literal["text"]
    title: str = Field(..., min_length=1, max_length=500, description="Note title")
    content: str = Field(..., min_length=1, description="Note body")


IngestRequest = UrlIngestRequest | TextIngestRequest


class IngestStep(StrEnum):
    FETCHING = "fetching"
    SAVING = "saving"
    CHUNKING = "chunking"
    SUMMARIZING = "summarizing"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    COMPLETE = "complete"
    DONE = "done"
    ERROR = "error"


class IngestEvent(BaseModel):
    """
    One progress record of an ingestion run.

    ``document_id`` is only set on the terminal ``done`` event and is
    serialized as ``documentId``.
    """

    model_config = ConfigDict(populate_by_name=True)

    step: IngestStep
    message: str = ""
    progress: int = Field(default=0, ge=0, le=100)
    error: bool = False
    document_id: UUID | None = Field(default=None, alias="documentId")

    @property
    def terminal(self) -> bool:
        return self.step in (IngestStep.DONE, IngestStep.ERROR)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
