"""
Chunking Service

Splits document text into ordered chunks suitable for embedding and
retrieval. Uses LangChain's RecursiveCharacterTextSplitter, preferring
paragraph > line > sentence > clause > word boundaries.

Defaults (1000 chars, 100 overlap) fit comfortably within the context
window of nomic-embed-text. Token counts are estimated at ~4 chars/token.
"""

from __future__ import annotations

import logging
import math

from langchain_text_splitters import RecursiveCharacterTextSplitter

from app.core.config import settings
from app.models.schemas import TextChunk

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE: int = 1000
DEFAULT_CHUNK_OVERLAP: int = 100
SEPARATORS: list[str] = ["\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " ", ""]
CHARS_PER_TOKEN: int = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TextChunker:
    """
    Splits text into overlapping, contiguously indexed chunks.

    Usage::

        chunker = TextChunker()
        chunks = chunker.split(document_text)
        # chunks[i].index == i

    Args:
        chunk_size: Maximum characters per chunk.
        chunk_overlap: Characters shared between consecutive chunks.
    """

    def __init__(
        self,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
    ) -> None:
        chunk_size = chunk_size or settings.CHUNK_SIZE
        chunk_overlap = settings.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        if chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap ({chunk_overlap}) must be less than "
                f"chunk_size ({chunk_size})"
            )

        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            length_function=len,
            separators=SEPARATORS,
        )
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap

    @property
    def chunk_size(self) -> int:
        """Maximum characters per chunk."""
        return self._chunk_size

    @property
    def chunk_overlap(self) -> int:
        """Characters shared between consecutive chunks."""
        return self._chunk_overlap

    def split(self, text: str) -> list[TextChunk]:
        """
        Split text into chunks.

        Returns:
            Chunks with indices 0..n-1 in text order. Empty or
            whitespace-only text yields an empty list.
        """
        pieces = [p for p in self._splitter.split_text(text) if p.strip()]
        chunks = [
            TextChunk(index=i, content=piece, token_count=estimate_tokens(piece))
            for i, piece in enumerate(pieces)
        ]

        logger.info(
            "Split text into %d chunks (size=%d, overlap=%d)",
            len(chunks),
            self._chunk_size,
            self._chunk_overlap,
        )
        return chunks
