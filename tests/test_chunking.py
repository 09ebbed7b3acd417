"""
Chunking Service Unit Tests

Verifies TextChunker behaviour: splitting logic, contiguous indices,
overlap handling, token estimates and edge cases.

No external services required — runs entirely offline.
"""

from __future__ import annotations

import pytest

from app.models.schemas import TextChunk
from app.services.chunking import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    TextChunker,
    estimate_tokens,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def chunker() -> TextChunker:
    """Default TextChunker instance."""
    return TextChunker()


@pytest.fixture
def small_chunker() -> TextChunker:
    """TextChunker with small settings for deterministic testing."""
    return TextChunker(chunk_size=50, chunk_overlap=10)


@pytest.fixture
def long_text() -> str:
    """Text long enough to require multiple chunks at default settings."""
    # ~4400 chars → several chunks at 1000/100
    paragraphs = [
        f"Paragraph {i}. " + "This is filler text for testing purposes. " * 14
        for i in range(7)
    ]
    return "\n\n".join(paragraphs)


# ---------------------------------------------------------------------------
# Basic splitting
# ---------------------------------------------------------------------------


class TestBasicSplitting:
    """Tests for core splitting functionality."""

    def test_long_text_produces_multiple_chunks(
        self, chunker: TextChunker, long_text: str
    ) -> None:
        chunks = chunker.split(long_text)

        assert len(chunks) > 1
        assert all(isinstance(c, TextChunk) for c in chunks)

    def test_short_text_produces_single_chunk(self, chunker: TextChunker) -> None:
        text = "Short content that fits in one chunk."

        chunks = chunker.split(text)

        assert len(chunks) == 1
        assert chunks[0].content == text

    def test_all_content_preserved(self, chunker: TextChunker, long_text: str) -> None:
        """Every paragraph start must land in at least one chunk."""
        chunks = chunker.split(long_text)

        for paragraph in long_text.split("\n\n"):
            trimmed = paragraph.strip()
            found = any(trimmed[:40] in c.content for c in chunks)
            assert found, f"Content lost: {trimmed[:40]}..."


# ---------------------------------------------------------------------------
# Indices and token counts
# ---------------------------------------------------------------------------


class TestChunkMetadata:
    """Tests for chunk indices and token estimates."""

    def test_indices_are_contiguous(self, chunker: TextChunker, long_text: str) -> None:
        chunks = chunker.split(long_text)

        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_token_count_estimate(self, chunker: TextChunker, long_text: str) -> None:
        for chunk in chunker.split(long_text):
            assert chunk.token_count == estimate_tokens(chunk.content)

    def test_estimate_tokens_rounds_up(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


# ---------------------------------------------------------------------------
# Chunk size and overlap
# ---------------------------------------------------------------------------


class TestChunkSizing:
    """Tests for chunk size limits and overlap behaviour."""

    def test_chunks_respect_max_size(self, chunker: TextChunker, long_text: str) -> None:
        for chunk in chunker.split(long_text):
            assert len(chunk.content) <= chunker.chunk_size

    def test_custom_chunk_size(self, long_text: str) -> None:
        chunks = TextChunker(chunk_size=200, chunk_overlap=50).split(long_text)

        # Smaller chunks → more splits
        assert len(chunks) > 10

    def test_overlap_creates_shared_content(self, small_chunker: TextChunker) -> None:
        """Consecutive chunks should share some words when overlap > 0."""
        content = " ".join(f"word{i}" for i in range(50))

        chunks = small_chunker.split(content)

        assert len(chunks) >= 2
        for i in range(len(chunks) - 1):
            tail = chunks[i].content[-small_chunker.chunk_overlap :]
            head = chunks[i + 1].content[: small_chunker.chunk_overlap]
            shared = set(tail.split()) & set(head.split())
            assert shared, f"No overlap found between chunks {i} and {i + 1}"

    def test_default_config_values(self) -> None:
        assert DEFAULT_CHUNK_SIZE == 1000
        assert DEFAULT_CHUNK_OVERLAP == 100

    def test_properties_match_config(self) -> None:
        chunker = TextChunker(chunk_size=300, chunk_overlap=75)
        assert chunker.chunk_size == 300
        assert chunker.chunk_overlap == 75

    def test_zero_overlap_allowed(self) -> None:
        assert TextChunker(chunk_size=100, chunk_overlap=0).chunk_overlap == 0


# ---------------------------------------------------------------------------
# Edge cases and validation
# ---------------------------------------------------------------------------


class TestEdgeCases:
    """Tests for boundary conditions and error handling."""

    def test_single_character_content(self, chunker: TextChunker) -> None:
        chunks = chunker.split("X")

        assert len(chunks) == 1
        assert chunks[0].content == "X"

    def test_empty_and_blank_text(self, chunker: TextChunker) -> None:
        assert chunker.split("") == []
        assert chunker.split("   \n\n  ") == []

    def test_whitespace_heavy_content(self, chunker: TextChunker) -> None:
        chunks = chunker.split("Hello\n\n\n\n\nWorld")

        combined = " ".join(c.content for c in chunks)
        assert "Hello" in combined
        assert "World" in combined

    def test_overlap_must_be_less_than_size(self) -> None:
        with pytest.raises(ValueError, match="chunk_overlap"):
            TextChunker(chunk_size=100, chunk_overlap=100)

    def test_overlap_greater_than_size_raises(self) -> None:
        with pytest.raises(ValueError, match="chunk_overlap"):
            TextChunker(chunk_size=100, chunk_overlap=200)
