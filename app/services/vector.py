"""
Vector Embedding Service

Embedding generation for chunks, entities and queries.

Providers (``EMBEDDING_PROVIDER``):
    - ``openai``: any OpenAI-compatible ``/v1/embeddings`` endpoint via the
      ``openai`` SDK. The default points at Ollama serving nomic-embed-text.
    - ``local``: an in-process sentence-transformers model.

Design choices:
    - Singleton pattern: client/model created once, reused across requests.
    - Lazy loading: nothing is constructed until the first embed call.
    - asyncio.to_thread: local inference is CPU-bound and must not
      block the FastAPI event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, ClassVar

from openai import AsyncOpenAI

from app.core.config import settings

logger = logging.getLogger(__name__)


class EmbeddingDimensionError(RuntimeError):
    """The provider returned vectors of an unexpected size."""


class VectorService:
    """
    Async embedding service.

    Errors from the provider propagate; callers wrap calls in
    ``app.services.enrichment.attempt`` to degrade gracefully.

    Usage::

        vectors = await VectorService.embed_texts(["hello", "world"])
        assert len(vectors) == 2
        assert len(vectors[0]) == settings.EMBEDDING_DIMENSION
    """

    _model: ClassVar[Any] = None
    _client: ClassVar[AsyncOpenAI | None] = None

    @classmethod
    def provider(cls) -> str:
        return settings.EMBEDDING_PROVIDER.lower()

    @classmethod
    def _get_model(cls) -> Any:
        """
        Get or lazily initialize the sentence-transformers model.

        The import is deferred so that ``sentence_transformers`` is not
        required at module-import time (keeps test collection fast).
        """
        if cls._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model: %s ...", settings.EMBEDDING_MODEL)
            cls._model = SentenceTransformer(settings.EMBEDDING_MODEL)
            logger.info("Model loaded (dim=%d)", settings.EMBEDDING_DIMENSION)
        return cls._model

    @classmethod
    def _get_client(cls) -> AsyncOpenAI:
        if cls._client is None:
            cls._client = AsyncOpenAI(
                base_url=settings.EMBEDDING_BASE_URL,
                api_key=settings.EMBEDDING_API_KEY,
            )
            logger.info(
                "Embedding client created (%s, model=%s)",
                settings.EMBEDDING_BASE_URL,
                settings.EMBEDDING_MODEL,
            )
        return cls._client

    @classmethod
    def _encode_sync(cls, texts: list[str]) -> list[list[float]]:
        """
        Synchronous batch encoding with the local model.

        Always call via ``asyncio.to_thread``.
        """
        model = cls._get_model()
        embeddings = model.encode(texts, normalize_embeddings=True)
        # numpy ndarray → native Python lists for pgvector compatibility
        result: list[list[float]] = embeddings.tolist()
        return result

    @classmethod
    async def _encode_remote(cls, texts: list[str]) -> list[list[float]]:
        client = cls._get_client()
        response = await client.embeddings.create(
            input=[t.replace("\n", " ") for t in texts],
            model=settings.EMBEDDING_MODEL,
        )
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    @classmethod
    async def embed_texts(cls, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for a batch of texts.

        Returns:
            One vector per input text, in input order.

        Raises:
            EmbeddingDimensionError: If the provider's vector size does not
                match ``EMBEDDING_DIMENSION``.
        """
        if not texts:
            return []
        if cls.provider() == "local":
            vectors = await asyncio.to_thread(cls._encode_sync, texts)
        else:
            vectors = await cls._encode_remote(texts)

        if len(vectors) != len(texts):
            raise EmbeddingDimensionError(
                f"Expected {len(texts)} vectors, got {len(vectors)}"
            )
        for vector in vectors:
            if len(vector) != settings.EMBEDDING_DIMENSION:
                raise EmbeddingDimensionError(
                    f"Expected dimension {settings.EMBEDDING_DIMENSION}, "
                    f"got {len(vector)}"
                )
        return vectors

    @classmethod
    async def embed_query(cls, query: str) -> list[float]:
        """Generate a single embedding for a search query."""
        results = await cls.embed_texts([query])
        return results[0]

    @classmethod
    def reset(cls) -> None:
        """
        Release the model and client.

        Useful for testing or when switching models at runtime.
        """
        cls._model = None
        cls._client = None
        logger.info("VectorService released")
