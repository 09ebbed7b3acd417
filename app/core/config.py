"""
LATTICE Configuration

Centralized settings for the knowledge base service.
All values are loaded from environment variables or a ``.env`` file
with sensible defaults for a local Docker + Ollama setup.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable binding.

    Groups:
        Database: POSTGRES_* connection parts (asyncpg driver).
        Ollama: chat / summarization / extraction model.
        Embeddings: provider selection, model, batching.
        Enrichment: content cap, per-call timeout, retry budget.
        Retrieval: result budget and signal weights.
    """

    PROJECT_NAME: str = "LATTICE Knowledge Base"

    # Database
    POSTGRES_USER: str = "lattice"
    POSTGRES_PASSWORD: str = "lattice_password"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "lattice_db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Ollama (generation)
    OLLAMA_BASE_URL: str = "http://host.docker.internal:11434"
    OLLAMA_MODEL: str = "llama3.2"
    OLLAMA_TIMEOUT: float = 60.0

    # Embeddings: "openai" talks to any OpenAI-compatible endpoint
    # (Ollama serves one under /v1), "local" runs sentence-transformers.
    EMBEDDING_PROVIDER: str = "openai"
    EMBEDDING_MODEL: str = "nomic-embed-text"
    EMBEDDING_BASE_URL: str = "http://host.docker.internal:11434/v1"
    EMBEDDING_API_KEY: str = "ollama"
    EMBEDDING_DIMENSION: int = 768
    EMBEDDING_BATCH_SIZE: int = 10
    EMBEDDING_MAX_CONCURRENCY: int = 1

    # Enrichment
    ENRICHMENT_CHAR_LIMIT: int = 8000
    ENRICHMENT_TIMEOUT: float = 120.0
    ENRICHMENT_MAX_RETRIES: int = 1
    ENRICHMENT_RETRY_DELAY: float = 2.0

    # Chunking
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 100

    # Retrieval
    RETRIEVAL_LIMIT: int = 3
    VECTOR_WEIGHT: float = 0.7
    LEXICAL_WEIGHT: float = 0.3
    FOCUS_SNIPPET_CHARS: int = 200

    # Content fetching
    FETCH_TIMEOUT: float = 20.0

    # Documents still "processing" after this long are swept to "failed"
    STALE_PROCESSING_MINUTES: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",  # Silently ignore unknown env vars
    )

    @property
    def DATABASE_URL(self) -> str:
        """Async PostgreSQL connection string using asyncpg driver."""
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


settings = Settings()
