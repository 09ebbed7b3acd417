"""
Ingestion Pipeline

Orchestrates one ingestion run: normalize → save document → chunk →
summarize + extract (concurrently) → embed chunks → save chunks →
resolve entities → save mentions and relationships → mark completed.

Progress is reported through an ``EventChannel`` consumed by the HTTP
layer. The run itself lives in a background task with its own database
session, so a client that disconnects mid-stream never interrupts it.

Failure policy:
    - Normalization failure: terminal ``error`` event, nothing written.
    - Enrichment failure (summary, extraction, embeddings): logged,
      reported as a normal progress event, the run continues.
    - Storage failure: terminal ``error`` event and a best-effort write
      of status ``failed``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import get_session_factory
from app.models.orm import ChunkRecord
from app.models.schemas import (
    ExtractedEntity,
    ExtractedRelationship,
    ExtractionResult,
    NormalizedContent,
    ProcessingStatus,
    ResolvedRelationship,
    TextChunk,
)
from app.repositories.knowledge import KnowledgeRepository
from app.schemas.ingest import (
    IngestEvent,
    IngestStep,
    TextIngestRequest,
    UrlIngestRequest,
)
from app.services.chunking import TextChunker
from app.services.content import ContentExtractionError, ContentNormalizer
from app.services.enrichment import Enrichment, attempt
from app.services.llm import LLMService
from app.services.streaming import EventChannel, spawn
from app.services.vector import VectorService

logger = logging.getLogger(__name__)

# Progress band reserved for chunk embedding
EMBED_PROGRESS_START: int = 65
EMBED_PROGRESS_SPAN: int = 15


def entity_embedding_text(entity: ExtractedEntity) -> str:
    return f"{entity.name}: {entity.description}" if entity.description else entity.name


@dataclass
class IngestionRun:
    """Handle on a running ingestion: its event stream and its task."""

    channel: EventChannel[IngestEvent] = field(default_factory=EventChannel)
    task: asyncio.Task[None] | None = None
    document_id: uuid.UUID | None = None

    def events(self) -> AsyncIterator[IngestEvent]:
        return aiter(self.channel)

    def emit(
        self,
        step: IngestStep,
        message: str,
        progress: int,
        **extra: Any,
    ) -> None:
        self.channel.send(
            IngestEvent(step=step, message=message, progress=progress, **extra)
        )

    def fail(self, message: str) -> None:
        self.channel.send(
            IngestEvent(step=IngestStep.ERROR, message=message, progress=0, error=True)
        )


class IngestionPipeline:
    """
    Ingestion orchestrator.

    Collaborators are injected so tests can substitute in-memory fakes.

    Usage::

        pipeline = IngestionPipeline()
        run = pipeline.start(TextIngestRequest(type="text", title="T", content="..."))
        async for event in run.events():
            print(event.step, event.progress, event.message)
    """

    def __init__(
        self,
        repository: KnowledgeRepository | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        normalizer: ContentNormalizer | None = None,
        chunker: TextChunker | None = None,
        llm: LLMService | None = None,
        embedder: Any = None,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
        char_limit: int | None = None,
    ) -> None:
        self._repo = repository or KnowledgeRepository()
        self._session_factory = session_factory
        self._normalizer = normalizer or ContentNormalizer()
        self._chunker = chunker or TextChunker()
        self._llm = llm or LLMService()
        self._embedder = embedder or VectorService
        self._batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self._max_concurrency = max(1, max_concurrency or settings.EMBEDDING_MAX_CONCURRENCY)
        self._char_limit = char_limit or settings.ENRICHMENT_CHAR_LIMIT

    def _open_session(self) -> AsyncSession:
        factory = self._session_factory or get_session_factory()
        return factory()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, request: UrlIngestRequest | TextIngestRequest) -> IngestionRun:
        """Launch a run in the background and return its handle."""
        run = IngestionRun()
        run.task = spawn(self._run(request, run), name="ingest")
        return run

    async def ingest(
        self, request: UrlIngestRequest | TextIngestRequest
    ) -> list[IngestEvent]:
        """Run to completion and return every emitted event."""
        run = self.start(request)
        return [event async for event in run.events()]

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run(
        self,
        request: UrlIngestRequest | TextIngestRequest,
        run: IngestionRun,
    ) -> None:
        try:
            run.emit(IngestStep.FETCHING, "Fetching content...", 5)
            try:
                content = await self._normalize(request, run)
            except ContentExtractionError as e:
                logger.warning("Ingestion rejected: %s", e)
                run.fail(str(e))
                return

            run.emit(
                IngestStep.FETCHING,
                f'Content extracted: "{content.title[:50]}"',
                15,
            )

            try:
                async with self._open_session() as session:
                    await self._process(session, content, run)
            except Exception as e:
                logger.exception("Ingestion failed while storing '%s'", content.title[:50])
                run.fail(f"Failed to store document: {type(e).__name__}")
                if run.document_id is not None:
                    await self._mark_failed(run.document_id)
                return

            run.emit(IngestStep.DONE, "Done", 100, document_id=run.document_id)
        finally:
            run.channel.close()

    async def _normalize(
        self,
        request: UrlIngestRequest | TextIngestRequest,
        run: IngestionRun,
    ) -> NormalizedContent:
        if isinstance(request, UrlIngestRequest):
            run.emit(
                IngestStep.FETCHING, f"Extracting content from {request.url}...", 10
            )
            return await self._normalizer.from_url(request.url)
        return await self._normalizer.from_text(request.title, request.content)

    async def _process(
        self,
        session: AsyncSession,
        content: NormalizedContent,
        run: IngestionRun,
    ) -> None:
        run.emit(IngestStep.SAVING, "Creating document record...", 20)
        document = await self._repo.create_document(session, content)
        run.document_id = document.id

        enrichment_input = content.content[: self._char_limit]
        summary_task = asyncio.create_task(
            attempt("summarize", lambda: self._llm.summarize(enrichment_input), None)
        )
        extraction_task = asyncio.create_task(
            attempt(
                "extract entities",
                lambda: self._llm.extract_entities(enrichment_input),
                ExtractionResult(),
            )
        )
        try:
            run.emit(IngestStep.CHUNKING, "Splitting content into chunks...", 25)
            chunks = self._chunker.split(content.content)
            run.emit(IngestStep.CHUNKING, f"Created {len(chunks)} chunks", 30)

            run.emit(IngestStep.SUMMARIZING, "Generating AI summary...", 35)
            summary: Enrichment[str | None] = await summary_task
            if summary.ok and summary.value:
                await self._repo.update_document_summary(session, document.id, summary.value)
                run.emit(IngestStep.SUMMARIZING, "Summary generated successfully", 45)
            else:
                run.emit(
                    IngestStep.SUMMARIZING,
                    "Summary generation skipped (AI unavailable)",
                    45,
                )

            run.emit(IngestStep.EXTRACTING, "Extracting entities and relationships...", 50)
            extraction: Enrichment[ExtractionResult] = await extraction_task
            if extraction.ok:
                run.emit(
                    IngestStep.EXTRACTING,
                    f"Found {len(extraction.value.entities)} entities, "
                    f"{len(extraction.value.relationships)} relationships",
                    60,
                )
            else:
                run.emit(
                    IngestStep.EXTRACTING,
                    "Entity extraction skipped (AI unavailable)",
                    60,
                )
        finally:
            for task in (summary_task, extraction_task):
                if not task.done():
                    task.cancel()

        run.emit(IngestStep.EMBEDDING, "Generating embeddings for chunks...", EMBED_PROGRESS_START)
        embeddings = await self._embed_chunks(chunks, run)
        embedded = sum(1 for vector in embeddings if vector is not None)
        records = await self._repo.save_chunks(session, document.id, chunks, embeddings)
        run.emit(
            IngestStep.EMBEDDING,
            f"Embedded {embedded}/{len(chunks)} chunks",
            EMBED_PROGRESS_START + EMBED_PROGRESS_SPAN,
        )

        run.emit(IngestStep.SAVING, "Saving entities to knowledge graph...", 82)
        name_to_id = await self._save_entities(
            session, document.id, extraction.value.entities, records
        )
        run.emit(IngestStep.SAVING, f"Saved {len(name_to_id)} entities", 88)

        run.emit(IngestStep.SAVING, "Saving relationships...", 90)
        saved = await self._save_relationships(
            session, document.id, extraction.value.relationships, name_to_id
        )
        run.emit(IngestStep.SAVING, f"Saved {saved} relationships", 95)

        await self._repo.set_document_status(
            session, document.id, ProcessingStatus.COMPLETED
        )
        logger.info(
            "Ingested document %s: %d chunks (%d embedded), %d entities, %d relationships",
            document.id,
            len(chunks),
            embedded,
            len(name_to_id),
            saved,
        )
        run.emit(IngestStep.COMPLETE, "Document processed successfully!", 100)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _embed_chunks(
        self,
        chunks: Sequence[TextChunk],
        run: IngestionRun,
    ) -> list[list[float] | None]:
        """
        Embed chunks in fixed-size batches.

        Up to ``max_concurrency`` batches are in flight at once. The first
        failed batch stops embedding: it and every later chunk get ``None``.
        """
        vectors: list[list[float] | None] = [None] * len(chunks)
        batches = [
            list(chunks[i : i + self._batch_size])
            for i in range(0, len(chunks), self._batch_size)
        ]
        total = len(batches)

        for window_start in range(0, total, self._max_concurrency):
            window = batches[window_start : window_start + self._max_concurrency]
            results = await asyncio.gather(
                *(
                    attempt(
                        f"embed batch {window_start + offset + 1}/{total}",
                        lambda batch=batch: self._embedder.embed_texts(
                            [chunk.content for chunk in batch]
                        ),
                        None,
                    )
                    for offset, batch in enumerate(window)
                )
            )
            for offset, (batch, result) in enumerate(zip(window, results)):
                number = window_start + offset + 1
                if not result.ok or result.value is None:
                    run.emit(
                        IngestStep.EMBEDDING,
                        f"Embedding stopped at batch {number}/{total} (AI unavailable)",
                        self._embed_progress(number - 1, total),
                    )
                    return vectors
                for chunk, vector in zip(batch, result.value):
                    vectors[chunk.index] = vector
                run.emit(
                    IngestStep.EMBEDDING,
                    f"Embedded batch {number}/{total}",
                    self._embed_progress(number, total),
                )
        return vectors

    @staticmethod
    def _embed_progress(done: int, total: int) -> int:
        if total == 0:
            return EMBED_PROGRESS_START
        return EMBED_PROGRESS_START + math.floor(done / total * EMBED_PROGRESS_SPAN)

    async def _save_entities(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
        extracted: Sequence[ExtractedEntity],
        chunks: Sequence[ChunkRecord],
    ) -> dict[str, uuid.UUID]:
        """
        Resolve extracted entities to stored ones and record mentions.

        Returns:
            Entity name → id, first occurrence wins for duplicate names.
        """
        unique: dict[tuple[str, str], ExtractedEntity] = {}
        for entity in extracted:
            if entity.name and entity.type:
                unique.setdefault((entity.name, entity.type), entity)

        resolved: dict[tuple[str, str], uuid.UUID] = {}
        pending: list[ExtractedEntity] = []
        for key, entity in unique.items():
            existing = await self._repo.find_entity(session, entity.name, entity.type)
            if existing is not None:
                resolved[key] = existing.id
            else:
                pending.append(entity)

        if pending:
            embedded = await attempt(
                "embed entities",
                lambda: self._embedder.embed_texts(
                    [entity_embedding_text(e) for e in pending]
                ),
                None,
            )
            vectors = embedded.value if embedded.ok and embedded.value else [None] * len(pending)
            for entity, vector in zip(pending, vectors):
                record, _ = await self._repo.get_or_create_entity(session, entity, vector)
                resolved[(entity.name, entity.type)] = record.id

        name_to_id: dict[str, uuid.UUID] = {}
        mentions: list[tuple[uuid.UUID, uuid.UUID | None]] = []
        for (name, _type), entity_id in resolved.items():
            name_to_id.setdefault(name, entity_id)
            mentions.append((entity_id, self._mention_chunk(name, chunks)))

        if mentions:
            await self._repo.add_mentions(session, document_id, mentions)
        return name_to_id

    @staticmethod
    def _mention_chunk(name: str, chunks: Sequence[ChunkRecord]) -> uuid.UUID | None:
        """First chunk containing ``name`` (case-insensitive), else the first chunk."""
        if not chunks:
            return None
        needle = name.lower()
        for chunk in chunks:
            if needle in chunk.content.lower():
                return chunk.id
        return chunks[0].id

    async def _save_relationships(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
        extracted: Sequence[ExtractedRelationship],
        name_to_id: dict[str, uuid.UUID],
    ) -> int:
        folded = {name.casefold(): entity_id for name, entity_id in reversed(name_to_id.items())}

        def lookup(name: str) -> uuid.UUID | None:
            name = name.strip()
            return name_to_id.get(name) or folded.get(name.casefold())

        resolved: list[ResolvedRelationship] = []
        for rel in extracted:
            source_id, target_id = lookup(rel.source), lookup(rel.target)
            if source_id is None or target_id is None or not rel.type.strip():
                logger.debug("Skipping relationship %s -> %s (unresolved)", rel.source, rel.target)
                continue
            resolved.append(
                ResolvedRelationship(
                    source_id=source_id,
                    target_id=target_id,
                    relation_type=rel.type.strip(),
                    description=rel.description,
                )
            )

        if not resolved:
            return 0
        return await self._repo.add_relationships(session, document_id, resolved)

    async def _mark_failed(self, document_id: uuid.UUID) -> None:
        """Best-effort ``failed`` status write in a fresh session."""
        try:
            async with self._open_session() as session:
                await self._repo.set_document_status(
                    session, document_id, ProcessingStatus.FAILED
                )
        except Exception:  # noqa: BLE001 - the stale sweep is the fallback
            logger.exception("Could not mark document %s as failed", document_id)
