"""
Pytest Configuration and Fixtures

In-memory stand-ins for the knowledge store, the chat store, the LLM and
the embedding service, so pipeline, retrieval and chat behaviour can be
exercised without Docker. Live-stack tests in ``tests/integration`` are
skipped unless ``RUN_INTEGRATION=1``.
"""

import os

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Test environment defaults: set before any app imports.
#
# 1. Load .env first so that Docker-matching credentials are available.
# 2. setdefault fills in anything still missing (CI runners, fresh clones
#    without a .env file) so that pydantic Settings validation doesn't crash.
# ---------------------------------------------------------------------------
load_dotenv()  # .env → os.environ (no-op if file is missing)

_test_env = {
    "POSTGRES_USER": "lattice",
    "POSTGRES_PASSWORD": "lattice_password",
    "POSTGRES_HOST": "localhost",
    "POSTGRES_PORT": "5432",
    "POSTGRES_DB": "lattice_db",
    "ENRICHMENT_RETRY_DELAY": "0",
    "ENRICHMENT_TIMEOUT": "5",
}
for _key, _value in _test_env.items():
    os.environ.setdefault(_key, _value)

# ---------------------------------------------------------------------------
# Imports (safe now that env vars are set)
# ---------------------------------------------------------------------------
import asyncio  # noqa: E402
import math  # noqa: E402
import re  # noqa: E402
import uuid  # noqa: E402
from collections import defaultdict  # noqa: E402
from collections.abc import AsyncIterator, Sequence  # noqa: E402
from datetime import UTC, datetime  # noqa: E402
from typing import Any  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.exc import SQLAlchemyError  # noqa: E402

from app.models.orm import (  # noqa: E402
    ChatMessageRecord,
    ChatThreadRecord,
    ChunkRecord,
    DocumentRecord,
    EntityMentionRecord,
    EntityRecord,
    RelationshipRecord,
)
from app.models.schemas import (  # noqa: E402
    DocumentScope,
    EntityScope,
    ExtractedEntity,
    ExtractionResult,
    NormalizedContent,
    ProcessingStatus,
    ResolvedRelationship,
    TextChunk,
    ThreadScope,
)
from app.repositories.knowledge import ChunkHit, ConnectedEntity  # noqa: E402
from app.services.chunking import TextChunker, estimate_tokens  # noqa: E402
from app.services.llm import LLMResponse  # noqa: E402

WORD = re.compile(r"\w+")


def pytest_collection_modifyitems(config, items):
    """Skip live-stack tests unless RUN_INTEGRATION=1."""
    if os.getenv("RUN_INTEGRATION") == "1":
        return
    skip_live = pytest.mark.skip(reason="needs running stack (set RUN_INTEGRATION=1)")
    for item in items:
        if "integration" in item.path.parts:
            item.add_marker(skip_live)


def _now() -> datetime:
    return datetime.now(UTC)


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class FakeSession:
    """Stands in for AsyncSession; fakes keep their own state."""

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None

    async def commit(self) -> None:
        return None

    async def rollback(self) -> None:
        return None

    async def refresh(self, obj: Any) -> None:
        return None


class FakeSessionFactory:
    def __init__(self) -> None:
        self.opened = 0

    def __call__(self) -> FakeSession:
        self.opened += 1
        return FakeSession()


# ---------------------------------------------------------------------------
# Knowledge store
# ---------------------------------------------------------------------------


class FakeKnowledgeRepository:
    """In-memory KnowledgeRepository with the same method surface."""

    def __init__(self) -> None:
        self.documents: dict[uuid.UUID, DocumentRecord] = {}
        self.chunks: list[ChunkRecord] = []
        self.entities: list[EntityRecord] = []
        self.relationships: list[RelationshipRecord] = []
        self.mentions: list[EntityMentionRecord] = []
        self.fail_on: set[str] = set()
        # (name, type) keys ``find_entity`` misses, as if inserted concurrently
        self.find_misses: set[tuple[str, str]] = set()
        self.conflicts = 0

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise SQLAlchemyError(f"{operation} failed")

    # -- helpers for assertions --

    def entity_named(self, name: str) -> EntityRecord:
        return next(e for e in self.entities if e.name == name)

    def mentions_of(self, entity_id: uuid.UUID) -> list[EntityMentionRecord]:
        return [m for m in self.mentions if m.entity_id == entity_id]

    def chunks_of(self, document_id: uuid.UUID) -> list[ChunkRecord]:
        return sorted(
            (c for c in self.chunks if c.document_id == document_id),
            key=lambda c: c.chunk_index,
        )

    def add_document(
        self,
        title: str,
        content: str,
        summary: str | None = None,
        status: ProcessingStatus = ProcessingStatus.COMPLETED,
    ) -> DocumentRecord:
        now = _now()
        document = DocumentRecord(
            id=uuid.uuid4(),
            url=None,
            title=title,
            kind="note",
            content=content,
            summary=summary,
            processing_status=status.value,
            created_at=now,
            updated_at=now,
        )
        self.documents[document.id] = document
        return document

    def add_chunk(
        self,
        document: DocumentRecord,
        content: str,
        embedding: list[float] | None = None,
    ) -> ChunkRecord:
        chunk = ChunkRecord(
            id=uuid.uuid4(),
            document_id=document.id,
            chunk_index=len(self.chunks_of(document.id)),
            content=content,
            token_count=estimate_tokens(content),
            embedding=embedding,
            created_at=_now(),
        )
        self.chunks.append(chunk)
        return chunk

    def add_entity(
        self,
        name: str,
        entity_type: str,
        description: str | None = None,
        embedding: list[float] | None = None,
    ) -> EntityRecord:
        now = _now()
        entity = EntityRecord(
            id=uuid.uuid4(),
            name=name,
            type=entity_type,
            description=description,
            embedding=embedding,
            created_at=now,
            updated_at=now,
        )
        self.entities.append(entity)
        return entity

    def link(self, source: EntityRecord, relation_type: str, target: EntityRecord) -> None:
        self.relationships.append(
            RelationshipRecord(
                id=uuid.uuid4(),
                source_entity_id=source.id,
                target_entity_id=target.id,
                relation_type=relation_type,
                weight=1.0,
            )
        )

    def mention(self, entity: EntityRecord, document: DocumentRecord) -> None:
        self.mentions.append(
            EntityMentionRecord(
                id=uuid.uuid4(), entity_id=entity.id, document_id=document.id
            )
        )

    # -- writes --

    async def create_document(self, session, content: NormalizedContent) -> DocumentRecord:
        self._check("create_document")
        document = self.add_document(
            content.title, content.content, status=ProcessingStatus.PROCESSING
        )
        document.kind = content.kind.value
        document.url = content.url
        return document

    async def update_document_summary(self, session, document_id, summary: str) -> None:
        self._check("update_document_summary")
        self.documents[document_id].summary = summary

    async def set_document_status(self, session, document_id, status: ProcessingStatus) -> None:
        self._check("set_document_status")
        self.documents[document_id].processing_status = status.value

    async def mark_stale_documents_failed(self, session, older_than: datetime) -> int:
        swept = 0
        for document in self.documents.values():
            if (
                document.processing_status == ProcessingStatus.PROCESSING.value
                and document.updated_at < older_than
            ):
                document.processing_status = ProcessingStatus.FAILED.value
                swept += 1
        return swept

    async def save_chunks(
        self,
        session,
        document_id,
        chunks: Sequence[TextChunk],
        embeddings: Sequence[list[float] | None],
    ) -> list[ChunkRecord]:
        self._check("save_chunks")
        records = [
            ChunkRecord(
                id=uuid.uuid4(),
                document_id=document_id,
                chunk_index=chunk.index,
                content=chunk.content,
                token_count=chunk.token_count,
                embedding=embeddings[i],
                created_at=_now(),
            )
            for i, chunk in enumerate(chunks)
        ]
        self.chunks.extend(records)
        return records

    def _stored_entity(self, name: str, entity_type: str) -> EntityRecord | None:
        return next(
            (e for e in self.entities if e.name == name and e.type == entity_type), None
        )

    async def find_entity(self, session, name: str, entity_type: str) -> EntityRecord | None:
        self._check("find_entity")
        await asyncio.sleep(0)
        if (name, entity_type) in self.find_misses:
            return None
        return self._stored_entity(name, entity_type)

    async def get_or_create_entity(
        self, session, entity: ExtractedEntity, embedding
    ) -> tuple[EntityRecord, bool]:
        self._check("get_or_create_entity")
        existing = self._stored_entity(entity.name, entity.type)
        if existing is not None:
            self.conflicts += 1
            return existing, False
        return self.add_entity(entity.name, entity.type, entity.description, embedding), True

    async def add_mentions(self, session, document_id, mentions) -> int:
        self._check("add_mentions")
        for entity_id, chunk_id in mentions:
            self.mentions.append(
                EntityMentionRecord(
                    id=uuid.uuid4(),
                    entity_id=entity_id,
                    document_id=document_id,
                    chunk_id=chunk_id,
                    confidence=1.0,
                )
            )
        return len(mentions)

    async def add_relationships(
        self, session, document_id, relationships: Sequence[ResolvedRelationship]
    ) -> int:
        self._check("add_relationships")
        for rel in relationships:
            self.relationships.append(
                RelationshipRecord(
                    id=uuid.uuid4(),
                    source_entity_id=rel.source_id,
                    target_entity_id=rel.target_id,
                    relation_type=rel.relation_type,
                    description=rel.description,
                    weight=1.0,
                    source_document_id=document_id,
                )
            )
        return len(relationships)

    # -- reads --

    async def get_by_id(self, session, id: uuid.UUID) -> DocumentRecord | None:
        return self.documents.get(id)

    async def get_all(self, session, skip: int = 0, limit: int = 100):
        ordered = sorted(self.documents.values(), key=lambda d: d.created_at, reverse=True)
        return ordered[skip : skip + limit]

    async def get_chunks_by_document(self, session, document_id):
        return self.chunks_of(document_id)

    async def count_chunks(self, session, document_id) -> int:
        return len(self.chunks_of(document_id))

    async def get_entity(self, session, entity_id) -> EntityRecord | None:
        return next((e for e in self.entities if e.id == entity_id), None)

    def _hit(self, chunk: ChunkRecord, score: float) -> ChunkHit:
        document = self.documents[chunk.document_id]
        return ChunkHit(
            chunk.id, chunk.document_id, document.title, chunk.content, chunk.chunk_index,
            round(score, 4),
        )

    async def search_chunks_by_vector(self, session, query_embedding, limit: int = 10):
        self._check("search_chunks_by_vector")
        scored = [
            self._hit(c, _cosine(query_embedding, c.embedding))
            for c in self.chunks
            if c.embedding is not None
        ]
        return sorted(scored, key=lambda h: -h.score)[:limit]

    async def search_chunks_by_text(self, session, query: str, limit: int = 10):
        self._check("search_chunks_by_text")
        terms = {t for t in WORD.findall(query.lower()) if len(t) > 2}
        hits = []
        for chunk in self.chunks:
            words = set(WORD.findall(chunk.content.lower()))
            matched = len(terms & words)
            if matched:
                hits.append(self._hit(chunk, matched / (matched + 1)))
        return sorted(hits, key=lambda h: -h.score)[:limit]

    async def match_entities_by_name(self, session, text: str, limit: int = 10):
        haystack = text.lower()
        found = [e for e in self.entities if len(e.name) >= 2 and e.name.lower() in haystack]
        return sorted(found, key=lambda e: -len(e.name))[:limit]

    async def search_entities_by_vector(self, session, query_embedding, limit: int = 10):
        scored = [
            (e, round(_cosine(query_embedding, e.embedding), 4))
            for e in self.entities
            if e.embedding is not None
        ]
        return sorted(scored, key=lambda pair: -pair[1])[:limit]

    async def get_neighbors(self, session, entity_ids, per_entity: int = 3):
        seeds = set(entity_ids)
        by_id = {e.id: e for e in self.entities}
        neighbours: dict[uuid.UUID, EntityRecord] = {}
        for seed_attr, other_attr in (
            ("source_entity_id", "target_entity_id"),
            ("target_entity_id", "source_entity_id"),
        ):
            taken: dict[uuid.UUID, int] = defaultdict(int)
            for rel in self.relationships:
                seed, other = getattr(rel, seed_attr), getattr(rel, other_attr)
                if seed not in seeds or other in seeds or taken[seed] >= per_entity:
                    continue
                taken[seed] += 1
                neighbours.setdefault(other, by_id[other])
        return list(neighbours.values())

    async def get_relationships_among(self, session, entity_ids):
        ids = set(entity_ids)
        return [
            r
            for r in self.relationships
            if r.source_entity_id in ids and r.target_entity_id in ids
        ]

    async def document_ids_mentioning(self, session, entity_id) -> set[uuid.UUID]:
        return {m.document_id for m in self.mentions if m.entity_id == entity_id}

    async def entity_ids_in_document(self, session, document_id) -> set[uuid.UUID]:
        return {m.entity_id for m in self.mentions if m.document_id == document_id}

    async def get_graph(self, session):
        counts: dict[uuid.UUID, int] = defaultdict(int)
        for m in self.mentions:
            counts[m.entity_id] += 1
        return [(e, counts[e.id]) for e in self.entities], list(self.relationships)

    async def get_document_graph(self, session, document_id):
        ids = await self.entity_ids_in_document(session, document_id)
        nodes = [e for e in self.entities if e.id in ids]
        return nodes, await self.get_relationships_among(session, ids)

    async def get_entity_documents(self, session, entity_id):
        ids = await self.document_ids_mentioning(session, entity_id)
        return [d for d in self.documents.values() if d.id in ids]

    async def get_connected_entities(self, session, entity_id):
        by_id = {e.id: e for e in self.entities}
        out = [
            ConnectedEntity(by_id[r.target_entity_id], r.relation_type, "outgoing")
            for r in self.relationships
            if r.source_entity_id == entity_id
        ]
        incoming = [
            ConnectedEntity(by_id[r.source_entity_id], r.relation_type, "incoming")
            for r in self.relationships
            if r.target_entity_id == entity_id
        ]
        return out + incoming

    async def graph_stats(self, session) -> dict[str, Any]:
        distribution: dict[str, int] = defaultdict(int)
        for e in self.entities:
            distribution[e.type] += 1
        return {
            "entity_count": len(self.entities),
            "relationship_count": len(self.relationships),
            "type_distribution": dict(distribution),
        }

    async def count_mentions(self, session, entity_id) -> int:
        return len(self.mentions_of(entity_id))

    async def search_documents(self, session, text: str, limit: int = 5):
        needle = text.strip().lower()
        found = [
            d
            for d in self.documents.values()
            if needle in d.title.lower() or needle in (d.summary or "").lower()
        ]
        return sorted(found, key=lambda d: d.created_at, reverse=True)[:limit]

    async def search_entities(self, session, text: str, limit: int = 5):
        needle = text.strip().lower()
        found = [
            e
            for e in self.entities
            if needle in e.name.lower() or needle in (e.description or "").lower()
        ]
        return sorted(found, key=lambda e: e.name)[:limit]

    async def delete(self, session, db_obj: DocumentRecord) -> None:
        self._check("delete")
        self.documents.pop(db_obj.id, None)
        self.chunks = [c for c in self.chunks if c.document_id != db_obj.id]
        self.mentions = [m for m in self.mentions if m.document_id != db_obj.id]
        self.relationships = [
            r for r in self.relationships if r.source_document_id != db_obj.id
        ]


# ---------------------------------------------------------------------------
# Chat store
# ---------------------------------------------------------------------------


class FakeChatRepository:
    def __init__(self) -> None:
        self.threads: dict[uuid.UUID, ChatThreadRecord] = {}
        self.messages: list[ChatMessageRecord] = []
        self.fail_on: set[str] = set()

    async def create_thread(self, session, scope: ThreadScope, title: str) -> ChatThreadRecord:
        now = _now()
        thread = ChatThreadRecord(
            id=uuid.uuid4(),
            title=title,
            category=scope.category.value,
            entity_id=scope.entity_id if isinstance(scope, EntityScope) else None,
            document_id=scope.document_id if isinstance(scope, DocumentScope) else None,
            created_at=now,
            updated_at=now,
            last_message_at=now,
        )
        self.threads[thread.id] = thread
        return thread

    async def get_by_id(self, session, id: uuid.UUID) -> ChatThreadRecord | None:
        return self.threads.get(id)

    async def list_threads(self, session, skip: int = 0, limit: int = 50):
        ordered = sorted(self.threads.values(), key=lambda t: t.last_message_at, reverse=True)
        return ordered[skip : skip + limit]

    async def search_threads(self, session, text: str, limit: int = 5):
        needle = text.strip().lower()
        found = [t for t in self.threads.values() if needle in t.title.lower()]
        return sorted(found, key=lambda t: t.last_message_at, reverse=True)[:limit]

    async def update_title(self, session, thread_id, title: str) -> None:
        self.threads[thread_id].title = title

    async def add_message(self, session, thread_id, role, content, metadata=None):
        if role in self.fail_on:
            raise SQLAlchemyError(f"saving {role} message failed")
        message = ChatMessageRecord(
            id=uuid.uuid4(),
            thread_id=thread_id,
            role=role,
            content=content,
            message_metadata=metadata or {},
            created_at=_now(),
        )
        self.messages.append(message)
        self.threads[thread_id].last_message_at = message.created_at
        return message

    async def list_messages(self, session, thread_id):
        return [m for m in self.messages if m.thread_id == thread_id]

    async def delete(self, session, db_obj: ChatThreadRecord) -> None:
        self.threads.pop(db_obj.id, None)
        self.messages = [m for m in self.messages if m.thread_id != db_obj.id]


# ---------------------------------------------------------------------------
# AI services
# ---------------------------------------------------------------------------


class FakeEmbedder:
    """
    Deterministic bag-of-words embedder.

    ``fail_on``: any batch containing this substring raises.
    ``unavailable``: every call raises.
    """

    dimension = 16

    def __init__(self) -> None:
        self.fail_on: str | None = None
        self.unavailable = False
        self.calls: list[list[str]] = []

    def vector(self, text: str) -> list[float]:
        values = [0.0] * self.dimension
        for word in WORD.findall(text.lower()):
            values[sum(map(ord, word)) % self.dimension] += 1.0
        norm = math.sqrt(sum(v * v for v in values)) or 1.0
        return [v / norm for v in values]

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.unavailable:
            raise httpx.ConnectError("Connection refused")
        if self.fail_on is not None and any(self.fail_on in t for t in texts):
            raise RuntimeError("embedding batch rejected")
        return [self.vector(t) for t in texts]

    async def embed_query(self, query: str) -> list[float]:
        return (await self.embed_texts([query]))[0]


class FakeLLM:
    def __init__(self) -> None:
        self.summary = "A short summary."
        self.extraction = ExtractionResult()
        self.title = "Generated Title"
        self.stream_pieces = ["Alice ", "works at ", "Acme."]
        self.unavailable = False
        self.system_prompts: list[str] = []
        self.extract_inputs: list[str] = []

    def _check(self) -> None:
        if self.unavailable:
            raise httpx.ConnectError("Connection refused")

    async def summarize(self, content: str) -> str:
        self._check()
        return self.summary

    async def extract_entities(self, content: str) -> ExtractionResult:
        self._check()
        self.extract_inputs.append(content)
        return self.extraction

    async def generate_title(self, message: str) -> str:
        self._check()
        return self.title

    async def stream_chat(self, system_prompt: str, messages) -> AsyncIterator[LLMResponse]:
        self.system_prompts.append(system_prompt)
        if self.unavailable:
            yield LLMResponse(content="AI Service unavailable", is_mocked=True)
            return
        for piece in self.stream_pieces:
            yield LLMResponse(content=piece, is_mocked=False)


class ParagraphChunker(TextChunker):
    """One chunk per blank-line separated paragraph."""

    def split(self, text: str) -> list[TextChunk]:
        parts = [p.strip() for p in text.split("\n\n") if p.strip()]
        return [
            TextChunk(index=i, content=p, token_count=estimate_tokens(p))
            for i, p in enumerate(parts)
        ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def knowledge_repo() -> FakeKnowledgeRepository:
    return FakeKnowledgeRepository()


@pytest.fixture
def chat_repo() -> FakeChatRepository:
    return FakeChatRepository()


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def paragraph_chunker() -> ParagraphChunker:
    return ParagraphChunker()
