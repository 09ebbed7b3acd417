"""
Chat Service

Runs one chat turn end to end:

    resolve thread → resolve scope → retrieve context → compose system
    prompt → stream generation → persist messages → improve title.

The turn runs in a background task that owns its own sessions, so the
assistant message and the title update happen even if the client
disconnects mid-stream. Message persistence and titling are
best-effort: failures are logged, never surfaced to the client.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_session_factory
from app.models.orm import ChatThreadRecord
from app.models.schemas import DocumentScope, EntityScope, GeneralScope, ThreadScope
from app.repositories.chat import ChatRepository
from app.repositories.knowledge import KnowledgeRepository
from app.schemas.chat import ChatEvent, ChatEventType, ChatMessageIn, last_user_message
from app.services.enrichment import attempt
from app.services.llm import LLMService
from app.services.retrieval import (
    ContextRetriever,
    DocumentFocus,
    EntityFocus,
    Focus,
    RetrievedContext,
    build_prompt_context,
)
from app.services.streaming import EventChannel, spawn

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLES: Final[frozenset[str]] = frozenset(
    {"New chat", "New general chat", "New entity chat", "New document chat"}
)
DEFAULT_THREAD_TITLE: Final[str] = "New chat"
FALLBACK_TITLE_CHARS: Final[int] = 50

SYSTEM_PROMPT: Final[str] = """You are a helpful AI assistant with access to the user's personal knowledge base.
Your role is to answer questions accurately based on the retrieved context from their documents.
{focus}
{context}

Guidelines:
- If the context contains relevant information, use it to answer the question accurately.
- If the context doesn't contain enough information, say so clearly and provide general knowledge if appropriate.
- Always cite which documents or entities your information comes from when possible.
- Be concise but thorough in your responses.
- If you're unsure about something, acknowledge the uncertainty."""


class ThreadNotFoundError(Exception):
    """No thread with the requested id."""


class ScopeTargetNotFoundError(Exception):
    """The entity or document a new thread should be bound to does not exist."""


def compose_system_prompt(context: RetrievedContext, focus: Focus | None = None) -> str:
    """Embed the retrieved context verbatim in the chat system prompt."""
    match focus:
        case EntityFocus(name=name, type=entity_type):
            focus_line = (
                f'\nThis conversation is about the {entity_type} "{name}". '
                "Keep answers centred on it.\n"
            )
        case DocumentFocus(title=title):
            focus_line = (
                f'\nThis conversation is about the document "{title}". '
                "Keep answers centred on it.\n"
            )
        case _:
            focus_line = ""

    block = build_prompt_context(context)
    if block:
        context_text = f"Here is the relevant context from the knowledge base:\n\n{block}"
    else:
        context_text = "No relevant context was found in the knowledge base."
    return SYSTEM_PROMPT.format(focus=focus_line, context=context_text)


def provenance(context: RetrievedContext) -> dict[str, list[dict[str, Any]]]:
    """Sources and entities an answer was grounded on (JSON-ready)."""
    return {
        "sources": [
            {
                "chunkId": str(chunk.chunk_id),
                "documentId": str(chunk.document_id),
                "title": chunk.document_title,
                "score": chunk.score,
            }
            for chunk in context.chunks
        ],
        "entities": [
            {"id": str(entity.id), "name": entity.name, "type": entity.type}
            for entity in context.entities
        ],
    }


def fallback_title(text: str) -> str:
    flat = " ".join(text.split())
    if len(flat) <= FALLBACK_TITLE_CHARS:
        return flat
    return flat[:FALLBACK_TITLE_CHARS].rstrip() + "..."


@dataclass
class ChatTurn:
    """Handle on a running chat turn."""

    thread_id: uuid.UUID
    channel: EventChannel[ChatEvent] = field(default_factory=EventChannel)
    task: asyncio.Task[None] | None = None

    def events(self) -> AsyncIterator[ChatEvent]:
        return aiter(self.channel)

    def send(self, event: ChatEventType, **data: Any) -> None:
        self.channel.send(ChatEvent(event=event, data=data))


class ChatService:
    """
    Chat turn controller.

    Usage::

        service = ChatService()
        turn = await service.start_turn(session, request.messages, request.thread_id)
        async for event in turn.events():
            ...
    """

    def __init__(
        self,
        chat_repository: ChatRepository | None = None,
        knowledge_repository: KnowledgeRepository | None = None,
        retriever: ContextRetriever | None = None,
        llm: LLMService | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._chats = chat_repository or ChatRepository()
        self._knowledge = knowledge_repository or KnowledgeRepository()
        self._retriever = retriever or ContextRetriever(repository=self._knowledge)
        self._llm = llm or LLMService()
        self._session_factory = session_factory

    def _open_session(self) -> AsyncSession:
        factory = self._session_factory or get_session_factory()
        return factory()

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def create_scoped_thread(
        self,
        session: AsyncSession,
        scope: ThreadScope,
        title: str | None = None,
    ) -> ChatThreadRecord:
        """
        Create a thread bound to ``scope`` with a welcome message.

        Raises:
            ScopeTargetNotFoundError: If the entity or document is missing.
        """
        welcome: str | None = None
        match scope:
            case EntityScope(entity_id=entity_id):
                entity = await self._knowledge.get_entity(session, entity_id)
                if entity is None:
                    raise ScopeTargetNotFoundError(f"Entity {entity_id} not found")
                details = (
                    f"Here's what I know: {entity.description}" if entity.description else ""
                )
                welcome = (
                    f"I'm ready to help you learn more about **{entity.name}** "
                    f"({entity.type}). {details}".rstrip()
                    + f"\n\nWhat would you like to know about {entity.name}?"
                )
            case DocumentScope(document_id=document_id):
                document = await self._knowledge.get_by_id(session, document_id)
                if document is None:
                    raise ScopeTargetNotFoundError(f"Document {document_id} not found")
                details = f"Here's a summary: {document.summary}" if document.summary else ""
                welcome = (
                    f"I'm ready to discuss **{document.title}** with you. {details}".rstrip()
                    + "\n\nWhat questions do you have about this document?"
                )

        thread = await self._chats.create_thread(
            session,
            scope,
            (title or "").strip() or f"New {scope.category.value} chat",
        )
        if welcome is not None:
            await self._chats.add_message(session, thread.id, "assistant", welcome)
            await session.refresh(thread)
        return thread

    async def get_thread(
        self,
        session: AsyncSession,
        thread_id: uuid.UUID,
    ) -> ChatThreadRecord:
        thread = await self._chats.get_by_id(session, thread_id)
        if thread is None:
            raise ThreadNotFoundError(f"Thread {thread_id} not found")
        return thread

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def start_turn(
        self,
        session: AsyncSession,
        messages: Sequence[ChatMessageIn],
        thread_id: uuid.UUID | None = None,
    ) -> ChatTurn:
        """
        Resolve (or create) the thread and launch the turn in the background.

        Raises:
            ValueError: If ``messages`` holds no user message.
            ThreadNotFoundError: If ``thread_id`` is unknown.
        """
        user_text = last_user_message(messages)
        if thread_id is not None:
            thread = await self.get_thread(session, thread_id)
        else:
            thread = await self._chats.create_thread(
                session, GeneralScope(), DEFAULT_THREAD_TITLE
            )

        turn = ChatTurn(thread_id=thread.id)
        turn.task = spawn(
            self._run_turn(turn, thread.scope, thread.title, list(messages), user_text),
            name=f"chat-{thread.id}",
        )
        return turn

    async def _run_turn(
        self,
        turn: ChatTurn,
        scope: ThreadScope,
        title: str,
        messages: list[ChatMessageIn],
        user_text: str,
    ) -> None:
        user_saved = asyncio.create_task(self._save_message(turn.thread_id, "user", user_text))

        answer: list[str] = []
        mocked = False
        focus: Focus | None = None
        context = RetrievedContext()
        try:
            async with self._open_session() as session:
                focus = await self._retriever.resolve_focus(session, scope)
                try:
                    context = await self._retriever.retrieve(session, user_text, focus=focus)
                except Exception:
                    logger.exception("Context retrieval failed, answering without context")
                    await session.rollback()

            meta = provenance(context)
            turn.send(ChatEventType.METADATA, threadId=str(turn.thread_id), **meta)

            system_prompt = compose_system_prompt(context, focus)
            history = [{"role": m.role, "content": m.content} for m in messages]
            try:
                async for piece in self._llm.stream_chat(system_prompt, history):
                    mocked = mocked or piece.is_mocked
                    answer.append(piece.content)
                    turn.send(ChatEventType.DELTA, content=piece.content, mocked=piece.is_mocked)
            except Exception as e:
                logger.exception("Generation failed for thread %s", turn.thread_id)
                turn.send(ChatEventType.ERROR, message=f"Generation failed: {type(e).__name__}")

            await user_saved
            message_id = await self._save_message(
                turn.thread_id,
                "assistant",
                "".join(answer),
                {**meta, "mocked": mocked},
            )
            turn.send(
                ChatEventType.FINISH,
                threadId=str(turn.thread_id),
                messageId=str(message_id) if message_id else None,
                mocked=mocked,
            )
        except Exception as e:
            logger.exception("Chat turn failed for thread %s", turn.thread_id)
            turn.send(ChatEventType.ERROR, message=f"Chat turn failed: {type(e).__name__}")
        finally:
            if not user_saved.done():
                await asyncio.wait({user_saved})
            turn.channel.close()

        if title in PLACEHOLDER_TITLES:
            await self._improve_title(turn.thread_id, user_text)

    async def _save_message(
        self,
        thread_id: uuid.UUID,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> uuid.UUID | None:
        if not content:
            return None
        try:
            async with self._open_session() as session:
                message = await self._chats.add_message(
                    session, thread_id, role, content, metadata
                )
                return message.id
        except Exception:  # noqa: BLE001 - persistence is best-effort
            logger.exception("Failed to save %s message in thread %s", role, thread_id)
            return None

    async def _improve_title(self, thread_id: uuid.UUID, user_text: str) -> None:
        """Truncated-text title first, then an LLM title if one can be produced."""
        try:
            async with self._open_session() as session:
                await self._chats.update_title(session, thread_id, fallback_title(user_text))
                generated = await attempt(
                    "generate title",
                    lambda: self._llm.generate_title(user_text),
                    None,
                    retries=0,
                )
                if generated.ok and generated.value:
                    await self._chats.update_title(session, thread_id, generated.value)
        except Exception:  # noqa: BLE001 - titling is best-effort
            logger.exception("Failed to update title of thread %s", thread_id)
