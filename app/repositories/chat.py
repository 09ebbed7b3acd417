"""
Chat Repository

Persistence for chat threads and their messages.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.orm import ChatMessageRecord, ChatThreadRecord
from app.models.schemas import DocumentScope, EntityScope, ThreadScope
from app.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class ChatRepository(BaseRepository[ChatThreadRecord]):
    """Thread and message access. Scope columns are written only here."""

    def __init__(self) -> None:
        super().__init__(ChatThreadRecord)

    async def create_thread(
        self,
        session: AsyncSession,
        scope: ThreadScope,
        title: str,
    ) -> ChatThreadRecord:
        """Insert a thread bound to ``scope``."""
        thread = ChatThreadRecord(
            id=uuid.uuid4(),
            title=title,
            category=scope.category.value,
            entity_id=scope.entity_id if isinstance(scope, EntityScope) else None,
            document_id=scope.document_id if isinstance(scope, DocumentScope) else None,
        )
        session.add(thread)
        await session.commit()
        await session.refresh(thread)
        logger.info("Created %s thread %s", thread.category, thread.id)
        return thread

    async def list_threads(
        self,
        session: AsyncSession,
        skip: int = 0,
        limit: int = 50,
    ) -> Sequence[ChatThreadRecord]:
        """Threads with the most recent activity first."""
        stmt = (
            select(ChatThreadRecord)
            .order_by(ChatThreadRecord.last_message_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return (await session.execute(stmt)).scalars().all()

    async def search_threads(
        self,
        session: AsyncSession,
        text: str,
        limit: int = 5,
    ) -> Sequence[ChatThreadRecord]:
        """Threads whose title contains ``text``, most recent activity first."""
        stmt = (
            select(ChatThreadRecord)
            .where(ChatThreadRecord.title.ilike(f"%{text.strip()}%"))
            .order_by(ChatThreadRecord.last_message_at.desc())
            .limit(limit)
        )
        return (await session.execute(stmt)).scalars().all()

    async def update_title(
        self,
        session: AsyncSession,
        thread_id: uuid.UUID,
        title: str,
    ) -> None:
        stmt = (
            update(ChatThreadRecord)
            .where(ChatThreadRecord.id == thread_id)
            .values(title=title)
        )
        await session.execute(stmt)
        await session.commit()

    async def add_message(
        self,
        session: AsyncSession,
        thread_id: uuid.UUID,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessageRecord:
        """Append a message and bump the thread's ``last_message_at``."""
        message = ChatMessageRecord(
            id=uuid.uuid4(),
            thread_id=thread_id,
            role=role,
            content=content,
            message_metadata=metadata or {},
        )
        session.add(message)
        await session.execute(
            update(ChatThreadRecord)
            .where(ChatThreadRecord.id == thread_id)
            .values(last_message_at=func.now())
        )
        await session.commit()
        await session.refresh(message)
        return message

    async def list_messages(
        self,
        session: AsyncSession,
        thread_id: uuid.UUID,
    ) -> Sequence[ChatMessageRecord]:
        """Messages of a thread in chronological order."""
        stmt = (
            select(ChatMessageRecord)
            .where(ChatMessageRecord.thread_id == thread_id)
            .order_by(ChatMessageRecord.created_at, ChatMessageRecord.id)
        )
        return (await session.execute(stmt)).scalars().all()


chat_repository = ChatRepository()
