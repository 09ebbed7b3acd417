"""
Base Repository

Generic repository pattern implementation for async SQLAlchemy CRUD operations.
Provides type-safe database access with consistent session handling.
"""

import uuid
from collections.abc import Sequence
from typing import Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Generic repository providing common CRUD operations.

    Implements the Repository pattern with async SQLAlchemy. All methods
    expect an externally managed session (request-scoped via FastAPI, or
    owned by a background task).

    Usage:
        class ChatRepository(BaseRepository[ChatThreadRecord]):
            def __init__(self):
                super().__init__(ChatThreadRecord)
    """

    def __init__(self, model: type[ModelType]):
        self.model = model

    async def get_by_id(
        self,
        session: AsyncSession,
        id: uuid.UUID,
    ) -> ModelType | None:
        """Get a record by primary key. Returns None if not found."""
        result = await session.execute(
            select(self.model).where(self.model.id == id)  # type: ignore[attr-defined]
        )
        return result.scalars().first()

    async def get_all(
        self,
        session: AsyncSession,
        skip: int = 0,
        limit: int = 100,
    ) -> Sequence[ModelType]:
        """Get records newest first with offset-based pagination."""
        result = await session.execute(
            select(self.model)
            .order_by(self.model.created_at.desc())  # type: ignore[attr-defined]
            .offset(skip)
            .limit(limit)
        )
        return result.scalars().all()

    async def delete(self, session: AsyncSession, db_obj: ModelType) -> None:
        """Delete a record. Dependent rows go through ON DELETE CASCADE."""
        await session.delete(db_obj)
        await session.commit()
