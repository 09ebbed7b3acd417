"""
Maintenance Tasks

Stale-document sweep: documents left in ``processing`` by a run that
never finished (crash, restart, cancelled task) are marked ``failed``.
Runs at application startup and from ``scripts/sweep_stale_documents.py``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import get_session_factory
from app.repositories.knowledge import KnowledgeRepository

logger = logging.getLogger(__name__)


async def sweep_stale_documents(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    older_than_minutes: int | None = None,
    repository: KnowledgeRepository | None = None,
) -> int:
    """
    Mark documents stuck in ``processing`` for too long as ``failed``.

    Returns:
        Number of documents swept.
    """
    minutes = older_than_minutes or settings.STALE_PROCESSING_MINUTES
    cutoff = datetime.now(UTC) - timedelta(minutes=minutes)
    repo = repository or KnowledgeRepository()
    factory = session_factory or get_session_factory()

    async with factory() as session:
        swept = await repo.mark_stale_documents_failed(session, cutoff)

    if swept:
        logger.warning(
            "Marked %d stale document(s) as failed (processing > %d min)", swept, minutes
        )
    else:
        logger.info("No stale documents found")
    return swept
