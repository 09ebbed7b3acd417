"""
Content Normalizer

Turns raw ingestion input into a title, a plain-text body and a kind.

Supported inputs:
    - URL: fetched with httpx, main text extracted with trafilatura.
      YouTube links are classified as ``video``.
    - Text: a user-supplied note (title + body).

Any failure here is fatal for the ingestion run and surfaces as
``ContentExtractionError`` before anything is written.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Final
from urllib.parse import urlparse

import httpx
import trafilatura

from app.core.config import settings
from app.models.schemas import ContentKind, NormalizedContent

logger = logging.getLogger(__name__)

VIDEO_HOSTS: Final[frozenset[str]] = frozenset(
    {"youtube.com", "www.youtube.com", "m.youtube.com", "youtu.be"}
)
USER_AGENT: Final[str] = "Mozilla/5.0 (compatible; LatticeBot/1.0)"


class ContentExtractionError(Exception):
    """Input could not be turned into non-empty plain text."""


def classify_url(url: str) -> ContentKind:
    host = (urlparse(url).hostname or "").lower()
    return ContentKind.VIDEO if host in VIDEO_HOSTS else ContentKind.ARTICLE


class ContentNormalizer:
    """
    Async content normalizer.

    Blocking HTML parsing runs in a thread pool via ``asyncio.to_thread``.

    Usage::

        normalizer = ContentNormalizer()
        content = await normalizer.from_url("https://example.com/post")
        note = await normalizer.from_text("Test Note", "Alice works at Acme.")
    """

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout or settings.FETCH_TIMEOUT
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def from_text(self, title: str, content: str) -> NormalizedContent:
        """
        Normalize a free-form note.

        Raises:
            ContentExtractionError: If the body is empty.
        """
        body = content.strip()
        if not body:
            raise ContentExtractionError("Note content is empty")
        return NormalizedContent(
            title=title.strip() or "Untitled note",
            content=body,
            kind=ContentKind.NOTE,
        )

    async def from_url(self, url: str) -> NormalizedContent:
        """
        Fetch a web page and extract its main text.

        Raises:
            ContentExtractionError: On invalid URL, fetch failure or an
                empty extraction.
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ContentExtractionError(f"Invalid URL: {url!r}")

        html = await self._fetch(url)
        title, text = await asyncio.to_thread(self._extract_article, html, url)
        if not text or not text.strip():
            raise ContentExtractionError(f"No readable content found at {url}")

        kind = classify_url(url)
        logger.info(
            "Extracted %s from %s (%d chars)", kind.value, parsed.netloc, len(text)
        )
        return NormalizedContent(
            title=(title or parsed.netloc).strip()[:500],
            content=text.strip(),
            kind=kind,
            url=url,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _fetch(self, url: str) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.text
        except httpx.HTTPStatusError as e:
            raise ContentExtractionError(
                f"Failed to fetch {url}: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ContentExtractionError(
                f"Failed to fetch {url}: {type(e).__name__}"
            ) from e

    @staticmethod
    def _extract_article(html: str, url: str) -> tuple[str | None, str | None]:
        """
        Extract (title, main text) from raw HTML.

        Synchronous; always call via ``asyncio.to_thread``.
        """
        text = trafilatura.extract(
            html,
            url=url,
            include_comments=False,
            include_tables=False,
        )
        metadata = trafilatura.extract_metadata(html, default_url=url)
        title = metadata.title if metadata is not None else None
        return title, text
