"""
LLM Service

Local language model integration via the Ollama chat API.
Provides summarization, entity/relationship extraction, thread titles
and streamed chat generation.

Design:
    - Async HTTP calls via httpx (non-blocking).
    - Enrichment calls (summarize, extract, title) raise on failure;
      the pipeline wraps them in ``enrichment.attempt``.
    - Chat streaming degrades gracefully: if Ollama is unreachable before
      the first token, a mock notice is streamed instead.
    - Structured extraction uses Ollama's ``format`` parameter with the
      JSON schema of ``ExtractionResult``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any, Final

import httpx

from app.core.config import settings
from app.models.schemas import ExtractionResult

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT: Final[str] = (
    "You are a helpful assistant that creates concise, informative summaries.\n"
    "Focus on the key points, main arguments, and important details.\n"
    "Keep the summary clear and well-structured."
)

EXTRACTION_SYSTEM_PROMPT: Final[str] = """You are an expert at extracting structured knowledge from text.
Your task is to identify:
1. Key entities (people, concepts, technologies, organizations, etc.)
2. Relationships between these entities

Be thorough but precise. Only extract entities and relationships that are clearly present in the text.
Use the exact entity names from your entity list as relationship source and target.
For relationships, use descriptive types like "created_by", "part_of", "works_at", "related_to", "used_by", etc.
Answer with JSON only."""

TITLE_SYSTEM_PROMPT: Final[str] = (
    "Generate a short title (at most 6 words) for a conversation that starts "
    "with the user's message. Reply with the title only, without quotes or "
    "punctuation at the end."
)

MAX_TITLE_LENGTH: Final[int] = 80


@dataclass
class LLMResponse:
    """
    A piece of generated text.

    Attributes:
        content: Generated text (a full answer or one streamed delta).
        is_mocked: True if the text is a fallback (Ollama unavailable).
    """

    content: str
    is_mocked: bool


class LLMService:
    """
    Async LLM service backed by Ollama.

    Usage::

        service = LLMService()
        summary = await service.summarize(text)
        async for piece in service.stream_chat(system_prompt, messages):
            if piece.is_mocked:
                print("Warning: Using mock response")
            print(piece.content, end="")
    """

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the LLM service.

        Args:
            base_url: Ollama API base URL (default from config).
            model: Model name to use (default from config).
            timeout: Request timeout in seconds (default from config).
            transport: Optional httpx transport (tests inject a MockTransport).
        """
        self._base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self._model = model or settings.OLLAMA_MODEL
        self._timeout = timeout or settings.OLLAMA_TIMEOUT
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self._timeout,
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Enrichment calls (raise on failure)
    # ------------------------------------------------------------------

    async def summarize(self, content: str) -> str:
        """Summarize document content."""
        text = await self._complete(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"Please summarize the following content:\n\n{content}",
                },
            ],
            options={"num_predict": 1000},
        )
        summary = text.strip()
        if not summary:
            raise ValueError("Empty summary returned by the model")
        return summary

    async def extract_entities(self, content: str) -> ExtractionResult:
        """
        Extract entities and relationships as structured output.

        Raises:
            pydantic.ValidationError: If the model output does not match
                the expected schema.
        """
        raw = await self._complete(
            [
                {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        "Extract all entities and their relationships from "
                        f"the following text:\n\n{content}"
                    ),
                },
            ],
            response_format=ExtractionResult.model_json_schema(),
        )
        result = ExtractionResult.model_validate_json(raw)
        logger.info(
            "Extracted %d entities, %d relationships",
            len(result.entities),
            len(result.relationships),
        )
        return result

    async def generate_title(self, message: str) -> str:
        """Short title for a thread opened with ``message``."""
        raw = await self._complete(
            [
                {"role": "system", "content": TITLE_SYSTEM_PROMPT},
                {"role": "user", "content": message[:1000]},
            ],
            options={"num_predict": 30},
        )
        lines = raw.strip().splitlines()
        title = lines[0].strip().strip("\"'").rstrip(".").strip() if lines else ""
        if not title:
            raise ValueError("Empty title returned by the model")
        return title[:MAX_TITLE_LENGTH]

    async def _complete(
        self,
        messages: list[dict[str, str]],
        response_format: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> str:
        """
        Non-streaming call to ``/api/chat``.

        Raises:
            httpx.ConnectError: If Ollama server is unreachable.
            httpx.TimeoutException: If request times out.
            httpx.HTTPStatusError: If API returns error status.
        """
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "stream": False,
        }
        if response_format is not None:
            payload["format"] = response_format
        if options:
            payload["options"] = options

        async with self._client() as client:
            response = await client.post(f"{self._base_url}/api/chat", json=payload)
            response.raise_for_status()
            data = response.json()

        content = data.get("message", {}).get("content", "")
        logger.debug(
            "Ollama completion (model=%s, length=%d)", self._model, len(content)
        )
        return content

    # ------------------------------------------------------------------
    # Chat streaming (degrades gracefully)
    # ------------------------------------------------------------------

    async def stream_chat(
        self,
        system_prompt: str,
        messages: Sequence[dict[str, str]],
    ) -> AsyncIterator[LLMResponse]:
        """
        Stream a chat completion as text deltas.

        If Ollama cannot be reached (or errors) before the first token, a
        single mock notice with ``is_mocked=True`` is yielded instead.
        Failures after the first token propagate to the caller.
        """
        payload = {
            "model": self._model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "stream": True,
        }
        started = False
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", f"{self._base_url}/api/chat", json=payload
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        if "error" in data:
                            raise RuntimeError(f"Ollama error: {data['error']}")
                        delta = data.get("message", {}).get("content", "")
                        if delta:
                            started = True
                            yield LLMResponse(content=delta, is_mocked=False)
                        if data.get("done"):
                            break
        except httpx.TransportError as e:
            if started:
                raise
            logger.warning(
                "Ollama unreachable (%s), using mock response: %s",
                type(e).__name__,
                str(e),
            )
            yield self._create_mock_response()
        except httpx.HTTPStatusError as e:
            if started:
                raise
            logger.error("Ollama API error: %s", e.response.status_code)
            yield self._create_mock_response()

    def _create_mock_response(self) -> LLMResponse:
        """Fallback notice streamed when Ollama is unavailable."""
        content = (
            "⚠️ **Note: AI Service unavailable (Ollama not running).**\n\n"
            "Your message was saved and the knowledge base was searched, "
            "but no answer could be generated.\n\n"
            "To enable full AI responses, please start Ollama with:\n"
            "```\nollama serve\n```"
        )
        return LLMResponse(content=content, is_mocked=True)

    async def health_check(self) -> bool:
        """
        Check if Ollama is reachable.

        Returns:
            True if Ollama API responds, False otherwise.
        """
        try:
            async with self._client(timeout=5.0) as client:
                response = await client.get(f"{self._base_url}/api/tags")
                return response.status_code == 200
        except httpx.TransportError:
            return False


# Module-level singleton for convenience
llm_service = LLMService()
