"""
Enrichment Results

Tagged outcome for calls to AI services that are allowed to fail.
Callers branch on ``ok`` instead of catching exceptions, so a degraded
service never aborts the pipeline or the chat turn.

``attempt`` applies a per-call timeout and a small retry budget with
linear backoff (delay, 2·delay, ...).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Enrichment(Generic[T]):
    """
    Result of an enrichment call.

    Attributes:
        value: The produced value, or the caller's default when unavailable.
        ok: False when the service failed or timed out.
        reason: Short failure description (``None`` when ok).
    """

    value: T
    ok: bool = True
    reason: str | None = None

    @classmethod
    def success(cls, value: T) -> Enrichment[T]:
        return cls(value=value)

    @classmethod
    def unavailable(cls, default: T, reason: str) -> Enrichment[T]:
        return cls(value=default, ok=False, reason=reason)


async def attempt(
    label: str,
    factory: Callable[[], Awaitable[T]],
    default: T,
    *,
    timeout: float | None = None,
    retries: int | None = None,
    delay: float | None = None,
) -> Enrichment[T]:
    """
    Run ``factory()`` with a timeout, retrying on failure.

    Args:
        label: Name used in log lines ("summarize", "embed batch 2", ...).
        factory: Zero-arg callable returning a fresh awaitable per attempt.
        default: Value carried by the unavailable result.
        timeout: Per-attempt timeout in seconds (default ENRICHMENT_TIMEOUT).
        retries: Extra attempts after the first (default ENRICHMENT_MAX_RETRIES).
        delay: Base backoff in seconds (default ENRICHMENT_RETRY_DELAY).

    Returns:
        ``Enrichment.success(value)`` or ``Enrichment.unavailable(default, reason)``.
    """
    timeout = settings.ENRICHMENT_TIMEOUT if timeout is None else timeout
    retries = settings.ENRICHMENT_MAX_RETRIES if retries is None else retries
    delay = settings.ENRICHMENT_RETRY_DELAY if delay is None else delay

    total = retries + 1
    reason = "unknown error"
    for index in range(total):
        try:
            value = await asyncio.wait_for(factory(), timeout=timeout)
            return Enrichment.success(value)
        except TimeoutError:
            reason = f"timed out after {timeout:.0f}s"
        except Exception as e:  # noqa: BLE001 - any service failure degrades
            reason = f"{type(e).__name__}: {e}"

        logger.warning(
            "%s failed (attempt %d/%d): %s", label, index + 1, total, reason
        )
        if index < total - 1 and delay > 0:
            await asyncio.sleep(delay * (index + 1))

    return Enrichment.unavailable(default, reason)
