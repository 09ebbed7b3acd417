"""
Streaming Primitives

``EventChannel`` connects a background producer task to one HTTP
consumer. The producer never blocks on the consumer (the queue is
unbounded) and keeps running after the consumer goes away, so every
write the producer performs happens whether or not anybody is reading.

``spawn`` keeps strong references to such tasks until they finish;
``drain`` awaits the stragglers at shutdown.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Coroutine
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()

# In-flight background tasks (ingestion runs, chat turns)
_tasks: set[asyncio.Task[Any]] = set()


class EventChannel(Generic[T]):
    """
    Single-producer / single-consumer event stream.

    Usage::

        channel: EventChannel[IngestEvent] = EventChannel()
        spawn(producer(channel))           # calls channel.send(...) then close()
        async for event in channel:        # consumed at most once
            ...
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._consumed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: T) -> None:
        if self._closed:
            raise RuntimeError("send() on a closed EventChannel")
        self._queue.put_nowait(item)

    def close(self) -> None:
        """Mark the end of the stream. Idempotent."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[T]:
        if self._consumed:
            raise RuntimeError("EventChannel can only be consumed once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


def spawn(coro: Coroutine[Any, Any, T], name: str | None = None) -> asyncio.Task[T]:
    """Schedule ``coro`` as a task that survives its caller."""
    task = asyncio.create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_task_done)
    return task


def _on_task_done(task: asyncio.Task[Any]) -> None:
    _tasks.discard(task)
    if task.cancelled():
        logger.warning("Background task %s was cancelled", task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task %s crashed",
            task.get_name(),
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def in_flight() -> int:
    return len(_tasks)


async def drain(timeout: float = 30.0) -> None:
    """Wait for in-flight background tasks; cancel whatever is left after ``timeout``."""
    if not _tasks:
        return
    pending = set(_tasks)
    logger.info("Draining %d background task(s)...", len(pending))
    _, still_running = await asyncio.wait(pending, timeout=timeout)
    for task in still_running:
        task.cancel()
    if still_running:
        logger.warning("Cancelled %d background task(s) at shutdown", len(still_running))


async def ndjson_lines(events: AsyncIterator[Any]) -> AsyncIterator[str]:
    """Serialize events (anything with ``to_wire()``) as newline-delimited JSON."""
    async for event in events:
        yield json.dumps(event.to_wire(), ensure_ascii=False) + "\n"
