"""
Cancellable text streams.

A TextStream runs its producer as a background task feeding a bounded
queue. The consumer iterates fragments; closing the stream early cancels
the producer so the HTTP stream or in-flight generation behind it is
released. Prefer ``async with stream:`` or an explicit ``aclose()``; a
stream that is simply dropped mid-iteration has its producer cancelled
when the stream object is garbage collected.
"""

import asyncio
import weakref
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from loguru import logger

DEFAULT_BUFFER_SIZE = 64

_DONE = object()


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException):
        self.error = error


async def _pump(producer: Callable[[], AsyncIterator[str]], queue: asyncio.Queue):
    # Must not reference the TextStream, or dropping it would never finalize
    source = producer()
    try:
        async for fragment in source:
            if fragment:
                await queue.put(fragment)
    except asyncio.CancelledError:
        logger.debug("Stream producer cancelled")
        raise
    except Exception as e:
        await queue.put(_Failure(e))
        return
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
    await queue.put(_DONE)


def _cancel_abandoned(task: asyncio.Task):
    if task.done():
        return
    loop = task.get_loop()
    if loop.is_closed():
        return
    logger.debug("Stream dropped without aclose(); cancelling its producer")
    loop.call_soon_threadsafe(task.cancel)


class TextStream:
    """Lazy, finite, non-restartable sequence of text fragments."""

    def __init__(
        self,
        producer: Callable[[], AsyncIterator[str]],
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._producer = producer
        self._buffer_size = buffer_size
        self._on_close = on_close
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._finalizer: Optional[weakref.finalize] = None
        self._iterated = False
        self._closed = False

    @classmethod
    def failed(cls, error: BaseException) -> "TextStream":
        """A stream that raises ``error`` on first read."""
        async def _raise():
            raise error
            yield  # pragma: no cover

        return cls(_raise)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "TextStream":
        if self._iterated:
            raise RuntimeError("TextStream can only be iterated once")
        self._iterated = True
        return self

    def _start(self):
        self._queue = asyncio.Queue(maxsize=self._buffer_size)
        self._task = asyncio.create_task(_pump(self._producer, self._queue))
        self._finalizer = weakref.finalize(self, _cancel_abandoned, self._task)
        self._finalizer.atexit = False

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration

        if self._task is None:
            self._start()

        try:
            item = await self._queue.get()
        except asyncio.CancelledError:
            self._closed = True
            self._task.cancel()
            raise

        if item is _DONE:
            await self.aclose()
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            await self.aclose()
            raise item.error
        return item

    async def aclose(self):
        """Stop the producer and release whatever it holds."""
        if self._closed and (self._task is None or self._task.done()):
            return
        self._closed = True

        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._finalizer is not None:
            self._finalizer.detach()

        if self._on_close is not None:
            on_close, self._on_close = self._on_close, None
            await on_close()

    async def collect(self) -> str:
        """Consume the whole stream and return the joined text."""
        parts: List[str] = []
        async with self:
            async for fragment in self:
                parts.append(fragment)
        return "".join(parts)

    async def __aenter__(self) -> "TextStream":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
