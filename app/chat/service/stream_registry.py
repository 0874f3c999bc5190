# app/chat/service/stream_registry.py
"""
Stream sessions and resumable delivery.

Every chat response stream gets an id that is recorded against its
conversation. When Redis is configured, the SSE chunks of the stream are also
appended to a Redis stream (``stream:{id}:events``) by a background pump, so a
client that lost its connection can replay the response from the start and
follow it until it ends. Without Redis the service keeps working and streams
are simply not resumable.
"""

import asyncio
import uuid
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from app.chat.service.service import IChatRepository
from app.core.config import settings
from app.core.logger import get_logger
from app.core.tasks import spawn
from pkg.redis.client import RedisClient

logger = get_logger("StreamRegistry")

STATE_ACTIVE = "active"
STATE_DONE = "done"

_END = object()


class StreamContext:
    """Redis Streams backed buffer for resumable SSE responses."""

    def __init__(self, redis: RedisClient, ttl_seconds: int = settings.STREAM_TTL_SECONDS,
                 idle_timeout_seconds: float = settings.STREAM_IDLE_TIMEOUT_SECONDS):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.idle_timeout_seconds = idle_timeout_seconds

    @staticmethod
    def _events_key(stream_id: str) -> str:
        return f"stream:{stream_id}:events"

    @staticmethod
    def _state_key(stream_id: str) -> str:
        return f"stream:{stream_id}:state"

    async def resumable_stream(self, stream_id: str, make_stream: Callable[[], AsyncIterator[str]]) -> AsyncIterator[str]:
        """
        Start ``make_stream()`` and fan its chunks out to Redis and to the caller.

        The pump keeps running when the caller stops reading, so the buffer is
        complete for later resumes.
        """
        await self.redis.async_set_value(self._state_key(stream_id), STATE_ACTIVE, expiry=self.ttl_seconds)
        queue: asyncio.Queue = asyncio.Queue()
        spawn(self._pump(stream_id, make_stream(), queue), name=f"stream-pump-{stream_id}")
        return self._read_local(queue)

    async def _pump(self, stream_id: str, source: AsyncIterator[str], queue: asyncio.Queue) -> None:
        events_key = self._events_key(stream_id)
        publishing = True
        try:
            async for chunk in source:
                queue.put_nowait(chunk)
                if not publishing:
                    continue
                try:
                    await self.redis.stream_add(events_key, {"chunk": chunk}, ttl=self.ttl_seconds)
                except Exception as e:
                    # The live caller still gets every chunk
                    logger.error(f"[Stream {stream_id}] publish failed, continuing without resume support: {e}")
                    publishing = False
        except Exception as e:
            logger.error(f"[Stream {stream_id}] source failed: {e}", exc_info=True)
        finally:
            queue.put_nowait(_END)
            if publishing:
                try:
                    await self.redis.stream_add(events_key, {"done": "1"}, ttl=self.ttl_seconds)
                    await self.redis.async_set_value(self._state_key(stream_id), STATE_DONE, expiry=self.ttl_seconds)
                except Exception as e:
                    logger.error(f"[Stream {stream_id}] failed to mark stream done: {e}")

    @staticmethod
    async def _read_local(queue: asyncio.Queue) -> AsyncIterator[str]:
        while True:
            chunk = await queue.get()
            if chunk is _END:
                return
            yield chunk

    async def resume_existing_stream(self, stream_id: str) -> Optional[AsyncIterator[str]]:
        """Replay a buffered stream from its first chunk, or ``None`` if nothing is buffered."""
        state = await self.redis.async_get_value(self._state_key(stream_id))
        if state is None:
            return None
        return self._replay(stream_id)

    async def _replay(self, stream_id: str) -> AsyncIterator[str]:
        events_key = self._events_key(stream_id)
        last_id = "0"
        while True:
            entries = await self.redis.stream_read(
                events_key, last_id=last_id, block_ms=int(self.idle_timeout_seconds * 1000)
            )
            if not entries:
                logger.warning(f"[Stream {stream_id}] no new chunks for {self.idle_timeout_seconds}s, ending resume")
                return
            for entry_id, fields in entries:
                last_id = entry_id
                if "done" in fields:
                    return
                yield fields.get("chunk", "")

    async def discard(self, stream_id: str) -> None:
        await self.redis.async_delete(self._events_key(stream_id), self._state_key(stream_id))

    async def close(self) -> None:
        await self.redis.async_close()


# ────────────────────────────────────────────────
# Process-wide context
# ────────────────────────────────────────────────

_stream_context: Optional[StreamContext] = None
_resumable_disabled = False
_init_lock = asyncio.Lock()


async def get_stream_context(redis_url: Optional[str] = None) -> Optional[StreamContext]:
    """
    The shared ``StreamContext``, created on first use.

    Missing configuration disables resumable streams for the life of the
    process. Connection failures only affect this call; the next call tries again.
    """
    global _stream_context, _resumable_disabled
    if _stream_context is not None:
        return _stream_context
    if _resumable_disabled:
        return None

    async with _init_lock:
        if _stream_context is not None:
            return _stream_context
        url = redis_url if redis_url is not None else settings.REDIS_URL
        if not url:
            logger.info("REDIS_URL not set, resumable streams are disabled")
            _resumable_disabled = True
            return None
        client = RedisClient.from_url(logger, url)
        try:
            await client.ping()
        except Exception as e:
            logger.error(f"Resumable stream context unavailable, will retry: {e}")
            await client.async_close()
            return None
        _stream_context = StreamContext(client)
        logger.info("Resumable streams enabled")
        return _stream_context


async def close_stream_context() -> None:
    global _stream_context, _resumable_disabled
    if _stream_context is not None:
        await _stream_context.close()
    _stream_context = None
    _resumable_disabled = False


class StreamSessionRegistry:
    """
    Records stream ids against conversations and resumes buffered streams.

    ``context_factory`` is asked for a context whenever none is held yet, so
    resume support comes back once Redis is reachable again.
    """

    def __init__(
        self,
        repository: IChatRepository,
        context: Optional[StreamContext] = None,
        context_factory: Optional[Callable[[], Awaitable[Optional[StreamContext]]]] = None,
    ):
        self.repository = repository
        self.context = context
        self.context_factory = context_factory

    @property
    def resumable(self) -> bool:
        return self.context is not None

    @staticmethod
    def new_stream_id() -> str:
        return str(uuid.uuid4())

    async def _current_context(self) -> Optional[StreamContext]:
        if self.context is None and self.context_factory is not None:
            self.context = await self.context_factory()
        return self.context

    async def register(self, stream_id: str, conversation_id: str) -> None:
        # The insert ignores ids that already exist
        await self.repository.create_stream_id(stream_id, conversation_id)

    async def make_resumable(self, stream_id: str, make_stream: Callable[[], AsyncIterator[str]]) -> AsyncIterator[str]:
        context = await self._current_context()
        if context is None:
            return make_stream()
        try:
            return await context.resumable_stream(stream_id, make_stream)
        except Exception as e:
            logger.error(f"[Stream {stream_id}] could not enable resume, streaming directly: {e}")
            return make_stream()

    async def resume_if_available(self, stream_id: str) -> Optional[AsyncIterator[str]]:
        context = await self._current_context()
        if context is None:
            return None
        try:
            return await context.resume_existing_stream(stream_id)
        except Exception as e:
            logger.error(f"[Stream {stream_id}] resume failed: {e}")
            return None

    async def discard(self, stream_ids: List[str]) -> None:
        """Drop buffered chunks of deleted streams. Failures only leave the buffer to expire."""
        context = await self._current_context()
        if context is None:
            return
        for stream_id in stream_ids:
            try:
                await context.discard(stream_id)
            except Exception as e:
                logger.warning(f"[Stream {stream_id}] could not discard buffer: {e}")
