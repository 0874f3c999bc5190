"""Tests for stream registration and resumable delivery."""

import asyncio

import pytest

from app.chat.service import stream_registry
from app.chat.service.stream_registry import (
    STATE_DONE, StreamContext, StreamSessionRegistry, close_stream_context, get_stream_context,
)


def _chunks(*chunks, gate=None):
    async def generate():
        for index, chunk in enumerate(chunks):
            if gate is not None and index == len(chunks) - 1:
                await gate.wait()
            yield chunk

    return generate


async def _collect(stream):
    return [chunk async for chunk in stream]


@pytest.mark.asyncio
async def test_register_is_idempotent(repository):
    registry = StreamSessionRegistry(repository)

    await registry.register("s1", "chat-1")
    await registry.register("s1", "chat-1")

    assert await repository.get_stream_ids_by_conversation("chat-1") == ["s1"]


@pytest.mark.asyncio
async def test_registration_keeps_no_per_stream_state(repository):
    registry = StreamSessionRegistry(repository)
    before = dict(vars(registry))

    for index in range(500):
        await registry.register(f"s{index}", "chat-1")
    # A second process registering the same id is still a no-op
    await StreamSessionRegistry(repository).register("s0", "chat-1")

    assert vars(registry) == before
    assert len(await repository.get_stream_ids_by_conversation("chat-1")) == 500


@pytest.mark.asyncio
async def test_without_context_streams_directly_and_cannot_resume(repository):
    registry = StreamSessionRegistry(repository, None)

    stream = await registry.make_resumable("s1", _chunks("a", "b"))

    assert not registry.resumable
    assert await _collect(stream) == ["a", "b"]
    assert await registry.resume_if_available("s1") is None


@pytest.mark.asyncio
async def test_unknown_stream_resumes_to_none(repository, fake_redis):
    registry = StreamSessionRegistry(repository, StreamContext(fake_redis, idle_timeout_seconds=0.1))

    assert await registry.resume_if_available("missing") is None


@pytest.mark.asyncio
async def test_finished_stream_replays_from_the_start(repository, fake_redis):
    context = StreamContext(fake_redis, idle_timeout_seconds=0.1)
    registry = StreamSessionRegistry(repository, context)

    live = await _collect(await registry.make_resumable("s1", _chunks("a", "b", "c")))
    # Let the pump write its completion marker
    await asyncio.sleep(0.01)
    replay = await registry.resume_if_available("s1")

    assert live == ["a", "b", "c"]
    assert fake_redis.values["stream:s1:state"] == STATE_DONE
    assert await _collect(replay) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_resume_follows_a_stream_that_is_still_running(repository, fake_redis):
    gate = asyncio.Event()
    registry = StreamSessionRegistry(repository, StreamContext(fake_redis, idle_timeout_seconds=1.0))

    live = await registry.make_resumable("s1", _chunks("a", "b", "c", gate=gate))
    assert await live.__anext__() == "a"
    assert await live.__anext__() == "b"
    await live.aclose()

    replay = await registry.resume_if_available("s1")
    reader = asyncio.ensure_future(_collect(replay))
    await asyncio.sleep(0.01)
    gate.set()

    assert await reader == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_publish_failure_degrades_to_local_delivery(repository, fake_redis):
    fake_redis.fail_stream_add = True
    registry = StreamSessionRegistry(repository, StreamContext(fake_redis, idle_timeout_seconds=0.1))

    live = await _collect(await registry.make_resumable("s1", _chunks("a", "b")))

    assert live == ["a", "b"]


@pytest.mark.asyncio
async def test_context_setup_failure_streams_directly(repository, fake_redis):
    async def broken_set(*_args, **_kwargs):
        raise ConnectionError("redis down")

    fake_redis.async_set_value = broken_set
    registry = StreamSessionRegistry(repository, StreamContext(fake_redis))

    assert await _collect(await registry.make_resumable("s1", _chunks("a"))) == ["a"]


@pytest.mark.asyncio
async def test_missing_redis_url_disables_resume_for_the_process(monkeypatch):
    await close_stream_context()
    monkeypatch.setattr(stream_registry.settings, "REDIS_URL", None)

    assert await get_stream_context() is None
    assert stream_registry._resumable_disabled is True
    assert await get_stream_context("redis://localhost:6379/0") is None

    await close_stream_context()
    assert stream_registry._resumable_disabled is False


@pytest.mark.asyncio
async def test_unreachable_redis_is_retried_on_next_call(monkeypatch, fake_redis):
    await close_stream_context()
    attempts = []

    class Unreachable:
        async def ping(self):
            attempts.append("ping")
            raise ConnectionError("refused")

        async def async_close(self):
            pass

    monkeypatch.setattr(stream_registry.RedisClient, "from_url", classmethod(lambda cls, logger, url: Unreachable()))
    assert await get_stream_context("redis://nowhere:6379") is None

    monkeypatch.setattr(stream_registry.RedisClient, "from_url", classmethod(lambda cls, logger, url: fake_redis))
    context = await get_stream_context("redis://somewhere:6379")

    assert attempts == ["ping"]
    assert isinstance(context, StreamContext)
    await close_stream_context()
    assert fake_redis.closed


@pytest.mark.asyncio
async def test_resume_support_returns_once_redis_recovers(repository, fake_redis):
    contexts = [None, StreamContext(fake_redis, idle_timeout_seconds=0.1)]
    lookups = []

    async def factory():
        lookups.append("lookup")
        return contexts[min(len(lookups) - 1, 1)]

    registry = StreamSessionRegistry(repository, None, context_factory=factory)

    first = await _collect(await registry.make_resumable("s1", _chunks("a")))
    assert first == ["a"]
    assert not registry.resumable

    live = await _collect(await registry.make_resumable("s2", _chunks("b", "c")))
    await asyncio.sleep(0.01)
    replay = await registry.resume_if_available("s2")

    assert registry.resumable
    assert live == ["b", "c"]
    assert await _collect(replay) == ["b", "c"]
    assert await registry.resume_if_available("s1") is None
    assert lookups == ["lookup", "lookup"]
