"""Tests for fingerprinting and the single-flight response cache."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chatgate.gateway.cache import ResponseCache, fingerprint, fingerprint_context
from chatgate.gateway.errors import InternalDegradedError, ProviderError, ProviderErrorKind
from chatgate.gateway.types import ConversationContext, LLMResponse, Message, Role


def _messages(*pairs: tuple[str, str]) -> list[dict]:
    return [{"role": role, "content": content} for role, content in pairs]


def _response(content: str = "cached answer") -> LLMResponse:
    return LLMResponse(content=content, model="gpt-4o-mini", tokens_used=12, provider="openai")


@pytest.fixture
def cache(store) -> ResponseCache:
    return ResponseCache(store, default_ttl=3600, wait_seconds=2.0, poll_interval=0.01, marker_ttl=30)


class TestFingerprint:
    def test_stable(self):
        msgs = _messages(("user", "Hello there"), ("assistant", "Hi!"), ("user", "How are you?"))
        assert fingerprint(msgs, "gpt-4o", 0.7, 1024) == fingerprint(msgs, "gpt-4o", 0.7, 1024)

    def test_whitespace_insensitive(self):
        a = _messages(("user", "Hello   there\n"))
        b = _messages(("user", "  Hello there"))
        assert fingerprint(a, "gpt-4o", 0.7, 1024) == fingerprint(b, "gpt-4o", 0.7, 1024)

    def test_ignores_timestamps_and_estimates(self):
        a = [Message.create(Role.USER, "Hello")]
        b = [Message(role=Role.USER, content="Hello", approx_tokens=99)]
        assert fingerprint(a, "gpt-4o", 0.7, 1024) == fingerprint(b, "gpt-4o", 0.7, 1024)

    def test_messages_and_dicts_agree(self):
        as_messages = [Message.create(Role.USER, "Hello")]
        as_dicts = _messages(("user", "Hello"))
        assert fingerprint(as_messages, "gpt-4o", 0.7, 1024) == fingerprint(as_dicts, "gpt-4o", 0.7, 1024)

    @pytest.mark.parametrize(
        "change",
        [
            {"model": "gpt-4"},
            {"temperature": 0.2},
            {"max_tokens": 512},
            {"messages": _messages(("user", "Goodbye there"))},
            {"messages": _messages(("assistant", "Hello there"))},
        ],
    )
    def test_any_parameter_changes_fingerprint(self, change):
        base = {"messages": _messages(("user", "Hello there")), "model": "gpt-4o", "temperature": 0.7, "max_tokens": 1024}
        assert fingerprint(**base) != fingerprint(**{**base, **change})

    def test_context_includes_preamble(self):
        messages = [Message.create(Role.USER, "Hi")]
        a = ConversationContext(messages=messages, system_preamble="Be brief.")
        b = ConversationContext(messages=messages, system_preamble="Be verbose.")
        assert fingerprint_context(a, "gpt-4o", 0.7, 1024) != fingerprint_context(b, "gpt-4o", 0.7, 1024)


class TestResponseCache:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache):
        assert await cache.get("fp1") is None

        await cache.set("fp1", _response())
        hit = await cache.get("fp1")
        assert hit.content == "cached answer"
        assert hit.cached is True
        assert hit.tokens_used == 12

    @pytest.mark.asyncio
    async def test_entries_expire(self, cache, clock):
        await cache.set("fp1", _response(), ttl=10)
        clock.advance(11)
        assert await cache.get("fp1") is None

    @pytest.mark.asyncio
    async def test_empty_responses_not_cached(self, cache):
        await cache.set("fp1", _response(content=""))
        assert await cache.get("fp1") is None

    @pytest.mark.asyncio
    async def test_get_or_compute_produces_once(self, cache):
        produce = AsyncMock(return_value=_response("fresh"))

        first = await cache.get_or_compute("fp1", 3600, produce)
        second = await cache.get_or_compute("fp1", 3600, produce)

        assert first.content == "fresh"
        assert first.cached is False
        assert second.cached is True
        assert produce.await_count == 1

    @pytest.mark.asyncio
    async def test_single_flight_under_concurrency(self, cache):
        calls = 0

        async def produce():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return _response("shared")

        results = await asyncio.gather(*(cache.get_or_compute("fp-shared", 3600, produce) for _ in range(10)))

        assert calls == 1
        assert all(r.content == "shared" for r in results)
        assert sum(1 for r in results if not r.cached) == 1

    @pytest.mark.asyncio
    async def test_failure_releases_marker(self, cache, store):
        failing = AsyncMock(side_effect=ProviderError("boom", kind=ProviderErrorKind.UNAVAILABLE))

        with pytest.raises(ProviderError):
            await cache.get_or_compute("fp1", 3600, failing)

        assert not await store.exists("cache:inflight:fp1")
        assert await cache.get("fp1") is None

        # The next caller produces immediately instead of waiting
        produce = AsyncMock(return_value=_response("second try"))
        result = await cache.get_or_compute("fp1", 3600, produce)
        assert result.content == "second try"

    @pytest.mark.asyncio
    async def test_waiter_takes_over_when_producer_vanishes(self, cache, store):
        # Another process held the marker and died without a result
        await store.set_if_absent("cache:inflight:fp1", "someone-else", 30)

        async def drop_marker():
            await asyncio.sleep(0.05)
            await store.delete("cache:inflight:fp1")

        produce = AsyncMock(return_value=_response("mine"))
        _, result = await asyncio.gather(drop_marker(), cache.get_or_compute("fp1", 3600, produce))

        assert result.content == "mine"
        assert produce.await_count == 1

    @pytest.mark.asyncio
    async def test_waiter_times_out_and_produces_independently(self, store):
        cache = ResponseCache(store, wait_seconds=0.05, poll_interval=0.01, marker_ttl=30)
        await store.set_if_absent("cache:inflight:fp1", "stuck-producer", 30)

        produce = AsyncMock(return_value=_response("independent"))
        result = await cache.get_or_compute("fp1", 3600, produce)

        assert result.content == "independent"
        assert produce.await_count == 1
        # The stuck producer's marker is not ours to release
        assert await store.exists("cache:inflight:fp1")

    @pytest.mark.asyncio
    async def test_release_is_owner_checked(self, cache, store):
        marker = await cache.acquire("fp1")
        assert marker.acquired

        await store.delete("cache:inflight:fp1")
        await store.set_if_absent("cache:inflight:fp1", "new-owner", 30)
        await cache.release(marker)

        assert await store.get("cache:inflight:fp1") == "new-owner"

    @pytest.mark.asyncio
    async def test_disabled_cache_always_produces(self, store):
        cache = ResponseCache(store, enabled=False)
        produce = AsyncMock(return_value=_response())

        await cache.get_or_compute("fp1", 3600, produce)
        await cache.get_or_compute("fp1", 3600, produce)

        assert produce.await_count == 2
        assert await cache.get("fp1") is None

    @pytest.mark.asyncio
    async def test_degraded_store_still_produces(self, store):
        store.get = AsyncMock(side_effect=InternalDegradedError("down"))
        store.set = AsyncMock(side_effect=InternalDegradedError("down"))
        store.set_if_absent = AsyncMock(side_effect=InternalDegradedError("down"))
        cache = ResponseCache(store)

        produce = AsyncMock(return_value=_response("still works"))
        result = await cache.get_or_compute("fp1", 3600, produce)

        assert result.content == "still works"
        assert produce.await_count == 1
