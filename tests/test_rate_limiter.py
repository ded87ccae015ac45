"""Tests for the sliding-window rate limiter."""

from unittest.mock import AsyncMock

import pytest

from chatgate.gateway.errors import InternalDegradedError
from chatgate.gateway.rate_limiter import SlidingWindowRateLimiter
from chatgate.gateway.store import MemoryStore
from chatgate.gateway.types import TierLimit

TIERS = {
    "free": TierLimit(requests_per_window=5, window_seconds=60),
    "pro": TierLimit(requests_per_window=50, window_seconds=60),
}


@pytest.fixture
def limiter(store, clock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(store, TIERS, default_tier="free", clock=clock)


class TestSlidingWindow:
    @pytest.mark.asyncio
    async def test_five_per_minute_exactness(self, limiter, clock):
        results = [await limiter.check("u1", "chat", "free") for _ in range(5)]

        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

        sixth = await limiter.check("u1", "chat", "free")
        assert not sixth.allowed
        assert sixth.remaining == 0
        assert sixth.retry_after == 60
        assert sixth.reset_at == pytest.approx(clock.now + 60)

        clock.advance(61)
        assert (await limiter.check("u1", "chat", "free")).allowed

    @pytest.mark.asyncio
    async def test_window_slides(self, store, clock):
        limiter = SlidingWindowRateLimiter(store, {"free": TierLimit(2, 60)}, clock=clock)
        start = clock.now

        assert (await limiter.check("u1")).allowed
        clock.advance(30)
        assert (await limiter.check("u1")).allowed

        clock.advance(15)
        rejected = await limiter.check("u1")
        assert not rejected.allowed
        # The first entry leaves the window at start + 60
        assert rejected.retry_after == 15
        assert rejected.reset_at == pytest.approx(start + 60)

        clock.advance(16)
        assert (await limiter.check("u1")).allowed

    @pytest.mark.asyncio
    async def test_rejections_are_not_recorded(self, store, clock):
        limiter = SlidingWindowRateLimiter(store, {"free": TierLimit(1, 60)}, clock=clock)
        assert (await limiter.check("u1")).allowed

        for _ in range(10):
            clock.advance(5)
            assert not (await limiter.check("u1")).allowed

        clock.advance(11)
        assert (await limiter.check("u1")).allowed

    @pytest.mark.asyncio
    async def test_identifiers_are_independent(self, limiter):
        for _ in range(5):
            await limiter.check("u1", "chat", "free")

        assert not (await limiter.check("u1", "chat", "free")).allowed
        assert (await limiter.check("u2", "chat", "free")).allowed

    @pytest.mark.asyncio
    async def test_endpoint_classes_are_independent(self, limiter):
        for _ in range(5):
            await limiter.check("u1", "chat", "free")

        assert not (await limiter.check("u1", "chat", "free")).allowed
        assert (await limiter.check("u1", "models", "free")).allowed


class TestTiers:
    @pytest.mark.asyncio
    async def test_pro_tier_has_higher_limit(self, limiter):
        results = [await limiter.check("u1", "chat", "pro") for _ in range(6)]
        assert all(r.allowed for r in results)
        assert results[-1].limit == 50

    @pytest.mark.asyncio
    async def test_unknown_tier_uses_default(self, limiter):
        result = await limiter.check("u1", "chat", "enterprise-gold")
        assert result.allowed
        assert result.limit == 5

    def test_headers(self):
        from chatgate.gateway.types import RateLimitResult

        result = RateLimitResult(allowed=False, limit=5, remaining=0, reset_at=1_700_000_060.4, retry_after=42)
        assert result.headers() == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "1700000060",
            "Retry-After": "42",
        }


class TestDegradedStore:
    @pytest.mark.asyncio
    async def test_fails_open(self, clock):
        store = MemoryStore(clock=clock)
        store.sliding_window_hit = AsyncMock(side_effect=InternalDegradedError("redis down"))
        limiter = SlidingWindowRateLimiter(store, TIERS, clock=clock)

        results = [await limiter.check("u1", "chat", "free") for _ in range(10)]
        assert all(r.allowed for r in results)
        assert results[0].retry_after is None


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_clears_window(self, limiter):
        for _ in range(5):
            await limiter.check("u1", "chat", "free")
        assert not (await limiter.check("u1", "chat", "free")).allowed

        assert await limiter.reset("u1", "chat") is True
        assert (await limiter.check("u1", "chat", "free")).allowed

    @pytest.mark.asyncio
    async def test_reset_unknown_caller(self, limiter):
        assert await limiter.reset("nobody", "chat") is False
