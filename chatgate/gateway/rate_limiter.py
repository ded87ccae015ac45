"""Sliding-window rate limiter — per-caller admission keyed by (identifier, endpoint class).

Each admitted request records a timestamped entry in the shared store. An
admission check prunes entries older than ``now - window``, counts what
is left and records the new entry only while under the tier's limit. The
three steps run as one atomic store operation, so concurrent requests
never both read a stale count. Window keys expire after twice the window.

When the store is unreachable the limiter fails open: the request is
admitted and the outage logged. Chat availability wins over strict quota
enforcement.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable

from chatgate.core.metrics import DEGRADED_EVENTS, RATE_LIMIT_DECISIONS
from chatgate.gateway.errors import InternalDegradedError
from chatgate.gateway.store import KeyValueStore
from chatgate.gateway.types import DEFAULT_TIER_LIMITS, RateLimitResult, TierLimit

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Tiered sliding-window limiter backed by a shared store.

    Usage:
        limiter = SlidingWindowRateLimiter(store, tier_limits)

        result = await limiter.check(user_id, "chat", tier="free")
        if not result.allowed:
            # relay result.retry_after to the caller
            ...
    """

    def __init__(
        self,
        store: KeyValueStore,
        tier_limits: dict[str, TierLimit] | None = None,
        default_tier: str = "free",
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._tiers = tier_limits or dict(DEFAULT_TIER_LIMITS)
        self._default_tier = default_tier
        self._clock = clock

    @staticmethod
    def _key(identifier: str, endpoint_class: str) -> str:
        return f"ratelimit:{endpoint_class}:{identifier}"

    def limit_for(self, tier: str) -> TierLimit:
        """Limits for a tier; unknown tiers get the default tier's limits."""
        limit = self._tiers.get(tier)
        if limit is None:
            logger.warning("Unknown tier %r, using %r limits", tier, self._default_tier)
            limit = self._tiers[self._default_tier]
        return limit

    async def check(self, identifier: str, endpoint_class: str = "chat", tier: str = "free") -> RateLimitResult:
        """Atomically decide admission for one request and record it if admitted."""
        limit = self.limit_for(tier)
        window = limit.window_seconds
        now = self._clock()
        member = f"{now:.6f}-{uuid.uuid4().hex[:12]}"

        try:
            state = await self._store.sliding_window_hit(
                self._key(identifier, endpoint_class),
                now=now,
                window_seconds=window,
                limit=limit.requests_per_window,
                member=member,
                expire_seconds=window * 2,
            )
        except InternalDegradedError as e:
            logger.error("Rate limiter store unavailable, admitting %s (fail open): %s", identifier, e)
            DEGRADED_EVENTS.labels(component="rate_limiter").inc()
            RATE_LIMIT_DECISIONS.labels(tier=tier, decision="fail_open").inc()
            return RateLimitResult(
                allowed=True,
                limit=limit.requests_per_window,
                remaining=max(limit.requests_per_window - 1, 0),
                reset_at=now + window,
            )

        reset_at = state.oldest + window

        if state.allowed:
            RATE_LIMIT_DECISIONS.labels(tier=tier, decision="allowed").inc()
            return RateLimitResult(
                allowed=True,
                limit=limit.requests_per_window,
                remaining=max(limit.requests_per_window - state.count, 0),
                reset_at=reset_at,
            )

        # The oldest entry leaving the window frees the next slot
        retry_after = max(math.ceil(reset_at - now), 1)
        RATE_LIMIT_DECISIONS.labels(tier=tier, decision="rejected").inc()
        logger.info(
            "Rate limited %s on %s (tier=%s, %d/%ds), retry in %ds",
            identifier,
            endpoint_class,
            tier,
            limit.requests_per_window,
            window,
            retry_after,
        )
        return RateLimitResult(
            allowed=False,
            limit=limit.requests_per_window,
            remaining=0,
            reset_at=reset_at,
            retry_after=retry_after,
        )

    async def reset(self, identifier: str, endpoint_class: str = "chat") -> bool:
        """Forget all recorded requests for a caller. Returns True if a window existed."""
        deleted = await self._store.delete(self._key(identifier, endpoint_class))
        logger.info("Rate limit reset for %s on %s (existed=%s)", identifier, endpoint_class, deleted)
        return deleted
