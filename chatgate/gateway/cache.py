"""Response Cache — content-addressed store of completed LLM responses.

Entries are keyed by a fingerprint of the normalized request and expire by
TTL. ``get_or_compute`` adds single-flight production: the first requester
for a fingerprint takes a short-lived in-flight marker and calls the
provider; concurrent requesters poll for the result instead of calling
the provider themselves. This is a cost optimization, not a correctness
mechanism, so a waiter that times out produces on its own (duplicate work
rather than unbounded blocking). Markers carry a hard expiry, so a crashed
producer cannot wedge a fingerprint.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from chatgate.core.metrics import CACHE_LOOKUPS, DEGRADED_EVENTS
from chatgate.gateway.errors import InternalDegradedError
from chatgate.gateway.store import KeyValueStore
from chatgate.gateway.types import ConversationContext, LLMResponse, Role

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fingerprinting
# ---------------------------------------------------------------------------


def normalize_whitespace(text: str) -> str:
    """Collapse runs of whitespace and trim the ends."""
    return " ".join(text.split())


def _role_of(message) -> str:
    role = message["role"] if isinstance(message, dict) else message.role
    return role.value if isinstance(role, Role) else str(role)


def _content_of(message) -> str:
    return message["content"] if isinstance(message, dict) else message.content


def fingerprint(messages: Iterable, model: str, temperature: float, max_tokens: int) -> str:
    """Stable hash of a request's conversational intent.

    Only role and whitespace-normalized content of each message take part,
    so timestamps, token estimates and formatting noise do not split the
    cache. Accepts Message objects or ``{"role", "content"}`` dicts.
    """
    canonical = {
        "messages": [[_role_of(m), normalize_whitespace(_content_of(m))] for m in messages],
        "model": model,
        "temperature": round(float(temperature), 4),
        "max_tokens": int(max_tokens),
    }
    serialized = json.dumps(canonical, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def fingerprint_context(context: ConversationContext, model: str, temperature: float, max_tokens: int) -> str:
    """Fingerprint of a built context, preamble included."""
    messages: list[dict] = []
    if context.system_preamble:
        messages.append({"role": Role.SYSTEM.value, "content": context.system_preamble})
    messages.extend({"role": m.role.value, "content": m.content} for m in context.messages)
    return fingerprint(messages, model, temperature, max_tokens)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass
class InFlightMarker:
    """Ownership of the right to produce one fingerprint.

    ``token`` is None when the store was unreachable at acquisition time:
    the holder produces without coordination and release is a no-op.
    """

    fingerprint: str
    acquired: bool
    token: str | None = None


class ResponseCache:
    """Fingerprint → LLMResponse cache with single-flight production.

    Usage:
        cache = ResponseCache(store, default_ttl=3600)
        fp = fingerprint(messages, "gpt-4o-mini", 0.7, 1024)
        response = await cache.get_or_compute(fp, ttl=3600, produce=call_provider)
    """

    def __init__(
        self,
        store: KeyValueStore,
        default_ttl: int = 3600,
        wait_seconds: float = 10.0,
        poll_interval: float = 0.1,
        marker_ttl: int = 120,
        enabled: bool = True,
    ):
        self._store = store
        self.default_ttl = default_ttl
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.marker_ttl = marker_ttl
        self.enabled = enabled

    @staticmethod
    def _entry_key(fp: str) -> str:
        return f"cache:response:{fp}"

    @staticmethod
    def _marker_key(fp: str) -> str:
        return f"cache:inflight:{fp}"

    def _degraded(self, operation: str, fp: str, error: Exception) -> None:
        DEGRADED_EVENTS.labels(component="cache").inc()
        logger.warning("Response cache %s failed for %s: %s", operation, fp[:12], error)

    async def get(self, fp: str) -> LLMResponse | None:
        """Cached response for a fingerprint, or None on miss."""
        if not self.enabled:
            return None
        try:
            raw = await self._store.get(self._entry_key(fp))
        except InternalDegradedError as e:
            self._degraded("get", fp, e)
            return None
        if raw is None:
            return None

        try:
            data = json.loads(raw)
            response = LLMResponse.from_dict(data["response"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable cache entry %s: %s", fp[:12], e)
            return None

        response.cached = True
        return response

    async def set(self, fp: str, response: LLMResponse, ttl: int | None = None) -> None:
        """Store a completed response. Entries are never updated in place."""
        if not self.enabled or not response.content:
            return
        ttl = ttl or self.default_ttl
        payload = {
            "response": {**response.to_dict(), "cached": False},
            "produced_at": time.time(),
            "ttl": ttl,
        }
        try:
            await self._store.set(self._entry_key(fp), json.dumps(payload, ensure_ascii=False), ttl)
        except InternalDegradedError as e:
            self._degraded("set", fp, e)

    async def acquire(self, fp: str) -> InFlightMarker:
        """Try to become the single producer for a fingerprint."""
        token = uuid.uuid4().hex
        try:
            created = await self._store.set_if_absent(self._marker_key(fp), token, self.marker_ttl)
        except InternalDegradedError as e:
            self._degraded("acquire", fp, e)
            return InFlightMarker(fingerprint=fp, acquired=True, token=None)
        return InFlightMarker(fingerprint=fp, acquired=created, token=token if created else None)

    async def release(self, marker: InFlightMarker) -> None:
        """Release a held marker. Only the owner's token can delete it."""
        if not marker.acquired or marker.token is None:
            return
        try:
            await self._store.delete_if_equals(self._marker_key(marker.fingerprint), marker.token)
        except InternalDegradedError as e:
            # The marker's own TTL frees the fingerprint
            self._degraded("release", marker.fingerprint, e)

    async def wait_for(self, fp: str) -> tuple[LLMResponse | None, InFlightMarker | None]:
        """Poll while another producer holds the marker.

        Returns ``(response, None)`` when the result lands, ``(None, marker)``
        when the producer vanished without a result and this caller took
        over, and ``(None, None)`` once the bounded wait runs out.
        """
        deadline = time.monotonic() + self.wait_seconds

        while time.monotonic() < deadline:
            await asyncio.sleep(self.poll_interval)

            cached = await self.get(fp)
            if cached is not None:
                return cached, None

            try:
                in_flight = await self._store.exists(self._marker_key(fp))
            except InternalDegradedError as e:
                self._degraded("wait", fp, e)
                return None, None

            if not in_flight:
                marker = await self.acquire(fp)
                if marker.acquired:
                    return None, marker

        return None, None

    async def get_or_compute(
        self,
        fp: str,
        ttl: int | None,
        produce: Callable[[], Awaitable[LLMResponse]],
    ) -> LLMResponse:
        """Return the cached response or produce it at most once across waiters."""
        if not self.enabled:
            return await produce()

        cached = await self.get(fp)
        if cached is not None:
            CACHE_LOOKUPS.labels(result="hit").inc()
            return cached
        CACHE_LOOKUPS.labels(result="miss").inc()

        marker = await self.acquire(fp)
        if not marker.acquired:
            cached, marker = await self.wait_for(fp)
            if cached is not None:
                CACHE_LOOKUPS.labels(result="waited_hit").inc()
                return cached

            if marker is None:
                logger.info("Cache wait for %s timed out after %.1fs, producing independently", fp[:12], self.wait_seconds)
                CACHE_LOOKUPS.labels(result="duplicate").inc()
                response = await produce()
                await self.set(fp, response, ttl)
                return response

        try:
            response = await produce()
            CACHE_LOOKUPS.labels(result="produced").inc()
            await self.set(fp, response, ttl)
            return response
        finally:
            await self.release(marker)
