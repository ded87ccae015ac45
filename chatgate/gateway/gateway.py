"""Chat Gateway — orchestrator integrating all gateway components.

Main entry point for conversation turns:
  1. Admits the caller (sliding-window rate limit per tier)
  2. Resolves the model and builds a budgeted context from history
  3. Checks the response cache (single-flight on a miss)
  4. Dispatches via the provider adapter behind a circuit breaker
  5. Normalizes the response, writes cache and history

The steps run strictly in that order, so a rejected caller never touches
history or the cache and a cache hit never reaches a provider. A failed
turn leaves history untouched.

Usage:
    gateway = ChatGateway(config, store)

    response = await gateway.turn(TurnRequest(user_id, session_id, "gpt-4o-mini", "Hi"))

    stream = await gateway.open_stream(request)
    async for event in stream:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from chatgate.core.metrics import CACHE_LOOKUPS, PROVIDER_LATENCY, TURNS_TOTAL
from chatgate.gateway.adapters import BaseProviderAdapter, get_adapter
from chatgate.gateway.cache import InFlightMarker, ResponseCache, fingerprint_context
from chatgate.gateway.circuit_breaker import CircuitBreaker
from chatgate.gateway.context import ContextManager
from chatgate.gateway.errors import (
    GatewayError,
    InvalidRequestError,
    ProviderError,
    ProviderErrorKind,
    ProviderUnavailableError,
    RateLimitedError,
)
from chatgate.gateway.history import DurableConversationStore, HistoryStore
from chatgate.gateway.normalizer import normalize_response
from chatgate.gateway.rate_limiter import SlidingWindowRateLimiter
from chatgate.gateway.store import KeyValueStore
from chatgate.gateway.types import (
    ConversationContext,
    GatewayConfig,
    GenerationOptions,
    LLMResponse,
    Message,
    Provider,
    ProviderModel,
    RateLimitResult,
    Role,
    StreamEvent,
    StreamEventType,
    TurnRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class _PreparedTurn:
    """A turn past admission and context building."""

    request: TurnRequest
    model: ProviderModel
    options: GenerationOptions
    context: ConversationContext
    fingerprint: str
    rate_limit: RateLimitResult

    @property
    def log_extra(self) -> dict:
        return {
            "request_id": self.request.request_id,
            "user_id": self.request.user_id,
            "session_id": self.request.session_id,
            "model": self.model.id,
        }


class TurnStream:
    """Events of one streamed turn: chunks, then ``done`` or ``error``.

    Fed by a background task through an unbounded queue. Closing the
    stream only stops forwarding; the provider call still completes and
    fills the cache and history.
    """

    def __init__(self, queue: asyncio.Queue, rate_limit: RateLimitResult):
        self._queue = queue
        self._finished = False
        self.rate_limit = rate_limit

    @classmethod
    def replay(cls, response: LLMResponse, rate_limit: RateLimitResult) -> TurnStream:
        """A stream over an already complete (cached) response."""
        queue: asyncio.Queue = asyncio.Queue()
        if response.content:
            queue.put_nowait(StreamEvent.chunk(response.content))
        queue.put_nowait(StreamEvent.done(response))
        return cls(queue, rate_limit)

    def __aiter__(self) -> TurnStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.type != StreamEventType.CHUNK:
            self._finished = True
        return event

    async def aclose(self) -> None:
        self._finished = True


class ChatGateway:
    """Main gateway orchestrator.

    Integrates:
      - SlidingWindowRateLimiter: per-caller admission
      - HistoryStore: ephemeral conversation log with durable fallback
      - ContextManager: token-budgeted context building
      - ResponseCache: fingerprint cache with single-flight production
      - CircuitBreaker: fail fast while a provider is down
      - ProviderAdapters: protocol-specific HTTP calls
      - Normalizer: response post-processing
    """

    def __init__(
        self,
        config: GatewayConfig,
        store: KeyValueStore,
        durable: DurableConversationStore | None = None,
        clock: Callable[[], float] = time.time,
        adapter_kwargs: dict[str, dict] | None = None,
    ):
        """
        Args:
            config: Explicit gateway configuration
            store: Shared store for quotas, cache and history
            durable: Optional persistent conversation store for history misses
            clock: Wall clock for rate limiting (injectable for tests)
            adapter_kwargs: Extra kwargs per provider (e.g. an httpx transport)
        """
        self.config = config
        self.store = store

        self.rate_limiter = SlidingWindowRateLimiter(store, config.tier_limits, config.default_tier, clock=clock)
        self.history = HistoryStore(
            store,
            durable=durable,
            ttl_seconds=config.history_ttl_seconds,
            max_messages=config.history_max_messages,
        )
        self.cache = ResponseCache(
            store,
            default_ttl=config.cache_ttl_seconds,
            wait_seconds=config.cache_wait_seconds,
            poll_interval=config.cache_poll_interval_seconds,
            marker_ttl=config.inflight_marker_ttl_seconds,
            enabled=config.cache_enabled,
        )
        self.context_manager = ContextManager()
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=config.circuit_failure_threshold,
            recovery_seconds=config.circuit_recovery_seconds,
        )

        self._models: dict[str, ProviderModel] = {m.id: m for m in config.models}
        self._adapters: dict[Provider, BaseProviderAdapter] = {}
        self._adapter_kwargs = adapter_kwargs or {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def _provider_configured(self, provider: Provider) -> bool:
        return bool(self.config.api_keys.get(provider.value))

    def available_models(self) -> list[ProviderModel]:
        """Catalog models whose provider has credentials."""
        return [m for m in self.config.models if self._provider_configured(m.provider)]

    def validate_model(self, model_id: str) -> bool:
        """True when the model is in the catalog and its provider is configured."""
        model = self._models.get(model_id)
        return model is not None and self._provider_configured(model.provider)

    def resolve_model(self, model_id: str) -> ProviderModel:
        model = self._models.get(model_id)
        if model is None:
            raise InvalidRequestError(f"Unknown model: {model_id}")
        return model

    def _get_adapter(self, model: ProviderModel) -> BaseProviderAdapter:
        """Get or create the adapter for a model's provider."""
        provider = model.provider
        if provider not in self._adapters:
            api_key = self.config.api_keys.get(provider.value, "")
            if not api_key:
                raise ProviderUnavailableError(
                    f"Provider {provider.value} is not configured", provider=provider.value
                )
            kwargs = {
                "base_url": self.config.base_urls.get(provider.value),
                "timeout": self.config.provider_timeout_seconds,
                **self._adapter_kwargs.get(provider.value, {}),
            }
            self._adapters[provider] = get_adapter(provider, api_key, **kwargs)
        return self._adapters[provider]

    # ------------------------------------------------------------------
    # Turn pipeline
    # ------------------------------------------------------------------

    async def _prepare(self, request: TurnRequest) -> _PreparedTurn:
        """Admission, then context building and fingerprinting."""
        tier = request.tier or self.config.default_tier
        result = await self.rate_limiter.check(request.user_id, self.config.endpoint_class, tier)
        if not result.allowed:
            TURNS_TOTAL.labels(model=request.model, outcome="rate_limited").inc()
            logger.info(
                "Turn rejected by rate limiter (tier=%s, retry_after=%ss)",
                tier,
                result.retry_after,
                extra={"request_id": request.request_id, "user_id": request.user_id},
            )
            raise RateLimitedError(result)

        if not request.user_text or not request.user_text.strip():
            raise InvalidRequestError("Message content is required")
        model = self.resolve_model(request.model)

        temperature = self.config.default_temperature if request.temperature is None else request.temperature
        max_tokens = min(request.max_tokens or self.config.default_max_tokens, model.max_output_tokens)
        options = GenerationOptions(
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=self.config.provider_timeout_seconds,
        )

        budget = model.context_window - max_tokens
        if self.config.context_budget_tokens:
            budget = min(budget, self.config.context_budget_tokens)

        history = await self.history.recent(request.user_id, request.session_id, self.config.history_context_limit)
        context = self.context_manager.build(history, request.user_text, budget, self.config.system_preamble)

        return _PreparedTurn(
            request=request,
            model=model,
            options=options,
            context=context,
            fingerprint=fingerprint_context(context, model.id, temperature, max_tokens),
            rate_limit=result,
        )

    async def _call_provider(self, turn: _PreparedTurn, queue: asyncio.Queue | None = None) -> LLMResponse:
        """One provider call behind the circuit breaker. Chunks go to ``queue`` when streaming."""
        adapter = self._get_adapter(turn.model)
        provider = turn.model.provider.value

        if not self.circuit_breaker.allow_request(provider):
            raise ProviderUnavailableError(
                f"Provider {provider} is temporarily unavailable",
                provider=provider,
                retry_after=self.circuit_breaker.retry_after(provider),
            )

        mode = "stream" if queue is not None else "generate"
        start = time.monotonic()
        try:
            if queue is None:
                response = await adapter.generate(turn.context, turn.model, turn.options)
            else:
                response = None
                async for event in adapter.stream(turn.context, turn.model, turn.options):
                    if event.type == StreamEventType.CHUNK:
                        queue.put_nowait(event)
                    elif event.type == StreamEventType.DONE:
                        response = event.response
                if response is None:
                    raise ProviderError(
                        f"{provider}: stream ended without completion",
                        kind=ProviderErrorKind.UNAVAILABLE,
                        provider=provider,
                    )
        except asyncio.CancelledError:
            self.circuit_breaker.release_probe(provider)
            raise
        except ProviderError as e:
            self.circuit_breaker.record_failure(provider, e)
            logger.warning("Provider %s failed (%s): %s", provider, e.kind.value, e.message, extra=turn.log_extra)
            raise
        except Exception as e:
            error = ProviderError(f"{provider}: {e}", kind=ProviderErrorKind.UNAVAILABLE, provider=provider)
            self.circuit_breaker.record_failure(provider, error)
            logger.exception("Unexpected error calling %s", provider, extra=turn.log_extra)
            raise error from e
        finally:
            PROVIDER_LATENCY.labels(provider=provider, mode=mode).observe(time.monotonic() - start)

        self.circuit_breaker.record_success(provider)
        return normalize_response(response, turn.context)

    async def _record_turn(self, turn: _PreparedTurn, response: LLMResponse) -> None:
        """Append the user message, then the assistant reply."""
        req = turn.request
        await self.history.append(req.user_id, req.session_id, Message.create(Role.USER, req.user_text))
        await self.history.append(req.user_id, req.session_id, Message.create(Role.ASSISTANT, response.content))

        outcome = "cached" if response.cached else "completed"
        TURNS_TOTAL.labels(model=turn.model.id, outcome=outcome).inc()
        logger.info(
            "Turn %s (%d tokens, %d/%d context messages dropped)",
            outcome,
            response.tokens_used,
            turn.context.dropped_messages,
            turn.context.dropped_messages + len(turn.context.messages) - 1,
            extra=turn.log_extra,
        )

    async def turn(self, request: TurnRequest) -> LLMResponse:
        """Run one non-streaming conversation turn.

        Raises:
            RateLimitedError: caller over its tier budget
            InvalidRequestError: unknown model or empty message
            ProviderUnavailableError: provider not configured or circuit open
            ProviderError: provider call failed
        """
        turn = await self._prepare(request)
        try:
            response = await self.cache.get_or_compute(
                turn.fingerprint,
                self.config.cache_ttl_seconds,
                lambda: self._call_provider(turn),
            )
        except GatewayError:
            TURNS_TOTAL.labels(model=turn.model.id, outcome="failed").inc()
            raise

        await self._record_turn(turn, response)
        return response

    async def open_stream(self, request: TurnRequest) -> TurnStream:
        """Start a streaming turn.

        Admission, context, cache and provider availability are checked
        before returning, so those errors raise here rather than arriving
        mid-stream. Provider failures after this point arrive as one
        ``error`` event.
        """
        turn = await self._prepare(request)

        if self.cache.enabled:
            cached = await self.cache.get(turn.fingerprint)
            if cached is not None:
                CACHE_LOOKUPS.labels(result="hit").inc()
                await self._record_turn(turn, cached)
                return TurnStream.replay(cached, turn.rate_limit)
            CACHE_LOOKUPS.labels(result="miss").inc()

        self._get_adapter(turn.model)
        provider = turn.model.provider.value
        if self.circuit_breaker.is_open(provider):
            TURNS_TOTAL.labels(model=turn.model.id, outcome="failed").inc()
            raise ProviderUnavailableError(
                f"Provider {provider} is temporarily unavailable",
                provider=provider,
                retry_after=self.circuit_breaker.retry_after(provider),
            )

        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self._run_stream(turn, queue))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return TurnStream(queue, turn.rate_limit)

    async def _run_stream(self, turn: _PreparedTurn, queue: asyncio.Queue) -> None:
        """Background producer of a streamed turn. Runs to completion even
        when nobody consumes the queue any more."""
        marker: InFlightMarker | None = None
        try:
            if self.cache.enabled:
                marker = await self.cache.acquire(turn.fingerprint)
                if not marker.acquired:
                    cached, marker = await self.cache.wait_for(turn.fingerprint)
                    if cached is not None:
                        CACHE_LOOKUPS.labels(result="waited_hit").inc()
                        await self._record_turn(turn, cached)
                        if cached.content:
                            queue.put_nowait(StreamEvent.chunk(cached.content))
                        queue.put_nowait(StreamEvent.done(cached))
                        return
                    if marker is None:
                        CACHE_LOOKUPS.labels(result="duplicate").inc()
                        logger.info("Cache wait timed out, producing independently", extra=turn.log_extra)

            response = await self._call_provider(turn, queue)
            if marker is not None:
                CACHE_LOOKUPS.labels(result="produced").inc()
            await self.cache.set(turn.fingerprint, response, self.config.cache_ttl_seconds)
            await self._record_turn(turn, response)
            queue.put_nowait(StreamEvent.done(response))
        except GatewayError as e:
            TURNS_TOTAL.labels(model=turn.model.id, outcome="failed").inc()
            queue.put_nowait(StreamEvent.failed(e))
        except Exception as e:
            TURNS_TOTAL.labels(model=turn.model.id, outcome="failed").inc()
            logger.exception("Streamed turn failed", extra=turn.log_extra)
            queue.put_nowait(StreamEvent.failed(e))
        except asyncio.CancelledError:
            TURNS_TOTAL.labels(model=turn.model.id, outcome="failed").inc()
            logger.warning("Streamed turn cancelled", extra=turn.log_extra)
            queue.put_nowait(
                StreamEvent.failed(
                    ProviderError(
                        "Streamed turn was cancelled",
                        kind=ProviderErrorKind.UNAVAILABLE,
                        provider=turn.model.provider.value,
                    )
                )
            )
            raise
        finally:
            if marker is not None:
                await self.cache.release(marker)

    # ------------------------------------------------------------------
    # Session & operations
    # ------------------------------------------------------------------

    async def clear_history(self, user_id: str, session_id: str) -> bool:
        return await self.history.clear(user_id, session_id)

    async def session_stats(self, user_id: str, session_id: str) -> dict:
        return await self.history.stats(user_id, session_id)

    async def reset_rate_limit(self, user_id: str) -> bool:
        return await self.rate_limiter.reset(user_id, self.config.endpoint_class)

    async def health(self) -> dict:
        """Store reachability, configured providers and their circuits."""
        providers = [p.value for p in Provider if self._provider_configured(p)]
        store_ok = await self.store.ping()
        return {
            "status": "ok" if store_ok else "degraded",
            "store": store_ok,
            "providers": providers,
            "circuits": [self.circuit_breaker.get_circuit_state(p) for p in providers],
        }

    async def drain(self) -> None:
        """Wait for background stream producers to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.store.close()
