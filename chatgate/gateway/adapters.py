"""Provider Adapters — protocol-level handling for each LLM provider.

Each adapter translates a ConversationContext into the provider's HTTP
protocol, sends it, and returns an LLMResponse, or streams StreamEvents
(text chunks, then one completion event).

Provider-specific behaviors:
  - OpenAI: Chat Completions; system preamble is the first message
  - Anthropic: Messages API; preamble goes in the separate ``system`` field,
    short model ids map to dated ids, temperature is capped at 1.0

Adapters never retry. HTTP and transport failures are wrapped in
ProviderError with a uniform kind.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator

import httpx

from chatgate.gateway.errors import ProviderError, ProviderErrorKind, UpstreamTimeoutError
from chatgate.gateway.tokens import estimate_tokens
from chatgate.gateway.types import (
    ConversationContext,
    GenerationOptions,
    LLMResponse,
    Message,
    Provider,
    ProviderModel,
    Role,
    StreamEvent,
)

logger = logging.getLogger(__name__)


def _retry_after_header(resp: httpx.Response) -> int | None:
    value = resp.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(int(float(value)), 1)
    except ValueError:
        return None


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    provider: Provider
    default_base_url: str
    max_temperature: float = 2.0

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    async def generate(
        self, context: ConversationContext, model: ProviderModel, options: GenerationOptions
    ) -> LLMResponse:
        """Send the context and return the complete response."""
        ...

    @abstractmethod
    def stream(
        self, context: ConversationContext, model: ProviderModel, options: GenerationOptions
    ) -> AsyncIterator[StreamEvent]:
        """Yield text chunks, then one ``done`` event with the full response."""
        ...

    def _client(self, options: GenerationOptions) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=options.timeout_seconds or self.timeout, transport=self._transport)

    def clamp(self, model: ProviderModel, options: GenerationOptions) -> tuple[float, int]:
        """Clamp generic sampling parameters to provider and model limits."""
        temperature = min(max(float(options.temperature), 0.0), self.max_temperature)
        max_tokens = min(max(int(options.max_tokens), 1), model.max_output_tokens)
        return temperature, max_tokens

    def _error(self, message: str, kind: ProviderErrorKind, status_code: int = 0, retry_after: int | None = None):
        return ProviderError(
            f"{self.provider.value}: {message}",
            kind=kind,
            provider=self.provider.value,
            status_code=status_code,
            retry_after=retry_after,
        )

    def _check_status(self, resp: httpx.Response) -> None:
        """Raise ProviderError for a non-2xx reply. The body must already be read."""
        status = resp.status_code
        if status < 400:
            return

        detail = resp.text[:300]
        if status in (401, 403):
            raise self._error(f"authentication failed ({status})", ProviderErrorKind.AUTH, status)
        if status == 429:
            raise self._error(
                "rate limited by provider",
                ProviderErrorKind.RATE_LIMITED,
                status,
                retry_after=_retry_after_header(resp),
            )
        if status == 408:
            raise UpstreamTimeoutError(f"{self.provider.value}: request timed out upstream", provider=self.provider.value)
        if status >= 500:
            # Includes Anthropic's 529 "overloaded"
            raise self._error(f"provider error {status}: {detail}", ProviderErrorKind.UNAVAILABLE, status)
        raise self._error(f"request rejected ({status}): {detail}", ProviderErrorKind.INVALID_REQUEST, status)

    def _wrap_transport_error(self, e: httpx.TransportError) -> ProviderError:
        if isinstance(e, httpx.TimeoutException):
            return UpstreamTimeoutError(
                f"{self.provider.value}: timeout after {self.timeout}s", provider=self.provider.value
            )
        return self._error(f"connection failed: {e}", ProviderErrorKind.UNAVAILABLE)

    async def _post(self, url: str, payload: dict, headers: dict, options: GenerationOptions) -> dict:
        try:
            async with self._client(options) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise self._wrap_transport_error(e) from e

        self._check_status(resp)
        try:
            return resp.json()
        except ValueError as e:
            raise self._error("malformed JSON response", ProviderErrorKind.UNAVAILABLE, resp.status_code) from e

    async def _sse_events(
        self, url: str, payload: dict, headers: dict, options: GenerationOptions
    ) -> AsyncGenerator[tuple[str, dict | None], None]:
        """Yield ``(event_name, data)`` pairs of a server-sent event stream.

        ``data`` is None for the OpenAI ``[DONE]`` sentinel.
        """
        event_name = ""
        try:
            async with self._client(options) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        self._check_status(resp)

                    async for line in resp.aiter_lines():
                        if not line:
                            event_name = ""
                            continue
                        if line.startswith("event:"):
                            event_name = line[len("event:"):].strip()
                            continue
                        if not line.startswith("data:"):
                            continue

                        raw = line[len("data:"):].strip()
                        if raw == "[DONE]":
                            yield event_name, None
                            continue
                        try:
                            data = json.loads(raw)
                        except ValueError:
                            logger.warning("Skipping malformed %s stream line: %s", self.provider.value, raw[:100])
                            continue
                        yield event_name, data
        except httpx.TransportError as e:
            raise self._wrap_transport_error(e) from e


# ---------------------------------------------------------------------------
# OpenAI Adapter
# ---------------------------------------------------------------------------


class OpenAIAdapter(BaseProviderAdapter):
    """OpenAI Chat Completions adapter."""

    provider = Provider.OPENAI
    default_base_url = "https://api.openai.com/v1"
    max_temperature = 2.0

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(
        self, context: ConversationContext, model: ProviderModel, options: GenerationOptions, stream: bool = False
    ) -> dict:
        temperature, max_tokens = self.clamp(model, options)
        messages = []
        if context.system_preamble:
            messages.append({"role": "system", "content": context.system_preamble})
        messages.extend({"role": m.role.value, "content": m.content} for m in context.messages)

        payload = {
            "model": model.id,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if stream:
            payload["stream"] = True
        return payload

    async def generate(
        self, context: ConversationContext, model: ProviderModel, options: GenerationOptions
    ) -> LLMResponse:
        start = time.monotonic()
        data = await self._post(
            f"{self.base_url}/chat/completions",
            self.build_payload(context, model, options),
            self._headers(),
            options,
        )

        try:
            choice = data["choices"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise self._error("response has no choices", ProviderErrorKind.UNAVAILABLE) from e

        usage = data.get("usage") or {}
        return LLMResponse(
            content=(choice.get("message") or {}).get("content") or "",
            model=data.get("model", model.id),
            tokens_used=usage.get("total_tokens", 0),
            finish_reason=choice.get("finish_reason") or "stop",
            provider=self.provider.value,
            latency_ms=int((time.monotonic() - start) * 1000),
        )

    async def stream(
        self, context: ConversationContext, model: ProviderModel, options: GenerationOptions
    ) -> AsyncIterator[StreamEvent]:
        start = time.monotonic()
        parts: list[str] = []
        finish_reason = "stop"
        model_version = model.id

        events = self._sse_events(
            f"{self.base_url}/chat/completions",
            self.build_payload(context, model, options, stream=True),
            self._headers(),
            options,
        )
        async for _, data in events:
            if data is None:
                continue
            model_version = data.get("model", model_version)
            for choice in data.get("choices") or []:
                text = (choice.get("delta") or {}).get("content")
                if text:
                    parts.append(text)
                    yield StreamEvent.chunk(text)
                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]

        content = "".join(parts)
        yield StreamEvent.done(
            LLMResponse(
                content=content,
                model=model_version,
                tokens_used=context.estimated_tokens + estimate_tokens(content),
                finish_reason=finish_reason,
                provider=self.provider.value,
                latency_ms=int((time.monotonic() - start) * 1000),
            )
        )


# ---------------------------------------------------------------------------
# Anthropic Adapter
# ---------------------------------------------------------------------------

# Short catalog ids → dated API model ids
ANTHROPIC_MODEL_ALIASES = {
    "claude-3-haiku": "claude-3-haiku-20240307",
    "claude-3-sonnet": "claude-3-sonnet-20240229",
    "claude-3-opus": "claude-3-opus-20240229",
    "claude-3-5-sonnet": "claude-3-5-sonnet-20241022",
}

ANTHROPIC_API_VERSION = "2023-06-01"


class AnthropicAdapter(BaseProviderAdapter):
    """Anthropic Messages API adapter."""

    provider = Provider.ANTHROPIC
    default_base_url = "https://api.anthropic.com"
    max_temperature = 1.0

    @staticmethod
    def map_model(model_id: str) -> str:
        return ANTHROPIC_MODEL_ALIASES.get(model_id, model_id)

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
        }

    @staticmethod
    def _dialogue(messages: list[Message]) -> list[dict]:
        """User/assistant turns, alternating and starting with the user.

        Consecutive same-role messages (e.g. from a double-submitted turn)
        are joined, as the Messages API rejects them.
        """
        turns: list[dict] = []
        for m in messages:
            if not turns and m.role != Role.USER:
                continue
            if turns and turns[-1]["role"] == m.role.value:
                turns[-1]["content"] += "\n\n" + m.content
            else:
                turns.append({"role": m.role.value, "content": m.content})
        return turns

    def build_payload(
        self, context: ConversationContext, model: ProviderModel, options: GenerationOptions, stream: bool = False
    ) -> dict:
        temperature, max_tokens = self.clamp(model, options)
        system_parts = [context.system_preamble] if context.system_preamble else []
        system_parts.extend(m.content for m in context.system_messages)

        payload = {
            "model": self.map_model(model.id),
            "messages": self._dialogue(context.dialogue),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if stream:
            payload["stream"] = True
        return payload

    async def generate(
        self, context: ConversationContext, model: ProviderModel, options: GenerationOptions
    ) -> LLMResponse:
        start = time.monotonic()
        data = await self._post(
            f"{self.base_url}/v1/messages",
            self.build_payload(context, model, options),
            self._headers(),
            options,
        )

        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise self._error("response has no content", ProviderErrorKind.UNAVAILABLE)

        usage = data.get("usage") or {}
        return LLMResponse(
            content="".join(b.get("text", "") for b in blocks if b.get("type") == "text"),
            model=data.get("model", model.id),
            tokens_used=usage.get("input_tokens", 0) + usage.get("output_tokens", 0),
            finish_reason=data.get("stop_reason") or "end_turn",
            provider=self.provider.value,
            latency_ms=int((time.monotonic() - start) * 1000),
        )

    async def stream(
        self, context: ConversationContext, model: ProviderModel, options: GenerationOptions
    ) -> AsyncIterator[StreamEvent]:
        start = time.monotonic()
        parts: list[str] = []
        finish_reason = "end_turn"
        model_version = model.id

        events = self._sse_events(
            f"{self.base_url}/v1/messages",
            self.build_payload(context, model, options, stream=True),
            self._headers(),
            options,
        )
        async for event_name, data in events:
            if data is None:
                continue
            kind = data.get("type", event_name)

            if kind == "message_start":
                model_version = (data.get("message") or {}).get("model", model_version)
            elif kind == "content_block_delta":
                delta = data.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    parts.append(delta["text"])
                    yield StreamEvent.chunk(delta["text"])
            elif kind == "message_delta":
                finish_reason = (data.get("delta") or {}).get("stop_reason") or finish_reason
            elif kind == "error":
                error = data.get("error") or {}
                kind_of = (
                    ProviderErrorKind.UNAVAILABLE
                    if error.get("type") in ("overloaded_error", "api_error")
                    else ProviderErrorKind.INVALID_REQUEST
                )
                raise self._error(f"stream error: {error.get('message', 'unknown')}", kind_of)

        content = "".join(parts)
        yield StreamEvent.done(
            LLMResponse(
                content=content,
                model=model_version,
                tokens_used=context.estimated_tokens + estimate_tokens(content),
                finish_reason=finish_reason,
                provider=self.provider.value,
                latency_ms=int((time.monotonic() - start) * 1000),
            )
        )


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[Provider, type[BaseProviderAdapter]] = {
    Provider.OPENAI: OpenAIAdapter,
    Provider.ANTHROPIC: AnthropicAdapter,
}


def get_adapter(provider: Provider, api_key: str, **kwargs) -> BaseProviderAdapter:
    """Factory: get the appropriate adapter for a provider."""
    cls = ADAPTER_REGISTRY.get(provider)
    if cls is None:
        raise ValueError(f"No adapter registered for provider: {provider}")
    return cls(api_key=api_key, **kwargs)
