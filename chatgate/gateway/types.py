"""Core types and DTOs for the chat gateway."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from chatgate.gateway.tokens import estimate_tokens


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """Author of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Provider(str, Enum):
    """Supported LLM providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class FinishReason(str, Enum):
    """Uniform finish reasons across providers."""

    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    TOOL_USE = "tool_use"
    UNKNOWN = "unknown"


class StreamEventType(str, Enum):
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Messages & context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """A single conversation message. Immutable once appended."""

    role: Role
    content: str
    approx_tokens: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, role: Role | str, content: str) -> Message:
        """Build a message with its token estimate filled in."""
        return cls(role=Role(role), content=content, approx_tokens=estimate_tokens(content))

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "content": self.content,
            "approx_tokens": self.approx_tokens,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        created = data.get("created_at")
        return cls(
            role=Role(data["role"]),
            content=data["content"],
            approx_tokens=int(data.get("approx_tokens", 0)),
            created_at=datetime.fromisoformat(created) if created else datetime.now(timezone.utc),
        )


@dataclass
class ConversationContext:
    """Provider-ready message sequence bounded by a token budget.

    Built fresh for every turn and never persisted. ``messages`` holds the
    retained history followed by the new user message; the preamble is kept
    separately because providers place it differently.
    """

    messages: list[Message]
    system_preamble: str = ""
    token_budget: int = 0
    dropped_messages: int = 0

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.system_preamble) + sum(m.approx_tokens for m in self.messages)

    @property
    def system_messages(self) -> list[Message]:
        return [m for m in self.messages if m.role == Role.SYSTEM]

    @property
    def dialogue(self) -> list[Message]:
        """Messages without the system role, in order."""
        return [m for m in self.messages if m.role != Role.SYSTEM]


# ---------------------------------------------------------------------------
# Provider responses
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Uniform response DTO — same structure regardless of provider."""

    content: str = ""
    model: str = ""
    tokens_used: int = 0
    finish_reason: str = FinishReason.STOP.value
    provider: str = ""
    cached: bool = False
    latency_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> LLMResponse:
        return cls(
            content=data.get("content", ""),
            model=data.get("model", ""),
            tokens_used=int(data.get("tokens_used", 0)),
            finish_reason=data.get("finish_reason", FinishReason.STOP.value),
            provider=data.get("provider", ""),
            cached=bool(data.get("cached", False)),
            latency_ms=int(data.get("latency_ms", 0)),
        )


@dataclass
class StreamEvent:
    """One item of a streamed turn: a text chunk, the final response, or an error."""

    type: StreamEventType
    text: str = ""
    response: LLMResponse | None = None
    error: Exception | None = None

    @classmethod
    def chunk(cls, text: str) -> StreamEvent:
        return cls(type=StreamEventType.CHUNK, text=text)

    @classmethod
    def done(cls, response: LLMResponse) -> StreamEvent:
        return cls(type=StreamEventType.DONE, response=response)

    @classmethod
    def failed(cls, error: Exception) -> StreamEvent:
        return cls(type=StreamEventType.ERROR, error=error)


@dataclass
class GenerationOptions:
    """Generic sampling parameters; adapters clamp them to provider limits."""

    temperature: float = 0.7
    max_tokens: int = 1024
    timeout_seconds: float = 60.0


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderModel:
    """Static model descriptor."""

    id: str
    provider: Provider
    name: str = ""
    context_window: int = 4096
    max_output_tokens: int = 4096
    cost_per_k_tokens: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider.value,
            "name": self.name or self.id,
            "context_window": self.context_window,
            "max_output_tokens": self.max_output_tokens,
            "cost_per_k_tokens": self.cost_per_k_tokens,
        }


DEFAULT_MODELS: tuple[ProviderModel, ...] = (
    ProviderModel("gpt-3.5-turbo", Provider.OPENAI, "GPT-3.5 Turbo", 16_385, 4096, 0.002),
    ProviderModel("gpt-4", Provider.OPENAI, "GPT-4", 8192, 8192, 0.03),
    ProviderModel("gpt-4-turbo", Provider.OPENAI, "GPT-4 Turbo", 128_000, 4096, 0.01),
    ProviderModel("gpt-4o", Provider.OPENAI, "GPT-4o", 128_000, 16_384, 0.005),
    ProviderModel("gpt-4o-mini", Provider.OPENAI, "GPT-4o mini", 128_000, 16_384, 0.00015),
    ProviderModel("claude-3-haiku", Provider.ANTHROPIC, "Claude 3 Haiku", 200_000, 4096, 0.00025),
    ProviderModel("claude-3-sonnet", Provider.ANTHROPIC, "Claude 3 Sonnet", 200_000, 4096, 0.003),
    ProviderModel("claude-3-opus", Provider.ANTHROPIC, "Claude 3 Opus", 200_000, 4096, 0.015),
    ProviderModel("claude-3-5-sonnet", Provider.ANTHROPIC, "Claude 3.5 Sonnet", 200_000, 8192, 0.003),
)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TierLimit:
    """Admission budget for one caller tier."""

    requests_per_window: int
    window_seconds: int


# Defaults follow the original per-minute tier table
DEFAULT_TIER_LIMITS: dict[str, TierLimit] = {
    "free": TierLimit(requests_per_window=20, window_seconds=60),
    "pro": TierLimit(requests_per_window=100, window_seconds=60),
    "admin": TierLimit(requests_per_window=1000, window_seconds=60),
}


@dataclass
class RateLimitResult:
    """Admission decision, machine-readable for "too many requests" replies."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # Unix timestamp
    retry_after: int | None = None  # Whole seconds, only when rejected

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "retry_after": self.retry_after,
        }

    def headers(self) -> dict[str, str]:
        """Standard rate-limit response headers."""
        h = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if self.retry_after is not None:
            h["Retry-After"] = str(self.retry_after)
        return h


# ---------------------------------------------------------------------------
# Turn input & gateway config
# ---------------------------------------------------------------------------


@dataclass
class TurnRequest:
    """A single conversation turn, as received from the transport layer.

    ``user_id`` and ``tier`` come from an already-authenticated caller.
    """

    user_id: str
    session_id: str
    model: str
    user_text: str
    tier: str = "free"
    temperature: float | None = None
    max_tokens: int | None = None
    request_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayConfig:
    """Explicit configuration handed to every gateway component."""

    # Providers
    api_keys: dict[str, str] = field(default_factory=dict)
    base_urls: dict[str, str] = field(default_factory=dict)
    provider_timeout_seconds: float = 60.0
    models: tuple[ProviderModel, ...] = DEFAULT_MODELS

    # Prompt
    system_preamble: str = (
        "You are a helpful AI assistant. Provide clear, accurate, and helpful responses to user questions."
    )
    default_temperature: float = 0.7
    default_max_tokens: int = 1024
    context_budget_tokens: int | None = None  # Optional cap below the model's window

    # History
    history_ttl_seconds: int = 86_400
    history_max_messages: int = 200
    history_context_limit: int = 50

    # Cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600
    cache_wait_seconds: float = 10.0
    cache_poll_interval_seconds: float = 0.1
    inflight_marker_ttl_seconds: int = 120

    # Rate limiting
    tier_limits: dict[str, TierLimit] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))
    default_tier: str = "free"
    endpoint_class: str = "chat"

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 60.0
