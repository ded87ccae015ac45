"""Gateway error taxonomy.

Every error carries a machine-readable ``code`` and a ``retryable`` flag so
the transport layer can decide between "try again later" and a permanent
failure without parsing messages.
"""

from __future__ import annotations

from enum import Enum

from chatgate.gateway.types import RateLimitResult


class ProviderErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"
    UNAVAILABLE = "unavailable"


class GatewayError(Exception):
    """Base class for errors surfaced to gateway callers."""

    code = "gateway_error"
    retryable = False

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
        }


class RateLimitedError(GatewayError):
    """Caller exceeded its tier budget. Terminal for the turn."""

    code = "rate_limited"
    retryable = True

    def __init__(self, result: RateLimitResult):
        super().__init__(
            f"Rate limit exceeded, retry in {result.retry_after}s",
            retry_after=result.retry_after,
        )
        self.result = result

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["rate_limit"] = self.result.to_dict()
        return data


class InvalidRequestError(GatewayError):
    """Unknown model or otherwise unserviceable request. Terminal."""

    code = "invalid_request"


class ProviderUnavailableError(GatewayError):
    """Provider not configured, or its circuit is open after an outage."""

    code = "provider_unavailable"
    retryable = True

    def __init__(self, message: str, provider: str = "", retry_after: int | None = None):
        super().__init__(message, retry_after=retry_after)
        self.provider = provider


class ProviderError(GatewayError):
    """The provider returned an error; wrapped with its kind."""

    code = "provider_error"

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind,
        provider: str = "",
        status_code: int = 0,
        retry_after: int | None = None,
    ):
        super().__init__(message, retry_after=retry_after)
        self.kind = kind
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind in (
            ProviderErrorKind.RATE_LIMITED,
            ProviderErrorKind.TIMEOUT,
            ProviderErrorKind.UNAVAILABLE,
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["kind"] = self.kind.value
        data["provider"] = self.provider
        return data


class UpstreamTimeoutError(ProviderError):
    """Provider did not answer within the configured timeout."""

    code = "upstream_timeout"

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message, kind=ProviderErrorKind.TIMEOUT, provider=provider)


class InternalDegradedError(GatewayError):
    """Shared store unreachable.

    Raised by store backends and caught by the history store, cache and rate
    limiter, which log it and carry on. It never reaches a caller.
    """

    code = "internal_degraded"
    retryable = True
