"""Circuit Breaker per provider.

Implements the circuit breaker pattern per provider:
  - CLOSED: normal operation, requests pass through
  - OPEN: too many failures, requests are rejected immediately
  - HALF_OPEN: testing recovery with a single probe request

Only failures that say the provider itself is unhealthy (``unavailable``,
``timeout``) count towards opening the circuit. The gateway never retries
a provider call; an open circuit just fails fast with a retry hint.
State lives in the process; each gateway replica keeps its own circuits.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from chatgate.gateway.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class _CircuitStats:
    """Failure tracking for a single provider's circuit."""

    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    last_failure_time: float = 0.0
    state: CircuitState = CircuitState.CLOSED
    opened_at: float = 0.0  # When circuit was opened
    probe_in_flight: bool = False
    probe_started_at: float = 0.0


# Provider error kinds that count as provider ill-health
_TRIPPING_KINDS = frozenset({ProviderErrorKind.UNAVAILABLE, ProviderErrorKind.TIMEOUT})


class CircuitBreaker:
    """Per-provider circuit breaker.

    Usage:
        cb = CircuitBreaker(failure_threshold=5, recovery_seconds=60)

        if not cb.allow_request("openai"):
            raise ProviderUnavailableError(..., retry_after=cb.retry_after("openai"))

        try:
            response = await adapter.generate(...)
        except ProviderError as e:
            cb.record_failure("openai", e)
            raise
        cb.record_success("openai")
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._circuits: dict[str, _CircuitStats] = {}

    def _get_circuit(self, provider: str) -> _CircuitStats:
        if provider not in self._circuits:
            self._circuits[provider] = _CircuitStats()
        return self._circuits[provider]

    def allow_request(self, provider: str) -> bool:
        """Check if a request to the provider is allowed.

        Returns True if the circuit is closed, or half-open with no probe
        already running.
        """
        circuit = self._get_circuit(provider)
        now = self._clock()

        if circuit.state == CircuitState.CLOSED:
            return True

        if circuit.state == CircuitState.OPEN:
            # Check if recovery timeout has passed
            if now - circuit.opened_at >= self.recovery_seconds:
                circuit.state = CircuitState.HALF_OPEN
                circuit.probe_in_flight = True
                circuit.probe_started_at = now
                logger.info("Circuit for %s transitioning to HALF_OPEN", provider)
                return True
            return False

        if circuit.state == CircuitState.HALF_OPEN:
            # Allow one probe; a probe older than the recovery period is presumed lost
            if circuit.probe_in_flight and now - circuit.probe_started_at < self.recovery_seconds:
                return False
            circuit.probe_in_flight = True
            circuit.probe_started_at = now
            return True

        return False

    def is_open(self, provider: str) -> bool:
        """True while the circuit rejects calls. Does not consume a probe."""
        circuit = self._get_circuit(provider)
        return circuit.state == CircuitState.OPEN and self._clock() - circuit.opened_at < self.recovery_seconds

    def retry_after(self, provider: str) -> int:
        """Whole seconds until an open circuit admits a probe."""
        circuit = self._get_circuit(provider)
        if circuit.state == CircuitState.CLOSED:
            return 0
        remaining = circuit.opened_at + self.recovery_seconds - self._clock()
        return max(math.ceil(remaining), 1)

    def release_probe(self, provider: str) -> None:
        """Give up a half-open probe that ended without an outcome (cancelled).

        The circuit stays half-open so the next caller can probe.
        """
        circuit = self._get_circuit(provider)
        if circuit.probe_in_flight:
            circuit.probe_in_flight = False
            logger.info("Circuit for %s: probe abandoned", provider)

    def record_success(self, provider: str) -> None:
        """Record a successful request — resets failure counter, closes circuit."""
        circuit = self._get_circuit(provider)
        circuit.consecutive_failures = 0
        circuit.total_successes += 1
        circuit.probe_in_flight = False

        if circuit.state != CircuitState.CLOSED:
            logger.info("Circuit for %s CLOSED (recovered)", provider)
            circuit.state = CircuitState.CLOSED

    def record_failure(self, provider: str, error: ProviderError) -> None:
        """Record a failed call. Caller-side errors (auth, invalid request,
        upstream quota) close a half-open probe but never open the circuit."""
        circuit = self._get_circuit(provider)
        circuit.probe_in_flight = False

        if error.kind not in _TRIPPING_KINDS:
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.state = CircuitState.CLOSED
                circuit.consecutive_failures = 0
            return

        circuit.consecutive_failures += 1
        circuit.total_failures += 1
        circuit.last_failure_time = self._clock()

        if circuit.state == CircuitState.HALF_OPEN:
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            logger.warning("Circuit for %s re-OPENED: recovery probe failed (%s)", provider, error.kind.value)
            return

        # Check if circuit should open
        if circuit.consecutive_failures >= self.failure_threshold and circuit.state != CircuitState.OPEN:
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            logger.warning(
                "Circuit for %s OPENED after %d consecutive failures",
                provider,
                circuit.consecutive_failures,
            )

    def get_circuit_state(self, provider: str) -> dict:
        """Get the current state of a provider's circuit."""
        circuit = self._get_circuit(provider)
        return {
            "provider": provider,
            "state": circuit.state.value,
            "consecutive_failures": circuit.consecutive_failures,
            "total_failures": circuit.total_failures,
            "total_successes": circuit.total_successes,
        }

    def reset(self, provider: str) -> None:
        """Manually reset a provider's circuit to CLOSED."""
        circuit = self._get_circuit(provider)
        circuit.state = CircuitState.CLOSED
        circuit.consecutive_failures = 0
        circuit.probe_in_flight = False
        logger.info("Circuit for %s manually RESET", provider)
