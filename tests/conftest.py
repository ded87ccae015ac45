import pytest

from chatgate.gateway.store import MemoryStore
from chatgate.gateway.types import GatewayConfig, TierLimit


class FakeClock:
    """Manually advanced wall clock shared by the store and the rate limiter."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def gateway_config() -> GatewayConfig:
    """Config with both providers configured and fast cache polling."""
    return GatewayConfig(
        api_keys={"openai": "sk-test", "anthropic": "sk-ant-test"},
        base_urls={"openai": "https://openai.test/v1", "anthropic": "https://anthropic.test"},
        system_preamble="You are a test assistant.",
        tier_limits={
            "free": TierLimit(requests_per_window=2, window_seconds=60),
            "pro": TierLimit(requests_per_window=100, window_seconds=60),
        },
        cache_wait_seconds=2.0,
        cache_poll_interval_seconds=0.01,
    )
