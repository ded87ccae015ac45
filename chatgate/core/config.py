from pydantic_settings import BaseSettings, SettingsConfigDict

from chatgate.gateway.types import GatewayConfig, Provider, TierLimit


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Shared store
    store_backend: str = "redis"  # redis | memory (single process only)
    redis_url: str = "redis://localhost:6379/0"
    store_max_keys: int = 10_000  # LRU bound for the memory backend

    # Providers — a provider without an API key is simply not offered
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    provider_timeout_seconds: float = 60.0

    # Prompt
    system_preamble: str = (
        "You are a helpful AI assistant. Provide clear, accurate, and helpful responses to user questions."
    )
    default_temperature: float = 0.7
    default_max_tokens: int = 1024
    context_budget_tokens: int | None = None

    # History
    history_ttl_seconds: int = 86_400
    history_max_messages: int = 200
    history_context_limit: int = 50

    # Response cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600
    cache_wait_seconds: float = 10.0
    cache_poll_interval_seconds: float = 0.1
    inflight_marker_ttl_seconds: int = 120

    # Rate limiting — tier table, JSON in the environment:
    # RATE_LIMIT_TIERS='{"free": {"requests_per_window": 2, "window_seconds": 60}}'
    rate_limit_tiers: dict[str, dict[str, int]] = {
        "free": {"requests_per_window": 20, "window_seconds": 60},
        "pro": {"requests_per_window": 100, "window_seconds": 60},
        "admin": {"requests_per_window": 1000, "window_seconds": 60},
    }
    rate_limit_default_tier: str = "free"
    rate_limit_endpoint_class: str = "chat"

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 60.0

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    @property
    def api_keys(self) -> dict[str, str]:
        keys = {
            Provider.OPENAI.value: self.openai_api_key,
            Provider.ANTHROPIC.value: self.anthropic_api_key,
        }
        return {provider: key for provider, key in keys.items() if key}

    def to_gateway_config(self) -> GatewayConfig:
        """Explicit component configuration derived from the environment."""
        return GatewayConfig(
            api_keys=self.api_keys,
            base_urls={
                Provider.OPENAI.value: self.openai_base_url,
                Provider.ANTHROPIC.value: self.anthropic_base_url,
            },
            provider_timeout_seconds=self.provider_timeout_seconds,
            system_preamble=self.system_preamble,
            default_temperature=self.default_temperature,
            default_max_tokens=self.default_max_tokens,
            context_budget_tokens=self.context_budget_tokens,
            history_ttl_seconds=self.history_ttl_seconds,
            history_max_messages=self.history_max_messages,
            history_context_limit=self.history_context_limit,
            cache_enabled=self.cache_enabled,
            cache_ttl_seconds=self.cache_ttl_seconds,
            cache_wait_seconds=self.cache_wait_seconds,
            cache_poll_interval_seconds=self.cache_poll_interval_seconds,
            inflight_marker_ttl_seconds=self.inflight_marker_ttl_seconds,
            tier_limits={tier: TierLimit(**limits) for tier, limits in self.rate_limit_tiers.items()},
            default_tier=self.rate_limit_default_tier,
            endpoint_class=self.rate_limit_endpoint_class,
            circuit_failure_threshold=self.circuit_failure_threshold,
            circuit_recovery_seconds=self.circuit_recovery_seconds,
        )


def validate_settings_for_production(settings: Settings) -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.rate_limit_default_tier not in settings.rate_limit_tiers:
        errors.append(f"RATE_LIMIT_DEFAULT_TIER '{settings.rate_limit_default_tier}' is not in RATE_LIMIT_TIERS")

    if settings.store_backend not in ("redis", "memory"):
        errors.append("STORE_BACKEND must be 'redis' or 'memory'")

    if settings.app_env == "production":
        if settings.store_backend != "redis":
            errors.append("STORE_BACKEND must be 'redis' in production (quotas and cache must be shared)")
        if not settings.api_keys:
            errors.append("At least one of OPENAI_API_KEY / ANTHROPIC_API_KEY must be set in production")
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
