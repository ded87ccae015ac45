import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatgate.api.v1.router import api_v1_router
from chatgate.core.config import Settings, validate_settings_for_production
from chatgate.core.logging import setup_logging
from chatgate.core.metrics import PrometheusMiddleware, metrics_response
from chatgate.core.sentry import init_sentry
from chatgate.gateway.errors import (
    GatewayError,
    InvalidRequestError,
    ProviderError,
    ProviderErrorKind,
    ProviderUnavailableError,
    RateLimitedError,
)
from chatgate.gateway.gateway import ChatGateway
from chatgate.gateway.history import DurableConversationStore
from chatgate.gateway.store import KeyValueStore, create_store

logger = logging.getLogger(__name__)

# Default status per provider error kind
_PROVIDER_ERROR_STATUS = {
    ProviderErrorKind.AUTH: 502,
    ProviderErrorKind.INVALID_REQUEST: 502,
    ProviderErrorKind.RATE_LIMITED: 503,
    ProviderErrorKind.UNAVAILABLE: 503,
    ProviderErrorKind.TIMEOUT: 504,
}

# Upstream rejections of the request itself (e.g. prompt too long) are the caller's to fix
_CALLER_REJECTION_STATUSES = frozenset({400, 413})


def gateway_error_response(exc: GatewayError) -> JSONResponse:
    """Map a gateway error to its HTTP status, body and retry headers."""
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitedError):
        status = 429
        headers.update(exc.result.headers())
    elif isinstance(exc, InvalidRequestError):
        status = 400
    elif isinstance(exc, ProviderUnavailableError):
        status = 503
    elif isinstance(exc, ProviderError):
        if exc.kind == ProviderErrorKind.INVALID_REQUEST and exc.status_code in _CALLER_REJECTION_STATUSES:
            status = 400
        else:
            status = _PROVIDER_ERROR_STATUS.get(exc.kind, 502)
    else:
        status = 500

    if exc.retry_after is not None and "Retry-After" not in headers:
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(status_code=status, content={"error": exc.to_dict()}, headers=headers)


def create_app(
    settings: Settings | None = None,
    store: KeyValueStore | None = None,
    durable: DurableConversationStore | None = None,
    adapter_kwargs: dict[str, dict] | None = None,
) -> FastAPI:
    """Application factory. Collaborators can be injected for tests."""
    settings = settings or Settings()
    validate_settings_for_production(settings)
    setup_logging(settings)
    init_sentry(settings)

    gateway = ChatGateway(
        settings.to_gateway_config(),
        store or create_store(settings.store_backend, settings.redis_url, settings.store_max_keys),
        durable=durable,
        adapter_kwargs=adapter_kwargs,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(
            "Starting chatgate (env=%s, store=%s, providers=%s)",
            settings.app_env,
            settings.store_backend,
            ",".join(sorted(settings.api_keys)) or "none",
        )
        if not await gateway.store.ping():
            logger.warning("Shared store unreachable at startup, running degraded")

        yield

        # Shutdown
        await gateway.close()
        logger.info("chatgate shut down")

    app = FastAPI(
        title="chatgate",
        description="Multi-provider LLM chat gateway",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.app_debug else None,
        redoc_url="/api/redoc" if settings.app_debug else None,
    )
    app.state.settings = settings
    app.state.gateway = gateway

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        return gateway_error_response(exc)

    # Log unhandled exceptions with their traceback
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
        logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
        return JSONResponse(status_code=500, content={"error": {"code": "internal_error", "message": "Internal error"}})

    app.add_middleware(PrometheusMiddleware)

    # CORS — parse allowed_origins from settings (comma-separated)
    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_v1_router)

    @app.get("/api/v1/health")
    async def health():
        return await gateway.health()

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return metrics_response()

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = Settings()
    uvicorn.run("chatgate.main:create_app", factory=True, host=_settings.app_host, port=_settings.app_port)
