"""FastAPI application factory.

Creates the app with logging and metrics middleware, CORS, Sentry, the
auth exception handlers, lifespan wiring for the database, Redis and the
API key authenticator, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.crm.api.errors import register_exception_handlers
from src.crm.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crm.api.v1 import health
from src.crm.api.v1.router import router as v1_router
from src.crm.auth.authenticator import ApiKeyAuthenticator, LastUsedRecorder
from src.crm.auth.key_store import SqlApiKeyStore
from src.crm.auth.user_store import SqlUserStore
from src.crm.config import get_settings
from src.crm.core.database import close_db, get_session, init_db
from src.crm.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.crm.core.rate_limit import FixedWindowRateLimiter
from src.crm.core.redis import close_redis, get_redis_pool
from src.crm.deals.repository import DealRepository


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire stores and the authenticator on startup,
    drain pending last-used writes and close pools on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    try:
        await init_db()
    except Exception:
        log.warning("startup.init_db_failed", exc_info=True)

    key_store = SqlApiKeyStore(session_factory=get_session)
    recorder = LastUsedRecorder(
        key_store,
        max_attempts=settings.API_KEY_LAST_USED_MAX_ATTEMPTS,
    )
    app.state.api_key_store = key_store
    app.state.last_used_recorder = recorder
    app.state.api_key_authenticator = ApiKeyAuthenticator(key_store, recorder)
    app.state.user_store = SqlUserStore(session_factory=get_session)
    app.state.deal_repository = DealRepository(session_factory=get_session)

    # Login throttling degrades to "no limit" if Redis can't be reached
    try:
        app.state.login_rate_limiter = FixedWindowRateLimiter(
            get_redis_pool(),
            scope="login",
            limit=settings.LOGIN_RATE_LIMIT_ATTEMPTS,
            window_seconds=settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS,
        )
    except Exception:
        log.warning("startup.rate_limiter_init_failed", exc_info=True)
        app.state.login_rate_limiter = None

    log.info("startup.complete", environment=settings.ENVIRONMENT.value)

    yield

    # Shutdown: finish in-flight last-used writes before the pool goes away
    await recorder.drain()
    await close_db()
    await close_redis()
    log.info("shutdown.complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM API",
        version="0.1.0",
        description="Small-business CRM: API key auth, deals and sales pipeline",
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health.router)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
