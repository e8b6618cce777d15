"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure logging and telemetry
3. Connect the shared state store (memory or Redis)
4. Wire the routing context (registry, breakers, health, budget, executor)
5. Register middleware and include all routers

Shutdown order:
1. Close provider HTTP clients and the state store
2. Flush telemetry
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api import health, llm, providers
from src.api.errors import register_exception_handlers
from src.config import Settings, get_settings
from src.infra.telemetry import instrument_fastapi, setup_telemetry, shutdown_telemetry
from src.routing.context import build_routing_context, create_state_store
from src.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


def _warn_missing_provider_keys(settings: Settings) -> None:
    if settings.groq_api_key is None:
        log.error("app.provider_key_missing", provider="groq", required=True)
    for provider, key in (
        ("gemini", settings.gemini_api_key),
        ("cerebras", settings.cerebras_api_key),
    ):
        if key is None:
            log.warning("app.provider_key_missing", provider=provider, required=False)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else settings.log_level,
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        state_backend=settings.state_backend,
    )
    _warn_missing_provider_keys(settings)

    setup_telemetry(settings)
    instrument_fastapi(app)

    store = await create_state_store(settings)
    context = build_routing_context(settings, store)
    app.state.routing = context

    log.info("app.ready")
    yield

    await context.aclose()
    shutdown_telemetry()
    log.info("app.shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="LLM Provider Router",
        description=(
            "Complexity-based routing across Groq, Gemini and Cerebras with "
            "fallback, circuit breaking and per-session budgets."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    # CORS (must be first in execution order, so add last)
    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["*"],
        allow_headers=["Content-Type", "X-Admin-Key", "X-Request-ID"],
    )

    # Unique request ID for log correlation
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(health.router)
    app.include_router(llm.router)
    app.include_router(providers.router)

    # ------------------------------------------------------------------ #
    # Global exception handlers
    # ------------------------------------------------------------------ #
    register_exception_handlers(app)

    return app


# Module-level app instance for uvicorn
app = create_app()
