"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Initialize database engine (SQL store only)
4. Build collaborators: ChatStore, cache backend, provider adapters and router
5. Register middleware and routers

Shutdown order:
1. Close cache backend
2. Close DB connection pool
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatbroker import __version__
from chatbroker.agent.model_router.catalog import build_adapters, build_catalog
from chatbroker.agent.model_router.router import ModelRouter
from chatbroker.api.router import api_v1_router, public_router
from chatbroker.cache.backend import get_cache_backend
from chatbroker.config import StoreBackend, get_settings
from chatbroker.core.errors import ChatBrokerError
from chatbroker.database import close_db, create_tables, init_db
from chatbroker.services.store import get_chat_store
from chatbroker.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Configure structured logging first (before any log calls)
    configure_logging(json_logs=settings.is_prod, log_level="DEBUG" if settings.debug else "INFO")
    log.info("app.starting", environment=settings.environment.value, version=__version__)

    if settings.store_backend == StoreBackend.SQL:
        init_db(settings)
        if settings.is_dev:
            await create_tables()

    adapters = build_adapters(settings)
    app.state.store = get_chat_store(settings)
    app.state.cache = get_cache_backend(settings)
    app.state.model_router = ModelRouter(build_catalog(settings, frozenset(adapters)), adapters)

    log.info("app.ready")
    yield

    log.info("app.shutting_down")
    await app.state.cache.close()
    if settings.store_backend == StoreBackend.SQL:
        await close_db()


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="Chat Broker",
        description="Metered, streaming chat over multiple LLM providers with long-term user memory.",
        version=__version__,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        expose_headers=["x-request-id"],
    )

    # Unique request ID for log correlation
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(public_router)
    app.include_router(api_v1_router)

    # ------------------------------------------------------------------ #
    # Global exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(ChatBrokerError)
    async def chat_error_handler(request: Request, exc: ChatBrokerError) -> JSONResponse:
        log.info(
            "app.request_failed",
            path=request.url.path,
            status=exc.status_code,
            code=exc.code,
            error=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "status": exc.status_code},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = sorted({".".join(str(part) for part in err["loc"][1:]) for err in exc.errors()})
        return JSONResponse(
            status_code=400,
            content={"error": f"Invalid request fields: {', '.join(fields)}", "status": 400},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "status": 500},
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
