"""FastAPI application entry-point for the Ardine API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from ardine_core.errors import ArdineError, ValidationError
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ardine_api import __version__
from ardine_api.config import APISettings, PlatformEnv, load_api_settings
from ardine_api.dependencies import dispose_engine, init_engine
from ardine_api.middleware.auth import AuthenticationMiddleware
from ardine_api.middleware.json_formatter import configure_json_logging
from ardine_api.middleware.logging import RequestLoggingMiddleware
from ardine_api.routers import clients, health, invoices, projects, team, time_entries

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup the async engine is created, and tables are created when
    running in dev or against SQLite.  On shutdown the pool is disposed.
    """
    settings: APISettings = app.state.settings

    if settings.structured_logging:
        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    # Idempotent; production schemas are managed outside the service.
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from ardine_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-create")

    yield

    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Ardine API",
        description="Multi-tenant time tracking and invoicing.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # -- Middleware (last added runs first) ----------------------------------

    app.add_middleware(AuthenticationMiddleware, settings=settings)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "X-Team-ID",
            "Accept",
        ],
    )

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(projects.router, prefix="/api/v1")
    app.include_router(time_entries.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")
    app.include_router(team.teams_router, prefix="/api/v1")
    app.include_router(team.router, prefix="/api/v1")
    app.include_router(clients.router, prefix="/api/v1")

    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ArdineError)
    async def ardine_error_handler(request: Request, exc: ArdineError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
        content: dict[str, object] = {"detail": exc.message, "code": exc.code}
        if isinstance(exc, ValidationError) and exc.field:
            content["field"] = exc.field
        return JSONResponse(status_code=exc.http_status, content=content)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "An internal error occurred", "code": "INTERNAL_SERVER_ERROR"},
        )

    return app


# Module-level application instance used by ``uvicorn ardine_api.main:app``.
app = create_app()
