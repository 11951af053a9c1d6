"""FastAPI application entry point for spendwatch."""

import logging
import sqlite3
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from spendwatch.api.config import get_settings
from spendwatch.api.routers import (
    alerts_router,
    billing_router,
    budgets_router,
    scheduler_router,
)
from spendwatch.api.scheduler import build_cost_scheduler
from spendwatch.core.errors import StoreError, ValidationError
from spendwatch.core.logging import configure_secure_logging

logger = logging.getLogger(__name__)

_STORE_UNAVAILABLE = "Ledger database is temporarily unavailable."


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    timestamp: str
    environment: str
    scheduler_running: bool


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
    field: str | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    settings = get_settings()
    configure_secure_logging(level=settings.log_level.upper(), json_format=settings.log_json)

    # Startup
    scheduler = build_cost_scheduler(settings)
    app.state.settings = settings
    app.state.start_time = datetime.now(UTC)
    app.state.db_path = scheduler.db_path
    app.state.registry = scheduler.registry
    app.state.dispatcher = scheduler.dispatcher
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("Scheduler disabled; triggers run only on demand")

    yield

    # Shutdown
    scheduler.close()


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to HTTP responses."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(detail=exc.message, field=exc.field).model_dump(),
        )

    @app.exception_handler(StoreError)
    async def store_error_handler(_request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Ledger store error: %s", exc)
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(detail=_STORE_UNAVAILABLE).model_dump(),
        )

    @app.exception_handler(sqlite3.Error)
    async def sqlite_error_handler(_request: Request, exc: sqlite3.Error) -> JSONResponse:
        logger.error("Ledger query failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(detail=_STORE_UNAVAILABLE).model_dump(),
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Cost ledger, forecasting and budget alerting for metered cloud accounts",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all application routes."""
    app.include_router(billing_router)
    app.include_router(budgets_router)
    app.include_router(alerts_router)
    app.include_router(scheduler_router)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(request: Request) -> HealthResponse:
        """Check API health status."""
        settings = get_settings()
        scheduler = getattr(request.app.state, "scheduler", None)
        return HealthResponse(
            status="healthy",
            version=settings.app_version,
            timestamp=datetime.now(UTC).isoformat(),
            environment="development" if settings.debug else "production",
            scheduler_running=bool(scheduler and scheduler.running),
        )

    @app.get("/", tags=["System"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        settings = get_settings()
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs" if settings.debug else "Disabled in production",
        }


# Create the application instance
app = create_app()
