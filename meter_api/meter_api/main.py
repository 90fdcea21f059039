"""FastAPI application entry-point for the keymeter gate."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from meter_core.keys.hasher import HashAlgorithmUnavailable
from meter_core.state.database import create_tables
from sqlalchemy.exc import SQLAlchemyError

from meter_api import __version__
from meter_api.config import APISettings, load_api_settings
from meter_api.dependencies import (
    dispose_engine,
    dispose_services,
    get_session_factory,
    init_engine,
    init_services,
)
from meter_api.errors import GateError, InvalidParameter, default_message
from meter_api.jobs import build_jobs
from meter_api.middleware import RequestLoggingMiddleware, UsageRecordingMiddleware, configure_structured_logging
from meter_api.routers import account, health, internal

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine (and tables when enabled).
    - Build the gate services.
    - Start the enabled reconciler jobs.

    On shutdown:
    - Stop the jobs, letting an in-flight batch finish.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.auto_create_tables:
        await create_tables(engine)

    init_services(settings, get_session_factory())

    jobs = build_jobs(engine, settings)
    for job in jobs:
        await job.start()
    app.state.jobs = jobs

    yield

    # Shutdown.
    for job in jobs:
        await job.stop()
    dispose_services()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _internal_error_response() -> JSONResponse:
    message = default_message("internal_error")
    return JSONResponse(
        status_code=500,
        content={
            "status": "error",
            "code": "internal_error",
            "message": message,
            "error": {"code": "internal_error", "message": message},
        },
    )


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    app = FastAPI(
        title="keymeter",
        description="API-key gate with owner, public and customer tiers.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware ----------------------------------------------------------

    # Added first so it runs inside the access log.
    app.add_middleware(UsageRecordingMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router)
    app.include_router(account.router)
    app.include_router(internal.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(GateError)
    async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
        request.state.error_code = exc.code
        if exc.status_code >= 500:
            logger.error("Gate error on %s: %s", request.url.path, exc)
        else:
            logger.info("Rejected %s: %s", request.url.path, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
        request.state.error_code = "invalid_parameter"
        error = InvalidParameter(details={"errors": [str(e.get("msg")) for e in exc.errors()]})
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    @app.exception_handler(HashAlgorithmUnavailable)
    async def hash_unavailable_handler(request: Request, exc: HashAlgorithmUnavailable) -> JSONResponse:
        logger.critical("Stored key hash needs unavailable algorithm %s", exc.algorithm)
        return _internal_error_response()

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return _internal_error_response()

    return app


# Module-level application instance used by ``uvicorn meter_api.main:app``.
app = create_app()
