"""
FastAPI Middleware Application Factory
=======================================

Entry point for the authentication state middleware.

Routers:
    - /auth/*       : OIDC login/callback per scheme, session profile
    - /health       : Health check endpoint

Running the Service:
    Development:
        uvicorn ticketstate.main:create_app --factory --reload --host 0.0.0.0 --port 8080

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn ticketstate.main:create_app --factory --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ticketstate.auth import auth_router
from ticketstate.auth.schemes import build_scheme_registry
from ticketstate.config import Settings, get_settings, validate_configuration
from ticketstate.models import ErrorResponse, HealthResponse
from ticketstate.state.cache import create_cache
from ticketstate.state.exceptions import (
    CacheUnavailableError,
    StateFormatConfigurationError,
    StateSerializationError,
)
from ticketstate.state.protection import DataProtectionProvider

logger = logging.getLogger("ticketstate.main")


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured JSON-line logging for the application.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager: logging setup and configuration report.
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL)

    report = validate_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(warning)
    for error in report["errors"]:
        logger.error(error)

    logger.info(
        "Starting middleware service",
        extra={
            "schemes": app.state.schemes.names(),
            "state_storage": settings.STATE_STORAGE,
        }
    )

    yield

    logger.info("Middleware service shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory function.

    Builds the shared state cache and data protection provider once and
    injects them into the scheme registry, which is exposed to routes via
    `app.state.schemes`.

    Args:
        settings: Settings to use (defaults to environment via get_settings())

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Ticket State Middleware",
        description="OIDC authentication middleware with cache-backed sign-in state",
        version="1.0.0",
        lifespan=lifespan,
    )

    cache = create_cache(
        settings.STATE_CACHE_URL,
        settings.STATE_CACHE_TTL_SECONDS,
        socket_timeout=settings.STATE_CACHE_TIMEOUT_SECONDS,
    )
    protection_provider = DataProtectionProvider(settings.STATE_PROTECTION_KEY)

    app.state.settings = settings
    app.state.cache = cache
    app.state.schemes = build_scheme_registry(settings, cache, protection_provider)

    if settings.allowed_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins_list,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(auth_router)

    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        return HealthResponse(
            status="ok",
            service="ticketstate-middleware",
            schemes=app.state.schemes.names(),
        )

    # =========================================================================
    # Exception Handlers
    # =========================================================================

    @app.exception_handler(CacheUnavailableError)
    async def cache_unavailable_handler(request: Request, exc: CacheUnavailableError) -> JSONResponse:
        logger.error(f"State cache unavailable: {exc}", extra={"path": request.url.path})
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error="state_cache_unavailable", message="Sign-in state storage is unavailable").model_dump(),
        )

    @app.exception_handler(StateSerializationError)
    async def serialization_handler(request: Request, exc: StateSerializationError) -> JSONResponse:
        logger.error(f"State serialization failed: {exc}", extra={"path": request.url.path}, exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="state_serialization_failed", message="Sign-in state could not be processed").model_dump(),
        )

    @app.exception_handler(StateFormatConfigurationError)
    async def configuration_handler(request: Request, exc: StateFormatConfigurationError) -> JSONResponse:
        logger.error(f"State format misconfigured: {exc}", extra={"path": request.url.path})
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="state_format_misconfigured", message="Authentication scheme is misconfigured").model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="internal_server_error", message="An unexpected error occurred").model_dump(),
        )

    return app
