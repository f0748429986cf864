"""
FastAPI application factory and configuration.

This module creates and configures the FastAPI application for the test
case search service. It sets up logging, middleware, error handling and
routes, and builds the service container in the application lifespan.

The application uses the lifespan context manager pattern instead of the
deprecated on_event decorators for startup/shutdown.

Features:
    - Configuration validation on startup
    - ServiceContainer (search pipeline, job tracker) built once per process
    - Job purge loop started on startup, running jobs cancelled on shutdown
    - Request ids bound into structlog context (X-Request-ID)
    - CORS middleware for browser clients
    - Error taxonomy mapped to HTTP status codes with one response shape
    - slowapi rate limiting on the search routes

Usage:
    # Run directly with uvicorn
    uvicorn testcase_search.api.main:app --reload --host 0.0.0.0 --port 8000

    # Or build an app around a prepared container (tests)
    from testcase_search.api.main import create_app
    test_app = create_app(settings=settings, container=container)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi.errors import RateLimitExceeded

from testcase_search.api import __api_version__, __version__
from testcase_search.api.dependencies import ServiceContainer, build_container
from testcase_search.api.middleware.logging import (
    RequestContextMiddleware,
    configure_logging,
)
from testcase_search.api.middleware.rate_limit import (
    limiter,
    rate_limit_exceeded_handler,
)
from testcase_search.api.routes import health_router, v1_router
from testcase_search.config import Settings, get_settings, validate_config
from testcase_search.errors import RateLimited, SearchServiceError

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

# Configure module logger
logger = logging.getLogger(__name__)

API_TITLE = "Test Case Search API"


# =============================================================================
# Response Models
# =============================================================================


class ErrorResponse(BaseModel):
    """Response model for error responses."""

    detail: str
    status_code: int
    error_type: str
    retry_after: float | None = None


def _error_response(
    status_code: int,
    detail: str,
    error_type: str,
    headers: dict[str, str] | None = None,
    retry_after: float | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        detail=detail,
        status_code=status_code,
        error_type=error_type,
        retry_after=retry_after,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


# =============================================================================
# Lifespan Context Manager
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Manage application lifespan events.

    Startup:
        - Validates configuration settings
        - Builds the ServiceContainer unless one was supplied to create_app()
        - Starts the job purge loop

    Shutdown:
        - Cancels running jobs and the purge loop

    Raises:
        ValueError: If configuration validation fails.
    """
    # === Startup ===
    logger.info("Starting application...")
    settings: Settings = app.state.settings

    try:
        validation_result = validate_config(settings)
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    for warning in validation_result.get("warnings", []):
        logger.warning(f"Config warning: {warning}")

    container: ServiceContainer | None = app.state.container
    if container is None:
        container = build_container(settings)
        app.state.container = container
    container.tracker.start_purge_loop()

    logger.info(
        f"Application started successfully. Environment: {settings.environment}, "
        f"Version: {__version__}, API Version: {__api_version__}"
    )

    yield  # Application runs here

    # === Shutdown ===
    logger.info("Shutting down application...")
    await container.tracker.close()
    logger.info("Application shutdown complete.")


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    settings: Settings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    Args:
        settings: Optional Settings instance. Defaults to get_settings().
        container: Optional prebuilt ServiceContainer. When omitted, the
            lifespan builds one from settings.

    Returns:
        FastAPI: Configured FastAPI application instance.
    """
    if settings is None:
        settings = container.settings if container is not None else get_settings()

    configure_logging(environment=settings.environment, log_level=settings.log_level)

    application = FastAPI(
        title=API_TITLE,
        description=(
            "Hybrid keyword and vector search over test case repositories, "
            "with score fusion, optional relevance re-ranking and tracked "
            "embedding generation jobs."
        ),
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    application.state.settings = settings
    application.state.container = container

    # Configure middleware
    _configure_cors(application, settings)
    application.add_middleware(RequestContextMiddleware)

    # Rate limiting
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    # Register error handlers
    _register_error_handlers(application, settings)

    # Register routes
    _register_routes(application)

    return application


# =============================================================================
# Middleware Configuration
# =============================================================================


def _configure_cors(app: FastAPI, settings: Settings) -> None:
    """Allow the configured browser origins to call the API."""
    cors_origins = settings.get_cors_origins_list()

    logger.info(f"Configuring CORS for origins: {cors_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )


# =============================================================================
# Error Handlers
# =============================================================================


def _register_error_handlers(app: FastAPI, settings: Settings) -> None:
    """
    Register global error handlers for the application.

    Every error body has the shape {detail, status_code, error_type}.
    Service errors carry their own status code and error type; internal
    error details are hidden unless debug is on.
    """

    @app.exception_handler(SearchServiceError)
    async def service_error_handler(
        request: Request, exc: SearchServiceError
    ) -> JSONResponse:
        """Map the error taxonomy to HTTP responses."""
        status_code = exc.status_code
        path = str(request.url.path)
        if status_code >= 500:
            logger.error(
                f"Service error {type(exc).__name__}: {exc}", extra={"path": path}
            )
        else:
            logger.warning(
                f"Request rejected {type(exc).__name__}: {exc}", extra={"path": path}
            )

        headers: dict[str, str] | None = None
        retry_after: float | None = None
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            retry_after = exc.retry_after
            headers = {"Retry-After": str(max(1, int(round(exc.retry_after))))}

        detail = str(exc)
        if status_code == status.HTTP_500_INTERNAL_SERVER_ERROR and not settings.debug:
            detail = "An unexpected error occurred."

        return _error_response(
            status_code, detail, exc.error_type, headers=headers, retry_after=retry_after
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Flatten pydantic errors into one readable detail string."""
        messages = [
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        ]
        detail = "Invalid request: " + "; ".join(messages)
        logger.warning(detail, extra={"path": str(request.url.path)})
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY, detail, "validation_error"
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        """Handle HTTP exceptions with consistent response format."""
        logger.warning(
            f"HTTP exception: {exc.status_code} - {exc.detail}",
            extra={"path": str(request.url.path)},
        )
        return _error_response(exc.status_code, str(exc.detail), "http_error")

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        """Handle validation errors raised outside the taxonomy."""
        logger.warning(
            f"Validation error: {exc}",
            extra={"path": str(request.url.path)},
        )
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc), "validation_error"
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Log the full exception, answer with a generic message."""
        logger.exception(
            f"Unhandled exception: {type(exc).__name__}",
            extra={"path": str(request.url.path)},
        )
        detail = str(exc) if settings.debug else "An unexpected error occurred."
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, detail, "internal_error"
        )


# =============================================================================
# Route Registration
# =============================================================================


def _register_routes(app: FastAPI) -> None:
    """
    Register API routes with the application.

    Registers:
        - Health check router (/health)
        - Versioned routes (/api/v1/search, /api/v1/job)
        - Root endpoint (/)
    """
    app.include_router(health_router)
    app.include_router(v1_router, prefix=f"/api/{__api_version__}")

    @app.get(
        "/",
        tags=["Root"],
        summary="API Root",
        description="Root endpoint returning basic API information.",
    )
    async def root(request: Request) -> dict[str, Any]:
        """API name, version and links."""
        settings: Settings = request.app.state.settings
        return {
            "name": API_TITLE,
            "version": __version__,
            "api_version": __api_version__,
            "environment": settings.environment,
            "docs": "/docs" if settings.debug else None,
            "health": "/health",
            "search": f"/api/{__api_version__}/search",
        }


# =============================================================================
# Application Instance
# =============================================================================

# This is what uvicorn uses when running: uvicorn testcase_search.api.main:app
app = create_app()


# =============================================================================
# Development Server
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "testcase_search.api.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
