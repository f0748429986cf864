"""
Middleware package for request/response processing.

This package contains middleware components for the FastAPI application:
- logging: structlog configuration and request id binding
- rate_limit: IP-based rate limiting using slowapi

Usage:
    from testcase_search.api.middleware import (
        RequestContextMiddleware,
        configure_logging,
        limiter,
        rate_limit_exceeded_handler,
    )
"""

from testcase_search.api.middleware.logging import (
    REQUEST_ID_HEADER,
    RequestContextMiddleware,
    bind_job_context,
    clear_context,
    configure_logging,
)
from testcase_search.api.middleware.rate_limit import (
    DEFAULT_RATE_LIMIT,
    RateLimitExceeded,
    get_rate_limit_string,
    limiter,
    rate_limit_exceeded_handler,
    search_rate_limit,
)

__all__ = [
    # Logging
    "REQUEST_ID_HEADER",
    "RequestContextMiddleware",
    "bind_job_context",
    "clear_context",
    "configure_logging",
    # Rate limiting
    "DEFAULT_RATE_LIMIT",
    "RateLimitExceeded",
    "get_rate_limit_string",
    "limiter",
    "rate_limit_exceeded_handler",
    "search_rate_limit",
]
