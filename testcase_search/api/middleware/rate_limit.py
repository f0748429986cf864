"""
Rate limiting middleware using slowapi.

Search requests fan out into several Pinecone and Bedrock calls each, so
the search routes are limited per client IP. Job polling is not limited.

Features:
    - IP-based rate limiting using get_remote_address
    - Limit read from settings.rate_limit_per_minute at request time
    - Retry-After header and the shared error body on 429
    - Structured logging of rate limit events

Usage:
    from slowapi.errors import RateLimitExceeded
    from testcase_search.api.middleware.rate_limit import (
        limiter,
        rate_limit_exceeded_handler,
        search_rate_limit,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @router.post("/search")
    @limiter.limit(search_rate_limit)
    async def search(request: Request, ...):
        ...

Reference:
    - slowapi documentation: https://slowapi.readthedocs.io/
"""

from __future__ import annotations

import structlog
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from testcase_search.config import get_settings

# Module logger
logger = structlog.get_logger(__name__)

# =============================================================================
# Rate Limiter Configuration
# =============================================================================

DEFAULT_RATE_LIMIT = "30/minute"
DEFAULT_RETRY_AFTER_SECONDS = 60

limiter = Limiter(key_func=get_remote_address)


def get_rate_limit_string(requests_per_minute: int | None = None) -> str:
    """slowapi limit string ("N/minute"); DEFAULT_RATE_LIMIT when None."""
    if requests_per_minute is None:
        return DEFAULT_RATE_LIMIT
    return f"{requests_per_minute}/minute"


def search_rate_limit() -> str:
    """Limit applied to the search routes, resolved on each request."""
    return get_rate_limit_string(get_settings().rate_limit_per_minute)


# =============================================================================
# Exception Handler
# =============================================================================


def _retry_after_seconds(exc: RateLimitExceeded) -> int:
    limit = getattr(exc, "limit", None)
    item = getattr(limit, "limit", None)
    if item is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return int(item.get_expiry())
    except (AttributeError, TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS


async def rate_limit_exceeded_handler(
    request: Request,
    exc: RateLimitExceeded,
) -> JSONResponse:
    """
    Answer 429 with a Retry-After header.

    Example Response:
        HTTP/1.1 429 Too Many Requests
        Retry-After: 60

        {
            "detail": "Rate limit exceeded. Please wait before making more requests.",
            "status_code": 429,
            "error_type": "rate_limit",
            "retry_after": 60
        }
    """
    retry_after = _retry_after_seconds(exc)
    logger.warning(
        "rate_limit_exceeded",
        client_ip=get_remote_address(request) or "unknown",
        path=str(request.url.path),
        method=request.method,
        limit_detail=str(exc.detail) if exc.detail else None,
    )
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please wait before making more requests.",
            "status_code": 429,
            "error_type": "rate_limit",
            "retry_after": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )


__all__ = [
    "DEFAULT_RATE_LIMIT",
    "RateLimitExceeded",
    "get_rate_limit_string",
    "limiter",
    "rate_limit_exceeded_handler",
    "search_rate_limit",
]
