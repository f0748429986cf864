"""
Logging configuration and request correlation.

This module configures structlog for JSON-formatted output that works well
with CloudWatch Logs Insights, and provides the middleware that tags every
log line of a request with its request id. configure_logging() is called
once when the application is created.

Features:
    - JSON output in the aws environment, colored console output locally
    - Environment-aware log levels (DEBUG for local, INFO for aws)
    - Sensitive data filtering (API keys, secrets, tokens)
    - request_id bound into structlog contextvars for each request and
      echoed back in the X-Request-ID header

CloudWatch Logs Insights Query Examples:
    # Slow searches
    fields @timestamp, elapsed_ms, method, result_count
    | filter event = "search_completed" and elapsed_ms > 1000
    | sort elapsed_ms desc

    # Everything logged for one request
    fields @timestamp, event
    | filter request_id = "0b6c..."
    | sort @timestamp asc

Usage:
    from testcase_search.api.middleware.logging import (
        RequestContextMiddleware,
        configure_logging,
    )

    configure_logging(environment="aws", log_level="INFO")
    app.add_middleware(RequestContextMiddleware)
"""

from __future__ import annotations

import logging
import sys
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from structlog.types import EventDict, Processor, WrappedLogger

REQUEST_ID_HEADER = "X-Request-ID"

# Sensitive field patterns to redact from logs
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "api_key",
        "apikey",
        "secret",
        "token",
        "authorization",
        "access_key",
        "secret_key",
        "private_key",
        "credential",
    }
)

# Counters such as token_count are not secrets
_NOT_SENSITIVE = frozenset({"token_count", "total_tokens", "tokens_used"})
def _redact_sensitive_data(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Replace values of keys that look like secrets with "[REDACTED]"."""
    for key in list(event_dict.keys()):
        key_lower = key.lower()
        if key_lower in _NOT_SENSITIVE:
            continue
        if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
            event_dict[key] = "[REDACTED]"
    return event_dict


def _renderer(environment: str) -> Processor:
    if environment == "aws":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(
    environment: str = "local",
    log_level: str | None = None,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Both structlog events and third-party stdlib records (boto3, pinecone,
    uvicorn) go through the same processor chain, so they share timestamps,
    request ids and redaction.

    Args:
        environment: Runtime environment ('local' or 'aws').
        log_level: Logging level name. Defaults to DEBUG locally, INFO on aws.
    """
    if log_level is None:
        log_level = "DEBUG" if environment == "local" else "INFO"
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _redact_sensitive_data,
    ]

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(environment),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    # Noisy libraries
    for name in ("httpx", "httpcore", "urllib3", "botocore", "boto3", "pinecone"):
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger("logging.config").info(
        "logging_configured",
        environment=environment,
        log_level=log_level,
        output_format="json" if environment == "aws" else "console",
    )


# =============================================================================
# Request Context
# =============================================================================


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Bind a request id to every log line emitted while serving a request.

    A caller-supplied X-Request-ID is reused so ids can be followed across
    services; otherwise a new one is generated. The id is echoed in the
    response header.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            http_method=request.method,
        )
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[REQUEST_ID_HEADER] = request_id
        structlog.get_logger(__name__).debug(
            "request_completed",
            request_id=request_id,
            path=request.url.path,
            status_code=response.status_code,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response


def bind_job_context(job_id: str) -> None:
    """Add job_id to the current request's log context."""
    structlog.contextvars.bind_contextvars(job_id=job_id)


def clear_context() -> None:
    """Drop all bound context variables."""
    structlog.contextvars.clear_contextvars()


__all__ = [
    "REQUEST_ID_HEADER",
    "RequestContextMiddleware",
    "bind_job_context",
    "clear_context",
    "configure_logging",
]
