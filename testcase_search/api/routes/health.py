"""
Health check endpoint with dependency checks.

Used by load balancers, deployment smoke tests and developers to verify the
service is up and can reach its collaborators.

Features:
    - Overall status (ok, degraded)
    - Environment and version information
    - Dependency checks with graceful degradation:
        - Bedrock embedding model reachable
        - Pinecone vector and keyword indexes with vector counts
    - Checks run concurrently, each bounded by CHECK_TIMEOUT_SECONDS
    - No authentication required

Status Logic:
    - "ok": every check passed or was skipped
    - "degraded": at least one check failed; search may still partially work
      (a failed keyword index leaves vector search available)

Example Response:
    {
        "status": "ok",
        "environment": "local",
        "version": "1.0.0",
        "api_version": "v1",
        "checks": {
            "bedrock": {"status": "ok"},
            "vector_index": {"status": "ok", "vector_count": 1423},
            "keyword_index": {"status": "ok", "vector_count": 1423}
        }
    }
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from testcase_search.api import __api_version__, __version__
from testcase_search.api.dependencies import ServiceContainer, get_container

# Module logger
logger = structlog.get_logger(__name__)

# Timeout for dependency checks (seconds)
CHECK_TIMEOUT_SECONDS = 5.0


# =============================================================================
# Response Models
# =============================================================================


class DependencyCheckResult(BaseModel):
    """Result of a single dependency check."""

    status: str = Field(
        ...,
        description="Check status: ok, error, or skipped",
        examples=["ok"],
    )
    vector_count: int | None = Field(
        default=None,
        description="Vectors stored in the index (Pinecone checks only)",
        examples=[1423],
    )
    error: str | None = Field(
        default=None,
        description="Error message if check failed",
        examples=[None],
    )


class DependencyChecks(BaseModel):
    """Container for all dependency check results."""

    bedrock: DependencyCheckResult
    vector_index: DependencyCheckResult
    keyword_index: DependencyCheckResult


class HealthResponse(BaseModel):
    """Response model for the health check endpoint."""

    status: str = Field(..., examples=["ok"])
    environment: str = Field(..., examples=["local"])
    version: str = Field(..., examples=["1.0.0"])
    api_version: str = Field(..., examples=["v1"])
    checks: DependencyChecks


# =============================================================================
# Dependency Check Functions
# =============================================================================


async def _run_check(
    name: str, check: Callable[[], Awaitable[dict[str, Any]]]
) -> DependencyCheckResult:
    try:
        info = await asyncio.wait_for(check(), timeout=CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"{name}_check_timeout", timeout_seconds=CHECK_TIMEOUT_SECONDS)
        return DependencyCheckResult(
            status="error",
            error=f"{name} check timed out after {CHECK_TIMEOUT_SECONDS}s",
        )
    except Exception as exc:
        logger.warning(
            f"{name}_check_failed",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return DependencyCheckResult(status="error", error=str(exc))

    return DependencyCheckResult(
        status="ok", vector_count=info.get("total_vector_count")
    )


async def check_bedrock(container: ServiceContainer) -> DependencyCheckResult:
    """
    Check the embedding model answers.

    Skipped locally when no AWS credentials are configured, so a developer
    without credentials still sees "ok" for the rest of the service.
    """
    settings = container.settings
    if container.embeddings is None:
        return DependencyCheckResult(status="skipped", error="Embeddings not configured")
    if not settings.is_aws() and not (
        settings.aws_access_key_id and settings.aws_secret_access_key
    ):
        return DependencyCheckResult(
            status="skipped", error="AWS credentials not configured"
        )
    return await _run_check("bedrock", container.embeddings.verify_model_access)


async def check_index(container: ServiceContainer, index_name: str) -> DependencyCheckResult:
    """Check a Pinecone index is reachable and report its vector count."""
    if container.pinecone is None or not container.settings.pinecone_api_key:
        return DependencyCheckResult(
            status="skipped", error="Pinecone API key not configured"
        )
    pinecone = container.pinecone
    return await _run_check("pinecone", lambda: pinecone.describe(index_name))


def determine_overall_status(checks: DependencyChecks) -> str:
    """ok when nothing failed, degraded otherwise."""
    statuses = [checks.bedrock.status, checks.vector_index.status, checks.keyword_index.status]
    return "degraded" if "error" in statuses else "ok"


# =============================================================================
# Router Definition
# =============================================================================

router = APIRouter(
    tags=["Health"],
    responses={
        200: {"description": "API is healthy or degraded"},
        503: {"description": "Service unavailable"},
    },
)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API status and dependency health.",
)
async def health_check(
    container: ServiceContainer = Depends(get_container),
) -> HealthResponse:
    """
    Health check endpoint with dependency status.

    A failed dependency check results in "degraded" status rather than an
    error response, so the endpoint itself always answers 200 once started.
    """
    settings = container.settings
    bedrock, vector_index, keyword_index = await asyncio.gather(
        check_bedrock(container),
        check_index(container, settings.pinecone_vector_index_name),
        check_index(container, settings.pinecone_keyword_index_name),
    )
    checks = DependencyChecks(
        bedrock=bedrock, vector_index=vector_index, keyword_index=keyword_index
    )
    overall_status = determine_overall_status(checks)

    logger.debug(
        "health_check_completed",
        status=overall_status,
        bedrock_status=bedrock.status,
        vector_index_status=vector_index.status,
        keyword_index_status=keyword_index.status,
    )

    return HealthResponse(
        status=overall_status,
        environment=settings.environment,
        version=__version__,
        api_version=__api_version__,
        checks=checks,
    )


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "router",
    "HealthResponse",
    "DependencyChecks",
    "DependencyCheckResult",
    "check_bedrock",
    "check_index",
    "determine_overall_status",
]
