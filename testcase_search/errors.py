"""
Error taxonomy shared by the search pipeline, adapters and job tracker.

Every failure that crosses a component boundary is expressed as one of the
exceptions below so the pipeline can decide between degrading (partial
results, skipped rerank) and failing the request, and so the API layer can
map each kind to a stable HTTP status.

Taxonomy:
    SearchServiceError
    ├── ValidationError        malformed query, filters, weights or job input
    ├── UpstreamError          an external collaborator could not answer
    │   ├── UpstreamTimeout    the call exceeded its deadline
    │   ├── UpstreamUnavailable connection failure or server-side error
    │   └── RateLimited        provider throttling, optional retry_after
    ├── InternalFusionError    inconsistent state while merging scores
    └── JobStateError          illegal job transition or progress regression
        └── JobNotFoundError   operation on an unknown job id

Usage:
    from testcase_search.errors import UpstreamTimeout, ValidationError

    if not 1 <= top_n <= max_top_n:
        raise ValidationError(f"top_n must be between 1 and {max_top_n}")
"""

from __future__ import annotations

from fastapi import status

# =============================================================================
# Base Exception
# =============================================================================


class SearchServiceError(Exception):
    """Base exception for all service errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "internal_error"


# =============================================================================
# Validation
# =============================================================================


class ValidationError(SearchServiceError, ValueError):
    """Raised for malformed caller input. Never retried."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_type = "validation_error"


# =============================================================================
# Upstream Failures
# =============================================================================


class UpstreamError(SearchServiceError):
    """
    Base class for failures of an external collaborator.

    Attributes:
        retryable: False for failures a retry cannot fix (bad request, auth).
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "upstream_error"

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class UpstreamTimeout(UpstreamError):
    """Raised when an upstream call exceeds its deadline."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    error_type = "upstream_timeout"


class UpstreamUnavailable(UpstreamError):
    """Raised when an upstream service cannot be reached or errors out."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "upstream_unavailable"


class RateLimited(UpstreamError):
    """
    Raised when a provider throttles the caller.

    Attributes:
        retry_after: Provider-specified delay in seconds, when one was given.
    """

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_type = "rate_limited"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, retryable=True)
        self.retry_after = retry_after


# =============================================================================
# Internal Failures
# =============================================================================


class InternalFusionError(SearchServiceError):
    """Raised when score fusion meets state it cannot merge consistently."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "fusion_error"


class JobStateError(SearchServiceError):
    """Raised on an illegal job status transition or a progress regression."""

    status_code = status.HTTP_409_CONFLICT
    error_type = "job_state_error"


class JobNotFoundError(JobStateError):
    """Raised when an operation targets a job id the tracker does not hold."""

    status_code = status.HTTP_404_NOT_FOUND
    error_type = "job_not_found"


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "SearchServiceError",
    "ValidationError",
    "UpstreamError",
    "UpstreamTimeout",
    "UpstreamUnavailable",
    "RateLimited",
    "InternalFusionError",
    "JobStateError",
    "JobNotFoundError",
]
