"""
Shared AWS Bedrock runtime helpers.

Both the embedding service (Titan v2) and the relevance service (Nova Lite)
call bedrock-runtime invoke_model with a JSON body. This module owns the
pieces they share:
- Client creation with botocore's own retries disabled (retries belong to
  the tenacity policy in utils.retry)
- Mapping ClientError codes and botocore connection failures onto the
  service error taxonomy
- A thread-offloaded JSON invoke

Error Mapping:
    ThrottlingException, TooManyRequestsException → RateLimited
    ModelTimeoutException, ReadTimeoutError        → UpstreamTimeout
    ValidationException, AccessDeniedException,
    ResourceNotFoundException, NoCredentialsError  → UpstreamUnavailable (no retry)
    everything else                                → UpstreamUnavailable

Usage:
    from testcase_search.utils.bedrock import create_bedrock_client, invoke_model_json

    client = create_bedrock_client("us-east-1")
    body = await invoke_model_json(client, "amazon.nova-lite-v1:0", payload)
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    NoCredentialsError,
    ReadTimeoutError,
)

from testcase_search.errors import (
    RateLimited,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnavailable,
)

logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

THROTTLING_CODES = frozenset(
    {"ThrottlingException", "TooManyRequestsException", "ServiceQuotaExceededException"}
)
TIMEOUT_CODES = frozenset({"ModelTimeoutException", "RequestTimeout"})
NON_RETRYABLE_CODES = frozenset(
    {
        "ValidationException",
        "AccessDeniedException",
        "ResourceNotFoundException",
        "UnrecognizedClientException",
        "ModelNotReadyException",
    }
)

DEFAULT_READ_TIMEOUT = 60  # seconds
DEFAULT_CONNECT_TIMEOUT = 10  # seconds


# =============================================================================
# Client
# =============================================================================


def create_bedrock_client(
    region: str,
    read_timeout: int = DEFAULT_READ_TIMEOUT,
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
) -> Any:
    """Create a bedrock-runtime client with SDK-level retries disabled."""
    import boto3

    config = Config(
        read_timeout=read_timeout,
        connect_timeout=connect_timeout,
        retries={"max_attempts": 1, "mode": "standard"},
    )
    client = boto3.client("bedrock-runtime", region_name=region, config=config)
    logger.debug("bedrock_client_created", region=region)
    return client


# =============================================================================
# Error Mapping
# =============================================================================


def classify_bedrock_error(exc: BaseException, operation: str) -> UpstreamError:
    """Map a boto3/botocore exception onto the service error taxonomy."""
    if isinstance(exc, UpstreamError):
        return exc

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message", str(exc))
        detail = f"Bedrock {operation} failed: {code} - {message}"

        if code in THROTTLING_CODES:
            retry_after = None
            headers = exc.response.get("ResponseMetadata", {}).get("HTTPHeaders", {})
            if headers.get("retry-after"):
                try:
                    retry_after = float(headers["retry-after"])
                except ValueError:
                    retry_after = None
            return RateLimited(detail, retry_after=retry_after)
        if code in TIMEOUT_CODES:
            return UpstreamTimeout(detail)
        if code in NON_RETRYABLE_CODES:
            return UpstreamUnavailable(detail, retryable=False)
        return UpstreamUnavailable(detail)

    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError, asyncio.TimeoutError)):
        return UpstreamTimeout(f"Bedrock {operation} timed out: {exc}")
    if isinstance(exc, NoCredentialsError):
        return UpstreamUnavailable(
            f"Bedrock {operation} failed: AWS credentials not configured",
            retryable=False,
        )
    if isinstance(exc, BotoCoreError):
        return UpstreamUnavailable(f"Bedrock {operation} failed: {exc}")
    return UpstreamUnavailable(f"Bedrock {operation} failed: {exc}", retryable=False)


# =============================================================================
# Invocation
# =============================================================================


async def invoke_model_json(
    client: Any,
    model_id: str,
    payload: dict[str, Any],
    operation: str = "invoke_model",
) -> dict[str, Any]:
    """
    Invoke a Bedrock model with a JSON body and return the decoded response.

    Raises:
        RateLimited, UpstreamTimeout, UpstreamUnavailable: On failure.
    """
    try:
        # Run synchronous boto3 call in thread pool
        response = await asyncio.to_thread(
            client.invoke_model,
            modelId=model_id,
            body=json.dumps(payload),
            contentType="application/json",
            accept="application/json",
        )
        return json.loads(response["body"].read())
    except json.JSONDecodeError as e:
        logger.error("bedrock_response_parse_failed", model_id=model_id, error=str(e))
        raise UpstreamUnavailable(
            f"Bedrock {operation} returned invalid JSON: {e}", retryable=False
        ) from e
    except Exception as e:
        error = classify_bedrock_error(e, operation)
        logger.warning(
            "bedrock_invocation_failed",
            model_id=model_id,
            operation=operation,
            error=str(e),
            error_type=error.error_type,
            retryable=error.retryable,
        )
        raise error from e


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "create_bedrock_client",
    "classify_bedrock_error",
    "invoke_model_json",
]
