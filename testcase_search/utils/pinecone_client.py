"""
Pinecone store adapter for the dense and keyword test case indexes.

The service keeps test cases in two Pinecone indexes:
- A dense index (cosine, 1024 dimensions) holding Titan v2 embeddings
- A sparse keyword index (dot product) holding field-boosted BM25 vectors

Both are reached through this one adapter, which:
- Runs the synchronous Pinecone SDK in worker threads (asyncio.to_thread)
- Maps SDK failures onto the service error taxonomy (RateLimited,
  UpstreamTimeout, UpstreamUnavailable) so callers decide about retries
- Upserts in batches with dimension and metadata size validation
- Describes indexes for health checks

Retries deliberately live one level up (retrievers and embedding jobs), so
each caller can bound total latency with its own attempt budget.

Record Formats:
    Dense:  {"id": "TC-101", "values": [0.1, ...], "metadata": {...}}
    Sparse: {"id": "TC-101", "sparse_values": {"indices": [...], "values": [...]},
             "metadata": {...}}

Query Clauses:
    {"vector": [0.1, 0.2, ...]}
    {"sparse_vector": {"indices": [...], "values": [...]}}

Usage:
    from testcase_search.utils.pinecone_client import PineconeClient

    client = PineconeClient()
    matches = await client.search(
        "testcases-vector", {"vector": embedding}, {"module": "auth"}, 20
    )

Reference:
    - Pinecone Python client: https://docs.pinecone.io/reference/python-sdk
    - Sparse indexes: https://docs.pinecone.io/guides/index-data/indexing-overview
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping, Sequence
from typing import Any

import structlog
from pydantic import SecretStr

from testcase_search.config.settings import get_settings
from testcase_search.errors import (
    RateLimited,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnavailable,
    ValidationError,
)

# Configure structured logger
logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Batch size for upsert operations (Pinecone recommendation)
DEFAULT_UPSERT_BATCH_SIZE = 100

# Expected embedding dimension (Titan v2 default)
EXPECTED_DIMENSION = 1024

# Metadata size limit (Pinecone limit is 40KB, we use 38KB for safety margin)
MAX_METADATA_BYTES = 38 * 1024

# Status codes a retry cannot fix
NON_RETRYABLE_STATUS = frozenset({400, 401, 403, 404})

# Substrings of SDK error messages that indicate throttling or timeouts
RATE_LIMIT_PATTERNS = ("rate limit", "throttl", "too many requests")
TIMEOUT_PATTERNS = ("timeout", "timed out")


# =============================================================================
# Error Classification
# =============================================================================


def _status_of(exc: BaseException) -> int | None:
    """HTTP status carried by a Pinecone SDK exception, if any."""
    for attr in ("status", "status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def _retry_after_of(exc: BaseException) -> float | None:
    headers = getattr(exc, "headers", None) or {}
    try:
        value = headers.get("retry-after") or headers.get("Retry-After")
    except AttributeError:
        return None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def classify_pinecone_error(exc: BaseException, operation: str) -> UpstreamError:
    """
    Map a Pinecone SDK exception onto the service error taxonomy.

    Returns:
        RateLimited for 429 and throttling messages (with retry_after when
        the response carried a Retry-After header), UpstreamTimeout for
        timeouts, non-retryable UpstreamUnavailable for 400/401/403/404 and
        retryable UpstreamUnavailable for everything else.
    """
    if isinstance(exc, UpstreamError):
        return exc

    status_code = _status_of(exc)
    message = str(exc).lower()
    detail = f"Pinecone {operation} failed: {exc}"

    if status_code == 429 or any(p in message for p in RATE_LIMIT_PATTERNS):
        return RateLimited(detail, retry_after=_retry_after_of(exc))
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)) or any(
        p in message for p in TIMEOUT_PATTERNS
    ):
        return UpstreamTimeout(detail)
    if status_code in NON_RETRYABLE_STATUS:
        return UpstreamUnavailable(detail, retryable=False)
    return UpstreamUnavailable(detail)


# =============================================================================
# PineconeClient Class
# =============================================================================


class PineconeClient:
    """
    Async adapter over the Pinecone SDK for search, upsert and describe.

    The API key is resolved lazily so the application can start (and report
    a degraded health check) without Pinecone credentials.

    Attributes:
        cloud: Serverless cloud used when creating indexes.
        region: Serverless region used when creating indexes.

    Example:
        client = PineconeClient(api_key="pc-...")
        matches = await client.search(
            "testcases-keyword",
            {"sparse_vector": {"indices": [7, 42], "values": [0.6, 0.3]}},
            None,
            10,
        )
    """

    def __init__(
        self,
        api_key: str | SecretStr | None = None,
        cloud: str | None = None,
        region: str | None = None,
        expected_dimension: int | None = None,
    ) -> None:
        """
        Initialize the Pinecone adapter.

        Args:
            api_key: Pinecone API key (str or SecretStr). Defaults to settings.
            cloud: Serverless cloud. Defaults to settings.pinecone_cloud.
            region: Serverless region. Defaults to settings.pinecone_environment.
            expected_dimension: Dense vector size checked on upsert.
        """
        settings = get_settings()

        if isinstance(api_key, SecretStr):
            self._api_key: str | None = api_key.get_secret_value()
        elif api_key:
            self._api_key = api_key
        elif settings.pinecone_api_key:
            self._api_key = settings.pinecone_api_key.get_secret_value()
        else:
            self._api_key = None

        self.cloud = cloud or settings.pinecone_cloud
        self.region = region or settings.pinecone_environment
        self._expected_dimension = expected_dimension or settings.embedding_dimension

        # Lazy initialization
        self._client: Any = None
        self._indexes: dict[str, Any] = {}

        self._log = logger.bind(component="pinecone_client", region=self.region)
        self._log.info("pinecone_client_initialized", has_api_key=bool(self._api_key))

    # =========================================================================
    # Connection
    # =========================================================================

    def _get_client(self) -> Any:
        """
        Get or create the Pinecone client.

        Raises:
            UpstreamUnavailable: If no API key is configured or the client
                cannot be created. Not retryable.
        """
        if self._client is None:
            if not self._api_key:
                raise UpstreamUnavailable(
                    "Pinecone API key not provided. Set PINECONE_API_KEY in .env",
                    retryable=False,
                )
            try:
                from pinecone import Pinecone

                self._client = Pinecone(api_key=self._api_key)
                self._log.debug("pinecone_client_created")
            except Exception as e:
                self._log.error("pinecone_client_creation_failed", error=str(e))
                raise UpstreamUnavailable(
                    f"Failed to create Pinecone client: {e}", retryable=False
                ) from e
        return self._client

    def _get_index(self, index_name: str) -> Any:
        """Get or create a cached handle to the named index."""
        if index_name not in self._indexes:
            client = self._get_client()
            try:
                self._indexes[index_name] = client.Index(index_name)
            except Exception as e:
                self._log.error(
                    "pinecone_index_connection_failed",
                    index=index_name,
                    error=str(e),
                )
                raise classify_pinecone_error(e, "connect") from e
            self._log.debug("pinecone_index_connected", index=index_name)
        return self._indexes[index_name]

    # =========================================================================
    # Validation
    # =========================================================================

    def _sanitize_filter(
        self, filter_clause: Mapping[str, Any] | None
    ) -> dict[str, Any] | None:
        """
        Remove None values from a filter; Pinecone rejects them.

        Returns None when nothing is left.
        """
        if not filter_clause:
            return None

        sanitized = {k: v for k, v in filter_clause.items() if v is not None}
        removed_keys = set(filter_clause) - set(sanitized)
        if removed_keys:
            self._log.debug("filter_sanitized", removed_keys=sorted(removed_keys))

        return sanitized or None

    def _validate_records(
        self, records: Sequence[Mapping[str, Any]]
    ) -> tuple[list[dict[str, Any]], list[str]]:
        """
        Check dense dimension and metadata size of records to upsert.

        Returns:
            Tuple of (valid_records, skipped_ids). Records whose metadata
            exceeds MAX_METADATA_BYTES or cannot be serialized are skipped.

        Raises:
            ValidationError: If a dense record has the wrong dimension.
        """
        valid: list[dict[str, Any]] = []
        skipped: list[str] = []

        for record in records:
            values = record.get("values")
            if values is not None and len(values) != self._expected_dimension:
                raise ValidationError(
                    f"Vector dimension mismatch for {record.get('id')}: got "
                    f"{len(values)}, expected {self._expected_dimension}"
                )

            metadata = record.get("metadata") or {}
            try:
                metadata_bytes = len(json.dumps(metadata).encode("utf-8"))
            except (TypeError, ValueError):
                self._log.error(
                    "metadata_serialization_failed", record_id=record.get("id")
                )
                skipped.append(str(record.get("id")))
                continue

            if metadata_bytes > MAX_METADATA_BYTES:
                self._log.warning(
                    "metadata_size_exceeded",
                    record_id=record.get("id"),
                    metadata_bytes=metadata_bytes,
                    limit_bytes=MAX_METADATA_BYTES,
                )
                skipped.append(str(record.get("id")))
                continue

            valid.append(dict(record))

        return valid, skipped

    # =========================================================================
    # Operations
    # =========================================================================

    async def search(
        self,
        index_name: str,
        query_clause: Mapping[str, Any],
        filter_clause: Mapping[str, Any] | None,
        limit: int,
    ) -> list[dict[str, Any]]:
        """
        Query one index and return its matches best first.

        Args:
            index_name: Pinecone index to query.
            query_clause: {"vector": [...]} or {"sparse_vector": {...}}.
            filter_clause: Pinecone metadata filter, or None.
            limit: Maximum number of matches.

        Returns:
            List of {"id", "score", "metadata"} dicts. An empty list means
            the index holds nothing matching.

        Raises:
            ValidationError: If the query clause has neither form.
            RateLimited, UpstreamTimeout, UpstreamUnavailable: On SDK failure.
        """
        if "vector" in query_clause:
            kwargs: dict[str, Any] = {"vector": list(query_clause["vector"])}
        elif "sparse_vector" in query_clause:
            kwargs = {"sparse_vector": dict(query_clause["sparse_vector"])}
        else:
            raise ValidationError(
                "query_clause must contain 'vector' or 'sparse_vector'"
            )

        sanitized_filter = self._sanitize_filter(filter_clause)
        index = self._get_index(index_name)

        self._log.debug(
            "query_started",
            index=index_name,
            top_k=limit,
            has_filter=sanitized_filter is not None,
        )

        try:
            response = await asyncio.to_thread(
                index.query,
                top_k=limit,
                filter=sanitized_filter,
                include_metadata=True,
                include_values=False,
                **kwargs,
            )
        except Exception as e:
            error = classify_pinecone_error(e, "query")
            self._log.warning(
                "query_failed",
                index=index_name,
                error=str(e),
                error_type=error.error_type,
            )
            raise error from e

        matches = [
            {
                "id": match.id,
                "score": float(match.score),
                "metadata": dict(match.metadata) if match.metadata else {},
            }
            for match in (response.matches or [])
        ]

        self._log.debug(
            "query_completed",
            index=index_name,
            num_results=len(matches),
            top_score=matches[0]["score"] if matches else None,
        )

        return matches

    async def upsert(
        self,
        index_name: str,
        records: Sequence[Mapping[str, Any]],
        batch_size: int = DEFAULT_UPSERT_BATCH_SIZE,
    ) -> dict[str, int]:
        """
        Upsert dense or sparse records in batches.

        Returns:
            {"upserted_count", "batch_count", "skipped_count"}

        Raises:
            ValidationError: On a dense dimension mismatch.
            RateLimited, UpstreamTimeout, UpstreamUnavailable: On SDK failure.
        """
        if not records:
            return {"upserted_count": 0, "batch_count": 0, "skipped_count": 0}

        valid, skipped = self._validate_records(records)
        if not valid:
            self._log.warning(
                "all_records_skipped", index=index_name, skipped_count=len(skipped)
            )
            return {"upserted_count": 0, "batch_count": 0, "skipped_count": len(skipped)}

        index = self._get_index(index_name)
        upserted = 0
        batch_count = 0

        for start in range(0, len(valid), batch_size):
            batch = valid[start : start + batch_size]
            try:
                await asyncio.to_thread(index.upsert, vectors=batch)
            except Exception as e:
                error = classify_pinecone_error(e, "upsert")
                self._log.error(
                    "upsert_failed",
                    index=index_name,
                    error=str(e),
                    upserted_before_error=upserted,
                )
                raise error from e
            upserted += len(batch)
            batch_count += 1

        self._log.info(
            "upsert_completed",
            index=index_name,
            upserted_count=upserted,
            batch_count=batch_count,
            skipped_count=len(skipped),
        )
        return {
            "upserted_count": upserted,
            "batch_count": batch_count,
            "skipped_count": len(skipped),
        }

    async def describe(self, index_name: str) -> dict[str, Any]:
        """
        Index statistics for health checks.

        Returns:
            {"index_name", "total_vector_count", "dimension"}
        """
        index = self._get_index(index_name)
        try:
            stats = await asyncio.to_thread(index.describe_index_stats)
        except Exception as e:
            raise classify_pinecone_error(e, "describe") from e

        return {
            "index_name": index_name,
            "total_vector_count": getattr(stats, "total_vector_count", 0),
            "dimension": getattr(stats, "dimension", None),
        }

    def create_index(
        self,
        index_name: str,
        dimension: int | None,
        metric: str,
        vector_type: str = "dense",
    ) -> bool:
        """
        Create a serverless index if it does not exist yet.

        Returns:
            True when the index was created, False when it already existed.
        """
        from pinecone import ServerlessSpec

        client = self._get_client()
        try:
            exists = client.has_index(index_name)
        except Exception as e:
            raise classify_pinecone_error(e, "has_index") from e
        if exists:
            self._log.info("index_exists", index=index_name)
            return False

        kwargs: dict[str, Any] = {
            "name": index_name,
            "metric": metric,
            "spec": ServerlessSpec(cloud=self.cloud, region=self.region),
            "vector_type": vector_type,
        }
        if dimension is not None:
            kwargs["dimension"] = dimension

        try:
            client.create_index(**kwargs)
        except Exception as e:
            raise classify_pinecone_error(e, "create_index") from e
        self._log.info(
            "index_created", index=index_name, metric=metric, vector_type=vector_type
        )
        return True


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "PineconeClient",
    "classify_pinecone_error",
    "DEFAULT_UPSERT_BATCH_SIZE",
    "EXPECTED_DIMENSION",
    "MAX_METADATA_BYTES",
]
