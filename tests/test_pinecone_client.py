from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from testcase_search.errors import (
    RateLimited,
    UpstreamTimeout,
    UpstreamUnavailable,
    ValidationError,
)
from testcase_search.utils.pinecone_client import (
    MAX_METADATA_BYTES,
    PineconeClient,
    classify_pinecone_error,
)


class _SdkError(Exception):
    def __init__(self, message: str, status: int | None = None, headers=None):
        super().__init__(message)
        self.status = status
        self.headers = headers


class _FakeIndex:
    def __init__(self) -> None:
        self.queries: list[dict[str, Any]] = []
        self.upserts: list[list[dict[str, Any]]] = []
        self.error: Exception | None = None

    def query(self, **kwargs: Any) -> SimpleNamespace:
        self.queries.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(
            matches=[
                SimpleNamespace(id="TC-1", score=0.91, metadata={"module": "auth"}),
                SimpleNamespace(id="TC-2", score=0.42, metadata=None),
            ]
        )

    def upsert(self, vectors: list[dict[str, Any]]) -> None:
        if self.error is not None:
            raise self.error
        self.upserts.append(vectors)

    def describe_index_stats(self) -> SimpleNamespace:
        return SimpleNamespace(total_vector_count=1423, dimension=4)


class _FakePinecone:
    def __init__(self) -> None:
        self.indexes: dict[str, _FakeIndex] = {}

    def Index(self, name: str) -> _FakeIndex:  # noqa: N802 - SDK method name
        return self.indexes.setdefault(name, _FakeIndex())


@pytest.fixture
def sdk() -> _FakePinecone:
    return _FakePinecone()


@pytest.fixture
def client(sdk: _FakePinecone) -> PineconeClient:
    adapter = PineconeClient(api_key="pc-test", expected_dimension=4)
    adapter._client = sdk
    return adapter


# =============================================================================
# Error Classification
# =============================================================================


@pytest.mark.parametrize(
    "exc, expected, retryable",
    [
        (_SdkError("Too Many Requests", status=429), RateLimited, True),
        (_SdkError("request timed out"), UpstreamTimeout, True),
        (TimeoutError(), UpstreamTimeout, True),
        (_SdkError("Unauthorized", status=401), UpstreamUnavailable, False),
        (_SdkError("Not Found", status=404), UpstreamUnavailable, False),
        (_SdkError("Service Unavailable", status=503), UpstreamUnavailable, True),
    ],
)
def test_error_classification(exc: Exception, expected: type, retryable: bool) -> None:
    error = classify_pinecone_error(exc, "query")

    assert type(error) is expected
    assert error.retryable is retryable


def test_rate_limit_carries_retry_after() -> None:
    error = classify_pinecone_error(
        _SdkError("rate limit", status=429, headers={"Retry-After": "7"}), "query"
    )

    assert isinstance(error, RateLimited)
    assert error.retry_after == 7.0


# =============================================================================
# Operations
# =============================================================================


@pytest.mark.asyncio
async def test_dense_search(client: PineconeClient, sdk: _FakePinecone) -> None:
    matches = await client.search(
        "vectors", {"vector": [0.1, 0.2, 0.3, 0.4]}, {"module": "auth"}, 5
    )

    assert matches == [
        {"id": "TC-1", "score": 0.91, "metadata": {"module": "auth"}},
        {"id": "TC-2", "score": 0.42, "metadata": {}},
    ]
    query = sdk.indexes["vectors"].queries[0]
    assert query["top_k"] == 5
    assert query["filter"] == {"module": "auth"}
    assert query["vector"] == [0.1, 0.2, 0.3, 0.4]
    assert query["include_metadata"] is True


@pytest.mark.asyncio
async def test_sparse_search_drops_null_filters(
    client: PineconeClient, sdk: _FakePinecone
) -> None:
    await client.search(
        "keywords",
        {"sparse_vector": {"indices": [3, 9], "values": [0.5, 0.2]}},
        {"module": None},
        10,
    )

    query = sdk.indexes["keywords"].queries[0]
    assert query["sparse_vector"] == {"indices": [3, 9], "values": [0.5, 0.2]}
    assert query["filter"] is None


@pytest.mark.asyncio
async def test_search_requires_query_clause(client: PineconeClient) -> None:
    with pytest.raises(ValidationError):
        await client.search("vectors", {"text": "login"}, None, 5)


@pytest.mark.asyncio
async def test_search_failure_is_classified(
    client: PineconeClient, sdk: _FakePinecone
) -> None:
    sdk.Index("vectors").error = _SdkError("Too Many Requests", status=429)

    with pytest.raises(RateLimited):
        await client.search("vectors", {"vector": [0.0] * 4}, None, 5)


@pytest.mark.asyncio
async def test_upsert_batches_and_skips_oversized_metadata(
    client: PineconeClient, sdk: _FakePinecone
) -> None:
    records = [
        {"id": f"TC-{i}", "values": [0.1] * 4, "metadata": {"module": "auth"}}
        for i in range(5)
    ]
    records.append(
        {"id": "TC-big", "values": [0.1] * 4, "metadata": {"x": "y" * MAX_METADATA_BYTES}}
    )

    result = await client.upsert("vectors", records, batch_size=2)

    assert result == {"upserted_count": 5, "batch_count": 3, "skipped_count": 1}
    assert [len(batch) for batch in sdk.indexes["vectors"].upserts] == [2, 2, 1]


@pytest.mark.asyncio
async def test_upsert_rejects_wrong_dimension(client: PineconeClient) -> None:
    with pytest.raises(ValidationError):
        await client.upsert("vectors", [{"id": "TC-1", "values": [0.1, 0.2]}])


@pytest.mark.asyncio
async def test_upsert_nothing(client: PineconeClient) -> None:
    assert await client.upsert("vectors", []) == {
        "upserted_count": 0,
        "batch_count": 0,
        "skipped_count": 0,
    }


@pytest.mark.asyncio
async def test_describe(client: PineconeClient) -> None:
    stats = await client.describe("vectors")

    assert stats == {"index_name": "vectors", "total_vector_count": 1423, "dimension": 4}


@pytest.mark.asyncio
async def test_missing_api_key_is_not_retryable() -> None:
    adapter = PineconeClient()

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await adapter.search("vectors", {"vector": [0.0] * 4}, None, 5)
    assert exc_info.value.retryable is False
