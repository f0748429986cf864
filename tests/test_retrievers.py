from __future__ import annotations

import asyncio
from typing import Any

import pytest

from testcase_search.config import Settings
from testcase_search.errors import UpstreamError, UpstreamTimeout, ValidationError
from testcase_search.retrieval.retrievers import KeywordRetriever, VectorRetriever
from testcase_search.retrieval.types import QueryVariant, RetrievalSource
from testcase_search.utils.bm25_encoder import BM25Encoder


class _FakeStore:
    """Records queries and answers with canned matches or failures."""

    def __init__(self, matches: list[dict[str, Any]] | None = None, failures: int = 0):
        self.matches = matches or []
        self.failures = failures
        self.queries: list[dict[str, Any]] = []

    async def search(self, index_name, query_clause, filter_clause, limit):
        self.queries.append(
            {
                "index": index_name,
                "query": query_clause,
                "filter": filter_clause,
                "limit": limit,
            }
        )
        if self.failures:
            self.failures -= 1
            raise UpstreamError("store unavailable")
        return self.matches[:limit]


class _FakeEmbeddings:
    def __init__(self, delay: float = 0.0) -> None:
        self.texts: list[str] = []
        self.delay = delay

    async def embed_text(self, text: str) -> list[float]:
        self.texts.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        return [0.5, 0.5]


MATCHES = [
    {"id": "TC-1", "score": 0.9, "metadata": {"module": "auth"}},
    {"id": "TC-2", "score": 0.4, "metadata": None},
]


def _settings(**overrides: Any) -> Settings:
    return Settings(retry_min_wait_seconds=0, retry_max_wait_seconds=0, **overrides)


@pytest.mark.asyncio
async def test_vector_retriever_returns_candidates() -> None:
    store, embeddings = _FakeStore(MATCHES), _FakeEmbeddings()
    retriever = VectorRetriever(store, embeddings, settings=_settings())

    candidates = await retriever.retrieve(
        QueryVariant("reset password", "synonym-1"), top_n=5, filters={"module": "auth"}
    )

    assert [c.id for c in candidates] == ["TC-1", "TC-2"]
    assert all(c.source is RetrievalSource.VECTOR for c in candidates)
    assert candidates[0].variant_tag == "synonym-1"
    assert candidates[1].metadata == {}
    assert embeddings.texts == ["reset password"]
    query = store.queries[0]
    assert query["index"] == retriever.index_name
    assert query["query"] == {"vector": [0.5, 0.5]}
    assert query["filter"] == {"module": "auth"}
    assert query["limit"] == 5


@pytest.mark.asyncio
async def test_keyword_retriever_sends_sparse_vector() -> None:
    store = _FakeStore(MATCHES)
    retriever = KeywordRetriever(store, BM25Encoder(), settings=_settings())

    candidates = await retriever.retrieve(QueryVariant("login timeout"), top_n=1)

    assert [c.id for c in candidates] == ["TC-1"]
    assert candidates[0].source is RetrievalSource.KEYWORD
    sparse = store.queries[0]["query"]["sparse_vector"]
    assert sparse["indices"]
    assert len(sparse["indices"]) == len(sparse["values"])


@pytest.mark.asyncio
async def test_keyword_retriever_skips_unsearchable_text() -> None:
    store = _FakeStore(MATCHES)
    retriever = KeywordRetriever(store, BM25Encoder(), settings=_settings())

    candidates = await retriever.retrieve(QueryVariant("the a of"), top_n=5)

    assert candidates == []
    assert store.queries == []


@pytest.mark.asyncio
async def test_transient_store_failure_is_retried() -> None:
    store = _FakeStore(MATCHES, failures=1)
    retriever = VectorRetriever(store, _FakeEmbeddings(), settings=_settings())

    candidates = await retriever.retrieve(QueryVariant("login"), top_n=5)

    assert len(candidates) == 2
    assert len(store.queries) == 2


@pytest.mark.asyncio
async def test_persistent_failure_surfaces() -> None:
    store = _FakeStore(MATCHES, failures=10)
    retriever = VectorRetriever(
        store, _FakeEmbeddings(), settings=_settings(retriever_max_attempts=2)
    )

    with pytest.raises(UpstreamError):
        await retriever.retrieve(QueryVariant("login"), top_n=5)
    assert len(store.queries) == 2


@pytest.mark.asyncio
async def test_deadline_is_enforced() -> None:
    retriever = VectorRetriever(
        _FakeStore(MATCHES),
        _FakeEmbeddings(delay=0.5),
        settings=_settings(retriever_timeout_seconds=0.01, retriever_max_attempts=1),
    )

    with pytest.raises(UpstreamTimeout):
        await retriever.retrieve(QueryVariant("login"), top_n=5)


@pytest.mark.asyncio
@pytest.mark.parametrize("top_n", [0, 101])
async def test_top_n_bounds(top_n: int) -> None:
    retriever = VectorRetriever(_FakeStore(), _FakeEmbeddings(), settings=_settings())

    with pytest.raises(ValidationError):
        await retriever.retrieve(QueryVariant("login"), top_n=top_n)


@pytest.mark.asyncio
async def test_malformed_filter_rejected_before_query() -> None:
    store = _FakeStore(MATCHES)
    retriever = VectorRetriever(store, _FakeEmbeddings(), settings=_settings())

    with pytest.raises(ValidationError):
        await retriever.retrieve(
            QueryVariant("login"), top_n=5, filters={"risk": {"$regex": "x"}}
        )
    assert store.queries == []
