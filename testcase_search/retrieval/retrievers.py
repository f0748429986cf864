"""
Keyword and vector retrieval clients.

Each retriever issues one query variant against one Pinecone index and
returns a ranked list of Candidates carrying the index's raw scores:

    KeywordRetriever: variant → BM25Encoder.encode (with fuzzy features)
                      → sparse query on the keyword index (dot product)
    VectorRetriever:  variant → Titan v2 embedding
                      → dense query on the vector index (cosine)

Contract:
    - top_n must be within 1..max_top_n, else ValidationError
    - filters are shape-checked and translated (retrieval.filters)
    - every attempt is bounded by a deadline (UpstreamTimeout)
    - timeouts, outages and throttling are retried with backoff, then raised
    - an empty list means "found nothing"; a raised error means "could not ask"

Usage:
    from testcase_search.retrieval.retrievers import KeywordRetriever

    retriever = KeywordRetriever(pinecone_client, bm25_encoder, "testcases-keyword")
    candidates = await retriever.retrieve(QueryVariant("password reset"), 20)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog

from testcase_search.config.settings import Settings, get_settings
from testcase_search.errors import ValidationError
from testcase_search.retrieval.filters import translate_filters
from testcase_search.retrieval.types import Candidate, QueryVariant, RetrievalSource
from testcase_search.utils.retry import call_with_retry

if TYPE_CHECKING:
    from testcase_search.utils.bm25_encoder import BM25Encoder
    from testcase_search.utils.embeddings import BedrockEmbeddings
    from testcase_search.utils.pinecone_client import PineconeClient

# Configure structured logger
logger = structlog.get_logger(__name__)


# =============================================================================
# Base Retriever
# =============================================================================


class StoreRetriever:
    """
    Shared validation, deadline and retry handling for one index.

    Subclasses set `source` and implement _query_clause().
    """

    source: RetrievalSource

    def __init__(
        self,
        client: "PineconeClient",
        index_name: str,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._client = client
        self.index_name = index_name
        self.max_top_n = settings.max_top_n
        self.timeout = settings.retriever_timeout_seconds
        self.max_attempts = settings.retriever_max_attempts
        self._min_wait = settings.retry_min_wait_seconds
        self._max_wait = settings.retry_max_wait_seconds
        self._log = logger.bind(component=f"{self.source.value}_retriever", index=index_name)

    async def _query_clause(self, text: str) -> dict[str, Any] | None:
        """Store query for the text, or None when nothing is searchable."""
        raise NotImplementedError

    async def _search_once(
        self, text: str, top_n: int, filter_clause: dict[str, Any] | None
    ) -> list[dict[str, Any]]:
        query_clause = await self._query_clause(text)
        if query_clause is None:
            return []
        return await self._client.search(self.index_name, query_clause, filter_clause, top_n)

    async def retrieve(
        self,
        variant: QueryVariant,
        top_n: int,
        filters: Mapping[str, Any] | None = None,
    ) -> list[Candidate]:
        """
        Search the index for one query variant.

        Raises:
            ValidationError: On an out-of-range top_n or malformed filters.
            UpstreamTimeout, UpstreamUnavailable, RateLimited: When the
                store (or embedding service) could not answer.
        """
        if not 1 <= top_n <= self.max_top_n:
            raise ValidationError(f"top_n must be between 1 and {self.max_top_n}, got {top_n}")
        filter_clause = translate_filters(filters)

        matches = await call_with_retry(
            lambda: self._search_once(variant.text, top_n, filter_clause),
            operation=f"{self.source.value}_search",
            max_attempts=self.max_attempts,
            min_wait=self._min_wait,
            max_wait=self._max_wait,
            timeout=self.timeout,
        )

        candidates = [
            Candidate(
                id=str(match["id"]),
                source=self.source,
                score=float(match["score"]),
                metadata=dict(match.get("metadata") or {}),
                variant_tag=variant.tag,
            )
            for match in matches
        ]

        self._log.debug(
            "retrieval_completed",
            variant=variant.tag,
            result_count=len(candidates),
            top_score=candidates[0].score if candidates else None,
        )
        return candidates


# =============================================================================
# Keyword Retriever
# =============================================================================


class KeywordRetriever(StoreRetriever):
    """BM25 sparse search on the keyword index."""

    source = RetrievalSource.KEYWORD

    def __init__(
        self,
        client: "PineconeClient",
        encoder: "BM25Encoder",
        index_name: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        super().__init__(client, index_name or settings.pinecone_keyword_index_name, settings)
        self._encoder = encoder

    async def _query_clause(self, text: str) -> dict[str, Any] | None:
        sparse = self._encoder.encode(text)
        if not sparse["indices"]:
            self._log.debug("keyword_query_empty", text_preview=text[:50])
            return None
        return {"sparse_vector": dict(sparse)}


# =============================================================================
# Vector Retriever
# =============================================================================


class VectorRetriever(StoreRetriever):
    """Dense similarity search on the vector index."""

    source = RetrievalSource.VECTOR

    def __init__(
        self,
        client: "PineconeClient",
        embeddings: "BedrockEmbeddings",
        index_name: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        super().__init__(client, index_name or settings.pinecone_vector_index_name, settings)
        self._embeddings = embeddings

    async def _query_clause(self, text: str) -> dict[str, Any] | None:
        return {"vector": await self._embeddings.embed_text(text)}


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "StoreRetriever",
    "KeywordRetriever",
    "VectorRetriever",
]
