"""
Hybrid search orchestration for test case retrieval.

This module provides HybridSearchService, the single entry point behind
every search method. It wires the pipeline:

Architecture:
    Query → QueryPreprocessor → variants
                                   ↓
            KeywordRetriever + VectorRetriever per variant (parallel)
                                   ↓
                         ScoreFusion (normalize, merge, weight)
                                   ↓
                         Reranker on top-K (optional)
                                   ↓
                         Deduplicator → truncate to limit
                                   ↓
                         Summarizer (optional)
                                   ↓
                         SearchResponse(results, metadata)

Search Methods:
    bm25   → keyword retriever only, weights (1, 0)
    vector → vector retriever only, weights (0, 1)
    hybrid → both retrievers, caller or configured weights

Graceful Degradation:
    - One variant call fails: results from the rest, metadata.partial
    - One source fails for every variant: fusion runs on the survivor,
      metadata.partial and metadata.failed_sources
    - Every requested source fails: UpstreamUnavailable
    - A retriever raises outside the error taxonomy: InternalFusionError (500)
    - Query expansion fails: original variant only
    - Re-ranking fails: fused order, metadata.rerank.skipped
    - Summarization fails: text truncated per result

Usage:
    from testcase_search.retrieval.hybrid_retriever import HybridSearchService

    service = HybridSearchService(
        preprocessor=preprocessor,
        keyword_retriever=keyword_retriever,
        vector_retriever=vector_retriever,
        reranker=reranker,
        deduplicator=deduplicator,
        summarizer=summarizer,
    )

    response = await service.search("pwd reset TC-101", method="hybrid", limit=10)
    for result in response.results:
        print(result.id, result.final_score)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from testcase_search.config.settings import Settings, get_settings
from testcase_search.errors import (
    InternalFusionError,
    SearchServiceError,
    UpstreamUnavailable,
    ValidationError,
)
from testcase_search.retrieval.filters import translate_filters
from testcase_search.retrieval.types import (
    Candidate,
    FusedResult,
    FusionWeights,
    QueryPlan,
    QueryVariant,
    RerankedResult,
    RetrievalSource,
    SearchMethod,
)
from testcase_search.utils.reranker import RerankOutcome
from testcase_search.utils.score_fusion import fuse

if TYPE_CHECKING:
    from testcase_search.retrieval.query_preprocessor import QueryPreprocessor
    from testcase_search.retrieval.retrievers import StoreRetriever
    from testcase_search.utils.deduplicator import Deduplicator
    from testcase_search.utils.reranker import Reranker
    from testcase_search.utils.summarizer import Summarizer

# Configure structured logger
logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Each retriever call fetches this many times the requested limit, so
# de-duplication and cross-variant overlap still leave enough results
CANDIDATE_MULTIPLIER = 2

METHOD_SOURCES: dict[SearchMethod, tuple[RetrievalSource, ...]] = {
    SearchMethod.BM25: (RetrievalSource.KEYWORD,),
    SearchMethod.VECTOR: (RetrievalSource.VECTOR,),
    SearchMethod.HYBRID: (RetrievalSource.KEYWORD, RetrievalSource.VECTOR),
}


# =============================================================================
# Response Type
# =============================================================================


@dataclass(frozen=True)
class SearchResponse:
    """Ranked results plus a description of how they were produced."""

    results: list[FusedResult | RerankedResult]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "metadata": self.metadata,
        }


# =============================================================================
# Hybrid Search Service
# =============================================================================


class HybridSearchService:
    """
    Orchestrates preprocessing, parallel retrieval, fusion and post-processing.

    Collaborators are injected; reranker and summarizer are optional and a
    request asking for them without one configured is served without them.

    Example:
        response = await service.search(
            "login fails after 2fa",
            method=SearchMethod.HYBRID,
            limit=10,
            filters={"module": "auth"},
            weights={"keyword": 0.3, "vector": 0.7},
            rerank=True,
        )
    """

    def __init__(
        self,
        preprocessor: "QueryPreprocessor",
        keyword_retriever: "StoreRetriever",
        vector_retriever: "StoreRetriever",
        reranker: "Reranker | None" = None,
        deduplicator: "Deduplicator | None" = None,
        summarizer: "Summarizer | None" = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._preprocessor = preprocessor
        self._retrievers: dict[RetrievalSource, StoreRetriever] = {
            RetrievalSource.KEYWORD: keyword_retriever,
            RetrievalSource.VECTOR: vector_retriever,
        }
        self._reranker = reranker
        self._deduplicator = deduplicator
        self._summarizer = summarizer

        self.max_top_n = settings.max_top_n
        self.default_limit = settings.default_top_n
        self.default_keyword_weight = settings.default_keyword_weight
        self.normalization_mode = settings.normalization_mode
        self.max_concurrent_searches = settings.max_concurrent_searches
        self.rerank_top_k = min(settings.rerank_top_k, settings.rerank_max_candidates)
        self.dedupe_enabled = settings.dedupe_enabled

        self._log = logger.bind(component="hybrid_search")
        self._log.info(
            "hybrid_search_initialized",
            reranker=reranker is not None,
            deduplicator=deduplicator is not None,
            summarizer=summarizer is not None,
        )

    # =========================================================================
    # Request Validation
    # =========================================================================

    @staticmethod
    def _parse_method(method: SearchMethod | str) -> SearchMethod:
        try:
            return SearchMethod(method)
        except ValueError as e:
            raise ValidationError(
                f"Unknown search method {method!r}; expected one of "
                f"{[m.value for m in SearchMethod]}"
            ) from e

    def _resolve_weights(
        self,
        method: SearchMethod,
        weights: FusionWeights | Mapping[str, float] | None,
    ) -> FusionWeights:
        if method is not SearchMethod.HYBRID:
            return FusionWeights.for_method(method)
        if weights is None:
            return FusionWeights.for_method(method, self.default_keyword_weight)
        if isinstance(weights, FusionWeights):
            return weights
        try:
            return FusionWeights(
                keyword=float(weights["keyword"]), vector=float(weights["vector"])
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(
                "weights must provide numeric 'keyword' and 'vector'"
            ) from e

    # =========================================================================
    # Main Search Method
    # =========================================================================

    async def search(
        self,
        query: str,
        method: SearchMethod | str = SearchMethod.HYBRID,
        limit: int | None = None,
        filters: Mapping[str, Any] | None = None,
        weights: FusionWeights | Mapping[str, float] | None = None,
        rerank: bool = False,
        summarize: bool = False,
    ) -> SearchResponse:
        """
        Run the full search pipeline.

        Args:
            query: Raw query text.
            method: "vector", "bm25" or "hybrid".
            limit: Results to return (1..max_top_n). Defaults to default_top_n.
            filters: Metadata filter (see retrieval.filters).
            weights: Hybrid fusion weights; ignored for single-source methods.
            rerank: Re-rank the top fused results with the relevance service.
            summarize: Attach summaries to the returned results.

        Returns:
            SearchResponse with ranked results and pipeline metadata.

        Raises:
            ValidationError: Malformed query, method, limit, filters or weights.
            UpstreamUnavailable: Every requested source failed.
            InternalFusionError: Fusion met inconsistent scores or a retriever
                crashed with an unexpected exception.
        """
        started = time.perf_counter()

        search_method = self._parse_method(method)
        limit = self.default_limit if limit is None else limit
        if not 1 <= limit <= self.max_top_n:
            raise ValidationError(f"limit must be between 1 and {self.max_top_n}, got {limit}")
        fusion_weights = self._resolve_weights(search_method, weights)
        filter_clause = translate_filters(filters)

        plan = self._preprocessor.preprocess(query)

        self._log.info(
            "search_started",
            query=query[:100],
            method=search_method.value,
            limit=limit,
            variants=list(plan.tags),
            rerank=rerank,
            summarize=summarize,
        )

        # =====================================================================
        # Step 1: Parallel Retrieval per Source and Variant
        # =====================================================================
        sources = METHOD_SOURCES[search_method]
        pool = max(limit, self.rerank_top_k if rerank else 0)
        top_n = min(self.max_top_n, pool * CANDIDATE_MULTIPLIER)
        candidate_lists, failed_calls = await self._retrieve_all(
            plan, sources, top_n, filter_clause
        )

        failed_sources = [
            source.value
            for source in sources
            if all((source, v.tag) in failed_calls for v in plan.variants)
        ]
        if len(failed_sources) == len(sources):
            first_error = next(iter(failed_calls.values()))
            self._log.error(
                "search_failed_all_sources",
                failed_sources=failed_sources,
                error=str(first_error),
            )
            raise UpstreamUnavailable(
                f"All search sources failed ({', '.join(failed_sources)}): {first_error}"
            ) from first_error

        # =====================================================================
        # Step 2: Score Fusion
        # =====================================================================
        fused = fuse(candidate_lists, fusion_weights, mode=self.normalization_mode)

        # =====================================================================
        # Step 3: Re-ranking (optional)
        # =====================================================================
        ranked: list[FusedResult | RerankedResult] = list(fused)
        rerank_status: dict[str, Any] = {"requested": rerank, "skipped": False, "reason": None}
        if rerank:
            if self._reranker is None:
                rerank_status.update(skipped=True, reason="reranker not configured")
            else:
                outcome = await self._reranker.rerank(plan.raw, fused[: self.rerank_top_k])
                ranked = self._merge_reranked(outcome, fused)
                rerank_status.update(skipped=outcome.skipped, reason=outcome.reason)

        # =====================================================================
        # Step 4: De-duplication and Truncation
        # =====================================================================
        before_dedupe = len(ranked)
        if self.dedupe_enabled and self._deduplicator is not None:
            ranked = self._deduplicator.dedupe(ranked)
        duplicates_removed = before_dedupe - len(ranked)
        final: list[FusedResult | RerankedResult] = ranked[:limit]

        # =====================================================================
        # Step 5: Summarization (optional)
        # =====================================================================
        summarized = False
        if summarize and self._summarizer is not None and final:
            final = await self._summarizer.summarize(final)
            summarized = True

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        partial = bool(failed_calls)
        metadata = {
            "query": plan.raw,
            "method": search_method.value,
            "weights": fusion_weights.as_dict(),
            "variants": [{"text": v.text, "tag": v.tag} for v in plan.variants],
            "identifiers": list(plan.identifiers),
            "filters": filter_clause,
            "partial": partial,
            "failed_sources": failed_sources,
            "failed_calls": [
                {"source": source.value, "variant": tag, "error": type(error).__name__}
                for (source, tag), error in failed_calls.items()
            ],
            "rerank": rerank_status,
            "summarized": summarized,
            "counts": {
                "candidates": sum(len(c) for c in candidate_lists.values()),
                "fused": len(fused),
                "duplicates_removed": duplicates_removed,
                "returned": len(final),
            },
            "elapsed_ms": elapsed_ms,
        }

        self._log.info(
            "search_completed",
            method=search_method.value,
            result_count=len(final),
            partial=partial,
            failed_sources=failed_sources,
            rerank_skipped=rerank_status["skipped"],
            elapsed_ms=elapsed_ms,
        )

        return SearchResponse(results=final, metadata=metadata)

    async def rerank_candidates(
        self, query: str, candidates: Sequence[FusedResult]
    ) -> RerankOutcome:
        """
        Re-rank caller-supplied fused candidates.

        Raises:
            ValidationError: Empty query or too many candidates.
        """
        if not query or not query.strip():
            raise ValidationError("Query must not be empty")
        if self._reranker is None:
            return RerankOutcome(
                results=[
                    RerankedResult(result=c, fused_rank=i) for i, c in enumerate(candidates)
                ],
                skipped=True,
                reason="reranker not configured",
            )
        return await self._reranker.rerank(query, candidates)

    # =========================================================================
    # Retrieval Fan-out
    # =========================================================================

    async def _retrieve_all(
        self,
        plan: QueryPlan,
        sources: Sequence[RetrievalSource],
        top_n: int,
        filter_clause: dict[str, Any] | None,
    ) -> tuple[
        dict[tuple[RetrievalSource, str], list[Candidate]],
        dict[tuple[RetrievalSource, str], BaseException],
    ]:
        """
        Query every (source, variant) pair concurrently.

        Returns:
            Tuple of (candidate lists by key, errors by key).
        """
        semaphore = asyncio.Semaphore(self.max_concurrent_searches)
        keys = [(source, variant) for source in sources for variant in plan.variants]

        async def search_one(source: RetrievalSource, variant: QueryVariant) -> list[Candidate]:
            async with semaphore:
                return await self._retrievers[source].retrieve(variant, top_n, filter_clause)

        outcomes = await asyncio.gather(
            *(search_one(source, variant) for source, variant in keys),
            return_exceptions=True,
        )

        candidate_lists: dict[tuple[RetrievalSource, str], list[Candidate]] = {}
        failed: dict[tuple[RetrievalSource, str], BaseException] = {}
        for (source, variant), outcome in zip(keys, outcomes):
            key = (source, variant.tag)
            if isinstance(outcome, BaseException):
                # Caller mistakes and cancellation are not degradable
                if isinstance(outcome, (ValidationError, asyncio.CancelledError)):
                    raise outcome
                # Neither is a bug inside a retriever
                if not isinstance(outcome, SearchServiceError):
                    self._log.error(
                        "variant_search_crashed",
                        source=source.value,
                        variant=variant.tag,
                        error=str(outcome),
                        error_type=type(outcome).__name__,
                    )
                    raise InternalFusionError(
                        f"{source.value} search crashed for variant {variant.tag}: "
                        f"{type(outcome).__name__}: {outcome}"
                    ) from outcome
                self._log.warning(
                    "variant_search_failed",
                    source=source.value,
                    variant=variant.tag,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                failed[key] = outcome
                continue
            candidate_lists[key] = outcome

        return candidate_lists, failed

    @staticmethod
    def _merge_reranked(
        outcome: RerankOutcome, fused: Sequence[FusedResult]
    ) -> list[FusedResult | RerankedResult]:
        """Re-ranked head followed by the untouched fused tail."""
        head = len(outcome.results)
        tail = [
            RerankedResult(result=result, fused_rank=rank)
            for rank, result in enumerate(fused[head:], start=head)
        ]
        return [*outcome.results, *tail]


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "HybridSearchService",
    "SearchResponse",
    "METHOD_SOURCES",
]
