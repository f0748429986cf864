"""
Relevance re-ranking of the top fused results.

Fused scores say how well a test case matched lexically and semantically;
the relevance service reads the query and the test case together and says
how well it answers the query. The Reranker asks it about the top-K fused
results and reorders them by its 0-100 judgement.

Architecture:
    Fused top-K → Reranker → RerankOutcome(results, skipped, reason)
                     ↓
       RelevanceService.score(query, text) per candidate (bounded concurrency)

Failure Policy:
    Re-ranking is all or nothing. If any candidate cannot be scored
    (upstream error, timeout, unparseable answer) the fused order is
    returned unchanged with skipped=True and the reason recorded. A
    partially re-ranked list would mix two incomparable orderings.

Ordering:
    Relevance score descending, ties broken by fused rank (stable).

Usage:
    from testcase_search.utils.reranker import Reranker

    reranker = Reranker(relevance_service)
    outcome = await reranker.rerank("password reset", fused[:10])
    if outcome.skipped:
        print("kept fused order:", outcome.reason)
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from testcase_search.config.settings import get_settings
from testcase_search.errors import ValidationError
from testcase_search.retrieval.types import FusedResult, RerankedResult
from testcase_search.utils.relevance import RelevanceJudgement, RelevanceService

# Configure structured logger
logger = structlog.get_logger(__name__)


# =============================================================================
# Result Type
# =============================================================================


@dataclass(frozen=True)
class RerankOutcome:
    """Re-ranked results, or the fused order when re-ranking was skipped."""

    results: list[RerankedResult]
    skipped: bool = False
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "skipped": self.skipped,
            "reason": self.reason,
        }


# =============================================================================
# Reranker
# =============================================================================


class Reranker:
    """
    Reorders fused results by external relevance.

    Attributes:
        max_candidates: Largest K accepted by rerank().
        concurrency: Maximum simultaneous relevance calls.
    """

    def __init__(
        self,
        relevance_service: RelevanceService,
        max_candidates: int | None = None,
        concurrency: int | None = None,
    ) -> None:
        settings = get_settings()
        self._service = relevance_service
        self.max_candidates = max_candidates or settings.rerank_max_candidates
        self.concurrency = concurrency or settings.rerank_concurrency
        self._log = logger.bind(component="reranker")

    @staticmethod
    def _fallback(results: Sequence[FusedResult], reason: str) -> RerankOutcome:
        return RerankOutcome(
            results=[
                RerankedResult(result=result, fused_rank=rank)
                for rank, result in enumerate(results)
            ],
            skipped=True,
            reason=reason,
        )

    async def rerank(self, query: str, fused_top_k: Sequence[FusedResult]) -> RerankOutcome:
        """
        Score each candidate and reorder by relevance.

        Args:
            query: The raw user query.
            fused_top_k: The first K fused results, in fused order.

        Returns:
            RerankOutcome. Never raises for service failures.

        Raises:
            ValidationError: If K exceeds max_candidates.
        """
        if len(fused_top_k) > self.max_candidates:
            raise ValidationError(
                f"Cannot rerank {len(fused_top_k)} candidates; "
                f"maximum is {self.max_candidates}"
            )
        if not fused_top_k:
            return RerankOutcome(results=[])

        semaphore = asyncio.Semaphore(self.concurrency)

        async def score_one(result: FusedResult) -> RelevanceJudgement:
            async with semaphore:
                return await self._service.score(query, result.text or result.id)

        judgements = await asyncio.gather(
            *(score_one(result) for result in fused_top_k),
            return_exceptions=True,
        )

        failures = [j for j in judgements if isinstance(j, BaseException)]
        if failures:
            # Cancellation is not a scoring failure
            for failure in failures:
                if isinstance(failure, asyncio.CancelledError):
                    raise failure
            first = failures[0]
            reason = f"{type(first).__name__}: {first}"
            self._log.warning(
                "rerank_skipped",
                candidates=len(fused_top_k),
                failed=len(failures),
                reason=reason,
            )
            return self._fallback(fused_top_k, reason)

        reranked = [
            RerankedResult(
                result=result,
                fused_rank=rank,
                relevance_score=judgement.score,
                rationale=judgement.rationale,
            )
            for rank, (result, judgement) in enumerate(zip(fused_top_k, judgements))
        ]
        reranked.sort(key=lambda r: (-(r.relevance_score or 0.0), r.fused_rank))

        self._log.info(
            "rerank_completed",
            candidates=len(reranked),
            top_score=reranked[0].relevance_score,
            moved=sum(1 for pos, r in enumerate(reranked) if r.fused_rank != pos),
        )
        return RerankOutcome(results=reranked)


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "Reranker",
    "RerankOutcome",
]
