"""
Summarization of long test case descriptions.

Runs last in the pipeline, after ranking, de-duplication and truncation are
fixed, so it can only change what a result says, never where it appears.

Rules:
    - Text shorter than min_chars is kept verbatim (no service call)
    - Longer text is condensed by the relevance service
    - When the service fails for a result, that result's text is truncated
      to max_chars instead; other results are unaffected

Pipeline Position:
    Fusion → Reranker → Deduplicator → truncate → **Summarizer**
                                                       ↑
                                                 This module

Usage:
    from testcase_search.utils.summarizer import Summarizer

    summarizer = Summarizer(relevance_service)
    results = await summarizer.summarize(results)
    print(results[0].summary)
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import replace
from typing import TypeVar

import structlog

from testcase_search.config.settings import get_settings
from testcase_search.retrieval.types import FusedResult, RerankedResult
from testcase_search.utils.relevance import RelevanceService

# Configure structured logger
logger = structlog.get_logger(__name__)

R = TypeVar("R", FusedResult, RerankedResult)

ELLIPSIS = "..."


def truncate_text(text: str, max_chars: int) -> str:
    """Cut text to at most max_chars characters, marking the cut."""
    if len(text) <= max_chars:
        return text
    return text[: max(max_chars - len(ELLIPSIS), 0)].rstrip() + ELLIPSIS


def _with_summary(result: R, summary: str) -> R:
    if isinstance(result, RerankedResult):
        return replace(result, result=replace(result.result, summary=summary))
    return replace(result, summary=summary)


def _text_of(result: FusedResult | RerankedResult) -> str:
    if isinstance(result, RerankedResult):
        return result.result.text
    return result.text


class Summarizer:
    """Attaches a summary to each result without changing the order."""

    def __init__(
        self,
        relevance_service: RelevanceService,
        min_chars: int | None = None,
        max_chars: int | None = None,
        concurrency: int | None = None,
    ) -> None:
        settings = get_settings()
        self._service = relevance_service
        self.min_chars = settings.summarize_min_chars if min_chars is None else min_chars
        self.max_chars = max_chars or settings.summarize_max_chars
        self.concurrency = concurrency or settings.rerank_concurrency
        self._log = logger.bind(component="summarizer")

    async def summarize(self, results: Sequence[R]) -> list[R]:
        """
        Return results with summary set, in the same order.

        Never raises for service failures.
        """
        if not results:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)
        fallbacks = 0

        async def summarize_one(result: R) -> R:
            nonlocal fallbacks
            text = _text_of(result)
            if len(text) < self.min_chars:
                return _with_summary(result, text)

            try:
                async with semaphore:
                    summary = await self._service.summarize(text)
            except Exception as e:
                fallbacks += 1
                self._log.warning(
                    "summary_fallback_truncated",
                    result_id=result.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return _with_summary(result, truncate_text(text, self.max_chars))
            return _with_summary(
                result, truncate_text(summary.strip() or text, self.max_chars)
            )

        summarized = await asyncio.gather(*(summarize_one(r) for r in results))

        self._log.debug(
            "summarization_completed", total=len(summarized), truncated=fallbacks
        )
        return list(summarized)


__all__ = ["Summarizer", "truncate_text"]
