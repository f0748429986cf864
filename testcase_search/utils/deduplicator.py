"""
Near-duplicate collapsing for ranked results.

Test case repositories often carry copies of the same case under different
ids (cloned suites, per-release duplicates). Returning all of them wastes
result slots, so after ranking each result is compared with the results
already kept; when its descriptive text (description, falling back to
title) is more similar than the threshold to a kept one, it is dropped.
The higher-ranked copy always wins and no fields are merged.

Similarity Measures:
    jaccard   Token-set Jaccard index (default)
    sequence  difflib.SequenceMatcher ratio over normalized text

Usage:
    from testcase_search.utils.deduplicator import Deduplicator

    deduper = Deduplicator(measure="jaccard", threshold=0.9)
    unique = deduper.dedupe(results)
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from difflib import SequenceMatcher
from typing import TypeVar

import structlog

from testcase_search.config.settings import VALID_DEDUPE_MEASURES, get_settings
from testcase_search.errors import ValidationError
from testcase_search.retrieval.types import FusedResult, RerankedResult

logger = structlog.get_logger(__name__)

R = TypeVar("R", FusedResult, RerankedResult)

_WORD = re.compile(r"\w+")


def _tokens(text: str) -> frozenset[str]:
    return frozenset(_WORD.findall(text.lower()))


def jaccard_similarity(left: str, right: str) -> float:
    """Token-set Jaccard similarity; 0.0 when either side has no tokens."""
    a, b = _tokens(left), _tokens(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def sequence_similarity(left: str, right: str) -> float:
    """SequenceMatcher ratio over whitespace-normalized lowercase text."""
    a = " ".join(left.lower().split())
    b = " ".join(right.lower().split())
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


MEASURES: dict[str, Callable[[str, str], float]] = {
    "jaccard": jaccard_similarity,
    "sequence": sequence_similarity,
}


def _text_of(result: FusedResult | RerankedResult) -> str:
    if isinstance(result, RerankedResult):
        return result.result.text
    return result.text


class Deduplicator:
    """Drops results whose text is a near-duplicate of a higher-ranked one."""

    def __init__(self, measure: str | None = None, threshold: float | None = None) -> None:
        settings = get_settings()
        self.measure = measure or settings.dedupe_measure
        if self.measure not in VALID_DEDUPE_MEASURES:
            raise ValidationError(
                f"Unknown dedupe measure {self.measure!r}; "
                f"expected one of {sorted(VALID_DEDUPE_MEASURES)}"
            )
        self.threshold = settings.dedupe_threshold if threshold is None else threshold
        if not 0.0 <= self.threshold <= 1.0:
            raise ValidationError(
                f"Similarity threshold must be within [0, 1], got {self.threshold}"
            )
        self._similarity = MEASURES[self.measure]

    def dedupe(self, results: Sequence[R], threshold: float | None = None) -> list[R]:
        """
        Return results in their original order without near-duplicates.

        Args:
            results: Ranked results, best first.
            threshold: Overrides the configured threshold for this call.
        """
        limit = self.threshold if threshold is None else threshold
        kept: list[R] = []
        kept_texts: list[str] = []
        dropped: list[str] = []

        for result in results:
            text = _text_of(result)
            if text and any(
                other and self._similarity(text, other) > limit for other in kept_texts
            ):
                dropped.append(result.id)
                continue
            kept.append(result)
            kept_texts.append(text)

        if dropped:
            logger.debug(
                "duplicates_dropped",
                measure=self.measure,
                threshold=limit,
                dropped_ids=dropped,
            )
        return kept


__all__ = [
    "Deduplicator",
    "jaccard_similarity",
    "sequence_similarity",
    "MEASURES",
]
