"""
Weighted score fusion for keyword and vector candidate lists.

Keyword (sparse dot product) and vector (cosine) scores live on different
scales, so they are normalized per list before being combined:

Algorithm:
    1. Normalize each (source, variant) list to [0, 1]
         auto:   keep a source's lists raw when all of them lie within
                 [0, 1]; otherwise min-max scale every list of that source
         minmax: always min-max scale
       A list that needs scaling but has fewer than 2 distinct scores maps
       every item to 1.0.
    2. Merge by id across variants and sources, keeping the max normalized
       keyword score and the max normalized vector score.
    3. final(d) = wk · keyword(d) + wv · vector(d), a missing side counts 0.
    4. Sort by final score descending, ties by id ascending.

Search methods all go through this one entry point: bm25 uses weights
(1, 0), vector (0, 1) and hybrid the caller's pair.

Usage:
    from testcase_search.utils.score_fusion import fuse

    fused = fuse(
        {
            (RetrievalSource.KEYWORD, "original"): keyword_candidates,
            (RetrievalSource.VECTOR, "original"): vector_candidates,
        },
        FusionWeights(keyword=0.5, vector=0.5),
    )

Reference:
    - Min-max normalization for hybrid search:
      https://opensearch.org/docs/latest/search-plugins/search-pipelines/normalization-processor/
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from testcase_search.errors import InternalFusionError, ValidationError
from testcase_search.retrieval.types import (
    Candidate,
    FusedResult,
    FusionWeights,
    RetrievalSource,
)

# Configure structured logger
logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

NORMALIZATION_AUTO = "auto"
NORMALIZATION_MINMAX = "minmax"

# Float slack when checking scores stay within [0, 1]
SCORE_EPSILON = 1e-9

ResultKey = tuple[RetrievalSource | str, str]


# =============================================================================
# Normalization
# =============================================================================


def _needs_scaling(scores: Sequence[float], mode: str) -> bool:
    if mode == NORMALIZATION_MINMAX:
        return True
    return any(score < 0.0 or score > 1.0 for score in scores)


def normalize_scores(scores: Sequence[float], mode: str = NORMALIZATION_AUTO) -> list[float]:
    """
    Normalize one list of raw scores to [0, 1].

    Raises:
        InternalFusionError: If a score is NaN or infinite.
        ValidationError: If the mode is unknown.

    Example:
        >>> normalize_scores([12.0, 4.0, 8.0])
        [1.0, 0.0, 0.5]
        >>> normalize_scores([0.9, 0.1])
        [0.9, 0.1]
        >>> normalize_scores([3.0, 3.0])
        [1.0, 1.0]
    """
    if mode not in (NORMALIZATION_AUTO, NORMALIZATION_MINMAX):
        raise ValidationError(f"Unknown normalization mode: {mode}")

    if not scores:
        return []

    for score in scores:
        if not math.isfinite(score):
            raise InternalFusionError(f"Non-finite raw score: {score}")

    if not _needs_scaling(scores, mode):
        return [float(score) for score in scores]

    low, high = min(scores), max(scores)
    if high == low:
        return [1.0 for _ in scores]

    span = high - low
    return [(score - low) / span for score in scores]


# =============================================================================
# Fusion
# =============================================================================


@dataclass
class _Accumulator:
    """Mutable per-id merge state, local to one fuse() call."""

    keyword: float | None = None
    vector: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)
    variants: list[str] = field(default_factory=list)

    def add(self, source: RetrievalSource, score: float, candidate: Candidate) -> None:
        if source is RetrievalSource.KEYWORD:
            self.keyword = score if self.keyword is None else max(self.keyword, score)
        else:
            self.vector = score if self.vector is None else max(self.vector, score)

        for key, value in candidate.metadata.items():
            self.metadata.setdefault(key, value)
        if source.value not in self.sources:
            self.sources.append(source.value)
        if candidate.variant_tag not in self.variants:
            self.variants.append(candidate.variant_tag)


def _check_unit(value: float, what: str, doc_id: str) -> None:
    if not -SCORE_EPSILON <= value <= 1.0 + SCORE_EPSILON:
        raise InternalFusionError(f"{what} for {doc_id} outside [0, 1]: {value}")


def fuse(
    results: Mapping[ResultKey, Sequence[Candidate]],
    weights: FusionWeights,
    mode: str = NORMALIZATION_AUTO,
) -> list[FusedResult]:
    """
    Merge candidate lists into one normalized, weighted, de-duplicated ranking.

    Args:
        results: (source, variant_tag) → that call's candidates.
        weights: Keyword and vector weights (already validated).
        mode: "auto" or "minmax" normalization. In auto mode every list of a
            source is scaled once any list of that source leaves [0, 1].

    Returns:
        FusedResult list sorted by final score descending, ties by id.
        Each id appears once. Empty input yields [].

    Raises:
        ValidationError: If the mode is unknown.
        InternalFusionError: On non-finite scores, a candidate whose source
            disagrees with its list key, or a score escaping [0, 1].
    """
    if mode not in (NORMALIZATION_AUTO, NORMALIZATION_MINMAX):
        raise ValidationError(f"Unknown normalization mode: {mode}")

    merged: dict[str, _Accumulator] = {}

    # Variants of one source share a scale, so the auto decision is per source
    scaled_sources = {
        RetrievalSource(raw_source)
        for (raw_source, _), candidates in results.items()
        if _needs_scaling([c.score for c in candidates], mode)
    }

    for (raw_source, variant_tag), candidates in results.items():
        source = RetrievalSource(raw_source)
        if not candidates:
            continue
        list_mode = NORMALIZATION_MINMAX if source in scaled_sources else mode

        for candidate in candidates:
            if RetrievalSource(candidate.source) is not source:
                raise InternalFusionError(
                    f"Candidate {candidate.id} from {candidate.source} found in "
                    f"{source.value} list for variant {variant_tag}"
                )

        normalized = normalize_scores([c.score for c in candidates], list_mode)
        for candidate, score in zip(candidates, normalized):
            _check_unit(score, f"normalized {source.value} score", candidate.id)
            merged.setdefault(candidate.id, _Accumulator()).add(source, score, candidate)

    fused: list[FusedResult] = []
    for doc_id, acc in merged.items():
        final = weights.keyword * (acc.keyword or 0.0) + weights.vector * (acc.vector or 0.0)
        _check_unit(final, "final score", doc_id)
        fused.append(
            FusedResult(
                id=doc_id,
                keyword_score=acc.keyword,
                vector_score=acc.vector,
                weights=weights,
                final_score=min(max(final, 0.0), 1.0),
                metadata=acc.metadata,
                sources=tuple(acc.sources),
                variants=tuple(acc.variants),
            )
        )

    fused.sort(key=lambda r: (-r.final_score, r.id))

    logger.debug(
        "score_fusion_completed",
        input_lists=len(results),
        unique_results=len(fused),
        keyword_weight=weights.keyword,
        vector_weight=weights.vector,
        top_score=fused[0].final_score if fused else None,
    )

    return fused


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "fuse",
    "normalize_scores",
    "NORMALIZATION_AUTO",
    "NORMALIZATION_MINMAX",
]
