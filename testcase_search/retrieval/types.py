"""
Value types shared by the search pipeline.

Everything produced while answering one search request is an immutable
value created for that request and discarded with the response: the query
plan and its variants, the raw candidates returned by each retriever, the
fused ranking and the re-ranked view of it.

Pipeline Data Flow:
    raw query → QueryPlan(variants) → Candidate lists per (source, variant)
              → FusedResult ranking → RerankedResult (optional)

Usage:
    from testcase_search.retrieval.types import FusionWeights, SearchMethod

    weights = FusionWeights.for_method(SearchMethod.HYBRID, keyword_weight=0.4)
    print(weights.vector)  # 0.6
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from testcase_search.errors import ValidationError

# =============================================================================
# Constants
# =============================================================================

ORIGINAL_TAG = "original"
ABBREVIATION_TAG = "abbreviation-expanded"
SYNONYM_TAG_PREFIX = "synonym-"

# Tolerance for wk + wv = 1
WEIGHT_TOLERANCE = 1e-6

# Metadata fields the store can filter on
FILTERABLE_FIELDS = ("module", "priority", "risk", "category")


def synonym_tag(index: int) -> str:
    """Provenance tag of the index-th synonym variant (1-based)."""
    return f"{SYNONYM_TAG_PREFIX}{index}"


def descriptive_text(metadata: dict[str, Any]) -> str:
    """Text used to compare, score and summarize a result."""
    return str(metadata.get("description") or metadata.get("title") or "")


# =============================================================================
# Enumerations
# =============================================================================


class SearchMethod(str, Enum):
    """Closed set of search methods exposed to callers."""

    VECTOR = "vector"
    BM25 = "bm25"
    HYBRID = "hybrid"


class RetrievalSource(str, Enum):
    """Retriever that produced a candidate."""

    KEYWORD = "keyword"
    VECTOR = "vector"


# =============================================================================
# Query Plan
# =============================================================================


@dataclass(frozen=True)
class QueryVariant:
    """One phrasing of the query and the expansion step that produced it."""

    text: str
    tag: str = ORIGINAL_TAG


@dataclass(frozen=True)
class QueryPlan:
    """
    Result of preprocessing a raw query.

    Attributes:
        raw: The query exactly as received.
        normalized: Normalized text (without identifiers when they are preserved).
        identifiers: Literal identifiers extracted from the raw text, verbatim.
        variants: Ordered variants; the original variant is always first.
    """

    raw: str
    normalized: str
    identifiers: tuple[str, ...]
    variants: tuple[QueryVariant, ...]

    @property
    def original(self) -> QueryVariant:
        return self.variants[0]

    @property
    def tags(self) -> tuple[str, ...]:
        return tuple(v.tag for v in self.variants)


# =============================================================================
# Retrieval and Fusion Results
# =============================================================================


@dataclass(frozen=True)
class Candidate:
    """
    One hit returned by a retriever.

    The raw score lives on the retriever's own scale (cosine similarity for
    the vector index, dot product of sparse weights for the keyword index)
    and is only comparable with other sources after normalization.
    """

    id: str
    source: RetrievalSource
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
    variant_tag: str = ORIGINAL_TAG


@dataclass(frozen=True)
class FusionWeights:
    """
    Weight pair applied to normalized keyword and vector scores.

    Raises:
        ValidationError: If a weight is outside [0, 1] or the pair does not
            sum to 1.
    """

    keyword: float
    vector: float

    def __post_init__(self) -> None:
        for name, value in (("keyword", self.keyword), ("vector", self.vector)):
            if not math.isfinite(value) or not 0.0 <= value <= 1.0:
                raise ValidationError(
                    f"{name} weight must be within [0, 1], got {value}"
                )
        if abs(self.keyword + self.vector - 1.0) > WEIGHT_TOLERANCE:
            raise ValidationError(
                "keyword and vector weights must sum to 1, "
                f"got {self.keyword} + {self.vector}"
            )

    @classmethod
    def for_method(
        cls,
        method: SearchMethod,
        keyword_weight: float = 0.5,
    ) -> "FusionWeights":
        """Weights implied by a search method; hybrid uses keyword_weight."""
        if method is SearchMethod.BM25:
            return cls(keyword=1.0, vector=0.0)
        if method is SearchMethod.VECTOR:
            return cls(keyword=0.0, vector=1.0)
        return cls(keyword=keyword_weight, vector=1.0 - keyword_weight)

    def as_dict(self) -> dict[str, float]:
        return {"keyword": self.keyword, "vector": self.vector}


@dataclass(frozen=True)
class FusedResult:
    """
    A document after fusion: normalized per-source scores and final score.

    final_score = weights.keyword * keyword_score + weights.vector * vector_score,
    where a missing component counts as 0.
    """

    id: str
    keyword_score: float | None
    vector_score: float | None
    weights: FusionWeights
    final_score: float
    metadata: dict[str, Any] = field(default_factory=dict)
    sources: tuple[str, ...] = ()
    variants: tuple[str, ...] = ()
    summary: str | None = None

    @property
    def text(self) -> str:
        return descriptive_text(self.metadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "keyword_score": self.keyword_score,
            "vector_score": self.vector_score,
            "weights": self.weights.as_dict(),
            "final_score": self.final_score,
            "metadata": self.metadata,
            "sources": list(self.sources),
            "variants": list(self.variants),
            "summary": self.summary,
        }


@dataclass(frozen=True)
class RerankedResult:
    """
    A fused result with the relevance service's judgement attached.

    Attributes:
        result: The fused result being judged.
        fused_rank: 0-based position in the fused ordering before reranking.
        relevance_score: External relevance (0-100), None when skipped.
        rationale: Optional explanation from the relevance service.
    """

    result: FusedResult
    fused_rank: int
    relevance_score: float | None = None
    rationale: str | None = None

    @property
    def id(self) -> str:
        return self.result.id

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.result.to_dict(),
            "fused_rank": self.fused_rank,
            "relevance_score": self.relevance_score,
            "rationale": self.rationale,
        }


# =============================================================================
# Indexed Documents
# =============================================================================


class TestCaseDocument(BaseModel):
    """A test case as indexed by embedding jobs."""

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(..., min_length=1, description="Test case identifier")
    title: str = Field(default="", description="Short test case title")
    module: str = Field(default="", description="Functional module under test")
    description: str = Field(default="", description="What the test verifies")
    steps: str = Field(default="", description="Execution steps")
    expected_results: str = Field(default="", alias="expectedResults")
    pre_requisites: str = Field(default="", alias="preRequisites")
    priority: str | None = Field(default=None)
    risk: str | None = Field(default=None)
    category: str | None = Field(default=None)

    def field_texts(self) -> dict[str, str]:
        """Text per indexed field, keyed the way field boosts are keyed."""
        return {
            "id": self.id,
            "title": self.title,
            "module": self.module,
            "description": self.description,
            "expectedResults": self.expected_results,
            "steps": self.steps,
            "preRequisites": self.pre_requisites,
        }

    def embedding_text(self) -> str:
        """Text sent to the embedding service."""
        parts = [
            self.title,
            self.module,
            self.description,
            self.steps,
            self.expected_results,
        ]
        return "\n".join(part for part in parts if part) or self.id

    def metadata(self) -> dict[str, Any]:
        """Store metadata: filterable fields plus descriptive text."""
        raw = {
            "title": self.title,
            "module": self.module,
            "description": self.description,
            "steps": self.steps,
            "expectedResults": self.expected_results,
            "preRequisites": self.pre_requisites,
            "priority": self.priority,
            "risk": self.risk,
            "category": self.category,
        }
        # Pinecone rejects null metadata values
        return {key: value for key, value in raw.items() if value not in (None, "")}


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "ORIGINAL_TAG",
    "ABBREVIATION_TAG",
    "SYNONYM_TAG_PREFIX",
    "FILTERABLE_FIELDS",
    "synonym_tag",
    "descriptive_text",
    "SearchMethod",
    "RetrievalSource",
    "QueryVariant",
    "QueryPlan",
    "Candidate",
    "FusionWeights",
    "FusedResult",
    "RerankedResult",
    "TestCaseDocument",
]
