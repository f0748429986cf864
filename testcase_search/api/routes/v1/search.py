"""
V1 search endpoints.

    POST /api/v1/search         hybrid, keyword-only or vector-only search
    POST /api/v1/search/rerank  re-rank caller-supplied fused candidates

Both routes are rate limited per client IP (settings.rate_limit_per_minute).
Errors raised by the pipeline (ValidationError, UpstreamUnavailable, ...)
are mapped to HTTP responses by the handlers registered in main.py.

Note:
    The /api/v1 prefix is applied in main.py when including the v1 router.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from testcase_search.api.dependencies import ServiceContainer, get_container
from testcase_search.api.middleware.rate_limit import limiter, search_rate_limit
from testcase_search.retrieval.types import FusedResult, FusionWeights, SearchMethod

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/search", tags=["v1", "Search"])


# =============================================================================
# Request Models
# =============================================================================


class WeightsModel(BaseModel):
    """Fusion weights; must sum to 1."""

    keyword: float = Field(..., ge=0.0, le=1.0)
    vector: float = Field(..., ge=0.0, le=1.0)


class SearchRequest(BaseModel):
    """Body of POST /search."""

    query: str = Field(..., min_length=1, max_length=2000)
    method: SearchMethod = Field(default=SearchMethod.HYBRID)
    limit: int | None = Field(default=None, ge=1)
    filters: dict[str, Any] | None = Field(
        default=None,
        description='Metadata filter, e.g. {"module": "auth", "priority": ["P1", "P2"]}',
    )
    weights: WeightsModel | None = None
    rerank: bool = False
    summarize: bool = False


class CandidateModel(BaseModel):
    """A fused result sent back for re-ranking."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    final_score: float = Field(..., ge=0.0, le=1.0)
    keyword_score: float | None = Field(default=None, ge=0.0, le=1.0)
    vector_score: float | None = Field(default=None, ge=0.0, le=1.0)
    weights: WeightsModel | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    sources: list[str] = Field(default_factory=list)
    variants: list[str] = Field(default_factory=list)

    def to_fused(self) -> FusedResult:
        weights = (
            FusionWeights(keyword=self.weights.keyword, vector=self.weights.vector)
            if self.weights is not None
            else FusionWeights.for_method(SearchMethod.HYBRID)
        )
        return FusedResult(
            id=self.id,
            keyword_score=self.keyword_score,
            vector_score=self.vector_score,
            weights=weights,
            final_score=self.final_score,
            metadata=self.metadata,
            sources=tuple(self.sources),
            variants=tuple(self.variants),
        )


class RerankRequest(BaseModel):
    """Body of POST /search/rerank. Candidates are given in fused order."""

    query: str = Field(..., min_length=1, max_length=2000)
    candidates: list[CandidateModel] = Field(default_factory=list)


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "",
    summary="Search test cases",
    description="Preprocess the query, retrieve, fuse and optionally re-rank.",
)
@limiter.limit(search_rate_limit)
async def search(
    request: Request,
    body: SearchRequest,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Run one search.

    Returns:
        {"results": [...], "metadata": {...}}. metadata.partial is true when
        a source or variant call failed and results come from the survivors.
    """
    response = await container.search_service.search(
        body.query,
        method=body.method,
        limit=body.limit,
        filters=body.filters,
        weights=body.weights.model_dump() if body.weights is not None else None,
        rerank=body.rerank,
        summarize=body.summarize,
    )
    return response.to_dict()


@router.post(
    "/rerank",
    summary="Re-rank candidates",
    description="Order caller-supplied candidates by external relevance.",
)
@limiter.limit(search_rate_limit)
async def rerank(
    request: Request,
    body: RerankRequest,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Returns:
        {"results": [...], "skipped": bool, "reason": str | None}. When the
        relevance service fails the input order is returned with skipped=true.
    """
    candidates = [c.to_fused() for c in body.candidates]
    outcome = await container.search_service.rerank_candidates(body.query, candidates)
    logger.info(
        "rerank_request_completed",
        candidates=len(candidates),
        skipped=outcome.skipped,
    )
    return outcome.to_dict()


__all__ = ["router", "SearchRequest", "RerankRequest", "CandidateModel"]
