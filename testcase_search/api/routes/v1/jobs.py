"""
V1 job endpoints.

    POST /api/v1/job/embeddings      queue an embedding job (202)
    GET  /api/v1/job/{job_id}        poll a job (404 when unknown or purged)
    POST /api/v1/job/{job_id}/resume continue a failed embedding job (202)

Jobs run on the tracker held by the service container; these routes only
submit and read snapshots.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from testcase_search.api.dependencies import ServiceContainer, get_container
from testcase_search.api.middleware.logging import bind_job_context
from testcase_search.retrieval.types import TestCaseDocument

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/job", tags=["v1", "Jobs"])


class EmbeddingJobRequest(BaseModel):
    """Body of POST /job/embeddings."""

    test_cases: list[TestCaseDocument] = Field(..., min_length=1)
    batch_size: int | None = Field(default=None, ge=1)


@router.post(
    "/embeddings",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Generate embeddings",
    description="Embed and index test cases in the background.",
)
async def create_embedding_job(
    body: EmbeddingJobRequest,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    job = container.embedding_jobs.submit(body.test_cases, batch_size=body.batch_size)
    bind_job_context(job.id)
    return job.to_dict()


@router.get(
    "/{job_id}",
    summary="Get job status",
    description="Status, progress, metrics and, once finished, result or error.",
)
async def get_job(
    job_id: str,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    return container.tracker.require(job_id).to_dict()


@router.post(
    "/{job_id}/resume",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Resume a failed job",
    description="Queue a new job that skips the chunks the failed job completed.",
)
async def resume_job(
    job_id: str,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    bind_job_context(job_id)
    job = container.embedding_jobs.resume(job_id)
    logger.info("job_resume_accepted", job_id=job.id, resumed_from=job_id)
    return job.to_dict()


__all__ = ["router", "EmbeddingJobRequest"]
