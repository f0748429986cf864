"""
Versioned API routes (v1).

Endpoints:
    - /search, /search/rerank (search.router)
    - /job/embeddings, /job/{job_id}, /job/{job_id}/resume (jobs.router)

Usage:
    from testcase_search.api.routes.v1 import router as v1_router

    app.include_router(v1_router, prefix="/api/v1")

Note:
    The /api/v1 prefix is NOT included in this router - it is applied
    when including the router in main.py.
"""

from __future__ import annotations

from fastapi import APIRouter

from testcase_search.api.routes.v1 import jobs, search

# No prefix here - prefix="/api/v1" is applied in main.py
router = APIRouter()

router.include_router(search.router)
router.include_router(jobs.router)

__all__ = ["router"]
