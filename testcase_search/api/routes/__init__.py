"""
API routes package for endpoint definitions.

Package Structure:
    - health.py: Health check with Bedrock and Pinecone dependency checks
    - v1/: Version 1 API endpoints
        - search.py: Search and re-rank endpoints
        - jobs.py: Embedding job endpoints

Usage:
    from testcase_search.api.routes import health_router, v1_router

    app.include_router(health_router)
    app.include_router(v1_router, prefix="/api/v1")
"""

from __future__ import annotations

from testcase_search.api.routes.health import router as health_router
from testcase_search.api.routes.v1 import router as v1_router

__all__ = [
    "health_router",
    "v1_router",
]
