"""
API package for the FastAPI application.

Package Structure:
    - main.py: Application factory, lifespan and error handlers
    - dependencies.py: ServiceContainer built at startup, get_container
    - routes/: Endpoint definitions
        - health.py: Health check endpoint
        - v1/: Search and job endpoints under /api/v1
    - middleware/: Request/response middleware
        - logging.py: structlog configuration and request ids
        - rate_limit.py: slowapi rate limiting

Usage:
    from testcase_search.api.main import app, create_app

    # Run with uvicorn
    # uvicorn testcase_search.api.main:app --reload --host 0.0.0.0 --port 8000

The app is not imported here so submodules can be imported without
building the default application.
"""

from __future__ import annotations

from testcase_search import __version__

__api_version__ = "v1"

__all__ = ["__version__", "__api_version__"]
