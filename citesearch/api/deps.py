# =============================================================================
# API Dependencies — Engine & Settings Injection
# =============================================================================
#
# The lifespan hook in main.py builds the engine once and stores it on
# app.state. Route handlers receive it through these dependencies, so
# tests can hand a pre-built engine to create_app() instead.
#
# When the engine could not be built (no OpenAI key), question endpoints
# answer 503 while /health keeps working and reports the problem.
# =============================================================================

from __future__ import annotations

from fastapi import HTTPException, Request

from citesearch.config import Settings
from citesearch.services.search import RequestCoordinator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_optional_coordinator(request: Request) -> RequestCoordinator | None:
    return getattr(request.app.state, "coordinator", None)


def get_coordinator(request: Request) -> RequestCoordinator:
    """Return the engine, or 503 when the service is not configured."""
    coordinator = get_optional_coordinator(request)
    if coordinator is None:
        raise HTTPException(
            status_code=503,
            detail="Search service is not configured. Set OPENAI_API_KEY in .env",
        )
    return coordinator
