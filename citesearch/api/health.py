# =============================================================================
# Service API — Health, Info & Read-Only Configuration
# =============================================================================

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from citesearch.api.deps import get_app_settings, get_optional_coordinator
from citesearch.config import Settings
from citesearch.models.responses import HealthResponse, InfoResponse
from citesearch.services.search import RequestCoordinator

router = APIRouter(tags=["Service"])


@router.get("/health", response_model=HealthResponse, summary="Service health")
async def health(
    settings: Settings = Depends(get_app_settings),
    coordinator: RequestCoordinator | None = Depends(get_optional_coordinator),
) -> HealthResponse:
    """
    Report which upstream pieces are configured.

    Status is "warning" (still HTTP 200) when the API key or the default
    vector store is missing, so load balancers keep routing while the
    problem is visible.
    """
    warnings: list[str] = []
    if not settings.openai_api_key:
        warnings.append("OPENAI_API_KEY is not set")
    if not settings.vector_store_id:
        warnings.append("VECTOR_STORE_ID is not set; answers will not use file search")

    return HealthResponse(
        status="warning" if warnings else "ok",
        version=settings.app_version,
        service=settings.app_name,
        services={
            "openai": bool(settings.openai_api_key),
            "vector_store": bool(settings.vector_store_id),
            "assistant": coordinator is not None
            and coordinator.assistants.current is not None,
        },
        warnings=warnings,
    )


@router.get("/info", response_model=InfoResponse, summary="Service information")
async def info(settings: Settings = Depends(get_app_settings)) -> InfoResponse:
    return InfoResponse(
        name=settings.app_name,
        version=settings.app_version,
        description="Question answering over a document corpus with numbered source citations",
        vector_store="configured" if settings.vector_store_id else "not configured",
    )


@router.get(
    "/config/author-translations",
    summary="Loaded author-name translations",
)
async def author_translations(request: Request) -> dict[str, dict[str, str]]:
    return {"authors": dict(getattr(request.app.state, "author_table", {}) or {})}
