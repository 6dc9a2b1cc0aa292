# =============================================================================
# Response Models — Pydantic V2 Schemas
# =============================================================================
#
# SearchResult is both the engine's return value and the payload stored in
# the answer cache (the Redis backend serializes it as JSON). The HTTP
# response models wrap it for the API layer.
# =============================================================================

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class SourceItem(BaseModel):
    """
    One numbered citation. `index` matches the [n] markers in the answer.

    `document_handle` is None for sources recovered by scanning the answer
    text for author names rather than from a citation annotation.
    """

    index: int
    display_name: str
    excerpt: str = ""
    document_handle: str | None = None


class SearchResult(BaseModel):
    """A finished, post-processed answer."""

    question: str
    answer: str
    sources: list[SourceItem] = Field(default_factory=list)
    language: str
    topic: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    method: str = "assistant"


class AskResponse(BaseModel):
    """Response for POST /ask."""

    success: bool = True
    data: SearchResult


class ErrorResponse(BaseModel):
    """
    Body returned for every failed request.

    `error` is always a fixed friendly template; `details` carries the raw
    upstream message and is only populated in debug mode.
    """

    success: bool = False
    error: str
    details: str | None = None
    retry: bool = True


class HealthResponse(BaseModel):
    """Response for GET /health."""

    status: str = "ok"
    version: str
    service: str
    services: dict[str, bool]
    warnings: list[str] = Field(default_factory=list)


class InfoResponse(BaseModel):
    """Response for GET /info."""

    name: str
    version: str
    description: str
    vector_store: str
    method: str = "OpenAI Assistant API"
