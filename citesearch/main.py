# =============================================================================
# Application Entry Point
# =============================================================================
#
# Run with: uvicorn citesearch.main:app --reload
#
# STARTUP (lifespan):
#   1. Load the author translation table
#   2. Build the engine around the OpenAI backend (skipped, with a
#      warning, when no API key is configured)
#   3. Warm the assistant and start the keep-warm loop
#
# Warm-up failures are logged and never stop the server; the first
# request will try again.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from citesearch.api import ask, health
from citesearch.config import Settings, get_settings
from citesearch.services.authors import load_author_table
from citesearch.services.llm import get_assistant_backend
from citesearch.services.search import RequestCoordinator, build_coordinator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _warm_up(coordinator: RequestCoordinator) -> None:
    try:
        assistant = await coordinator.assistants.ensure_assistant()
        logger.info("Assistant %s warmed up", assistant.id)
    except Exception as e:
        logger.warning("Assistant warm-up failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings

    if app.state.coordinator is None:
        app.state.author_table = load_author_table(settings.author_translations_path)
        try:
            backend = get_assistant_backend()
        except ValueError as e:
            logger.warning("Search engine disabled: %s", e)
        else:
            app.state.coordinator = build_coordinator(
                settings, backend, app.state.author_table,
            )

    keep_warm: asyncio.Task | None = None
    coordinator = app.state.coordinator
    if coordinator is not None and settings.warmup_enabled:
        await _warm_up(coordinator)
        keep_warm = asyncio.create_task(
            coordinator.assistants.keep_warm(settings.warmup_interval_seconds)
        )

    yield

    if keep_warm is not None:
        keep_warm.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await keep_warm


def create_app(
    settings: Settings | None = None,
    coordinator: RequestCoordinator | None = None,
    author_table: dict[str, str] | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Passing `coordinator` skips engine construction at startup (used by
    tests to inject an engine around a fake backend).
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Cited question answering over an OpenAI Assistants corpus",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.author_table = author_table or {}

    app.include_router(ask.router)
    app.include_router(health.router)
    return app


app = create_app()
