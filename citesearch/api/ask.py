# =============================================================================
# Ask API — Question Answering Endpoints
# =============================================================================
#
#   POST /ask         → AskResponse (one JSON body when the answer is ready)
#   POST /ask/stream  → text/event-stream
#
# SSE EVENTS (in order):
#   delta    {"text": "..."}             zero or more partial chunks
#   sources  [SourceItem, ...]           numbered sources
#   final    {"answer": "..."}           the authoritative answer text
#   done     {}
#   error    ErrorResponse               instead of sources/final/done
#
# Both endpoints are thin: validation, engine call, error mapping. Engine
# errors become friendly templates; the raw upstream text is only sent
# back under "details" when settings.debug is on.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse

from citesearch.api.deps import get_app_settings, get_coordinator
from citesearch.config import Settings
from citesearch.errors import (
    CreationError,
    ResolutionError,
    RunTimeoutError,
    SearchError,
    friendly_message,
)
from citesearch.models.requests import AskRequest
from citesearch.models.responses import AskResponse, ErrorResponse, SourceItem
from citesearch.services.search import RequestCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Question Answering"])


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def status_for(error: BaseException) -> int:
    if isinstance(error, ResolutionError):
        return 404
    if isinstance(error, RunTimeoutError):
        return 504
    if isinstance(error, CreationError):
        return 503
    if isinstance(error, SearchError):
        return 502
    return 500


def error_body(
    error: BaseException, language: str | None, settings: Settings,
) -> ErrorResponse:
    detail = getattr(error, "detail", None) or str(error)
    return ErrorResponse(
        error=friendly_message(error, language),
        details=detail if settings.debug else None,
    )


# ---------------------------------------------------------------------------
# POST /ask
# ---------------------------------------------------------------------------


@router.post(
    "/ask",
    response_model=AskResponse,
    responses={
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
    summary="Ask a question",
    description=(
        "Answer a question from the document corpus with numbered source "
        "citations. Identical questions are answered from cache, and "
        "concurrent identical questions share one upstream run."
    ),
)
async def ask_endpoint(
    request: AskRequest,
    coordinator: RequestCoordinator = Depends(get_coordinator),
    settings: Settings = Depends(get_app_settings),
):
    logger.info(
        "Ask request: question='%s', language=%s, topic=%s",
        request.question[:80], request.language, request.topic,
    )

    try:
        result = await coordinator.handle(
            request.question, request.language, topic=request.topic,
        )
    except SearchError as e:
        logger.warning("Ask failed (%s): %s", type(e).__name__, e)
        return JSONResponse(
            status_code=status_for(e),
            content=error_body(e, request.language, settings).model_dump(),
        )
    except Exception as e:
        logger.exception("Unexpected error answering question: %s", e)
        return JSONResponse(
            status_code=500,
            content=error_body(e, request.language, settings).model_dump(),
        )

    return AskResponse(data=result)


# ---------------------------------------------------------------------------
# POST /ask/stream
# ---------------------------------------------------------------------------


def sse(event: str, data: Any) -> bytes:
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


class QueueSink:
    """StreamSink that turns engine callbacks into queued SSE frames."""

    def __init__(self, language: str | None, settings: Settings) -> None:
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._language = language
        self._settings = settings

    async def on_delta(self, text: str) -> None:
        await self.queue.put(sse("delta", {"text": text}))

    async def on_sources(self, sources: list[SourceItem]) -> None:
        await self.queue.put(sse("sources", [s.model_dump(mode="json") for s in sources]))

    async def on_final(self, answer: str) -> None:
        await self.queue.put(sse("final", {"answer": answer}))

    async def on_done(self) -> None:
        await self.queue.put(sse("done", {}))

    async def on_error(self, error: BaseException) -> None:
        body = error_body(error, self._language, self._settings)
        await self.queue.put(sse("error", body.model_dump()))

    async def close(self) -> None:
        await self.queue.put(None)


@router.post(
    "/ask/stream",
    summary="Ask a question (streamed)",
    description=(
        "Same as POST /ask, delivered as Server-Sent Events: text deltas "
        "while the answer is generated, then the numbered sources and the "
        "final answer."
    ),
)
async def ask_stream_endpoint(
    request: AskRequest,
    coordinator: RequestCoordinator = Depends(get_coordinator),
    settings: Settings = Depends(get_app_settings),
) -> StreamingResponse:
    logger.info(
        "Streaming ask request: question='%s', language=%s, topic=%s",
        request.question[:80], request.language, request.topic,
    )
    sink = QueueSink(request.language, settings)

    async def produce() -> None:
        try:
            await coordinator.handle_streaming(
                request.question, request.language, sink, topic=request.topic,
            )
        except Exception as e:
            logger.exception("Unexpected error in streaming answer: %s", e)
            await sink.on_error(e)
        finally:
            await sink.close()

    async def frames():
        task = asyncio.create_task(produce())
        try:
            while True:
                frame = await sink.queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            # Client went away: detach from the shared request
            if not task.done():
                task.cancel()

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
