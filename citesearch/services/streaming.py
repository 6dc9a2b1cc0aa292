# =============================================================================
# Stream Relay — Real-Time Answer Delivery
# =============================================================================
#
# The streaming alternative to RunCoordinator.execute(). Text deltas are
# forwarded to the caller as they arrive; the final answer is NOT built
# from them. When the stream ends, the finished message is re-fetched from
# the thread (the same path the polling flow uses) and post-processed, so
# a streamed answer and a polled answer to the same question are
# identical.
#
# SINK CALL ORDER (success):
#   on_delta × N  →  on_sources  →  on_final  →  on_done
#
# On a transport fault, or a run that fails, expires, is cancelled or
# ends without a completion event: on_error, then the error is raised to
# the caller. Partial text is never delivered as final. The relay never
# retries.
# =============================================================================

from __future__ import annotations

import logging
from typing import Protocol

from citesearch.errors import RunFailedError, SearchError, TransportError
from citesearch.models.responses import SourceItem
from citesearch.services.citations import CitationResolver, ResolvedAnswer
from citesearch.services.llm import AssistantHandle, StreamEventKind
from citesearch.services.runs import RunCoordinator

logger = logging.getLogger(__name__)


class StreamSink(Protocol):
    """Receiver for one streamed answer."""

    async def on_delta(self, text: str) -> None: ...

    async def on_sources(self, sources: list[SourceItem]) -> None: ...

    async def on_final(self, answer: str) -> None: ...

    async def on_done(self) -> None: ...

    async def on_error(self, error: SearchError) -> None: ...


class StreamRelay:
    """Runs the assistant in streaming mode and reconciles the result."""

    def __init__(self, runs: RunCoordinator, citations: CitationResolver) -> None:
        self._runs = runs
        self._citations = citations

    async def execute_streaming(
        self,
        thread_id: str,
        assistant: AssistantHandle,
        question: str,
        sink: StreamSink,
        language: str | None,
        vector_store_ids: list[str] | None = None,
    ) -> ResolvedAnswer:
        backend = self._runs.backend
        deltas = 0
        hinted = 0
        completed = False

        try:
            await backend.add_message(thread_id, question)
            async for event in backend.stream_run(
                thread_id, assistant.id, vector_store_ids=vector_store_ids,
            ):
                if event.kind == StreamEventKind.DELTA:
                    deltas += 1
                    await sink.on_delta(event.text)
                elif event.kind == StreamEventKind.MESSAGE_DONE:
                    # Hint only; the re-fetched message is authoritative
                    hinted = len(event.annotations)
                elif event.kind == StreamEventKind.RUN_FAILED:
                    raise RunFailedError(
                        f"Assistant run {event.status or 'failed'}: "
                        f"{event.error or 'Unknown error'}"
                    )
                elif event.kind == StreamEventKind.RUN_COMPLETED:
                    completed = True

            if not completed:
                raise RunFailedError("Stream ended before the run completed")

            logger.info(
                "Stream on thread %s ended (%d deltas, %d hinted annotations)",
                thread_id, deltas, hinted,
            )
            finished = await self._runs.fetch_answer(thread_id)
        except SearchError as e:
            logger.warning("Stream on thread %s failed: %s", thread_id, e)
            await sink.on_error(e)
            raise
        except Exception as e:
            logger.warning("Stream on thread %s broke: %s", thread_id, e)
            error = TransportError(str(e))
            await sink.on_error(error)
            raise error from e

        resolved = await self._citations.resolve(
            finished.text, finished.annotations, language,
        )
        await sink.on_sources(resolved.sources)
        await sink.on_final(resolved.display_text(language))
        await sink.on_done()
        return resolved
