# =============================================================================
# Request Coordination — Cache, Coalesce, Execute
# =============================================================================
#
# Entry point for every question, polled or streamed:
#
#   handle(question, language, topic)
#     1. key = language | topic | question.strip().lower()
#     2. cached and fresh?            → return it (no upstream call)
#     3. same key already in flight?  → await that request's result
#     4. otherwise start it:
#          resolve topic store  → ensure assistant → new thread
#          → run (poll or stream) → citations + localization
#        cache the result on success; the in-flight entry is removed on
#        success and on failure alike
#
# At most one upstream run is in flight per key. The check-and-insert on
# the in-flight map happens under a lock with no suspension point in
# between.
#
# A caller that is cancelled detaches from the shared request. When the
# last attached caller is gone the shared request is cancelled too, which
# abandons its thread and run upstream.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from citesearch.config import Settings
from citesearch.errors import SearchError
from citesearch.models.responses import SearchResult
from citesearch.services.assistant import AssistantManager
from citesearch.services.authors import AuthorLocalizer
from citesearch.services.cache import ResultCache, create_result_cache
from citesearch.services.citations import CitationResolver, ResolvedAnswer
from citesearch.services.llm import AssistantBackend
from citesearch.services.runs import PollSchedule, RunCoordinator
from citesearch.services.streaming import StreamRelay, StreamSink
from citesearch.services.vectorstore import VectorStoreResolver, normalize_name

logger = logging.getLogger(__name__)


def normalize_question(question: str) -> str:
    return question.strip().lower()


def request_key(question: str, language: str, topic: str | None = None) -> str:
    return f"{language}|{normalize_name(topic) if topic else ''}|{normalize_question(question)}"


@dataclass
class _InFlight:
    task: asyncio.Task[SearchResult]
    waiters: int = 0


class RequestCoordinator:
    """Caches, coalesces and executes questions."""

    def __init__(
        self,
        assistants: AssistantManager,
        runs: RunCoordinator,
        relay: StreamRelay,
        citations: CitationResolver,
        resolver: VectorStoreResolver,
        cache: ResultCache,
        default_language: str = "zh",
    ) -> None:
        self._assistants = assistants
        self._runs = runs
        self._relay = relay
        self._citations = citations
        self._resolver = resolver
        self._cache = cache
        self._default_language = default_language

        self._pending: dict[str, _InFlight] = {}
        self._pending_lock = threading.Lock()

    @property
    def assistants(self) -> AssistantManager:
        return self._assistants

    def in_flight(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle(
        self,
        question: str,
        language: str | None = None,
        topic: str | None = None,
    ) -> SearchResult:
        """
        Answer a question, using the cache and in-flight coalescing.

        Raises:
            SearchError subclasses from any stage (topic resolution,
            assistant creation, run execution, transport).
        """
        question = question.strip()
        language = language or self._default_language
        key = request_key(question, language, topic)

        cached = await self._cache.get(key)
        if cached is not None:
            logger.info("Answer cache hit: '%s'", question[:80])
            return cached

        entry = self._join_or_start(
            key, lambda: self._execute(question, language, topic),
        )
        return await self._await_shared(entry)

    async def handle_streaming(
        self,
        question: str,
        language: str | None,
        sink: StreamSink,
        topic: str | None = None,
    ) -> SearchResult | None:
        """
        Answer a question, pushing progress to `sink`.

        Errors are delivered through sink.on_error and not raised; the
        return value is then None. Cache hits and callers that join
        another caller's in-flight request receive no deltas, only
        sources, final and done.
        """
        question = question.strip()
        language = language or self._default_language
        key = request_key(question, language, topic)

        cached = await self._cache.get(key)
        if cached is not None:
            logger.info("Answer cache hit (stream): '%s'", question[:80])
            await self._replay(cached, sink)
            return cached

        leader = False

        def start() -> Awaitable[SearchResult]:
            nonlocal leader
            leader = True
            return self._execute_streaming(question, language, topic, sink)

        entry = self._join_or_start(key, start)
        try:
            result = await self._await_shared(entry)
        except SearchError as e:
            # The leader's sink was already told by the relay
            if not leader:
                await sink.on_error(e)
            return None

        if not leader:
            await self._replay(result, sink)
        return result

    # ------------------------------------------------------------------
    # Coalescing
    # ------------------------------------------------------------------

    def _join_or_start(
        self,
        key: str,
        factory: Callable[[], Awaitable[SearchResult]],
    ) -> _InFlight:
        with self._pending_lock:
            entry = self._pending.get(key)
            if entry is None:
                task = asyncio.ensure_future(self._complete(key, factory))
                entry = _InFlight(task=task)
                self._pending[key] = entry
            else:
                logger.info("Joining in-flight request for key '%s'", key[:80])
            entry.waiters += 1
            return entry

    async def _await_shared(self, entry: _InFlight) -> SearchResult:
        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            with self._pending_lock:
                entry.waiters -= 1
                abandon = entry.waiters == 0 and not entry.task.done()
            if abandon:
                logger.info("All callers gone, abandoning in-flight request")
                entry.task.cancel()
            raise

    async def _complete(
        self,
        key: str,
        factory: Callable[[], Awaitable[SearchResult]],
    ) -> SearchResult:
        try:
            result = await factory()
            await self._cache.set(key, result)
            return result
        finally:
            with self._pending_lock:
                entry = self._pending.get(key)
                if entry is not None and entry.task is asyncio.current_task():
                    del self._pending[key]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _store_override(self, topic: str | None) -> list[str] | None:
        if not topic:
            return None
        ref = await self._resolver.require(topic)
        return [ref.resolved_id]

    async def _execute(
        self, question: str, language: str, topic: str | None,
    ) -> SearchResult:
        store_ids = await self._store_override(topic)
        assistant = await self._assistants.ensure_assistant()
        thread_id = await self._runs.new_thread()

        finished = await self._runs.execute(
            thread_id, assistant, question, vector_store_ids=store_ids,
        )
        resolved = await self._citations.resolve(
            finished.text, finished.annotations, language,
        )
        return self._result(question, language, topic, resolved, "assistant")

    async def _execute_streaming(
        self,
        question: str,
        language: str,
        topic: str | None,
        sink: StreamSink,
    ) -> SearchResult:
        try:
            store_ids = await self._store_override(topic)
            assistant = await self._assistants.ensure_assistant()
            thread_id = await self._runs.new_thread()
        except SearchError as e:
            await sink.on_error(e)
            raise
        except Exception as e:
            logger.warning("Stream setup failed: %s", e)
            error = SearchError(str(e))
            await sink.on_error(error)
            raise error from e

        resolved = await self._relay.execute_streaming(
            thread_id, assistant, question, sink, language,
            vector_store_ids=store_ids,
        )
        return self._result(question, language, topic, resolved, "assistant-stream")

    @staticmethod
    def _result(
        question: str,
        language: str,
        topic: str | None,
        resolved: ResolvedAnswer,
        method: str,
    ) -> SearchResult:
        return SearchResult(
            question=question,
            answer=resolved.display_text(language),
            sources=resolved.sources,
            language=language,
            topic=topic,
            method=method,
        )

    @staticmethod
    async def _replay(result: SearchResult, sink: StreamSink) -> None:
        await sink.on_sources(result.sources)
        await sink.on_final(result.answer)
        await sink.on_done()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_coordinator(
    settings: Settings,
    backend: AssistantBackend,
    author_table: dict[str, str] | None = None,
    cache: ResultCache | None = None,
) -> RequestCoordinator:
    """Assemble the engine from settings around one backend."""
    localizer = AuthorLocalizer(author_table, languages=settings.localized_languages)
    citations = CitationResolver(
        backend.file_display_name,
        localizer,
        excerpt_max_chars=settings.source_excerpt_max_chars,
    )
    runs = RunCoordinator(
        backend,
        PollSchedule(
            initial_delay=settings.run_initial_delay_seconds,
            fast_interval=settings.run_fast_poll_seconds,
            max_interval=settings.run_max_poll_seconds,
            max_attempts=settings.run_max_attempts,
        ),
    )
    assistants = AssistantManager(
        backend,
        model=settings.assistant_model,
        name=settings.assistant_name,
        vector_store_id=settings.vector_store_id,
        attempts=settings.assistant_creation_attempts,
        retry_delay=settings.assistant_retry_delay_seconds,
        max_retry_delay=settings.assistant_retry_max_delay_seconds,
    )
    return RequestCoordinator(
        assistants=assistants,
        runs=runs,
        relay=StreamRelay(runs, citations),
        citations=citations,
        resolver=VectorStoreResolver(
            backend, ttl_seconds=settings.vector_store_cache_ttl_seconds,
        ),
        cache=cache if cache is not None else create_result_cache(
            settings.result_cache_backend,
            settings.result_cache_ttl_seconds,
            max_entries=settings.result_cache_max_entries,
            redis_url=settings.redis_url,
        ),
        default_language=settings.default_language,
    )
