# =============================================================================
# Assistant Service Abstraction — OpenAI Assistants Backend
# =============================================================================
#
# Everything the engine needs from the hosted assistant service, behind one
# Protocol so the orchestration code (assistant.py, runs.py, streaming.py,
# vectorstore.py, citations.py) never touches the SDK directly and tests can
# swap in a fake.
#
# ARCHITECTURE:
#   AssistantBackend (Protocol)
#   └── OpenAIAssistantBackend  — AsyncOpenAI (beta assistants / threads)
#       ├── assistants          — create_assistant(), retrieve_assistant()
#       ├── threads + messages  — create_thread(), add_message(),
#       │                         latest_message()
#       ├── runs                — create_run(), retrieve_run(),
#       │                         submit_tool_outputs(), stream_run()
#       ├── files               — file_display_name()
#       └── vector stores       — list_vector_stores()
#   get_assistant_backend()     — lazy singleton factory, reads config
#
# SDK objects are converted to the small dataclasses below at this
# boundary. Connection faults, rate limits and non-2xx HTTP answers are
# re-raised as TransportError; everything else propagates unchanged.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from citesearch.config import settings
from citesearch.errors import TransportError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssistantHandle:
    """A created assistant resource and the configuration it was built with."""

    id: str
    model: str
    instructions: str
    vector_store_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str


@dataclass
class RunSnapshot:
    """Point-in-time view of a run's state."""

    id: str
    thread_id: str
    status: str
    last_error: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class Annotation:
    """
    A citation span inside generated text.

    `text` is the literal substring the service annotated (typically a
    marker such as 【4:0†source】). `start_index`/`end_index` locate it
    in the message text when the service provides them.
    """

    text: str
    file_id: str
    quote: str = ""
    start_index: int | None = None
    end_index: int | None = None


@dataclass
class AssistantMessage:
    role: str
    text: str
    annotations: list[Annotation] = field(default_factory=list)


@dataclass(frozen=True)
class VectorStoreInfo:
    id: str
    name: str
    file_count: int


@dataclass
class VectorStorePage:
    stores: list[VectorStoreInfo]
    has_more: bool
    last_id: str | None


class StreamEventKind:
    DELTA = "delta"
    MESSAGE_DONE = "message_done"
    RUN_FAILED = "run_failed"
    RUN_COMPLETED = "run_completed"


@dataclass
class StreamEvent:
    kind: str
    text: str = ""
    annotations: list[Annotation] = field(default_factory=list)
    error: str | None = None
    status: str = ""


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class AssistantBackend(Protocol):
    """
    Protocol for the hosted assistant service.

    Each method maps to a single upstream call except stream_run(),
    which yields events until the upstream stream closes.
    """

    async def create_assistant(
        self,
        model: str,
        name: str,
        instructions: str,
        vector_store_ids: list[str] | None = None,
    ) -> AssistantHandle: ...

    async def retrieve_assistant(self, assistant_id: str) -> None:
        """Existence check. Raises if the assistant is gone."""
        ...

    async def create_thread(self) -> str: ...

    async def add_message(self, thread_id: str, content: str) -> None: ...

    async def create_run(
        self,
        thread_id: str,
        assistant_id: str,
        vector_store_ids: list[str] | None = None,
    ) -> RunSnapshot:
        """
        Start a run. When vector_store_ids is given, only those stores
        are searched by this run.
        """
        ...

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunSnapshot: ...

    async def submit_tool_outputs(
        self,
        thread_id: str,
        run_id: str,
        outputs: list[dict[str, str]],
    ) -> RunSnapshot: ...

    async def latest_message(self, thread_id: str) -> AssistantMessage | None: ...

    async def file_display_name(self, file_id: str) -> str:
        """Return the raw filename of an uploaded file."""
        ...

    async def list_vector_stores(
        self, after: str | None = None, limit: int = 100,
    ) -> VectorStorePage: ...

    def stream_run(
        self,
        thread_id: str,
        assistant_id: str,
        vector_store_ids: list[str] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


# ---------------------------------------------------------------------------
# Implementation: OpenAI Assistants API
# ---------------------------------------------------------------------------


@contextmanager
def _upstream_errors():
    """Re-raise SDK transport and HTTP status faults as TransportError."""
    import openai

    try:
        yield
    except openai.RateLimitError as e:
        raise TransportError(str(e), reason="rate_limited") from e
    except openai.APIConnectionError as e:
        # Also covers APITimeoutError
        raise TransportError(str(e), reason="network") from e
    except openai.APIStatusError as e:
        # Any other non-2xx answer (5xx, 4xx); RateLimitError is caught above
        raise TransportError(f"HTTP {e.status_code}: {e}", reason="upstream") from e


def _file_search_resources(vector_store_ids: list[str]) -> dict[str, Any]:
    return {"file_search": {"vector_store_ids": list(vector_store_ids)}}


def _convert_run(run: Any) -> RunSnapshot:
    last_error = None
    if getattr(run, "last_error", None) is not None:
        last_error = run.last_error.message

    tool_calls: list[ToolCall] = []
    required = getattr(run, "required_action", None)
    if required is not None and required.submit_tool_outputs is not None:
        for call in required.submit_tool_outputs.tool_calls:
            tool_calls.append(ToolCall(id=call.id, name=call.function.name))

    return RunSnapshot(
        id=run.id,
        thread_id=run.thread_id,
        status=run.status,
        last_error=last_error,
        tool_calls=tool_calls,
    )


def _convert_annotations(raw_annotations: Any) -> list[Annotation]:
    annotations: list[Annotation] = []
    for ann in raw_annotations or []:
        if getattr(ann, "type", None) != "file_citation":
            continue
        citation = getattr(ann, "file_citation", None)
        if citation is None or not citation.file_id:
            continue
        annotations.append(Annotation(
            text=ann.text or "",
            file_id=citation.file_id,
            quote=getattr(citation, "quote", None) or "",
            start_index=getattr(ann, "start_index", None),
            end_index=getattr(ann, "end_index", None),
        ))
    return annotations


def _convert_message(message: Any) -> AssistantMessage:
    # Only the first text block carries the answer
    for block in message.content:
        if block.type == "text":
            return AssistantMessage(
                role=message.role,
                text=block.text.value,
                annotations=_convert_annotations(block.text.annotations),
            )
    return AssistantMessage(role=message.role, text="")


class OpenAIAssistantBackend:
    """AssistantBackend on top of the AsyncOpenAI client."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No OpenAI API key configured. Set OPENAI_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.openai_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)

        logger.info(
            "Initialized OpenAIAssistantBackend (base_url=%s)",
            resolved_base_url or "https://api.openai.com/v1",
        )

    # --- Assistants -------------------------------------------------------

    async def create_assistant(
        self,
        model: str,
        name: str,
        instructions: str,
        vector_store_ids: list[str] | None = None,
    ) -> AssistantHandle:
        kwargs: dict = {
            "model": model,
            "name": name,
            "instructions": instructions,
        }
        if vector_store_ids:
            kwargs["tools"] = [{"type": "file_search"}]
            kwargs["tool_resources"] = _file_search_resources(vector_store_ids)

        with _upstream_errors():
            assistant = await self._client.beta.assistants.create(**kwargs)

        return AssistantHandle(
            id=assistant.id,
            model=model,
            instructions=instructions,
            vector_store_ids=tuple(vector_store_ids or ()),
        )

    async def retrieve_assistant(self, assistant_id: str) -> None:
        with _upstream_errors():
            await self._client.beta.assistants.retrieve(assistant_id)

    # --- Threads & messages ----------------------------------------------

    async def create_thread(self) -> str:
        with _upstream_errors():
            thread = await self._client.beta.threads.create()
        return thread.id

    async def add_message(self, thread_id: str, content: str) -> None:
        with _upstream_errors():
            await self._client.beta.threads.messages.create(
                thread_id=thread_id, role="user", content=content,
            )

    async def latest_message(self, thread_id: str) -> AssistantMessage | None:
        with _upstream_errors():
            page = await self._client.beta.threads.messages.list(
                thread_id=thread_id, order="desc", limit=1,
            )
        if not page.data:
            return None
        return _convert_message(page.data[0])

    # --- Runs ------------------------------------------------------------

    async def _apply_store_override(
        self, thread_id: str, vector_store_ids: list[str],
    ) -> None:
        # Runs cannot carry tool_resources; the thread is single-use, so
        # scoping the stores to it scopes them to this run.
        with _upstream_errors():
            await self._client.beta.threads.update(
                thread_id,
                tool_resources=_file_search_resources(vector_store_ids),
            )

    async def create_run(
        self,
        thread_id: str,
        assistant_id: str,
        vector_store_ids: list[str] | None = None,
    ) -> RunSnapshot:
        kwargs: dict = {"thread_id": thread_id, "assistant_id": assistant_id}
        if vector_store_ids:
            await self._apply_store_override(thread_id, vector_store_ids)
            kwargs["tools"] = [{"type": "file_search"}]

        with _upstream_errors():
            run = await self._client.beta.threads.runs.create(**kwargs)
        return _convert_run(run)

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        with _upstream_errors():
            run = await self._client.beta.threads.runs.retrieve(
                run_id=run_id, thread_id=thread_id,
            )
        return _convert_run(run)

    async def submit_tool_outputs(
        self,
        thread_id: str,
        run_id: str,
        outputs: list[dict[str, str]],
    ) -> RunSnapshot:
        with _upstream_errors():
            run = await self._client.beta.threads.runs.submit_tool_outputs(
                run_id=run_id, thread_id=thread_id, tool_outputs=outputs,
            )
        return _convert_run(run)

    async def stream_run(
        self,
        thread_id: str,
        assistant_id: str,
        vector_store_ids: list[str] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs: dict = {"thread_id": thread_id, "assistant_id": assistant_id}
        if vector_store_ids:
            await self._apply_store_override(thread_id, vector_store_ids)
            kwargs["tools"] = [{"type": "file_search"}]

        with _upstream_errors():
            async with self._client.beta.threads.runs.stream(**kwargs) as stream:
                async for event in stream:
                    converted = _convert_stream_event(event)
                    if converted is not None:
                        yield converted

    # --- Files & vector stores -------------------------------------------

    async def file_display_name(self, file_id: str) -> str:
        with _upstream_errors():
            file = await self._client.files.retrieve(file_id)
        return file.filename or ""

    async def list_vector_stores(
        self, after: str | None = None, limit: int = 100,
    ) -> VectorStorePage:
        kwargs: dict = {"limit": limit}
        if after:
            kwargs["after"] = after

        with _upstream_errors():
            page = await self._client.vector_stores.list(**kwargs)

        stores = [
            VectorStoreInfo(
                id=vs.id,
                name=vs.name or "",
                file_count=vs.file_counts.completed if vs.file_counts else 0,
            )
            for vs in page.data
        ]
        return VectorStorePage(
            stores=stores,
            has_more=bool(getattr(page, "has_more", False)),
            last_id=stores[-1].id if stores else None,
        )


# Terminal run events other than completion. requires_action also ends
# the stream: the run pauses waiting for tool outputs.
_STREAM_FAILURES = {
    "thread.run.failed": "failed",
    "thread.run.incomplete": "incomplete",
    "thread.run.expired": "expired",
    "thread.run.cancelling": "cancelling",
    "thread.run.cancelled": "cancelled",
    "thread.run.requires_action": "requires_action",
}


def _stream_failure_reason(run: Any) -> str | None:
    last_error = getattr(run, "last_error", None)
    if last_error is not None:
        return last_error.message
    details = getattr(run, "incomplete_details", None)
    if details is not None:
        return details.reason
    return None


def _convert_stream_event(event: Any) -> StreamEvent | None:
    """Map an SDK stream event to a StreamEvent, or None to skip it."""
    name = event.event

    if name == "thread.message.delta":
        parts = []
        for block in event.data.delta.content or []:
            if block.type == "text" and block.text is not None:
                parts.append(block.text.value or "")
        text = "".join(parts)
        return StreamEvent(StreamEventKind.DELTA, text=text) if text else None

    if name == "thread.message.completed":
        message = _convert_message(event.data)
        return StreamEvent(
            StreamEventKind.MESSAGE_DONE,
            text=message.text,
            annotations=message.annotations,
        )

    if name in _STREAM_FAILURES:
        return StreamEvent(
            StreamEventKind.RUN_FAILED,
            error=_stream_failure_reason(event.data),
            status=_STREAM_FAILURES[name],
        )

    if name == "thread.run.completed":
        return StreamEvent(StreamEventKind.RUN_COMPLETED)

    if name == "error":
        raise TransportError(str(event.data))

    return None


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_backend: OpenAIAssistantBackend | None = None


def get_assistant_backend() -> OpenAIAssistantBackend:
    """
    Return the process-wide backend.

    The AsyncOpenAI client manages its own connection pool, so a single
    instance is shared by every request.
    """
    global _backend
    if _backend is None:
        _backend = OpenAIAssistantBackend()
    return _backend
