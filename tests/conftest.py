# =============================================================================
# Shared Test Fixtures — In-Memory Assistant Backend
# =============================================================================
#
# FakeAssistantBackend implements the AssistantBackend protocol without any
# network access. Tests script it by setting attributes:
#
#   statuses        run statuses returned by successive retrieve_run()
#                   calls (the last one repeats)
#   answer          the message latest_message() returns
#   stores          vector store listing, served `page_size` at a time
#   stream_events   events yielded by stream_run()
#   run_gate        when set, create_run()/stream_run() wait on it
#
# Every call is counted in `calls` so tests can assert on upstream traffic.
# =============================================================================

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field

import pytest

from citesearch.config import Settings
from citesearch.services.llm import (
    AssistantHandle,
    AssistantMessage,
    RunSnapshot,
    StreamEvent,
    StreamEventKind,
    ToolCall,
    VectorStoreInfo,
    VectorStorePage,
)
from citesearch.services.runs import PollSchedule

# Zero-delay schedule: polling logic is exercised without waiting.
INSTANT = PollSchedule(
    initial_delay=0.0,
    fast_interval=0.0,
    mid_ceiling=0.0,
    max_interval=0.0,
    max_attempts=60,
)


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@dataclass
class FakeAssistantBackend:
    statuses: list[str] = field(default_factory=lambda: ["completed"])
    answer: AssistantMessage | None = field(
        default_factory=lambda: AssistantMessage(role="assistant", text="An answer.")
    )
    stores: list[VectorStoreInfo] = field(default_factory=list)
    page_size: int = 100
    file_names: dict[str, str] = field(default_factory=dict)
    stream_events: list[StreamEvent] | None = None
    stream_error: Exception | None = None
    run_gate: asyncio.Event | None = None
    create_failures: int = 0
    invalid_assistants: set[str] = field(default_factory=set)

    calls: Counter = field(default_factory=Counter)
    messages: list[tuple[str, str]] = field(default_factory=list)
    run_overrides: list[list[str] | None] = field(default_factory=list)
    tool_outputs: list[list[dict[str, str]]] = field(default_factory=list)
    created: list[dict] = field(default_factory=list)

    _status_index: int = 0

    # --- Assistants -------------------------------------------------------

    async def create_assistant(
        self, model, name, instructions, vector_store_ids=None,
    ) -> AssistantHandle:
        self.calls["create_assistant"] += 1
        await asyncio.sleep(0)
        if self.create_failures > 0:
            self.create_failures -= 1
            raise RuntimeError("assistant service unavailable")
        self.created.append({
            "model": model, "name": name, "vector_store_ids": vector_store_ids,
        })
        return AssistantHandle(
            id=f"asst_{self.calls['create_assistant']}",
            model=model,
            instructions=instructions,
            vector_store_ids=tuple(vector_store_ids or ()),
        )

    async def retrieve_assistant(self, assistant_id: str) -> None:
        self.calls["retrieve_assistant"] += 1
        if assistant_id in self.invalid_assistants:
            raise RuntimeError(f"No assistant found with id '{assistant_id}'")

    # --- Threads & runs ---------------------------------------------------

    async def create_thread(self) -> str:
        self.calls["create_thread"] += 1
        return f"thread_{self.calls['create_thread']}"

    async def add_message(self, thread_id: str, content: str) -> None:
        self.calls["add_message"] += 1
        self.messages.append((thread_id, content))

    async def create_run(self, thread_id, assistant_id, vector_store_ids=None) -> RunSnapshot:
        self.calls["create_run"] += 1
        self.run_overrides.append(vector_store_ids)
        if self.run_gate is not None:
            await self.run_gate.wait()
        return RunSnapshot(
            id=f"run_{self.calls['create_run']}", thread_id=thread_id, status="queued",
        )

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        self.calls["retrieve_run"] += 1
        return self._snapshot(thread_id, run_id)

    async def submit_tool_outputs(self, thread_id, run_id, outputs) -> RunSnapshot:
        self.calls["submit_tool_outputs"] += 1
        self.tool_outputs.append(outputs)
        return self._snapshot(thread_id, run_id)

    def _snapshot(self, thread_id: str, run_id: str) -> RunSnapshot:
        status = self.statuses[min(self._status_index, len(self.statuses) - 1)]
        self._status_index += 1
        return RunSnapshot(
            id=run_id,
            thread_id=thread_id,
            status=status,
            last_error="model exploded" if status == "failed" else None,
            tool_calls=[ToolCall(id="call_1", name="file_search")]
            if status == "requires_action" else [],
        )

    async def latest_message(self, thread_id: str) -> AssistantMessage | None:
        self.calls["latest_message"] += 1
        return self.answer

    async def stream_run(self, thread_id, assistant_id, vector_store_ids=None):
        self.calls["stream_run"] += 1
        self.run_overrides.append(vector_store_ids)
        if self.run_gate is not None:
            await self.run_gate.wait()
        events = self.stream_events
        if events is None:
            text = self.answer.text if self.answer else ""
            events = [
                StreamEvent(StreamEventKind.DELTA, text=text[: len(text) // 2]),
                StreamEvent(StreamEventKind.DELTA, text=text[len(text) // 2:]),
                StreamEvent(StreamEventKind.RUN_COMPLETED),
            ]
        for event in events:
            await asyncio.sleep(0)
            yield event
        if self.stream_error is not None:
            raise self.stream_error

    # --- Files & vector stores --------------------------------------------

    async def file_display_name(self, file_id: str) -> str:
        self.calls["file_display_name"] += 1
        if file_id not in self.file_names:
            raise KeyError(file_id)
        return self.file_names[file_id]

    async def list_vector_stores(self, after=None, limit=100) -> VectorStorePage:
        self.calls["list_vector_stores"] += 1
        start = 0
        if after is not None:
            start = next(i for i, s in enumerate(self.stores) if s.id == after) + 1
        size = min(limit, self.page_size)
        chunk = self.stores[start:start + size]
        return VectorStorePage(
            stores=chunk,
            has_more=start + size < len(self.stores),
            last_id=chunk[-1].id if chunk else None,
        )


class RecordingSink:
    """StreamSink that records every callback in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []

    async def on_delta(self, text):
        self.events.append(("delta", text))

    async def on_sources(self, sources):
        self.events.append(("sources", list(sources)))

    async def on_final(self, answer):
        self.events.append(("final", answer))

    async def on_done(self):
        self.events.append(("done", None))

    async def on_error(self, error):
        self.events.append(("error", error))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]

    def payload(self, kind: str):
        return next(value for k, value in self.events if k == kind)


AUTHORS = {
    "Herman Bavinck (1854-1921)": "赫爾曼·巴文克",
    "Louis Berkhof (1873-1957)": "路易·伯克富",
    "Charles Haddon Spurgeon": "查爾斯·司布真",
    "Spurgeon": "司布真",
}


@pytest.fixture
def backend() -> FakeAssistantBackend:
    return FakeAssistantBackend()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        vector_store_id="vs_default",
        warmup_enabled=False,
        run_initial_delay_seconds=0.0,
        run_fast_poll_seconds=0.0,
        run_max_poll_seconds=0.0,
        assistant_retry_delay_seconds=0.0,
        assistant_retry_max_delay_seconds=0.0,
        result_cache_backend="memory",
        result_cache_ttl_seconds=60.0,
    )
