# =============================================================================
# Unit Tests — OpenAI Backend Boundary
# =============================================================================
#
# The SDK conversion helpers are exercised with stand-in SDK objects, so no
# client or network is needed.
#
# Test groups:
#   1. Stream event conversion (terminal run events)
#   2. SDK error translation
# =============================================================================

from __future__ import annotations

from types import SimpleNamespace

import httpx
import openai
import pytest

from citesearch.errors import SearchError, TransportError
from citesearch.services.llm import (
    StreamEventKind,
    _convert_stream_event,
    _upstream_errors,
)

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/threads/runs")


def _run_event(name: str, last_error=None, incomplete_details=None):
    data = SimpleNamespace(
        id="run_1", status=name.rsplit(".", 1)[-1],
        last_error=last_error, incomplete_details=incomplete_details,
    )
    return SimpleNamespace(event=name, data=data)


# ---------------------------------------------------------------------------
# 1. Stream events
# ---------------------------------------------------------------------------


class TestConvertStreamEvent:

    @pytest.mark.parametrize("name,status", [
        ("thread.run.failed", "failed"),
        ("thread.run.incomplete", "incomplete"),
        ("thread.run.expired", "expired"),
        ("thread.run.cancelled", "cancelled"),
        ("thread.run.requires_action", "requires_action"),
    ])
    def test_non_completed_terminal_events_are_failures(self, name, status):
        event = _convert_stream_event(_run_event(name))

        assert event is not None
        assert event.kind == StreamEventKind.RUN_FAILED
        assert event.status == status

    def test_incomplete_reason_carried(self):
        event = _convert_stream_event(_run_event(
            "thread.run.incomplete",
            incomplete_details=SimpleNamespace(reason="max_completion_tokens"),
        ))
        assert event.error == "max_completion_tokens"

    def test_failed_error_message_carried(self):
        event = _convert_stream_event(_run_event(
            "thread.run.failed",
            last_error=SimpleNamespace(code="server_error", message="model exploded"),
        ))
        assert event.error == "model exploded"

    def test_completed(self):
        event = _convert_stream_event(_run_event("thread.run.completed"))
        assert event.kind == StreamEventKind.RUN_COMPLETED

    def test_progress_events_skipped(self):
        assert _convert_stream_event(_run_event("thread.run.in_progress")) is None
        assert _convert_stream_event(_run_event("thread.run.step.created")) is None


# ---------------------------------------------------------------------------
# 2. Error translation
# ---------------------------------------------------------------------------


class TestUpstreamErrors:

    def test_server_error_becomes_search_error(self):
        response = httpx.Response(503, request=REQUEST)

        with pytest.raises(SearchError) as exc_info:
            with _upstream_errors():
                raise openai.InternalServerError("upstream overloaded", response=response, body=None)

        error = exc_info.value
        assert isinstance(error, TransportError)
        assert error.reason == "upstream"
        assert error.message_key == "generic"
        assert "503" in error.detail

    def test_rate_limit(self):
        response = httpx.Response(429, request=REQUEST)

        with pytest.raises(TransportError) as exc_info:
            with _upstream_errors():
                raise openai.RateLimitError("slow down", response=response, body=None)

        assert exc_info.value.message_key == "rate_limited"

    def test_connection_error(self):
        with pytest.raises(TransportError) as exc_info:
            with _upstream_errors():
                raise openai.APIConnectionError(request=REQUEST)

        assert exc_info.value.message_key == "network"

    def test_other_exceptions_propagate(self):
        with pytest.raises(KeyError):
            with _upstream_errors():
                raise KeyError("file-a")
