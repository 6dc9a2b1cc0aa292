# =============================================================================
# API Tests — FastAPI Routes over the Fake Backend
# =============================================================================
#
# The app is built with create_app() around an engine wired to the
# in-memory backend, so no OpenAI key or network is needed.
#
# Test groups:
#   1. POST /ask (success, validation, error mapping)
#   2. POST /ask/stream (SSE framing, error event)
#   3. GET /health, /info, /config/author-translations
# =============================================================================

from __future__ import annotations

import json
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from citesearch.config import Settings
from citesearch.errors import TransportError, template
from citesearch.main import create_app
from citesearch.services.llm import Annotation, AssistantMessage, VectorStoreInfo
from citesearch.services.search import build_coordinator
from conftest import AUTHORS, FakeAssistantBackend

ANSWER = AssistantMessage(
    role="assistant",
    text="Herman Bavinck taught that grace restores nature【4:0†source】.",
    annotations=[Annotation(text="【4:0†source】", file_id="file-a", quote="grace restores nature")],
)


def _client(settings: Settings, backend: FakeAssistantBackend | None = None) -> TestClient:
    backend = backend or FakeAssistantBackend(
        answer=ANSWER,
        file_names={"file-a": "Reformed Dogmatics.pdf"},
        stores=[VectorStoreInfo(id="vs_genesis", name="Bible-Genesis", file_count=2)],
    )
    app = create_app(
        settings=settings,
        coordinator=build_coordinator(settings, backend, AUTHORS),
        author_table=AUTHORS,
    )
    return TestClient(app)


def _events(body: str) -> list[tuple[str, object]]:
    """Parse an SSE body into (event, data) pairs."""
    events = []
    for frame in body.strip().split("\n\n"):
        fields = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((fields["event"], json.loads(fields["data"])))
    return events


# ---------------------------------------------------------------------------
# 1. POST /ask
# ---------------------------------------------------------------------------


class TestAskEndpoint:

    def test_success(self, test_settings):
        with _client(test_settings) as client:
            response = client.post("/ask", json={"question": "What is grace?", "language": "zh"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["answer"] == "赫爾曼·巴文克 taught that grace restores nature[1]."
        assert body["data"]["sources"][0]["display_name"] == "Reformed Dogmatics"
        assert body["data"]["sources"][0]["index"] == 1

    def test_topic_routing(self, test_settings):
        backend = FakeAssistantBackend(
            stores=[VectorStoreInfo(id="vs_genesis", name="Bible-Genesis", file_count=2)],
        )
        with _client(test_settings, backend) as client:
            response = client.post(
                "/ask", json={"question": "Day one?", "language": "en", "topic": "Bible-Genesis"},
            )

        assert response.status_code == 200
        assert response.json()["data"]["topic"] == "Bible-Genesis"
        assert backend.run_overrides == [["vs_genesis"]]

    def test_blank_question_rejected(self, test_settings):
        with _client(test_settings) as client:
            response = client.post("/ask", json={"question": "   "})
        assert response.status_code == 422

    def test_missing_question_rejected(self, test_settings):
        with _client(test_settings) as client:
            response = client.post("/ask", json={"language": "zh"})
        assert response.status_code == 422

    def test_unknown_topic_is_404_with_friendly_message(self, test_settings):
        with _client(test_settings) as client:
            response = client.post("/ask", json={"question": "q", "topic": "Astrophysics"})

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"] == template("topic_not_found", "zh")
        assert body["details"] is None
        assert body["retry"] is True

    def test_debug_mode_includes_details(self, test_settings):
        settings = test_settings.model_copy(update={"debug": True})
        with _client(settings) as client:
            response = client.post("/ask", json={"question": "q", "topic": "Astrophysics"})

        assert "Astrophysics" in response.json()["details"]

    def test_failed_run_is_502(self, test_settings):
        backend = FakeAssistantBackend(statuses=["failed"])
        with _client(test_settings, backend) as client:
            response = client.post("/ask", json={"question": "q", "language": "en"})

        assert response.status_code == 502
        assert response.json()["error"] == template("run_failed", "en")
        assert "model exploded" not in response.text

    def test_timeout_is_504(self, test_settings):
        settings = test_settings.model_copy(update={"run_max_attempts": 3})
        backend = FakeAssistantBackend(statuses=["in_progress"])
        with _client(settings, backend) as client:
            response = client.post("/ask", json={"question": "q"})

        assert response.status_code == 504
        assert response.json()["error"] == template("timeout", "zh")

    def test_creation_failure_is_503(self, test_settings):
        backend = FakeAssistantBackend(create_failures=3)
        with _client(test_settings, backend) as client:
            response = client.post("/ask", json={"question": "q"})

        assert response.status_code == 503
        assert response.json()["error"] == template("creation", "zh")

    def test_upstream_http_error_is_502_on_both_paths(self, test_settings):
        backend = FakeAssistantBackend()
        backend.add_message = AsyncMock(side_effect=TransportError("HTTP 503", reason="upstream"))
        with _client(test_settings, backend) as client:
            polled = client.post("/ask", json={"question": "q", "language": "en"})
            streamed = client.post("/ask/stream", json={"question": "q2", "language": "en"})

        assert polled.status_code == 502
        assert polled.json()["error"] == template("generic", "en")
        assert _events(streamed.text) == [("error", polled.json())]

    def test_unconfigured_service_is_503(self, test_settings):
        app = create_app(settings=test_settings)
        client = TestClient(app)
        response = client.post("/ask", json={"question": "q"})
        assert response.status_code == 503


# ---------------------------------------------------------------------------
# 2. POST /ask/stream
# ---------------------------------------------------------------------------


class TestAskStreamEndpoint:

    def test_event_sequence(self, test_settings):
        with _client(test_settings) as client:
            response = client.post("/ask/stream", json={"question": "What is grace?"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _events(response.text)
        names = [name for name, _ in events]
        assert names[-3:] == ["sources", "final", "done"]
        assert set(names[:-3]) == {"delta"}

        final = dict(events)["final"]
        assert final["answer"] == "赫爾曼·巴文克 taught that grace restores nature[1]."
        assert dict(events)["sources"][0]["display_name"] == "Reformed Dogmatics"

    def test_stream_and_ask_agree(self, test_settings):
        with _client(test_settings) as client:
            streamed = _events(client.post(
                "/ask/stream", json={"question": "What is grace?", "language": "en"},
            ).text)
            polled = client.post("/ask", json={"question": "What is grace?", "language": "en"})

        assert dict(streamed)["final"]["answer"] == polled.json()["data"]["answer"]

    def test_error_event(self, test_settings):
        with _client(test_settings) as client:
            response = client.post(
                "/ask/stream", json={"question": "q", "language": "en", "topic": "Astrophysics"},
            )

        events = _events(response.text)
        assert [name for name, _ in events] == ["error"]
        assert events[0][1]["error"] == template("topic_not_found", "en")
        assert events[0][1]["success"] is False


# ---------------------------------------------------------------------------
# 3. Service endpoints
# ---------------------------------------------------------------------------


class TestServiceEndpoints:

    def test_health_ok(self, test_settings):
        with _client(test_settings) as client:
            body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["services"]["openai"] is True
        assert body["services"]["vector_store"] is True
        assert body["warnings"] == []

    def test_health_warns_without_credentials(self):
        settings = Settings(_env_file=None, openai_api_key="", vector_store_id=None, warmup_enabled=False)
        client = TestClient(create_app(settings=settings))

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "warning"
        assert body["services"] == {"openai": False, "vector_store": False, "assistant": False}
        assert len(body["warnings"]) == 2

    def test_health_reports_warm_assistant(self, test_settings):
        with _client(test_settings) as client:
            client.post("/ask", json={"question": "What is grace?"})
            body = client.get("/health").json()
        assert body["services"]["assistant"] is True

    def test_info(self, test_settings):
        with _client(test_settings) as client:
            body = client.get("/info").json()
        assert body["version"] == test_settings.app_version
        assert body["vector_store"] == "configured"

    def test_author_translations(self, test_settings):
        with _client(test_settings) as client:
            body = client.get("/config/author-translations").json()
        assert body["authors"]["Herman Bavinck (1854-1921)"] == "赫爾曼·巴文克"
