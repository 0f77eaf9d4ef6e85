# =============================================================================
# API Tests — FastAPI Routes with Injected Fakes
# =============================================================================
#
# Every collaborator is swapped via app.dependency_overrides: a scripted
# LLM, a fresh in-memory store and a recording ingestor. No API key,
# database or Celery broker is needed.
#
# Test groups:
#   1. Health
#   2. Prefilter
#   3. Respond (SSE)
#   4. Identity extraction
#   5. Papers
#   6. Conversations (restore, clear, clear & refresh)
#   7. Document scan
# =============================================================================

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from marginalia.api.deps import get_ingestor, get_kv_store, get_llm, get_prefilter_llm
from marginalia.config import settings
from marginalia.main import app
from marginalia.models.domain import Paper, PaperStatus
from marginalia.services.llm import LLMError
from marginalia.services.store import InMemoryStore

from fakes import FakeLLM, Script, failing_stream, make_paper


class RecordingIngestor:
    def __init__(self) -> None:
        self.submitted: list[str] = []

    def submit(self, paper_id: str) -> None:
        self.submitted.append(paper_id)


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def ingestor():
    return RecordingIngestor()


@pytest.fixture
def client(llm, store, ingestor):
    app.dependency_overrides[get_llm] = lambda: llm
    app.dependency_overrides[get_prefilter_llm] = lambda: llm
    app.dependency_overrides[get_kv_store] = lambda: store
    app.dependency_overrides[get_ingestor] = lambda: ingestor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _sse_events(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


def _wire(*papers: Paper) -> list[dict]:
    return [paper.to_wire() for paper in papers]


# ---------------------------------------------------------------------------
# 1. Health
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["store"] == settings.store_backend


# ---------------------------------------------------------------------------
# 2. Prefilter
# ---------------------------------------------------------------------------


class TestPrefilterEndpoint:
    def test_returns_engagements(self, client, llm):
        llm.default_completion = '[{"sourceId": "b", "type": "challenges", "angle": "x"}]'
        response = client.post(
            "/agents/prefilter",
            json={"passage": "Passage.", "candidatePapers": _wire(make_paper("a"), make_paper("b"))},
        )
        assert response.status_code == 200
        assert response.json() == {
            "engagements": [{"sourceId": "b", "type": "challenges", "angle": "x"}],
        }

    def test_malformed_model_output_is_empty(self, client, llm):
        llm.default_completion = "I think paper b, maybe."
        response = client.post(
            "/agents/prefilter",
            json={"passage": "Passage.", "candidatePapers": _wire(make_paper("b"))},
        )
        assert response.status_code == 200
        assert response.json() == {"engagements": []}

    def test_missing_input_is_400(self, client):
        response = client.post("/agents/prefilter", json={"passage": "Passage."})
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing passage or candidate papers"

    def test_provider_failure_is_500(self, client, llm):
        llm.complete_error = LLMError("boom")
        response = client.post(
            "/agents/prefilter",
            json={"passage": "Passage.", "candidatePapers": _wire(make_paper("a"))},
        )
        assert response.status_code == 500

    def test_conversation_reference_caches(self, client, llm):
        llm.default_completion = '["a"]'
        body = {
            "passage": "Passage.",
            "candidatePapers": _wire(make_paper("a")),
            "conversation": {"workspaceId": "ws", "activePaperId": "t", "paragraphIndex": 2},
        }
        first = client.post("/agents/prefilter", json=body)
        second = client.post("/agents/prefilter", json=body)
        refreshed = client.post("/agents/prefilter", json={**body, "refresh": True})
        assert first.json() == second.json() == refreshed.json()
        assert len(llm.complete_calls) == 2


# ---------------------------------------------------------------------------
# 3. Respond (SSE)
# ---------------------------------------------------------------------------


class TestRespondEndpoint:
    def test_streams_events_then_complete(self, client, llm):
        llm.scripts = {"Paper a": Script(chunks=["This ", "text."]), "Paper b": failing_stream()}
        response = client.post(
            "/agents/respond",
            json={"passage": "Passage.", "targetPapers": _wire(make_paper("a"), make_paper("b"))},
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = _sse_events(response.text)
        assert events[-1] == {"type": "complete"}
        terminal = {e["sourceId"]: e for e in events if e["type"] in ("done", "error")}
        assert terminal["a"] == {"type": "done", "sourceId": "a"}
        assert terminal["b"] == {
            "type": "error",
            "sourceId": "b",
            "content": "Failed to generate response",
        }
        chunks = [e["content"] for e in events if e["type"] == "chunk" and e["sourceId"] == "a"]
        assert "".join(chunks) == "This text."

    def test_paper_ids_narrow_targets(self, client, llm):
        response = client.post(
            "/agents/respond",
            json={
                "passage": "Passage.",
                "targetPapers": _wire(make_paper("a"), make_paper("b")),
                "paperIds": ["b"],
            },
        )
        started = [e["sourceId"] for e in _sse_events(response.text) if e["type"] == "start"]
        assert started == ["b"]

    def test_unknown_paper_id_is_404(self, client):
        response = client.post(
            "/agents/respond",
            json={"passage": "Passage.", "targetPapers": _wire(make_paper("a")), "paperIds": ["zzz"]},
        )
        assert response.status_code == 404
        assert "zzz" in response.json()["detail"]

    def test_missing_targets_is_400(self, client):
        response = client.post("/agents/respond", json={"passage": "Passage.", "targetPapers": []})
        assert response.status_code == 400

    def test_conversation_history_applies_to_targets(self, client, llm):
        client.post(
            "/agents/respond",
            json={
                "passage": "Passage.",
                "targetPapers": _wire(make_paper("a")),
                "conversationHistory": [{"question": None, "response": "Earlier."}],
                "question": "And now?",
            },
        )
        prompt = llm.stream_calls[0].prompt
        assert 'Previous response: "Earlier."' in prompt
        assert prompt.endswith("NEW QUESTION: And now?")

    def test_conversation_reference_persists_exchange(self, client, llm):
        llm.scripts = {"Paper a": Script(chunks=["Stored reply."])}
        ref = {"workspaceId": "ws", "activePaperId": "t", "paragraphIndex": 4}
        client.post(
            "/agents/respond",
            json={
                "passage": "Passage.",
                "targetPapers": _wire(make_paper("a")),
                "question": "Why?",
                "conversation": ref,
            },
        )

        response = client.get("/workspaces/ws/papers/t/paragraphs/4/conversation")
        assert response.status_code == 200
        [exchange] = response.json()["exchanges"]
        assert exchange["question"] == "Why?"
        assert exchange["responses"][0]["paperId"] == "a"
        assert exchange["responses"][0]["content"] == "Stored reply."


# ---------------------------------------------------------------------------
# 4. Identity Extraction
# ---------------------------------------------------------------------------


class TestIdentityEndpoint:
    def test_extracts_identity_and_metadata(self, client, llm):
        llm.completions = ['{"title": "X", "coreCommitments": "Beliefs.", "year": null}']
        response = client.post("/identity/extract", json={"text": "Body."})
        assert response.status_code == 200
        body = response.json()
        assert body["metadata"] == {"title": "X", "author": None, "year": None}
        assert body["identityLayer"]["coreCommitments"] == "Beliefs."
        assert body["identityLayer"]["raw"].startswith("CORE COMMITMENTS:\nBeliefs.")

    def test_no_text_is_400(self, client):
        response = client.post("/identity/extract", json={"text": "  "})
        assert response.status_code == 400
        assert response.json()["detail"] == "No text provided"

    def test_unparseable_response_is_500(self, client, llm):
        llm.completions = ["no json"]
        response = client.post("/identity/extract", json={"text": "Body."})
        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to parse identity layer from response"

    def test_missing_credentials_is_503(self, client):
        app.dependency_overrides.pop(get_llm)
        with patch(
            "marginalia.api.deps.get_llm_provider",
            side_effect=ValueError("No API key configured"),
        ):
            response = client.post("/identity/extract", json={"text": "Body."})
        assert response.status_code == 503
        assert response.json()["detail"].startswith("Service configuration error")


# ---------------------------------------------------------------------------
# 5. Papers
# ---------------------------------------------------------------------------


class TestPapersEndpoint:
    def test_text_paper_is_accepted_and_submitted(self, client, ingestor):
        response = client.post(
            "/papers/text",
            json={"text": "First paragraph.\n\nSecond paragraph.", "author": "Noble"},
        )
        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "processing"
        assert body["title"] == "Untitled"
        assert [p["content"] for p in body["paragraphs"]] == [
            "First paragraph.",
            "Second paragraph.",
        ]
        assert ingestor.submitted == [body["id"]]

        fetched = client.get(f"/papers/{body['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["author"] == "Noble"

    def test_unknown_paper_is_404(self, client):
        assert client.get("/papers/nope").status_code == 404
        assert client.post("/papers/nope/retry").status_code == 404

    def test_retry_requires_text(self, client, store, ingestor):
        paper = Paper(title="Scan", status=PaperStatus.ERROR, error_message="No text")
        client.portal.call(store.put, f"papers:{paper.id}", paper.to_wire())

        response = client.post(f"/papers/{paper.id}/retry")
        assert response.status_code == 409
        assert ingestor.submitted == []

    def test_retry_resets_status(self, client, store, ingestor):
        paper = Paper(
            title="T", full_text="Body.", status=PaperStatus.ERROR, error_message="boom",
        )
        client.portal.call(store.put, f"papers:{paper.id}", paper.to_wire())

        response = client.post(f"/papers/{paper.id}/retry")
        assert response.status_code == 202
        assert response.json()["status"] == "processing"
        assert response.json()["errorMessage"] is None
        assert ingestor.submitted == [paper.id]

    def test_pdf_upload_queues_ingestion(self, client, tmp_path):
        task = MagicMock()
        task.delay.return_value.id = "task-1"
        with (
            patch("marginalia.api.papers.ingest_paper", task),
            patch.object(settings, "upload_dir", str(tmp_path)),
        ):
            response = client.post(
                "/papers",
                files={"file": ("paper.pdf", b"%PDF-1.4 fake", "application/pdf")},
                data={"author": "Noble"},
            )

        assert response.status_code == 202
        paper_id = response.json()["id"]
        saved = tmp_path / f"{paper_id}_paper.pdf"
        assert saved.read_bytes() == b"%PDF-1.4 fake"
        task.delay.assert_called_once_with(paper_id=paper_id, file_path=str(saved))

    def test_non_pdf_upload_is_400(self, client):
        response = client.post(
            "/papers",
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# 6. Conversations
# ---------------------------------------------------------------------------


class TestConversationsEndpoint:
    def _discuss(self, client, paragraph_index, *papers):
        client.post(
            "/agents/respond",
            json={
                "passage": f"Passage {paragraph_index}.",
                "targetPapers": _wire(*papers),
                "conversation": {
                    "workspaceId": "ws",
                    "activePaperId": "t",
                    "paragraphIndex": paragraph_index,
                },
            },
        )

    def test_restore_lists_conversations_and_responders(self, client):
        self._discuss(client, 1, make_paper("a"))
        self._discuss(client, 0, make_paper("b"))

        response = client.get("/workspaces/ws/papers/t/conversations")
        assert response.status_code == 200
        body = response.json()
        assert [c["paragraphIndex"] for c in body["conversations"]] == [0, 1]
        assert body["engagements"]["1"][0]["sourceId"] == "a"
        assert body["engagements"]["1"][0]["type"] == "contextualizes"

    def test_missing_conversation_is_404(self, client):
        assert client.get("/workspaces/ws/papers/t/paragraphs/9/conversation").status_code == 404

    def test_clear(self, client):
        self._discuss(client, 2, make_paper("a"))
        response = client.delete("/workspaces/ws/papers/t/paragraphs/2/conversation")
        assert response.status_code == 204
        assert client.get("/workspaces/ws/papers/t/paragraphs/2/conversation").status_code == 404

    def test_clear_and_refresh(self, client, llm):
        self._discuss(client, 2, make_paper("a"))
        llm.completions = ['[{"sourceId": "a", "type": "reframes", "angle": "new frame"}]']

        response = client.post(
            "/workspaces/ws/papers/t/paragraphs/2/refresh",
            json={"passage": "Passage 2.", "candidatePapers": _wire(make_paper("a"))},
        )
        assert response.status_code == 200
        assert response.json()["engagements"][0]["type"] == "reframes"
        assert client.get("/workspaces/ws/papers/t/paragraphs/2/conversation").status_code == 404

        restored = client.get("/workspaces/ws/papers/t/conversations").json()
        assert restored["engagements"]["2"][0]["angle"] == "new frame"

    def test_refresh_provider_failure_is_500(self, client, llm):
        llm.complete_error = LLMError("down")
        response = client.post(
            "/workspaces/ws/papers/t/paragraphs/0/refresh",
            json={"passage": "Passage.", "candidatePapers": _wire(make_paper("a"))},
        )
        assert response.status_code == 500


# ---------------------------------------------------------------------------
# 7. Document Scan
# ---------------------------------------------------------------------------


SCAN_PARAGRAPHS = [
    {"type": "h1", "content": "Title"},
    {"content": "Body one."},
    {"type": "h2", "content": "Section"},
    {"content": "Body two."},
]


class TestScanEndpoint:
    def test_scans_body_paragraphs_once(self, client, llm):
        llm.default_completion = '[{"sourceId": "a", "type": "challenges", "angle": "disputes it"}]'
        payload = {"paragraphs": SCAN_PARAGRAPHS, "candidatePapers": _wire(make_paper("a"))}

        first = client.post("/workspaces/ws/papers/t/scan", json=payload)
        second = client.post("/workspaces/ws/papers/t/scan", json=payload)

        assert first.status_code == 200
        engagements = first.json()["engagements"]
        assert sorted(engagements) == ["1", "3"]
        assert engagements["3"][0]["sourceId"] == "a"
        assert second.json() == first.json()
        assert len(llm.complete_calls) == 2

    def test_failed_paragraphs_are_left_out(self, client, llm):
        llm.complete_error = LLMError("down")
        response = client.post(
            "/workspaces/ws/papers/t/scan",
            json={"paragraphs": SCAN_PARAGRAPHS, "candidatePapers": _wire(make_paper("a"))},
        )
        assert response.status_code == 200
        assert response.json()["engagements"] == {}

    def test_missing_paragraphs_is_400(self, client):
        response = client.post("/workspaces/ws/papers/t/scan", json={"paragraphs": []})
        assert response.status_code == 400
