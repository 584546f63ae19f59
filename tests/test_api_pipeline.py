"""
Tests for the pipeline routes.

Tests cover:
- Error mapping (400 validation, 404 unknown deal / session, 409 resolve)
- Clarification listing, including sessions served from the store
- Bulk resolution response shape
- A full start -> pause -> resolve -> continue flow against a real service
- SSE framing of a finished session's event history
"""

import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import DEAL_ID, PL_CSV, ScriptedAnalyzer, make_request, make_structuring_result
from deal_extraction.api.auth import verify_api_token
from deal_extraction.api.routes.pipeline import router
from deal_extraction.clients.document_store import InMemoryDocumentStore
from deal_extraction.errors import DealNotFoundError, SessionNotFoundError, ValidationError
from deal_extraction.models.clarification import Clarification, ResolutionOutcome
from deal_extraction.pipeline.service import ExtractionPipelineService


def _make_app(service) -> FastAPI:
    """Build a test app around a service with auth disabled."""
    app = FastAPI()
    app.include_router(router)

    async def _noop_auth():
        return None

    app.dependency_overrides[verify_api_token] = _noop_auth
    app.state.service = service
    return app


def _make_clarification(**overrides) -> Clarification:
    fields = dict(
        session_id='s1',
        document_id='doc-1',
        field_path='revenue.total',
        field_label='Revenue Total',
        priority=9,
    )
    fields.update(overrides)
    return Clarification(**fields)


def _make_real_service():
    store = InMemoryDocumentStore()
    store.add_document(DEAL_ID, 'doc-1', 'pl.csv', PL_CSV)
    store.add_document(DEAL_ID, 'doc-2', 'census.csv', PL_CSV)
    analyzer = ScriptedAnalyzer(
        {'census.csv': make_structuring_result(clarifications=[make_request()])}
    )
    return ExtractionPipelineService(document_store=store, analyzer=analyzer), analyzer


def _wait_for_status(client, session_id, statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/extraction/pipeline/{session_id}").json()
        if body["status"] in statuses:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"Session stuck in {body['status']}")
        time.sleep(0.01)


def _sse_event_names(text: str) -> list[str]:
    return [line.removeprefix("event: ") for line in text.splitlines() if line.startswith("event: ")]


# =============================================================================
# Error mapping (mocked service)
# =============================================================================


class TestStartRoute:
    def test_validation_error_returns_400(self):
        service = MagicMock()
        service.start_pipeline = AsyncMock(
            side_effect=ValidationError("At least one document id is required")
        )
        client = TestClient(_make_app(service))

        resp = client.post(f"/deals/{DEAL_ID}/extraction/pipeline", json={"document_ids": []})

        assert resp.status_code == 400
        assert resp.json()["detail"] == "At least one document id is required"

    def test_unknown_deal_returns_404(self):
        service = MagicMock()
        service.start_pipeline = AsyncMock(side_effect=DealNotFoundError("Deal not found: d9"))
        client = TestClient(_make_app(service))

        resp = client.post("/deals/d9/extraction/pipeline", json={"document_ids": ["doc-1"]})

        assert resp.status_code == 404

    def test_missing_body_field_returns_422(self):
        client = TestClient(_make_app(MagicMock()))

        resp = client.post(f"/deals/{DEAL_ID}/extraction/pipeline", json={})

        assert resp.status_code == 422

    def test_options_passed_through(self):
        service = MagicMock()
        service.start_pipeline = AsyncMock(
            return_value=MagicMock(session_id="s1", deal_id=DEAL_ID, total_documents=1)
        )
        client = TestClient(_make_app(service))

        resp = client.post(
            f"/deals/{DEAL_ID}/extraction/pipeline",
            json={"document_ids": ["doc-1"], "options": {"pause_policy": "eager"}},
        )

        assert resp.status_code == 202
        assert resp.json()["events_url"] == "/extraction/pipeline/s1/events"
        options = service.start_pipeline.call_args.args[2]
        assert options.pause_policy.value == "eager"


class TestSessionRoutes:
    def test_unknown_session_returns_404(self):
        service = MagicMock()
        service.get_session.side_effect = SessionNotFoundError("Pipeline session not found: s9")
        service.continue_pipeline = AsyncMock(side_effect=SessionNotFoundError("gone"))
        service.cancel_pipeline.side_effect = SessionNotFoundError("gone")
        service.subscribe_to_progress.side_effect = SessionNotFoundError("gone")
        client = TestClient(_make_app(service))

        assert client.get("/extraction/pipeline/s9").status_code == 404
        assert client.post("/extraction/pipeline/s9/continue").status_code == 404
        assert client.post("/extraction/pipeline/s9/cancel").status_code == 404
        assert client.get("/extraction/pipeline/s9/events").status_code == 404

    def test_cancel(self):
        service = MagicMock()
        service.cancel_pipeline.return_value = True
        client = TestClient(_make_app(service))

        resp = client.post("/extraction/pipeline/s1/cancel")

        assert resp.json() == {"session_id": "s1", "cancelled": True}


class TestClarificationRoutes:
    def test_list_from_store_for_evicted_session(self):
        service = MagicMock()
        service.list_pending_clarifications = AsyncMock(
            return_value=[_make_clarification(), _make_clarification(priority=4)]
        )
        service.clarification_summary.side_effect = SessionNotFoundError("evicted")
        service.clarifications.blocking_threshold = 8
        client = TestClient(_make_app(service))

        body = client.get("/extraction/pipeline/s1/clarifications").json()

        assert body["total"] == 2
        assert body["high_priority_count"] == 1
        assert body["summary"] is None
        assert body["clarifications"][0]["field_path"] == "revenue.total"

    def test_list_unknown_session_returns_404(self):
        service = MagicMock()
        service.list_pending_clarifications = AsyncMock(
            side_effect=SessionNotFoundError("gone")
        )
        client = TestClient(_make_app(service))

        assert client.get("/extraction/pipeline/s9/clarifications").status_code == 404

    def test_rejected_resolution_returns_409(self):
        service = MagicMock()
        service.resolve_clarification = AsyncMock(return_value=False)
        client = TestClient(_make_app(service))

        resp = client.post(
            "/extraction/pipeline/s1/clarifications",
            json={"clarification_id": "c1", "resolved_value": 0.8},
        )

        assert resp.status_code == 409
        assert resp.json()["resolved"] is False

    def test_bulk_resolution_counts(self):
        service = MagicMock()
        service.resolve_clarifications_bulk = AsyncMock(
            return_value=[
                ResolutionOutcome(clarification_id="c1", success=True),
                ResolutionOutcome(clarification_id="c2", success=False, error="not found"),
            ]
        )
        service.clarifications.can_proceed.return_value = False
        client = TestClient(_make_app(service))

        resp = client.put(
            "/extraction/pipeline/s1/clarifications",
            json={
                "resolutions": [
                    {"clarification_id": "c1", "resolved_value": 1},
                    {"clarification_id": "c2", "resolved_value": "x"},
                ]
            },
        )

        body = resp.json()
        assert body["resolved"] == 1
        assert body["failed"] == 1
        assert body["can_proceed"] is False
        assert body["continue_result"] is None
        assert body["results"][1]["error"] == "not found"
        service.continue_pipeline.assert_not_called()


# =============================================================================
# Full flow (real service)
# =============================================================================


class TestPipelineFlow:
    @patch("deal_extraction.api.routes.pipeline.get_settings")
    def test_start_pause_resolve_continue(self, mock_settings):
        mock_settings.return_value = MagicMock(SSE_HEARTBEAT_SECONDS=1.0)
        service, analyzer = _make_real_service()

        with TestClient(_make_app(service)) as client:
            resp = client.post(
                f"/deals/{DEAL_ID}/extraction/pipeline",
                json={"document_ids": ["doc-1", "doc-2"]},
            )
            assert resp.status_code == 202
            session_id = resp.json()["session_id"]

            session = _wait_for_status(
                client, session_id, ("awaiting_clarifications", "complete", "error")
            )
            assert session["status"] == "awaiting_clarifications"
            assert session["cursor"] == 2

            listing = client.get(f"/extraction/pipeline/{session_id}/clarifications").json()
            assert listing["total"] == 1
            assert listing["high_priority_count"] == 1
            assert listing["summary"]["blocking"] == 1
            clarification_id = listing["clarifications"][0]["id"]

            blocked = client.post(f"/extraction/pipeline/{session_id}/continue").json()
            assert blocked["outcome"] == "blocked"
            assert blocked["continued"] is False
            assert blocked["blocking_clarification_ids"] == [clarification_id]

            resolved = client.post(
                f"/extraction/pipeline/{session_id}/clarifications",
                json={
                    "clarification_id": clarification_id,
                    "resolved_value": 0.83,
                    "resolved_by": "analyst@example.com",
                    "continue_after_resolution": True,
                },
            ).json()
            assert resolved["resolved"] is True
            assert resolved["can_proceed"] is True
            assert resolved["continue_result"]["outcome"] == "completed"
            assert resolved["continue_result"]["session"]["status"] == "complete"

            again = client.post(
                f"/extraction/pipeline/{session_id}/clarifications",
                json={"clarification_id": clarification_id, "resolved_value": 0.9},
            )
            assert again.status_code == 409

            stream = client.get(f"/extraction/pipeline/{session_id}/events")
            assert stream.status_code == 200
            assert stream.headers["content-type"].startswith("text/event-stream")
            names = _sse_event_names(stream.text)
            assert names[0] == "start"
            assert names[-1] == "complete"
            assert "awaiting_clarifications" in names
            assert "clarification_resolved" in names

        assert analyzer.calls == ["pl.csv", "census.csv"]

    def test_start_with_duplicate_ids_returns_400(self):
        service, _ = _make_real_service()

        with TestClient(_make_app(service)) as client:
            resp = client.post(
                f"/deals/{DEAL_ID}/extraction/pipeline",
                json={"document_ids": ["doc-1", "doc-1"]},
            )

        assert resp.status_code == 400
        assert "doc-1" in resp.json()["detail"]
        assert len(service.registry) == 0
