"""
Integration Tests — document lifecycle, routing rules, updates
═══════════════════════════════════════════════════════════════
Drives the orchestrator through the HTTP surface:

  process / stop / retry      202 + outcome observed via /status
  GET list / active / recent  ordering and filters
  DELETE                      204, 409 while a run holds the claim
  /llm-routes                 CRUD + provider validation
  /stats, /health             counters
  /documents/{id}/events      SSE stream of a finished document

The orchestrator fixture is the real one; runs are awaited with
orchestrator.wait() before asserting on /status.

How to run
──────────
  pytest -m integration backend/tests/integration/test_documents_api.py -v
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from app.schemas.documents import ProcessingStatus
from app.storage.documents import utcnow
from tests.conftest import FINANCIAL_STATEMENT_TEXT, plain_text


def _error_code(resp) -> str:
    body = resp.json()
    err = body.get("detail") or body
    return err["error_code"]


async def _upload(client, name: str = "notes.txt", content: str = "hello world") -> int:
    resp = await client.post(
        "/api/v1/documents/upload",
        files={"file": (name, content.encode(), "text/plain")},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


async def _process(client, orchestrator, doc_id: int) -> dict:
    resp = await client.post(f"/api/v1/documents/{doc_id}/process")
    assert resp.status_code == 202, resp.text
    await asyncio.wait_for(orchestrator.wait(doc_id), timeout=10)
    return (await client.get(f"/api/v1/documents/{doc_id}/status")).json()


def _frames(raw: str) -> list[tuple[str, dict]]:
    frames = []
    for block in raw.strip().split("\n\n"):
        lines = block.split("\n")
        if not lines[0].startswith("event: "):
            continue
        frames.append((lines[0][len("event: "):], json.loads(lines[1][len("data: "):])))
    return frames


# ─────────────────────────────────────────────────────────────────────────────
# Processing commands
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
class TestProcessingCommands:
    """
    POST /documents/{id}/process | stop | retry
    ───────────────────────────────────────────
    Commands only schedule work and always answer 202.
    """

    async def test_process_returns_202(self, async_client):
        doc_id = await _upload(async_client)

        resp = await async_client.post(f"/api/v1/documents/{doc_id}/process")

        assert resp.status_code == 202
        assert resp.json() == {"message": "Processing started", "documentId": doc_id}

    async def test_process_runs_to_completion(self, async_client, orchestrator):
        doc_id = await _upload(async_client, content=plain_text(100))

        status = await _process(async_client, orchestrator, doc_id)

        assert status["status"] == "COMPLETED"
        assert status["progress"] == 100
        assert status["llmProvider"] == "llama"
        assert status["currentStep"] == "Processing completed"
        assert "error" not in status

    async def test_completed_record_has_content(self, async_client, orchestrator):
        doc_id = await _upload(async_client, "q4.txt", FINANCIAL_STATEMENT_TEXT)
        await _process(async_client, orchestrator, doc_id)

        body = (await async_client.get(f"/api/v1/documents/{doc_id}")).json()

        assert body["llmProvider"] == "openai"
        assert body["pageCount"] == 1
        content = body["extractedContent"]
        assert content["metadata"]["extractionMethod"] == "pattern"
        assert content["keyFindings"]
        assert any(t["title"] == "Balance Sheet" for t in content["tables"])
        assert body["completedAt"] is not None

    async def test_process_twice_is_harmless(self, async_client, orchestrator):
        doc_id = await _upload(async_client)
        await _process(async_client, orchestrator, doc_id)

        resp = await async_client.post(f"/api/v1/documents/{doc_id}/process")

        assert resp.status_code == 202
        status = (await async_client.get(f"/api/v1/documents/{doc_id}/status")).json()
        assert status["status"] == "COMPLETED"

    async def test_stop_queued_document(self, async_client):
        doc_id = await _upload(async_client)

        resp = await async_client.post(f"/api/v1/documents/{doc_id}/stop")

        assert resp.status_code == 202
        assert resp.json()["message"] == "Stop requested"
        status = (await async_client.get(f"/api/v1/documents/{doc_id}/status")).json()
        assert status["status"] == "STOPPED"
        assert status["currentStep"] == "Processing stopped by user at 0%"

    async def test_retry_stopped_document(self, async_client, orchestrator):
        doc_id = await _upload(async_client)
        await async_client.post(f"/api/v1/documents/{doc_id}/stop")

        resp = await async_client.post(f"/api/v1/documents/{doc_id}/retry")
        assert resp.status_code == 202
        assert resp.json()["message"] == "Retry requested"
        await orchestrator.wait(doc_id)

        status = (await async_client.get(f"/api/v1/documents/{doc_id}/status")).json()
        assert status["status"] == "COMPLETED"

    async def test_failed_document_reports_error(self, async_client, orchestrator):
        doc_id = await _upload(async_client)
        record = (await async_client.get(f"/api/v1/documents/{doc_id}")).json()
        Path(record["filePath"]).unlink()

        status = await _process(async_client, orchestrator, doc_id)

        assert status["status"] == "FAILED"
        assert "Cannot read source file" in status["error"]
        body = (await async_client.get(f"/api/v1/documents/{doc_id}")).json()
        assert body["errorDetails"]["stage"] == "metadata"

    @pytest.mark.parametrize("action", ["process", "stop", "retry"])
    async def test_unknown_document_404(self, async_client, action):
        resp = await async_client.post(f"/api/v1/documents/999/{action}")
        assert resp.status_code == 404
        assert _error_code(resp) == "DOCUMENT_NOT_FOUND"


# ─────────────────────────────────────────────────────────────────────────────
# Reading documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
class TestDocumentQueries:

    async def test_list_newest_first(self, async_client):
        first  = await _upload(async_client, "a.txt")
        second = await _upload(async_client, "b.txt")

        body = (await async_client.get("/api/v1/documents")).json()

        assert [d["id"] for d in body["documents"]] == [second, first]

    async def test_active_documents(self, async_client, store):
        queued  = await _upload(async_client, "a.txt")
        running = await _upload(async_client, "b.txt")
        await store.update(running, {
            "status": ProcessingStatus.IN_PROGRESS, "processing_started_at": utcnow(),
        })

        body = (await async_client.get("/api/v1/documents/active")).json()

        ids = [d["id"] for d in body["documents"]]
        assert ids == [running]
        assert queued not in ids

    async def test_recent_completed(self, async_client, store):
        ids = [await _upload(async_client, f"{i}.txt") for i in range(3)]
        now = utcnow()
        await store.update(ids[0], {"status": ProcessingStatus.COMPLETED, "completed_at": now - timedelta(hours=1)})
        await store.update(ids[1], {"status": ProcessingStatus.COMPLETED, "completed_at": now})

        body = (await async_client.get("/api/v1/documents/recent", params={"limit": 1})).json()
        assert [d["id"] for d in body["documents"]] == [ids[1]]

        body = (await async_client.get("/api/v1/documents/recent")).json()
        assert [d["id"] for d in body["documents"]] == [ids[1], ids[0]]

    @pytest.mark.parametrize("limit", [0, 101])
    async def test_recent_limit_validated(self, async_client, limit):
        resp = await async_client.get("/api/v1/documents/recent", params={"limit": limit})
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    async def test_get_unknown_document_404(self, async_client):
        resp = await async_client.get("/api/v1/documents/999")
        assert resp.status_code == 404
        assert _error_code(resp) == "DOCUMENT_NOT_FOUND"

    @pytest.mark.parametrize("raw", ["abc", "0", "-3", "1.5"])
    async def test_invalid_document_id_400(self, async_client, raw):
        resp = await async_client.get(f"/api/v1/documents/{raw}")
        assert resp.status_code == 400
        assert _error_code(resp) == "INVALID_DOCUMENT_ID"

    async def test_status_of_queued_document(self, async_client):
        doc_id = await _upload(async_client)

        status = (await async_client.get(f"/api/v1/documents/{doc_id}/status")).json()

        assert status == {
            "type":       "document_update",
            "documentId": doc_id,
            "status":     "QUEUED",
            "progress":   0,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Delete
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
class TestDeleteDocument:

    async def test_delete_removes_record_and_file(self, async_client):
        doc_id = await _upload(async_client)
        path = Path((await async_client.get(f"/api/v1/documents/{doc_id}")).json()["filePath"])

        resp = await async_client.delete(f"/api/v1/documents/{doc_id}")

        assert resp.status_code == 204
        assert not path.exists()
        assert (await async_client.get(f"/api/v1/documents/{doc_id}")).status_code == 404

    async def test_delete_while_claimed_409(self, async_client, orchestrator):
        doc_id = await _upload(async_client)
        claim = orchestrator.claims.try_claim(doc_id)

        resp = await async_client.delete(f"/api/v1/documents/{doc_id}")

        assert resp.status_code == 409
        assert _error_code(resp) == "INVALID_STATE"
        orchestrator.claims.release(doc_id, claim)
        assert (await async_client.delete(f"/api/v1/documents/{doc_id}")).status_code == 204

    async def test_delete_unknown_404(self, async_client):
        assert (await async_client.delete("/api/v1/documents/77")).status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# Routing rules
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
@pytest.mark.routing
class TestRoutingRulesApi:
    """
    /api/v1/llm-routes
    ──────────────────
    CRUD over llm_configs; changes apply to the next run.
    """

    RULE = {
        "condition":   "page_count > 5",
        "llmProvider": "anthropic",
        "rationale":   "Long documents",
        "priority":    1,
    }

    async def test_create_and_list(self, async_client):
        resp = await async_client.post("/api/v1/llm-routes", json=self.RULE)

        assert resp.status_code == 201, resp.text
        rule = resp.json()
        assert rule["llmProvider"] == "anthropic"
        assert rule["isActive"] is True

        listing = (await async_client.get("/api/v1/llm-routes")).json()
        assert [r["id"] for r in listing["routes"]] == [rule["id"]]

    async def test_unknown_provider_422(self, async_client):
        resp = await async_client.post("/api/v1/llm-routes", json={**self.RULE, "llmProvider": "mistral"})

        assert resp.status_code == 422
        assert _error_code(resp) == "UNKNOWN_PROVIDER"

    async def test_missing_condition_422(self, async_client):
        resp = await async_client.post("/api/v1/llm-routes", json={"llmProvider": "openai"})
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    async def test_patch_deactivates(self, async_client):
        rule_id = (await async_client.post("/api/v1/llm-routes", json=self.RULE)).json()["id"]

        resp = await async_client.patch(f"/api/v1/llm-routes/{rule_id}", json={"isActive": False})

        assert resp.status_code == 200
        assert resp.json()["isActive"] is False
        assert resp.json()["condition"] == "page_count > 5"

    async def test_inactive_rules_still_listed(self, async_client):
        rule_id = (await async_client.post("/api/v1/llm-routes", json=self.RULE)).json()["id"]
        await async_client.patch(f"/api/v1/llm-routes/{rule_id}", json={"isActive": False})

        listing = (await async_client.get("/api/v1/llm-routes")).json()
        assert listing["routes"][0]["isActive"] is False

    async def test_patch_unknown_404(self, async_client):
        resp = await async_client.patch("/api/v1/llm-routes/999", json={"priority": 2})
        assert resp.status_code == 404
        assert _error_code(resp) == "ROUTING_RULE_NOT_FOUND"

    async def test_delete(self, async_client):
        rule_id = (await async_client.post("/api/v1/llm-routes", json=self.RULE)).json()["id"]

        assert (await async_client.delete(f"/api/v1/llm-routes/{rule_id}")).status_code == 204
        assert (await async_client.delete(f"/api/v1/llm-routes/{rule_id}")).status_code == 404

    async def test_rule_changes_routing_of_next_run(self, async_client, orchestrator):
        await async_client.post("/api/v1/llm-routes", json={
            "condition": "always", "llmProvider": "gemini", "priority": 1,
        })
        doc_id = await _upload(async_client)

        status = await _process(async_client, orchestrator, doc_id)

        assert status["llmProvider"] == "gemini"


# ─────────────────────────────────────────────────────────────────────────────
# Stats, health, SSE
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
class TestUpdatesApi:

    async def test_stats(self, async_client, orchestrator):
        doc_id = await _upload(async_client)
        await _process(async_client, orchestrator, doc_id)
        await _upload(async_client, "b.txt")

        resp = await async_client.get("/api/v1/stats")

        assert resp.status_code == 200
        assert resp.json() == {
            "type":           "stats_update",
            "activeCount":    0,
            "processedToday": 1,
            "failedCount":    0,
            "systemStatus":   "operational",
        }

    async def test_health(self, async_client):
        resp = await async_client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["store"] == "memory"
        assert body["activeRuns"] == 0

    async def test_event_stream_for_finished_document(self, async_client, orchestrator):
        doc_id = await _upload(async_client)
        await _process(async_client, orchestrator, doc_id)

        resp = await async_client.get(f"/api/v1/documents/{doc_id}/events")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        frames = _frames(resp.text)
        assert [name for name, _ in frames] == ["connected", "document_update", "done"]
        assert frames[0][1] == {"documentId": doc_id}
        assert frames[1][1]["status"] == "COMPLETED"
        assert frames[1][1]["progress"] == 100

    async def test_event_stream_unknown_document_404(self, async_client):
        resp = await async_client.get("/api/v1/documents/555/events")
        assert resp.status_code == 404
