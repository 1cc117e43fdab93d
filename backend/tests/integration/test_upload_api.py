"""
Integration Tests — POST /api/v1/documents/upload
══════════════════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Multipart form parsing (python-multipart)
  - Dependency injection chain (store / orchestrator from app.state)
  - Response status codes and body schemas (camelCase wire format)
  - Header assertions (Location, X-Request-ID)
  - Files written under settings.upload_dir

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, request parsing, Pydantic schema validation,
           in-memory document store, filesystem writes (pytest tmp_path)
  🔲 Nothing else: uploading never starts processing

How to run
──────────
  pytest -m integration backend/tests/integration/test_upload_api.py -v
"""

from __future__ import annotations

from pathlib import Path

import pytest

from app.core.config import settings


def _error_code(resp) -> str:
    # HTTPException detail is wrapped in {"detail": {...}} by FastAPI
    body = resp.json()
    err = body.get("detail") or body
    return err["error_code"]


async def _upload(client, name: str = "notes.txt", content: bytes = b"hello world", content_type: str = "text/plain"):
    return await client.post(
        "/api/v1/documents/upload",
        files={"file": (name, content, content_type)},
    )


@pytest.mark.integration
@pytest.mark.api
class TestUploadEndpoint:
    """
    POST /api/v1/documents/upload
    ─────────────────────────────
    Full request-response cycle using the async_client fixture.
    """

    async def test_upload_txt_returns_201(self, async_client):
        resp = await _upload(async_client)

        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["id"] == 1
        assert body["fileName"] == "notes.txt"
        assert body["fileSize"] == len(b"hello world")
        assert body["status"] == "QUEUED"
        assert body["progress"] == 0
        assert body["extractedContent"] is None
        assert "createdAt" in body

    async def test_location_header(self, async_client):
        resp = await _upload(async_client)
        assert resp.headers["location"] == f"/api/v1/documents/{resp.json()['id']}"
        assert "x-request-id" in resp.headers

    async def test_file_written_to_upload_dir(self, async_client):
        resp = await _upload(async_client, content=b"stored bytes")

        path = Path(resp.json()["filePath"])
        assert path.parent == Path(settings.upload_dir)
        assert path.read_bytes() == b"stored bytes"
        assert path.name.endswith("_notes.txt")

    async def test_upload_does_not_start_processing(self, async_client, orchestrator):
        resp = await _upload(async_client)

        doc_id = resp.json()["id"]
        assert not orchestrator.claims.is_claimed(doc_id)
        assert not orchestrator.is_running(doc_id)

    async def test_pdf_accepted(self, async_client):
        resp = await _upload(async_client, "report.pdf", b"%PDF-1.4\n" + b"x" * 200, "application/pdf")
        assert resp.status_code == 201

    async def test_filename_is_sanitized(self, async_client):
        resp = await _upload(async_client, "../../etc/my report?.txt")

        assert resp.status_code == 201
        body = resp.json()
        assert body["fileName"] == "my_report_.txt"
        assert ".." not in body["filePath"]

    async def test_ids_are_sequential(self, async_client):
        first  = await _upload(async_client, "a.txt")
        second = await _upload(async_client, "b.txt")
        assert second.json()["id"] == first.json()["id"] + 1


@pytest.mark.integration
@pytest.mark.api
class TestUploadValidation:
    """
    Validation failures — file type, size, missing fields.
    None of these should create a record.
    """

    async def test_unsupported_extension_rejected_400(self, async_client, store):
        resp = await _upload(async_client, "virus.exe", b"MZ\x90\x00" + b"\x00" * 100, "application/octet-stream")

        assert resp.status_code == 400
        assert _error_code(resp) == "UNSUPPORTED_FILE_TYPE"
        assert await store.list_documents() == []

    async def test_no_extension_rejected_400(self, async_client):
        resp = await _upload(async_client, "README")
        assert resp.status_code == 400
        assert _error_code(resp) == "UNSUPPORTED_FILE_TYPE"

    async def test_empty_file_rejected_400(self, async_client, store):
        resp = await _upload(async_client, content=b"")

        assert resp.status_code == 400
        assert _error_code(resp) == "MISSING_FILE"
        assert await store.list_documents() == []

    async def test_missing_file_field_returns_400(self, async_client):
        resp = await async_client.post(
            "/api/v1/documents/upload",
            files={"attachment": ("notes.txt", b"hello", "text/plain")},
        )
        assert resp.status_code == 400
        assert _error_code(resp) == "MISSING_FILE"

    async def test_oversized_file_returns_413(self, async_client, store, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_bytes", 64)

        resp = await _upload(async_client, content=b"x" * 65)

        assert resp.status_code == 413
        body = resp.json()
        assert body["error_code"] == "FILE_TOO_LARGE"
        assert "message" in body
        assert await store.list_documents() == []

    async def test_oversized_via_content_length_returns_413(self, async_client, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_bytes", 64)

        resp = await _upload(async_client, content=b"x" * 10_000)

        assert resp.status_code == 413
        assert resp.json()["error_code"] == "FILE_TOO_LARGE"

    async def test_error_response_schema(self, async_client):
        resp = await _upload(async_client, "virus.exe")
        err = resp.json()["detail"]
        assert "error_code" in err
        assert "message" in err
        assert isinstance(err.get("details", []), list)
        assert err["details"][0]["field"] == "file"
