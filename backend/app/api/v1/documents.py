"""
Document Processing API Router

  POST   /documents/upload            multipart upload → 201, record QUEUED
  GET    /documents                   all documents, newest first
  GET    /documents/active            IN_PROGRESS + EXTRACTED
  GET    /documents/recent?limit=     COMPLETED, most recently completed first
  GET    /documents/{id}              full record incl. extractedContent
  DELETE /documents/{id}              204; 409 while a run holds the claim
  POST   /documents/{id}/process      202 — orchestrator.start
  POST   /documents/{id}/stop         202 — orchestrator.stop
  POST   /documents/{id}/retry        202 — orchestrator.retry
  GET    /documents/{id}/status       pull snapshot (DocumentUpdate)
  GET    /documents/{id}/events       SSE push stream

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Content-Length guard (413 before reading the body)   │
  │ 2. Extension whitelist (settings.allowed_extensions)    │
  │ 3. Read body, empty → 400, oversized → 413              │
  │ 4. Save under upload_dir/<uuid>_<sanitized name>        │
  │ 5. Store insert (status=QUEUED) → 201 + Location        │
  └─────────────────────────────────────────────────────────┘

process / stop / retry only schedule work: the outcome is observed via
the status endpoint or the event stream, never in the response body.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from pathlib import Path

from fastapi import (
    APIRouter,
    File,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse, Response, StreamingResponse

from app.api.dependencies import (
    Broadcaster,
    ExistingDocument,
    Orchestrator,
    Store,
)
from app.api.sse import sse_response, update_stream
from app.core.config import settings
from app.schemas.documents import (
    ACTIVE_STATUSES,
    ActionAccepted,
    DocumentListResponse,
    DocumentRecord,
    DocumentUpdate,
    ErrorResponse,
    ProcessingErrors,
    ProcessingStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)

_FORM_OVERHEAD_BYTES = 4096


# ---------------------------------------------------------------------------
# Upload helpers
# ---------------------------------------------------------------------------

def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _sanitize_filename(filename: str) -> str:
    """
    Strip path components and replace unsafe characters.
    Returns only the basename with OS-safe characters.
    """
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200]


def _write_upload(directory: Path, stored_name: str, data: bytes) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / stored_name
    path.write_bytes(data)
    return path


def _remove_upload(path: str) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Upload cleanup failed | path=%s error=%s", path, exc)


def _json(record: DocumentRecord | ActionAccepted, status_code: int, **headers: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=record.model_dump(mode="json", by_alias=True),
        headers=headers or None,
    )


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    status_code=status.HTTP_201_CREATED,
    summary="Upload a document",
    description=(
        "Accepts PDF, DOCX, DOC, TXT, MD, CSV, JSON, XML or HTML files. "
        "The document is stored as QUEUED; call POST /documents/{id}/process to start."
    ),
    responses={
        201: {"model": DocumentRecord, "description": "Document stored"},
        400: {"model": ErrorResponse, "description": "Missing file or unsupported type"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
    },
)
async def upload_document(
    request: Request,
    store:   Store,
    file:    UploadFile | None = File(None, description="Document file"),
) -> JSONResponse:
    limit = settings.max_upload_bytes

    # Guard: reject oversized requests before reading body
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit + _FORM_OVERHEAD_BYTES:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=ProcessingErrors.file_too_large(int(content_length), limit).model_dump(mode="json"),
        )

    if file is None or not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ProcessingErrors.missing_file().model_dump(),
        )

    original = _sanitize_filename(file.filename)
    if _get_extension(original) not in settings.allowed_extensions:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ProcessingErrors.unsupported_file_type(file.filename, settings.allowed_extensions).model_dump(),
        )

    data = await file.read()
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ProcessingErrors.missing_file().model_dump(),
        )
    if len(data) > limit:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=ProcessingErrors.file_too_large(len(data), limit).model_dump(mode="json"),
        )

    stored_name = f"{uuid.uuid4().hex}_{original}"
    path = await asyncio.to_thread(_write_upload, Path(settings.upload_dir), stored_name, data)

    try:
        record = await store.create(file_name=original, file_path=str(path), file_size=len(data))
    except Exception:
        await asyncio.to_thread(_remove_upload, str(path))
        raise

    logger.info("Upload | id=%d file=%s bytes=%d", record.id, original, len(data))
    return _json(
        record,
        status.HTTP_201_CREATED,
        Location=f"/api/v1/documents/{record.id}",
    )


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    response_model_by_alias=True,
    summary="List all documents, newest first",
)
async def list_documents(store: Store) -> DocumentListResponse:
    documents = await store.list_documents(order_by="created_at", descending=True)
    return DocumentListResponse(documents=documents)


@router.get(
    "/active",
    response_model=DocumentListResponse,
    response_model_by_alias=True,
    summary="Documents currently being processed",
)
async def list_active_documents(store: Store) -> DocumentListResponse:
    documents = await store.list_documents(statuses=ACTIVE_STATUSES, order_by="processing_started_at")
    return DocumentListResponse(documents=documents)


@router.get(
    "/recent",
    response_model=DocumentListResponse,
    response_model_by_alias=True,
    summary="Most recently completed documents",
)
async def list_recent_documents(
    store: Store,
    limit: int = Query(10, ge=1, le=100),
) -> DocumentListResponse:
    documents = await store.list_documents(
        statuses=[ProcessingStatus.COMPLETED],
        limit=limit,
        order_by="completed_at",
        descending=True,
    )
    return DocumentListResponse(documents=documents)


# ---------------------------------------------------------------------------
# Single document
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentRecord,
    response_model_by_alias=True,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_document(document: ExistingDocument) -> DocumentRecord:
    return document


@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        204: {"description": "Document deleted"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Document is being processed"},
    },
)
async def delete_document(
    document:     ExistingDocument,
    store:        Store,
    orchestrator: Orchestrator,
) -> Response:
    if orchestrator.claims.is_claimed(document.id) or orchestrator.is_running(document.id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=ProcessingErrors.invalid_state(document.id, document.status.value, "delete").model_dump(),
        )

    await store.delete(document.id)
    await asyncio.to_thread(_remove_upload, document.file_path)
    logger.info("Document deleted | id=%d file=%s", document.id, document.file_name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Orchestrator commands — 202, outcome observed via status / events
# ---------------------------------------------------------------------------

_COMMAND_RESPONSES = {
    202: {"model": ActionAccepted},
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


@router.post("/{document_id}/process", status_code=status.HTTP_202_ACCEPTED, responses=_COMMAND_RESPONSES)
async def process_document(document: ExistingDocument, orchestrator: Orchestrator) -> JSONResponse:
    await orchestrator.start(document.id)
    return _json(
        ActionAccepted(message="Processing started", document_id=document.id),
        status.HTTP_202_ACCEPTED,
    )


@router.post("/{document_id}/stop", status_code=status.HTTP_202_ACCEPTED, responses=_COMMAND_RESPONSES)
async def stop_document(document: ExistingDocument, orchestrator: Orchestrator) -> JSONResponse:
    await orchestrator.stop(document.id)
    return _json(
        ActionAccepted(message="Stop requested", document_id=document.id),
        status.HTTP_202_ACCEPTED,
    )


@router.post("/{document_id}/retry", status_code=status.HTTP_202_ACCEPTED, responses=_COMMAND_RESPONSES)
async def retry_document(document: ExistingDocument, orchestrator: Orchestrator) -> JSONResponse:
    await orchestrator.retry(document.id)
    return _json(
        ActionAccepted(message="Retry requested", document_id=document.id),
        status.HTTP_202_ACCEPTED,
    )


# ---------------------------------------------------------------------------
# Pull + push transports
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentUpdate,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    summary="Poll the latest processing state",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_document_status(document: ExistingDocument) -> DocumentUpdate:
    return DocumentUpdate(
        document_id=document.id,
        status=document.status,
        progress=document.progress,
        current_step=document.current_step,
        step_progress=document.step_progress,
        error=document.error,
        llm_provider=document.llm_provider,
    )


@router.get(
    "/{document_id}/events",
    summary="Stream processing updates via Server-Sent Events",
    description=(
        "Sends the current state first, then every update for this document. "
        "The stream closes after a terminal update (COMPLETED, FAILED, STOPPED)."
    ),
    response_class=StreamingResponse,
)
async def stream_document_events(
    request:     Request,
    document:    ExistingDocument,
    broadcaster: Broadcaster,
) -> StreamingResponse:
    return sse_response(update_stream(request, broadcaster, document_id=document.id))
