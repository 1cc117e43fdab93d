"""
Composed FastAPI Dependencies

The store, broadcaster and orchestrator are process singletons created in
the application lifespan (app.main) and kept on `app.state`. Route
handlers import the Annotated aliases from here and never reach into
app.state directly.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Path, Request, status

from app.schemas.documents import DocumentRecord, ProcessingErrors
from app.services.broadcaster import UpdateBroadcaster
from app.services.orchestrator import DocumentOrchestrator
from app.storage.documents import DocumentStore


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_broadcaster(request: Request) -> UpdateBroadcaster:
    return request.app.state.broadcaster


def get_orchestrator(request: Request) -> DocumentOrchestrator:
    return request.app.state.orchestrator


# ---------------------------------------------------------------------------
# Path-resolved document
# ---------------------------------------------------------------------------

def parse_document_id(document_id: str = Path(..., description="Integer document id")) -> int:
    """400 INVALID_DOCUMENT_ID for anything that is not a positive integer."""
    if not document_id.isdigit() or int(document_id) < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ProcessingErrors.invalid_document_id(document_id).model_dump(),
        )
    return int(document_id)


async def get_document(
    document_id: Annotated[int, Depends(parse_document_id)],
    store:       Annotated[DocumentStore, Depends(get_store)],
) -> DocumentRecord:
    record = await store.get(document_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ProcessingErrors.document_not_found(document_id).model_dump(),
        )
    return record


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Store        = Annotated[DocumentStore,        Depends(get_store)]
Broadcaster  = Annotated[UpdateBroadcaster,    Depends(get_broadcaster)]
Orchestrator = Annotated[DocumentOrchestrator, Depends(get_orchestrator)]
ExistingDocument = Annotated[DocumentRecord,   Depends(get_document)]
