"""
Server-Sent Events transport for the UpdateBroadcaster.

Wire format (one event per broadcast message):

  event: document_update
  data: {"type":"document_update","documentId":7,"status":"IN_PROGRESS","progress":40,...}

  event: stats_update
  data: {"type":"stats_update","activeCount":1,"processedToday":3,...}

Stream lifecycle:
  1. subscribe first, then read the current snapshot, so nothing published
     in between is lost; queued updates older than the snapshot are skipped
  2. relay queued messages; ": keepalive" comment every sse_keepalive_seconds
  3. a document stream ends with "done" once a terminal update was sent;
     every stream ends on client disconnect or after sse_stream_ttl_seconds
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import AsyncGenerator

from fastapi import Request
from fastapi.responses import StreamingResponse

from app.core.config import settings
from app.services.broadcaster import UpdateBroadcaster

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control":     "no-cache",
    "Connection":        "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx buffering for SSE
}


def sse_event(event_name: str, data: dict) -> str:
    """Format a Server-Sent Event with event name and JSON data."""
    return f"event: {event_name}\ndata: {json.dumps(data)}\n\n"


async def update_stream(
    request:     Request,
    broadcaster: UpdateBroadcaster,
    document_id: int | None = None,
    keepalive:   float | None = None,
    ttl:         float | None = None,
) -> AsyncGenerator[str, None]:
    """Yield SSE-formatted broadcaster messages until done or disconnected."""
    keepalive = keepalive or settings.sse_keepalive_seconds
    ttl       = ttl or settings.sse_stream_ttl_seconds

    sub   = broadcaster.subscribe(document_id)
    start = time.monotonic()
    try:
        # Snapshot before the first yield so no backlog builds up behind it.
        snapshot = await broadcaster.snapshot(document_id) if document_id is not None else None
        yield sse_event("connected", {"documentId": document_id})

        # Progress only rises within a run: backlog below the snapshot is stale.
        floor: int | None = None
        if document_id is not None:
            if snapshot is None:
                yield sse_event("done", {"message": "Document not found"})
                return
            yield sse_event("document_update", snapshot.wire())
            if snapshot.is_terminal:
                yield sse_event("done", {"message": "Processing finished"})
                return
            floor = snapshot.progress
        else:
            stats = await broadcaster.stats_snapshot()
            yield sse_event("stats_update", stats.wire())

        while True:
            if await request.is_disconnected():
                logger.debug("SSE client disconnected | document=%s", document_id)
                break

            if time.monotonic() - start > ttl:
                yield sse_event("timeout", {"message": "Update stream expired"})
                break

            try:
                message = await sub.get(timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue

            if floor is not None:
                if message.data.get("progress", floor) < floor:
                    logger.debug("SSE stale update skipped | document=%s", document_id)
                    continue
                floor = None

            yield sse_event(message.event, message.data)

            if document_id is not None and message.terminal:
                yield sse_event("done", {"message": "Processing finished"})
                break
    finally:
        broadcaster.unsubscribe(sub)


def sse_response(generator: AsyncGenerator[str, None]) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
