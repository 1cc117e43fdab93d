"""
System-wide updates

  GET /events   SSE stream: stats snapshot first, then every document_update
                and stats_update until the client disconnects (or TTL)
  GET /stats    pull snapshot {activeCount, processedToday, failedCount, systemStatus}
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from app.api.dependencies import Broadcaster
from app.api.sse import sse_response, update_stream
from app.schemas.documents import StatsSnapshot

router = APIRouter(tags=["Updates"])


@router.get(
    "/events",
    summary="Stream all processing updates via Server-Sent Events",
    response_class=StreamingResponse,
)
async def stream_events(request: Request, broadcaster: Broadcaster) -> StreamingResponse:
    return sse_response(update_stream(request, broadcaster))


@router.get(
    "/stats",
    response_model=StatsSnapshot,
    response_model_by_alias=True,
    summary="Dashboard counters",
)
async def get_stats(broadcaster: Broadcaster) -> StatsSnapshot:
    return await broadcaster.stats_snapshot()
