"""
Update Broadcaster — fan-out of document deltas and stats to SSE clients

  Orchestrator ──publish(DocumentUpdate)──▶ UpdateBroadcaster
                                               │
                         ┌─────────────────────┼─────────────────────┐
                         ▼                     ▼                     ▼
                  Subscription(all)   Subscription(doc=7)   Subscription(all)
                  bounded queue       bounded queue         bounded queue
                         │                     │                     │
                   /api/v1/events   /documents/7/events       /api/v1/events

Delivery rules:
  - publish() never blocks and never raises because of a slow consumer.
  - Each subscriber has its own bounded queue (settings.subscriber_queue_size).
  - When a queue is full the oldest non-terminal message is dropped;
    terminal updates (COMPLETED / FAILED / STOPPED) are always enqueued.
  - Document-scoped subscribers only receive updates for their document
    and no stats messages.
  - For a given document, messages reach a subscriber in publish order.

New subscribers are brought up to date with snapshot() / stats_snapshot()
read from the store, so a client that connects late never misses the
final state.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Callable

from app.core.config import settings
from app.schemas.documents import (
    ACTIVE_STATUSES,
    DocumentUpdate,
    ProcessingStatus,
    StatsSnapshot,
)
from app.storage.documents import DocumentStore, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BroadcastMessage:
    event:    str                # "document_update" | "stats_update"
    data:     dict[str, Any]
    terminal: bool = False


@dataclass(eq=False)
class Subscription:
    id:          int
    document_id: int | None
    queue:       asyncio.Queue[BroadcastMessage]
    dropped:     int = 0
    closed:      bool = field(default=False)

    def wants(self, document_id: int | None) -> bool:
        if document_id is None:          # stats
            return self.document_id is None
        return self.document_id is None or self.document_id == document_id

    async def get(self, timeout: float | None = None) -> BroadcastMessage:
        """Next message; raises asyncio.TimeoutError after `timeout` seconds."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


def _any_circuit_open() -> bool:
    from app.llm.fallback import any_circuit_open
    return any_circuit_open()


class UpdateBroadcaster:
    """
    In-process pub/sub for one application instance.

    Usage::

        sub = broadcaster.subscribe(document_id=7)
        try:
            msg = await sub.get(timeout=15)
        finally:
            broadcaster.unsubscribe(sub)
    """

    def __init__(
        self,
        store:      DocumentStore,
        queue_size: int | None = None,
        degraded:   Callable[[], bool] = _any_circuit_open,
    ) -> None:
        self._store       = store
        self._queue_size  = queue_size or settings.subscriber_queue_size
        self._degraded    = degraded
        self._subscribers: dict[int, Subscription] = {}
        self._ids         = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # -----------------------------------------------------------------------
    # Subscriptions
    # -----------------------------------------------------------------------

    def subscribe(self, document_id: int | None = None) -> Subscription:
        sub = Subscription(
            id=next(self._ids),
            document_id=document_id,
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        self._subscribers[sub.id] = sub
        logger.debug(
            "Broadcaster | subscribed id=%d document=%s total=%d",
            sub.id, document_id, len(self._subscribers),
        )
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.closed = True
        if self._subscribers.pop(sub.id, None) is not None and sub.dropped:
            logger.info(
                "Broadcaster | unsubscribed id=%d dropped=%d", sub.id, sub.dropped,
            )

    # -----------------------------------------------------------------------
    # Publishing
    # -----------------------------------------------------------------------

    def publish(self, update: DocumentUpdate) -> int:
        """Deliver a document delta; returns the number of subscribers reached."""
        message = BroadcastMessage(
            event="document_update",
            data=update.wire(),
            terminal=update.is_terminal,
        )
        return self._fan_out(message, update.document_id)

    async def publish_stats(self) -> StatsSnapshot:
        snapshot = await self.stats_snapshot()
        self._fan_out(BroadcastMessage(event="stats_update", data=snapshot.wire()), None)
        return snapshot

    def _fan_out(self, message: BroadcastMessage, document_id: int | None) -> int:
        delivered = 0
        for sub in list(self._subscribers.values()):
            if sub.closed or not sub.wants(document_id):
                continue
            self._offer(sub, message)
            delivered += 1
        return delivered

    @staticmethod
    def _offer(sub: Subscription, message: BroadcastMessage) -> None:
        try:
            sub.queue.put_nowait(message)
            return
        except asyncio.QueueFull:
            pass

        # Full: drop the oldest non-terminal message (or the oldest of all
        # when the queue holds nothing but terminal updates).
        pending: list[BroadcastMessage] = []
        while not sub.queue.empty():
            pending.append(sub.queue.get_nowait())

        victim = next((i for i, m in enumerate(pending) if not m.terminal), 0)
        pending.pop(victim)
        pending.append(message)
        for item in pending:
            sub.queue.put_nowait(item)

        sub.dropped += 1
        if sub.dropped == 1 or sub.dropped % 100 == 0:
            logger.warning(
                "Broadcaster | slow subscriber id=%d dropped=%d", sub.id, sub.dropped,
            )

    # -----------------------------------------------------------------------
    # Snapshots
    # -----------------------------------------------------------------------

    async def snapshot(self, document_id: int) -> DocumentUpdate | None:
        """Current state of one document as a delta, or None when unknown."""
        record = await self._store.get(document_id)
        if record is None:
            return None
        return DocumentUpdate(
            document_id=record.id,
            status=record.status,
            progress=record.progress,
            current_step=record.current_step,
            step_progress=record.step_progress,
            error=record.error,
            llm_provider=record.llm_provider,
        )

    async def stats_snapshot(self) -> StatsSnapshot:
        documents = await self._store.list_documents()
        today     = utcnow().date()

        active = failed = processed_today = 0
        for doc in documents:
            if doc.status in ACTIVE_STATUSES:
                active += 1
            elif doc.status == ProcessingStatus.FAILED:
                failed += 1
            elif doc.status == ProcessingStatus.COMPLETED and doc.completed_at is not None:
                completed = doc.completed_at
                if completed.tzinfo is None:
                    completed = completed.replace(tzinfo=timezone.utc)
                if completed.astimezone(timezone.utc).date() == today:
                    processed_today += 1

        return StatsSnapshot(
            active_count=active,
            processed_today=processed_today,
            failed_count=failed,
            system_status="degraded" if self._degraded() else "operational",
        )
