"""
Document Processing Orchestrator

Runs one document through the pipeline as a background asyncio task:

  start(id)
    │  QUEUED ──claim──▶ IN_PROGRESS (progress 0)
    ▼
  ┌──────────────┐   ┌──────────────┐   ┌──────────────────┐   ┌──────────────┐
  │ 1. Metadata  │──▶│ 2. Routing   │──▶│ 3. Extraction    │──▶│ 4. Finalize  │
  │ 10 → 20      │   │ 40           │   │ 50 → 70 EXTRACTED│   │ 90 → 100     │
  └──────────────┘   └──────────────┘   └──────────────────┘   └──────────────┘
        │ read file, pages,     │ rules from store     │ adapter tier chain      │ COMPLETED
        │ financial / scanned   │ → provider           │ pattern/remote/simulated│

Cancellation:
  stop(id) releases the claim. The run checks the claim at every stage
  boundary and, when it is gone, writes STOPPED with progress 100 and
  currentStep "Processing stopped by user at N%" (N = progress reached).
  A stage already running always finishes first.

Failure:
  Any exception escaping a stage (source file missing / unreadable, store
  errors, bugs) ends the run as FAILED with progress 100, a readable error
  and errorDetails. Vendor and schema errors never get here: the adapter
  absorbs them and falls back.

Invariants:
  - At most one run per document id (ClaimRegistry).
  - Progress never decreases within a run.
  - Every persisted change is broadcast as a DocumentUpdate, in order.
  - A stats snapshot is broadcast after every terminal transition.
  - start / stop / retry never raise for state reasons; illegal requests
    are logged no-ops.

State machine (ALLOWED_TRANSITIONS):

  QUEUED      → IN_PROGRESS | STOPPED
  IN_PROGRESS → EXTRACTED | FAILED | STOPPED
  EXTRACTED   → COMPLETED | FAILED | STOPPED
  FAILED      → QUEUED
  STOPPED     → QUEUED
  COMPLETED   → (none)
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from app.llm.adapters import ProviderAdapter, get_adapter
from app.llm.router import DocumentCharacteristics, Provider, RoutingDecision, get_spec, route
from app.observability.tracing import traced
from app.processing.extractor import DocumentAnalysis, analyze, read_source
from app.schemas.documents import (
    DocumentRecord,
    DocumentUpdate,
    ExtractedDocumentData,
    ProcessingStatus,
)
from app.services.broadcaster import UpdateBroadcaster
from app.services.errors import (
    DocumentNotFoundError,
    InvalidTransitionError,
    ProcessingError,
    build_error_details,
)
from app.storage.documents import DocumentStore, utcnow

logger = logging.getLogger(__name__)

S = ProcessingStatus

ALLOWED_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    S.QUEUED:      frozenset({S.IN_PROGRESS, S.STOPPED}),
    S.IN_PROGRESS: frozenset({S.EXTRACTED, S.FAILED, S.STOPPED}),
    S.EXTRACTED:   frozenset({S.COMPLETED, S.FAILED, S.STOPPED}),
    S.FAILED:      frozenset({S.QUEUED}),
    S.STOPPED:     frozenset({S.QUEUED}),
    S.COMPLETED:   frozenset(),
}

STOPPABLE = frozenset({S.QUEUED, S.IN_PROGRESS, S.EXTRACTED})
RETRYABLE = frozenset({S.FAILED, S.STOPPED})

EXTRACTION_STEPS = 3


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ---------------------------------------------------------------------------
# Claim registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Claim:
    """Ownership token for one run of one document."""
    document_id: int


class ClaimRegistry:
    """
    Thread-safe set of document ids currently owned by a run.

    try_claim() is the mutual exclusion point: it returns a Claim for the
    caller or None when the id is already held. release(id) without a
    claim is the cancellation signal used by stop(); release(id, claim)
    only succeeds for the current holder, so a finished run can never
    drop the claim of a newer one.
    """

    def __init__(self) -> None:
        self._claims: dict[int, Claim] = {}
        self._lock   = threading.Lock()

    def try_claim(self, document_id: int) -> Claim | None:
        with self._lock:
            if document_id in self._claims:
                return None
            claim = Claim(document_id)
            self._claims[document_id] = claim
            return claim

    def release(self, document_id: int, claim: Claim | None = None) -> bool:
        with self._lock:
            current = self._claims.get(document_id)
            if current is None or (claim is not None and current is not claim):
                return False
            del self._claims[document_id]
            return True

    def holds(self, claim: Claim) -> bool:
        with self._lock:
            return self._claims.get(claim.document_id) is claim

    def is_claimed(self, document_id: int) -> bool:
        with self._lock:
            return document_id in self._claims

    def active(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._claims)

    def __len__(self) -> int:
        with self._lock:
            return len(self._claims)


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------

class StopRequested(Exception):
    """Raised at a stage boundary once the run's claim has been released."""


@dataclass
class _Run:
    claim:    Claim
    record:   DocumentRecord
    stage:    str = "start"
    progress: int = 0
    extras:   dict[str, Any] = field(default_factory=dict)

    @property
    def document_id(self) -> int:
        return self.claim.document_id


AdapterFactory = Callable[[Provider], ProviderAdapter]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class DocumentOrchestrator:
    """
    Usage::

        orchestrator = DocumentOrchestrator(store, broadcaster)
        await orchestrator.start(document_id)   # returns once the run is scheduled
        await orchestrator.wait(document_id)    # tests / shutdown
    """

    def __init__(
        self,
        store:           DocumentStore,
        broadcaster:     UpdateBroadcaster,
        claims:          ClaimRegistry | None = None,
        adapter_factory: AdapterFactory = get_adapter,
    ) -> None:
        self._store           = store
        self._broadcaster     = broadcaster
        self._claims          = claims or ClaimRegistry()
        self._adapter_factory = adapter_factory
        self._tasks: dict[int, asyncio.Task[None]] = {}

    @property
    def claims(self) -> ClaimRegistry:
        return self._claims

    def is_running(self, document_id: int) -> bool:
        task = self._tasks.get(document_id)
        return task is not None and not task.done()

    # -----------------------------------------------------------------------
    # Public operations
    # -----------------------------------------------------------------------

    async def start(self, document_id: int) -> bool:
        """
        Begin processing a QUEUED document in the background.

        Returns True when a run was scheduled, False when the request was a
        no-op (already running, or not QUEUED).

        Raises:
            DocumentNotFoundError: unknown id.
        """
        record = await self._require(document_id)
        if record.status != S.QUEUED:
            logger.info(
                "Orchestrator | start ignored id=%d status=%s", document_id, record.status.value,
            )
            return False

        claim = self._claims.try_claim(document_id)
        if claim is None:
            logger.info("Orchestrator | start ignored id=%d (already claimed)", document_id)
            return False

        try:
            record = await self._require(document_id)
        except BaseException:
            self._claims.release(document_id, claim)
            raise
        if record.status != S.QUEUED:
            self._claims.release(document_id, claim)
            return False

        return await self._launch(claim, record)

    async def stop(self, document_id: int) -> bool:
        """
        Request cancellation.

        In-flight run: the claim is released and the run writes STOPPED at
        its next stage boundary. No run: a QUEUED / IN_PROGRESS / EXTRACTED
        record is moved straight to STOPPED. Terminal documents: no-op.

        Raises:
            DocumentNotFoundError: unknown id.
        """
        record = await self._require(document_id)

        if self._claims.release(document_id):
            logger.info("Orchestrator | stop requested id=%d", document_id)
            return True

        if self.is_running(document_id):
            logger.info("Orchestrator | stop already pending id=%d", document_id)
            return True

        if record.status not in STOPPABLE:
            logger.info(
                "Orchestrator | stop ignored id=%d status=%s", document_id, record.status.value,
            )
            return False

        claim = self._claims.try_claim(document_id)
        if claim is None:
            return False
        try:
            record = await self._require(document_id)
            if record.status not in STOPPABLE:
                return False
            run = _Run(claim=claim, record=record, progress=record.progress)
            await self._transition(
                run, S.STOPPED,
                progress=100,
                current_step=f"Processing stopped by user at {record.progress}%",
                step_progress=None,
                completed_at=utcnow(),
            )
            logger.info("Orchestrator | abandoned id=%d → STOPPED", document_id)
        finally:
            self._claims.release(document_id, claim)

        await self._broadcaster.publish_stats()
        return True

    async def retry(self, document_id: int) -> bool:
        """
        Re-queue a FAILED or STOPPED document and start a fresh run.

        A run whose stop is still pending (claim released, task not done)
        is awaited first, so stop followed by retry always starts a new run.

        Raises:
            DocumentNotFoundError: unknown id.
        """
        if self.is_running(document_id) and not self._claims.is_claimed(document_id):
            logger.info("Orchestrator | retry waiting for stop id=%d", document_id)
            await self.wait(document_id)

        record = await self._require(document_id)
        if record.status not in RETRYABLE:
            logger.info(
                "Orchestrator | retry ignored id=%d status=%s", document_id, record.status.value,
            )
            return False

        claim = self._claims.try_claim(document_id)
        if claim is None:
            logger.info("Orchestrator | retry ignored id=%d (already claimed)", document_id)
            return False

        try:
            record = await self._require(document_id)
            if record.status not in RETRYABLE:
                self._claims.release(document_id, claim)
                return False
            run = _Run(claim=claim, record=record)
            record = await self._transition(
                run, S.QUEUED,
                progress=0,
                current_step="Queued for retry",
                step_progress=None,
                error=None,
                error_details=None,
                extracted_content=None,
                completed_at=None,
            )
        except BaseException:
            self._claims.release(document_id, claim)
            raise

        logger.info("Orchestrator | retry id=%d", document_id)
        return await self._launch(claim, record)

    async def wait(self, document_id: int) -> None:
        """Block until the current run for `document_id` (if any) has finished."""
        task = self._tasks.get(document_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Stop every in-flight run and wait for them to settle."""
        tasks = list(self._tasks.items())
        if not tasks:
            return
        logger.info("Orchestrator | shutdown stopping %d run(s)", len(tasks))
        for document_id, _ in tasks:
            self._claims.release(document_id)
        await asyncio.gather(*(t for _, t in tasks), return_exceptions=True)

    # -----------------------------------------------------------------------
    # Run lifecycle
    # -----------------------------------------------------------------------

    async def _launch(self, claim: Claim, record: DocumentRecord) -> bool:
        run = _Run(claim=claim, record=record)
        try:
            await self._transition(
                run, S.IN_PROGRESS,
                progress=0,
                current_step="Starting processing",
                step_progress=None,
                processing_started_at=utcnow(),
                completed_at=None,
                llm_provider=None,
                extracted_content=None,
                error=None,
                error_details=None,
            )
        except BaseException:
            self._claims.release(claim.document_id, claim)
            raise

        task = asyncio.create_task(self._run(run), name=f"process-document-{claim.document_id}")
        self._tasks[claim.document_id] = task
        task.add_done_callback(lambda t, doc_id=claim.document_id: self._forget(doc_id, t))

        await self._broadcaster.publish_stats()
        logger.info("Orchestrator | started id=%d file=%s", claim.document_id, record.file_name)
        return True

    def _forget(self, document_id: int, task: asyncio.Task[None]) -> None:
        if self._tasks.get(document_id) is task:
            del self._tasks[document_id]

    async def _run(self, run: _Run) -> None:
        try:
            analysis = await self._metadata_stage(run)
            decision = await self._routing_stage(run, analysis)
            content  = await self._extraction_stage(run, analysis, decision)
            await self._finalize_stage(run, content)
        except StopRequested:
            await self._finish_stopped(run)
        except asyncio.CancelledError:
            await self._finish_stopped(run)
            raise
        except Exception as exc:
            await self._finish_failed(run, exc)
        finally:
            self._claims.release(run.document_id, run.claim)

    def _checkpoint(self, run: _Run, stage: str) -> None:
        if not self._claims.holds(run.claim):
            raise StopRequested(f"document {run.document_id} stopped before {stage}")
        run.stage = stage

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    @traced("orchestrator.metadata", expected=(StopRequested, ProcessingError))
    async def _metadata_stage(self, run: _Run) -> DocumentAnalysis:
        self._checkpoint(run, "metadata")
        await self._progress(run, 10, "Extracting document metadata")

        data     = await asyncio.to_thread(read_source, run.record.file_path)
        analysis = await asyncio.to_thread(analyze, data, run.record.file_name)

        await self._progress(
            run, 20, "Metadata extraction completed",
            page_count=analysis.page_count,
            file_size=analysis.file_size,
        )
        logger.info(
            "Orchestrator | metadata id=%d pages=%d financial=%s scanned=%s",
            run.document_id, analysis.page_count,
            analysis.has_financial_tables, analysis.is_scanned,
        )
        return analysis

    @traced("orchestrator.routing", expected=(StopRequested,))
    async def _routing_stage(self, run: _Run, analysis: DocumentAnalysis) -> RoutingDecision:
        self._checkpoint(run, "routing")

        rules    = await self._store.list_routing_rules(active_only=True)
        decision = route(
            DocumentCharacteristics(
                page_count=analysis.page_count,
                has_financial_tables=analysis.has_financial_tables,
                is_scanned=analysis.is_scanned,
            ),
            rules,
        )
        spec = get_spec(decision.provider)
        await self._progress(
            run, 40, f"Routing to {spec.display_name} ({decision.rationale})",
            llm_provider=decision.provider.value,
        )
        return decision

    @traced("orchestrator.extraction", expected=(StopRequested, ProcessingError))
    async def _extraction_stage(
        self,
        run:      _Run,
        analysis: DocumentAnalysis,
        decision: RoutingDecision,
    ) -> ExtractedDocumentData:
        self._checkpoint(run, "extraction")
        spec = get_spec(decision.provider)

        await self._progress(
            run, 50, f"Processing content with {spec.display_name}",
            step_progress=f"1/{EXTRACTION_STEPS}",
        )
        await self._progress(
            run, 60, "Extracting tables and key findings",
            step_progress=f"2/{EXTRACTION_STEPS}",
        )

        adapter = self._adapter_factory(decision.provider)
        result  = await adapter.extract(analysis.text)
        if not result.success or result.content is None:
            raise ProcessingError(f"Extraction produced no content: {result.error}")

        run.extras["tier"] = result.tier
        await self._transition(
            run, S.EXTRACTED,
            progress=70,
            current_step="Post-processing",
            step_progress=f"{EXTRACTION_STEPS}/{EXTRACTION_STEPS}",
        )
        return result.content

    @traced("orchestrator.finalize", expected=(StopRequested,))
    async def _finalize_stage(self, run: _Run, content: ExtractedDocumentData) -> None:
        self._checkpoint(run, "finalize")

        await self._progress(
            run, 90, "Finalizing results",
            step_progress=None,
            extracted_content=content,
        )
        await self._transition(
            run, S.COMPLETED,
            progress=100,
            current_step="Processing completed",
            completed_at=utcnow(),
        )
        logger.info(
            "Orchestrator | completed id=%d provider=%s tier=%s tables=%d",
            run.document_id, run.record.llm_provider, run.extras.get("tier"), len(content.tables),
        )
        await self._broadcaster.publish_stats()

    # -----------------------------------------------------------------------
    # Terminal outcomes
    # -----------------------------------------------------------------------

    async def _still_open(self, run: _Run) -> bool:
        """Re-read the record; False when it is gone or already terminal."""
        record = await self._store.get(run.document_id)
        if record is None or record.status.is_terminal:
            logger.info(
                "Orchestrator | id=%d already %s, no terminal write",
                run.document_id, record.status.value if record else "deleted",
            )
            return False
        run.record = record
        return True

    async def _finish_stopped(self, run: _Run) -> None:
        reached = run.progress
        try:
            if not await self._still_open(run):
                return
            await self._transition(
                run, S.STOPPED,
                progress=100,
                current_step=f"Processing stopped by user at {reached}%",
                step_progress=None,
                completed_at=utcnow(),
            )
            logger.info(
                "Orchestrator | stopped id=%d stage=%s progress=%d",
                run.document_id, run.stage, reached,
            )
            await self._broadcaster.publish_stats()
        except Exception as exc:
            logger.error(
                "Orchestrator | could not record STOPPED id=%d: %s",
                run.document_id, exc, exc_info=True,
            )

    async def _finish_failed(self, run: _Run, exc: Exception) -> None:
        if isinstance(exc, ProcessingError):
            message = str(exc)
            logger.warning(
                "Orchestrator | failed id=%d stage=%s: %s", run.document_id, run.stage, exc,
            )
        else:
            message = f"Unexpected error during {run.stage} stage"
            logger.error(
                "Orchestrator | failed id=%d stage=%s: %s",
                run.document_id, run.stage, exc, exc_info=True,
            )

        try:
            if not await self._still_open(run):
                return
            await self._transition(
                run, S.FAILED,
                progress=100,
                current_step=f"Processing failed during {run.stage}",
                step_progress=None,
                error=message,
                error_details=build_error_details(exc, run.stage),
                completed_at=utcnow(),
            )
            await self._broadcaster.publish_stats()
        except Exception as inner:
            logger.error(
                "Orchestrator | could not record FAILED id=%d: %s",
                run.document_id, inner, exc_info=True,
            )

    # -----------------------------------------------------------------------
    # Persistence + broadcast
    # -----------------------------------------------------------------------

    async def _require(self, document_id: int) -> DocumentRecord:
        record = await self._store.get(document_id)
        if record is None:
            raise DocumentNotFoundError(document_id)
        return record

    async def _progress(self, run: _Run, progress: int, step: str, **changes: Any) -> DocumentRecord:
        """Persist a same-status update; progress is clamped to stay monotonic."""
        progress = max(run.progress, progress)
        return await self._persist(run, None, progress=progress, current_step=step, **changes)

    async def _transition(
        self,
        run:     _Run,
        target:  ProcessingStatus,
        **changes: Any,
    ) -> DocumentRecord:
        current = run.record.status
        if not can_transition(current, target):
            raise InvalidTransitionError(run.document_id, current.value, target.value)
        return await self._persist(run, target, **changes)

    async def _persist(
        self,
        run:     _Run,
        status:  ProcessingStatus | None,
        **changes: Any,
    ) -> DocumentRecord:
        if status is not None:
            changes["status"] = status
        record = await self._store.update(run.document_id, changes)
        run.record   = record
        run.progress = record.progress

        self._broadcaster.publish(DocumentUpdate(
            document_id=record.id,
            status=record.status,
            progress=record.progress,
            current_step=record.current_step,
            step_progress=record.step_progress,
            error=record.error,
            llm_provider=record.llm_provider,
        ))
        return record
