"""Document processing scheduler: claim pending documents and dispatch them to the worker pool."""
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional, Set
from uuid import UUID

from sqlalchemy import select

from docshare.context import ExecutionContext
from docshare.database import SessionLocal, session_scope
from docshare.models.base import utcnow
from docshare.models.document import Document, DocumentStatus
from docshare.models.document_chunk import DocumentChunk
from docshare.orchestrators.base import BaseOrchestrator, OrchestrationError
from docshare.services import document_status
from docshare.services.document_processor import ProcessedDocument
from docshare.workers.pool import FailureKind, WorkerFailure, WorkerTaskError

logger = logging.getLogger(__name__)

# Candidates examined per claim attempt; losers of a race move on to the next
CLAIM_BATCH_SIZE = 10

INTERRUPTED_ERROR = "Processing was interrupted before an outcome was recorded"


class DocumentSchedulerError(OrchestrationError):
    """Base exception for scheduler errors."""
    pass


@dataclass(frozen=True)
class ClaimedDocument:
    """A document this scheduler has moved to ``processing`` and must report on."""
    id: UUID
    project_id: UUID
    file_path: str
    mime_type: str
    ctx: ExecutionContext


@dataclass
class ProcessingResult:
    """Outcome of one processing call: a processed document or a failure."""
    processed: Optional[ProcessedDocument] = None
    failure: Optional[WorkerFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, processed: ProcessedDocument) -> "ProcessingResult":
        return cls(processed=processed)

    @classmethod
    def failed(cls, kind: FailureKind, message: str) -> "ProcessingResult":
        return cls(failure=WorkerFailure(kind, message))

    @property
    def error_message(self) -> Optional[str]:
        return str(self.failure) if self.failure else None


@dataclass(frozen=True)
class DispatchOutcome:
    """What happened to a dispatched document once its outcome was recorded."""
    document_id: UUID
    result: ProcessingResult
    recorded: bool


class DocumentScheduler(BaseOrchestrator):
    """
    Claims pending documents and runs them through the worker pool.

    Steps for each document:
    1. Claim: atomic pending -> processing (the only concurrency boundary)
    2. Dispatch: one processing call on an isolated worker unit
    3. Report: completed + fresh chunks, or failed + error, in one transaction

    Rules:
    - A document is attempted once per claim; retry is explicit reprocessing
    - Timeouts and crashes are reported exactly like processor failures
    - No more documents are claimed than the pool has idle units for
    """

    @property
    def orchestrator_name(self) -> str:
        return "document_scheduler"

    def __init__(
        self,
        pool,
        session_factory: Callable = SessionLocal,
        timeout: Optional[float] = None,
        stale_claim_grace: Optional[float] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            pool: WorkerPool (anything with ``submit``, ``execute`` and ``stats``)
            session_factory: Callable returning a new Session
            timeout: Per-document processing timeout in seconds
            stale_claim_grace: Seconds past ``timeout`` after which a
                ``processing`` claim is considered abandoned
        """
        if timeout is None or stale_claim_grace is None:
            from docshare.config import get_settings
            settings = get_settings()
            if timeout is None:
                timeout = settings.worker_timeout_seconds
            if stale_claim_grace is None:
                stale_claim_grace = settings.scheduler_stale_claim_grace_seconds
        self.pool = pool
        self.session_factory = session_factory
        self.timeout = timeout
        self.stale_claim_grace = stale_claim_grace
        self._lock = threading.Lock()
        self._in_flight: Set[UUID] = set()

    # Claim / report

    def claim_next(self, ctx: ExecutionContext) -> Optional[ClaimedDocument]:
        """
        Claim the oldest pending document.

        Returns:
            The claimed document, or None when nothing is pending
        """
        with session_scope(self.session_factory) as db:
            while True:
                candidate_ids = db.execute(
                    select(Document.id)
                    .where(Document.status == DocumentStatus.PENDING)
                    .order_by(Document.uploaded_at.asc(), Document.id.asc())
                    .limit(CLAIM_BATCH_SIZE)
                ).scalars().all()
                if not candidate_ids:
                    return None

                for document_id in candidate_ids:
                    run_ctx = ctx.child()
                    if not document_status.claim(db, document_id, run_ctx):
                        continue
                    document = db.get(Document, document_id)
                    return ClaimedDocument(
                        id=document.id,
                        project_id=document.project_id,
                        file_path=document.file_path,
                        mime_type=document.mime_type,
                        ctx=run_ctx,
                    )
                # Every candidate was taken by a concurrent claimer; look again

    def report_outcome(
        self,
        document_id: UUID,
        result: ProcessingResult,
        ctx: ExecutionContext,
    ) -> bool:
        """
        Record the outcome of a processing run.

        On success the chunks are written and the document moves to
        ``completed`` in one transaction; on failure it moves to ``failed``
        with the error text.

        Returns:
            True if recorded, False if the document was no longer processing
        """
        with session_scope(self.session_factory) as db:
            trace = self.start_trace(ctx, subject=f"Document:{document_id}")
            if result.ok:
                recorded = self._record_success(db, document_id, result.processed, ctx, trace)
                error = None
            else:
                with trace.step("mark_failed") as step:
                    recorded = document_status.mark_failed(db, document_id, result.error_message, ctx)
                    step.details = {"kind": result.failure.kind.value, "recorded": recorded}
                error = result.error_message

            if not recorded:
                logger.warning(
                    "Outcome for document %s discarded: it is no longer processing (%s)",
                    document_id, ctx.log_extra(),
                )
                trace.log_step("discard_outcome", status="skipped")
            self.persist_trace(db, trace, error=error)

        if recorded and result.ok:
            logger.info(
                "Processed document %s: %d chunks created (%s)",
                document_id, len(result.processed.chunks), ctx.log_extra(),
            )
        elif recorded:
            logger.error("Failed to process document %s: %s (%s)", document_id, error, ctx.log_extra())
        return recorded

    def _record_success(self, db, document_id, processed: ProcessedDocument, ctx, trace) -> bool:
        with trace.step("mark_completed") as step:
            recorded = document_status.mark_completed(
                db,
                document_id,
                ctx,
                title=processed.title[:255],
                outline_json=processed.outline_json(),
                page_count=processed.page_count,
                word_count=processed.word_count,
            )
            step.details = {"recorded": recorded}
        if not recorded:
            return False

        with trace.step("replace_chunks") as step:
            db.query(DocumentChunk).filter(
                DocumentChunk.document_id == document_id
            ).delete(synchronize_session=False)
            db.add_all([
                DocumentChunk(
                    document_id=document_id,
                    chunk_index=chunk.chunk_index,
                    section_id=chunk.section_id,
                    section_title=chunk.section_title[:512] if chunk.section_title else None,
                    start_char=chunk.start_char,
                    end_char=chunk.end_char,
                    content=chunk.content,
                )
                for chunk in processed.chunks
            ])
            db.flush()
            step.details = {"chunks_created": len(processed.chunks)}
        return True

    # Dispatch

    def process_one(self, ctx: ExecutionContext) -> Optional[DispatchOutcome]:
        """
        Claim one document, process it and record the outcome, blocking.

        Returns:
            The outcome, or None when nothing was pending
        """
        claimed = self.claim_next(ctx)
        if claimed is None:
            return None
        self._mark_in_flight(claimed.id)
        try:
            result = self._execute(claimed)
            recorded = self.report_outcome(claimed.id, result, claimed.ctx)
        finally:
            self._clear_in_flight(claimed.id)
        return DispatchOutcome(claimed.id, result, recorded)

    def dispatch_available(self, ctx: ExecutionContext) -> List[Future]:
        """
        Claim as many documents as the pool can start right away and submit them.

        Returns:
            One future per dispatched document, resolving to a DispatchOutcome
            after the outcome has been recorded
        """
        stats = self.pool.stats()
        capacity = stats["idle"] - stats.get("queued", 0)
        outcomes: List[Future] = []

        while capacity > 0:
            claimed = self.claim_next(ctx)
            if claimed is None:
                break
            self._mark_in_flight(claimed.id)
            outcome: Future = Future()
            try:
                task = self.pool.submit(claimed.file_path, claimed.mime_type, timeout=self.timeout)
            except Exception as e:
                self._finish(claimed, ProcessingResult.failed(FailureKind.CRASH, f"Dispatch failed: {e}"), outcome)
                outcomes.append(outcome)
                break
            task.add_done_callback(
                lambda f, claimed=claimed, outcome=outcome: self._finish(claimed, self._result_of(f), outcome)
            )
            outcomes.append(outcome)
            capacity -= 1

        if outcomes:
            logger.info("Dispatched %d document(s) (%s)", len(outcomes), ctx.log_extra())
        return outcomes

    def _execute(self, claimed: ClaimedDocument) -> ProcessingResult:
        try:
            processed = self.pool.execute(claimed.file_path, claimed.mime_type, timeout=self.timeout)
        except WorkerTaskError as e:
            return ProcessingResult(failure=e.failure)
        except Exception as e:
            return ProcessingResult.failed(FailureKind.CRASH, str(e))
        return ProcessingResult.success(processed)

    @staticmethod
    def _result_of(task: Future) -> ProcessingResult:
        try:
            return ProcessingResult.success(task.result())
        except WorkerTaskError as e:
            return ProcessingResult(failure=e.failure)
        except Exception as e:
            return ProcessingResult.failed(FailureKind.CRASH, str(e) or type(e).__name__)

    def _finish(self, claimed: ClaimedDocument, result: ProcessingResult, outcome: Future) -> None:
        try:
            recorded = self.report_outcome(claimed.id, result, claimed.ctx)
        except Exception as e:
            logger.exception("Could not record outcome for document %s", claimed.id)
            outcome.set_exception(e)
        else:
            outcome.set_result(DispatchOutcome(claimed.id, result, recorded))
        finally:
            self._clear_in_flight(claimed.id)

    def _mark_in_flight(self, document_id: UUID) -> None:
        with self._lock:
            if document_id in self._in_flight:
                raise DocumentSchedulerError(f"Document {document_id} is already in flight")
            self._in_flight.add(document_id)

    def _clear_in_flight(self, document_id: UUID) -> None:
        with self._lock:
            self._in_flight.discard(document_id)

    @property
    def in_flight(self) -> Set[UUID]:
        with self._lock:
            return set(self._in_flight)

    # Lifecycle

    def fail_interrupted(self, ctx: ExecutionContext) -> int:
        """
        Mark documents abandoned in ``processing`` by a dead scheduler as failed.

        A claim is abandoned once it is older than the worker timeout plus
        ``stale_claim_grace``: any live scheduler would have reported an
        outcome by then. Younger claims may belong to another scheduler
        process that is still running, so they are left alone.

        Returns:
            Number of documents marked failed
        """
        # The claim transition stamps updated_at, so it is the claim time
        cutoff = utcnow() - timedelta(seconds=(self.timeout or 0) + self.stale_claim_grace)
        count = 0
        with session_scope(self.session_factory) as db:
            stuck_ids = db.execute(
                select(Document.id).where(
                    Document.status == DocumentStatus.PROCESSING,
                    Document.updated_at < cutoff,
                )
            ).scalars().all()
            for document_id in stuck_ids:
                if document_id in self.in_flight:
                    continue
                if document_status.mark_failed(db, document_id, INTERRUPTED_ERROR, ctx):
                    count += 1
        if count:
            logger.warning("Marked %d interrupted document(s) as failed (%s)", count, ctx.log_extra())
        return count

    def run_forever(
        self,
        stop_event: Optional[threading.Event] = None,
        interval: Optional[float] = None,
        ctx: Optional[ExecutionContext] = None,
    ) -> None:
        """
        Poll for pending documents until ``stop_event`` is set.

        Errors in a cycle are logged and the loop continues.
        """
        if interval is None:
            from docshare.config import get_settings
            interval = get_settings().scheduler_interval_seconds
        stop_event = stop_event or threading.Event()
        ctx = ctx or ExecutionContext.system("scheduler")

        logger.info("Starting document processing queue (interval %.1fs)", interval)
        self.fail_interrupted(ctx)
        while not stop_event.is_set():
            try:
                self.dispatch_available(ctx)
            except Exception:
                logger.exception("Error in processing queue cycle")
            stop_event.wait(interval)
        logger.info("Document processing queue stopped")
