"""
Test the document processing scheduler.

Validates:
- Claiming is the only concurrency boundary: no document is dispatched twice
- Outcomes are recorded once, with chunks and status in one transaction
- Backpressure: never more claims than idle worker units
- Timeouts and crashes end in ``failed`` with a distinguishable error
- Reprocessing yields a fresh chunk set
"""
import os
import threading
import time
from concurrent.futures import Future, wait
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

# Set environment variables before importing docshare modules
os.environ.setdefault("DOCSHARE_DATABASE_URL", "sqlite:///:memory:")

import pool_targets
from docshare.context import ExecutionContext
from docshare.database import Base, build_engine
from docshare.models.base import utcnow
from docshare.models.decision_trace import DecisionTrace
from docshare.models.document import Document, DocumentStatus
from docshare.models.document_chunk import DocumentChunk
from docshare.models.project import Project
from docshare.orchestrators.processing_scheduler import (
    INTERRUPTED_ERROR,
    DocumentScheduler,
    ProcessingResult,
)
from docshare.services import document_status
from docshare.services.document_processor import process_document
from docshare.services.reprocessing_service import ReprocessingService
from docshare.workers.pool import FailureKind, WorkerFailure, WorkerPool, WorkerTaskError


GUIDE = """# Overview
The service turns uploaded files into searchable chunks.

# Operations
Restart the worker pool after changing the configuration.
"""


class InlinePool:
    """Runs each task synchronously on the submitting thread."""

    def __init__(self, size=2, target=process_document):
        self.size = size
        self.target = target
        self.calls = []

    def stats(self):
        return {"total": self.size, "busy": 0, "idle": self.size, "queued": 0, "replaced": 0}

    def submit(self, *args, timeout=None):
        self.calls.append(args)
        future = Future()
        try:
            future.set_result(self.target(*args))
        except Exception as e:
            future.set_exception(WorkerTaskError(WorkerFailure(
                FailureKind.PROCESSOR_ERROR, f"{type(e).__name__}: {e}"
            )))
        return future

    def execute(self, *args, timeout=None):
        return self.submit(*args, timeout=timeout).result()


class ManualPool(InlinePool):
    """Holds tasks until the test resolves them; busy while unresolved."""

    def __init__(self, size=2):
        super().__init__(size=size)
        self.pending = []

    def stats(self):
        busy = len([f for f, _ in self.pending if not f.done()])
        return {"total": self.size, "busy": busy, "idle": self.size - busy, "queued": 0, "replaced": 0}

    def submit(self, *args, timeout=None):
        self.calls.append(args)
        future = Future()
        self.pending.append((future, args))
        return future

    def resolve_all(self):
        for future, args in self.pending:
            if not future.done():
                future.set_result(process_document(*args))


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so several threads can share it."""
    engine = build_engine(f"sqlite:///{tmp_path / 'scheduler.db'}")
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def ctx():
    return ExecutionContext.system("scheduler-test")


@pytest.fixture
def project_id(session_factory):
    db = session_factory()
    project = Project(name="Operations manual")
    db.add(project)
    db.commit()
    pid = project.id
    db.close()
    return pid


@pytest.fixture
def add_document(session_factory, project_id, tmp_path):
    """Write a file and register a pending document for it."""
    counter = {"n": 0}

    def _add(name="guide.md", content=GUIDE, mime_type="text/markdown"):
        counter["n"] += 1
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        db = session_factory()
        doc = Document(
            project_id=project_id,
            filename=name,
            original_filename=name,
            mime_type=mime_type,
            file_path=str(path),
            uploaded_at=utcnow() + timedelta(seconds=counter["n"]),
        )
        db.add(doc)
        db.commit()
        doc_id = doc.id
        db.close()
        return doc_id

    return _add


def _load(session_factory, document_id):
    db = session_factory()
    try:
        doc = db.get(Document, document_id)
        chunks = (
            db.query(DocumentChunk)
            .filter(DocumentChunk.document_id == document_id)
            .order_by(DocumentChunk.chunk_index)
            .all()
        )
        db.expunge_all()
        return doc, chunks
    finally:
        db.close()


def _age_claim(session_factory, document_id, seconds):
    """Move a document's last transition ``seconds`` into the past."""
    db = session_factory()
    try:
        db.execute(
            update(Document)
            .where(Document.id == document_id)
            .values(updated_at=utcnow() - timedelta(seconds=seconds))
        )
        db.commit()
    finally:
        db.close()


class TestClaim:
    """Test claiming pending documents."""

    def test_nothing_pending(self, session_factory, ctx):
        scheduler = DocumentScheduler(InlinePool(), session_factory=session_factory, timeout=30)
        assert scheduler.claim_next(ctx) is None

    def test_oldest_first(self, session_factory, add_document, ctx):
        first = add_document("first.md")
        add_document("second.md")
        scheduler = DocumentScheduler(InlinePool(), session_factory=session_factory, timeout=30)

        claimed = scheduler.claim_next(ctx)

        assert claimed.id == first
        assert claimed.file_path.endswith("first.md")
        assert claimed.ctx.actor == ctx.actor
        assert claimed.ctx.request_id != ctx.request_id
        doc, _ = _load(session_factory, first)
        assert doc.status == DocumentStatus.PROCESSING

    def test_concurrent_claims_never_overlap(self, session_factory, add_document, ctx):
        document_ids = {add_document(f"doc-{i}.md") for i in range(12)}
        schedulers = [
            DocumentScheduler(InlinePool(), session_factory=session_factory, timeout=30)
            for _ in range(4)
        ]
        claimed = []
        lock = threading.Lock()
        barrier = threading.Barrier(len(schedulers))

        def drain(scheduler):
            barrier.wait()
            while True:
                doc = scheduler.claim_next(ctx)
                if doc is None:
                    return
                with lock:
                    claimed.append(doc.id)

        threads = [threading.Thread(target=drain, args=(s,)) for s in schedulers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=120)

        assert len(claimed) == len(set(claimed))
        assert set(claimed) == document_ids


class TestOutcome:
    """Test recording processing outcomes."""

    def test_success_persists_chunks_and_trace(self, session_factory, add_document, ctx):
        doc_id = add_document()
        scheduler = DocumentScheduler(InlinePool(), session_factory=session_factory, timeout=30)

        outcome = scheduler.process_one(ctx)

        assert outcome.document_id == doc_id
        assert outcome.recorded is True
        doc, chunks = _load(session_factory, doc_id)
        assert doc.status == DocumentStatus.COMPLETED
        assert doc.processing_error is None
        assert doc.title == "# Overview"
        assert doc.word_count == len(GUIDE.split())
        assert [c.section_title for c in chunks] == ["Overview", "Operations"]
        assert [s["title"] for s in doc.outline_json] == ["Overview", "Operations"]

        db = session_factory()
        traces = db.query(DecisionTrace).filter(DecisionTrace.subject == f"Document:{doc_id}").all()
        assert len(traces) == 1
        assert traces[0].orchestrator_name == "document_scheduler"
        assert traces[0].trace_json["result"] == "success"
        db.close()

    def test_processor_failure(self, session_factory, add_document, ctx):
        doc_id = add_document("diagram.png", content="binary", mime_type="image/png")
        scheduler = DocumentScheduler(InlinePool(), session_factory=session_factory, timeout=30)

        outcome = scheduler.process_one(ctx)

        assert outcome.result.failure.kind == FailureKind.PROCESSOR_ERROR
        doc, chunks = _load(session_factory, doc_id)
        assert doc.status == DocumentStatus.FAILED
        assert doc.processing_error.startswith("processor_error: UnsupportedDocumentTypeError")
        assert chunks == []

    def test_outcome_for_non_processing_document_is_discarded(self, session_factory, add_document, ctx):
        doc_id = add_document()
        scheduler = DocumentScheduler(InlinePool(), session_factory=session_factory, timeout=30)

        recorded = scheduler.report_outcome(
            doc_id,
            ProcessingResult.failed(FailureKind.PROCESSOR_ERROR, "late report"),
            ctx,
        )

        assert recorded is False
        doc, _ = _load(session_factory, doc_id)
        assert doc.status == DocumentStatus.PENDING
        assert doc.processing_error is None

    def test_outcome_is_recorded_once(self, session_factory, add_document, ctx):
        doc_id = add_document()
        scheduler = DocumentScheduler(InlinePool(), session_factory=session_factory, timeout=30)
        claimed = scheduler.claim_next(ctx)
        result = ProcessingResult.success(process_document(claimed.file_path, claimed.mime_type))

        assert scheduler.report_outcome(doc_id, result, claimed.ctx) is True
        assert scheduler.report_outcome(doc_id, result, claimed.ctx) is False

        _, chunks = _load(session_factory, doc_id)
        assert len(chunks) == 2


class TestDispatch:
    """Test backpressure and asynchronous dispatch."""

    def test_claims_no_more_than_idle_units(self, session_factory, add_document, ctx):
        document_ids = [add_document(f"doc-{i}.md") for i in range(5)]
        pool = ManualPool(size=2)
        scheduler = DocumentScheduler(pool, session_factory=session_factory, timeout=30)

        outcomes = scheduler.dispatch_available(ctx)

        assert len(outcomes) == 2
        assert scheduler.dispatch_available(ctx) == []
        assert len(scheduler.in_flight) == 2
        statuses = [_load(session_factory, d)[0].status for d in document_ids]
        assert statuses.count(DocumentStatus.PROCESSING) == 2
        assert statuses.count(DocumentStatus.PENDING) == 3

        pool.resolve_all()
        results = [f.result(timeout=30) for f in outcomes]

        assert all(r.recorded for r in results)
        assert [r.document_id for r in results] == document_ids[:2]
        assert scheduler.in_flight == set()
        assert len(scheduler.dispatch_available(ctx)) == 2

    def test_real_pool_processes_documents(self, session_factory, add_document, ctx):
        document_ids = [add_document(f"doc-{i}.md") for i in range(3)]

        with WorkerPool(size=2, target=pool_targets.process_or_misbehave) as pool:
            scheduler = DocumentScheduler(pool, session_factory=session_factory, timeout=60)
            deadline = time.monotonic() + 120
            while time.monotonic() < deadline:
                outcomes = scheduler.dispatch_available(ctx)
                if not outcomes and not scheduler.in_flight:
                    break
                wait(outcomes, timeout=60)

        for doc_id in document_ids:
            doc, chunks = _load(session_factory, doc_id)
            assert doc.status == DocumentStatus.COMPLETED
            assert len(chunks) == 2

    def test_timeout_fails_document_and_restores_pool(self, session_factory, add_document, ctx):
        doc_id = add_document("hang.md")

        with WorkerPool(size=1, target=pool_targets.process_or_misbehave) as pool:
            scheduler = DocumentScheduler(pool, session_factory=session_factory, timeout=1.0)
            idle_before = pool.stats()["idle"]

            outcome = scheduler.process_one(ctx)

            assert outcome.result.failure.kind == FailureKind.TIMEOUT
            assert pool.stats()["idle"] == idle_before
            assert pool.stats()["replaced"] == 1

        doc, chunks = _load(session_factory, doc_id)
        assert doc.status == DocumentStatus.FAILED
        assert doc.processing_error.startswith("timeout:")
        assert chunks == []

    def test_crash_fails_document(self, session_factory, add_document, ctx):
        doc_id = add_document("crash.md")
        healthy_id = add_document("healthy.md")

        with WorkerPool(size=1, target=pool_targets.process_or_misbehave) as pool:
            scheduler = DocumentScheduler(pool, session_factory=session_factory, timeout=60)
            scheduler.process_one(ctx)
            scheduler.process_one(ctx)

        doc, _ = _load(session_factory, doc_id)
        assert doc.status == DocumentStatus.FAILED
        assert doc.processing_error.startswith("crash:")
        healthy, _ = _load(session_factory, healthy_id)
        assert healthy.status == DocumentStatus.COMPLETED


class TestLifecycle:
    """Test startup recovery, the polling loop and reprocessing."""

    def test_interrupted_documents_are_failed(self, session_factory, add_document, ctx):
        doc_id = add_document()
        db = session_factory()
        document_status.claim(db, doc_id, ctx)
        db.commit()
        db.close()
        _age_claim(session_factory, doc_id, seconds=120)

        scheduler = DocumentScheduler(
            InlinePool(), session_factory=session_factory, timeout=30, stale_claim_grace=10
        )
        assert scheduler.fail_interrupted(ctx) == 1

        doc, _ = _load(session_factory, doc_id)
        assert doc.status == DocumentStatus.FAILED
        assert doc.processing_error == INTERRUPTED_ERROR

    def test_recent_claim_of_another_scheduler_survives_startup(self, session_factory, add_document, ctx):
        doc_id = add_document()
        pool = ManualPool(size=1)
        running = DocumentScheduler(pool, session_factory=session_factory, timeout=30, stale_claim_grace=10)
        outcomes = running.dispatch_available(ctx)
        assert len(outcomes) == 1

        starting = DocumentScheduler(
            InlinePool(), session_factory=session_factory, timeout=30, stale_claim_grace=10
        )
        assert starting.fail_interrupted(ctx) == 0
        assert _load(session_factory, doc_id)[0].status == DocumentStatus.PROCESSING

        pool.resolve_all()
        outcome = outcomes[0].result(timeout=30)

        assert outcome.recorded
        doc, chunks = _load(session_factory, doc_id)
        assert doc.status == DocumentStatus.COMPLETED
        assert doc.processing_error is None
        assert len(chunks) == 2

    def test_run_forever_stops_on_event(self, session_factory, add_document, ctx):
        doc_id = add_document()
        scheduler = DocumentScheduler(InlinePool(), session_factory=session_factory, timeout=30)
        stop = threading.Event()
        thread = threading.Thread(
            target=scheduler.run_forever,
            kwargs={"stop_event": stop, "interval": 0.05, "ctx": ctx},
        )
        thread.start()

        deadline = time.monotonic() + 30
        while time.monotonic() < deadline:
            if _load(session_factory, doc_id)[0].status == DocumentStatus.COMPLETED:
                break
            time.sleep(0.05)
        stop.set()
        thread.join(timeout=30)

        assert not thread.is_alive()
        assert _load(session_factory, doc_id)[0].status == DocumentStatus.COMPLETED

    def test_reprocessing_generates_fresh_chunks(self, session_factory, add_document, ctx):
        doc_id = add_document()
        scheduler = DocumentScheduler(InlinePool(), session_factory=session_factory, timeout=30)
        scheduler.process_one(ctx)
        _, old_chunks = _load(session_factory, doc_id)
        old_ids = {c.id for c in old_chunks}
        assert len(old_ids) == 2

        stats = ReprocessingService(session_factory).reprocess(ctx, document_ids=[doc_id])
        assert stats.documents_reset == 1
        assert stats.chunks_deleted == 2

        doc, chunks = _load(session_factory, doc_id)
        assert doc.status == DocumentStatus.PENDING
        assert doc.processing_error is None
        assert chunks == []

        scheduler.process_one(ctx)
        doc, new_chunks = _load(session_factory, doc_id)
        assert doc.status == DocumentStatus.COMPLETED
        assert len(new_chunks) == 2
        assert old_ids.isdisjoint({c.id for c in new_chunks})
