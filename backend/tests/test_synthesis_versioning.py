"""
Test AudienceSynthesis versioning, immutability and single-flight regeneration.

Validates:
- Versions are gap-free and strictly increasing per project
- Earlier versions are never modified by later generations
- Concurrent triggers commit exactly one new version
- A lost uniqueness race is a benign conflict, not a corruption
- Failed generations commit nothing
"""
import os
import threading
import time
from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

# Set environment variables before importing docshare modules
os.environ.setdefault("DOCSHARE_DATABASE_URL", "sqlite:///:memory:")

from docshare.context import ExecutionContext
from docshare.database import Base, build_engine
from docshare.models.audience_synthesis import AudienceSynthesis
from docshare.models.base import utcnow
from docshare.models.conversation import Conversation, Message
from docshare.models.decision_trace import DecisionTrace
from docshare.models.document import Document
from docshare.models.project import Project
from docshare.orchestrators.synthesis_orchestrator import (
    OutcomeStatus,
    ProjectNotFoundError,
    SynthesisGenerationError,
    SynthesisNotFoundError,
    SynthesisOrchestrator,
)
from docshare.services.synthesis_engine import SynthesisEngine
from docshare.utils.invariants import (
    SnapshotImmutableError,
    VersionSequenceError,
    check_version_sequence,
)


BASE_TIME = utcnow() - timedelta(days=30)


class CountingGenerator(SynthesisEngine):
    """Heuristic engine that counts calls and can be slowed down."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def generate(self, conversations, previous=None):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        return super().generate(conversations, previous)


class BarrierGenerator(SynthesisEngine):
    """Holds every caller until all parties have read the same base version."""

    def __init__(self, barrier):
        self.barrier = barrier

    def generate(self, conversations, previous=None):
        self.barrier.wait(timeout=30)
        return super().generate(conversations, previous)


class FailingGenerator:
    def generate(self, conversations, previous=None):
        raise RuntimeError("upstream model unavailable")


class HangingGenerator:
    def generate(self, conversations, previous=None):
        time.sleep(3)


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so several threads can share it."""
    engine = build_engine(f"sqlite:///{tmp_path / 'synthesis.db'}")
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def ctx():
    return ExecutionContext(actor="test-operator")


@pytest.fixture
def project_id(session_factory):
    db = session_factory()
    project = Project(name="Product handbook")
    db.add(project)
    db.commit()
    pid = project.id
    db.close()
    return pid


@pytest.fixture
def document_id(session_factory, project_id):
    db = session_factory()
    doc = Document(
        project_id=project_id,
        filename="stored-handbook.pdf",
        original_filename="handbook.pdf",
        mime_type="application/pdf",
        file_path="/data/handbook.pdf",
    )
    db.add(doc)
    db.commit()
    doc_id = doc.id
    db.close()
    return doc_id


@pytest.fixture
def add_conversation(session_factory, project_id, document_id):
    """Add an ended conversation ``day`` days after the base time."""

    def _add(day, sentiment="neutral", topics=("Setup",), question="How do I install it?", ended=True):
        db = session_factory()
        started = BASE_TIME + timedelta(days=day)
        conversation = Conversation(
            project_id=project_id,
            started_at=started,
            ended_at=started + timedelta(minutes=15) if ended else None,
            sentiment=sentiment,
            topics=list(topics),
            summary="Visitor asked about installation.",
            message_count=3,
        )
        db.add(conversation)
        db.flush()
        db.add_all([
            Message(conversation_id=conversation.id, role="user", content=question),
            Message(
                conversation_id=conversation.id,
                role="assistant",
                content="See the installation chapter.",
                cited_document_ids=[str(document_id)],
                cited_sections=[{"documentId": str(document_id), "section": "Installation"}],
            ),
            Message(conversation_id=conversation.id, role="user", content="Thanks."),
        ])
        db.commit()
        db.close()

    return _add


def _orchestrator(session_factory, generator=None, **kwargs):
    kwargs.setdefault("min_conversations", 1)
    kwargs.setdefault("min_messages", 1)
    kwargs.setdefault("timeout", 30)
    return SynthesisOrchestrator(session_factory=session_factory, generator=generator, **kwargs)


def _row_count(session_factory, project_id):
    db = session_factory()
    try:
        return db.query(AudienceSynthesis).filter(AudienceSynthesis.project_id == project_id).count()
    finally:
        db.close()


class TestRegeneration:
    """Test the version pipeline."""

    def test_no_conversations_is_skipped(self, session_factory, project_id, ctx):
        outcome = _orchestrator(session_factory).regenerate(project_id, ctx)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.synthesis is None
        assert outcome.reason == "no new ended conversations"
        assert _row_count(session_factory, project_id) == 0

    def test_open_conversations_are_ignored(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1, ended=False)

        outcome = _orchestrator(session_factory).regenerate(project_id, ctx)
        assert outcome.status == OutcomeStatus.SKIPPED

    def test_below_message_threshold_is_skipped(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1)

        outcome = _orchestrator(session_factory, min_messages=5).regenerate(project_id, ctx)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert "need 5" in outcome.reason
        assert _row_count(session_factory, project_id) == 0

    def test_first_version(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1, sentiment="negative")
        add_conversation(2, sentiment="positive")

        outcome = _orchestrator(session_factory).regenerate(project_id, ctx)

        assert outcome.status == OutcomeStatus.CREATED
        assert outcome.version == 1
        synthesis = outcome.synthesis
        assert synthesis["conversationCount"] == 2
        assert synthesis["totalMessages"] == 6
        assert synthesis["dateRangeFrom"] == (BASE_TIME + timedelta(days=1)).isoformat()
        assert synthesis["dateRangeTo"] == (BASE_TIME + timedelta(days=2, minutes=15)).isoformat()
        assert synthesis["commonQuestions"][0]["documents"] == ["handbook.pdf"]
        assert synthesis["documentSuggestions"][0]["section"] == "Installation"

    def test_incremental_versions(self, session_factory, project_id, add_conversation, ctx):
        orchestrator = _orchestrator(session_factory)
        add_conversation(1)
        add_conversation(2)
        first = orchestrator.regenerate(project_id, ctx)

        add_conversation(3)
        second = orchestrator.regenerate(project_id, ctx)

        assert second.status == OutcomeStatus.CREATED
        assert second.version == 2
        assert second.synthesis["conversationCount"] == 3
        assert second.synthesis["totalMessages"] == 9
        assert second.synthesis["dateRangeFrom"] == first.synthesis["dateRangeFrom"]
        assert second.synthesis["commonQuestions"][0]["frequency"] == 3

    def test_nothing_new_is_skipped(self, session_factory, project_id, add_conversation, ctx):
        orchestrator = _orchestrator(session_factory)
        add_conversation(1)
        created = orchestrator.regenerate(project_id, ctx)

        outcome = orchestrator.regenerate(project_id, ctx)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.synthesis == created.synthesis
        assert _row_count(session_factory, project_id) == 1

    def test_full_regeneration(self, session_factory, project_id, add_conversation, ctx):
        orchestrator = _orchestrator(session_factory)
        add_conversation(1)
        orchestrator.regenerate(project_id, ctx)
        add_conversation(2)
        orchestrator.regenerate(project_id, ctx)

        outcome = orchestrator.regenerate(project_id, ctx, full=True)

        assert outcome.version == 3
        assert outcome.synthesis["conversationCount"] == 2
        assert outcome.synthesis["commonQuestions"][0]["frequency"] == 2

    def test_unknown_project(self, session_factory, ctx):
        with pytest.raises(ProjectNotFoundError):
            _orchestrator(session_factory).regenerate(uuid4(), ctx)

    def test_decision_trace_recorded(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1)
        _orchestrator(session_factory).regenerate(project_id, ctx)

        db = session_factory()
        trace = db.query(DecisionTrace).filter(DecisionTrace.request_id == ctx.request_id).one()
        actions = [s["action"] for s in trace.trace_json["steps"]]
        assert actions == ["load_previous", "load_conversations", "check_threshold", "generate", "insert_version"]
        assert trace.trace_json["evidence"][0]["type"] == "conversation_window"
        db.close()


class TestReadPaths:
    """Test current / list / specific version reads."""

    def test_current_and_specific_versions(self, session_factory, project_id, add_conversation, ctx):
        orchestrator = _orchestrator(session_factory)
        add_conversation(1)
        first = orchestrator.regenerate(project_id, ctx)
        add_conversation(2, sentiment="negative", topics=["Pricing"])
        orchestrator.regenerate(project_id, ctx)

        current = orchestrator.get_current(project_id)
        version_one = orchestrator.get_version(project_id, 1)

        assert current["version"] == 2
        assert version_one == first.synthesis

    def test_list_versions_ascending(self, session_factory, project_id, add_conversation, ctx):
        orchestrator = _orchestrator(session_factory)
        for day in range(1, 4):
            add_conversation(day)
            orchestrator.regenerate(project_id, ctx)

        versions = orchestrator.list_versions(project_id)

        assert [v["version"] for v in versions] == [1, 2, 3]
        assert [v["conversationCount"] for v in versions] == [1, 2, 3]
        assert set(versions[0]) == {"id", "version", "conversationCount", "createdAt"}

    def test_no_synthesis_yet(self, session_factory, project_id):
        orchestrator = _orchestrator(session_factory)

        assert orchestrator.get_current(project_id) is None
        assert orchestrator.list_versions(project_id) == []

    def test_missing_version(self, session_factory, project_id):
        with pytest.raises(SynthesisNotFoundError):
            _orchestrator(session_factory).get_version(project_id, 7)


class TestImmutability:
    """Persisted snapshots never change."""

    @pytest.fixture
    def snapshot_id(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1)
        outcome = _orchestrator(session_factory).regenerate(project_id, ctx)
        return UUID(outcome.synthesis["id"])

    def _get(self, db, snapshot_id):
        return db.get(AudienceSynthesis, snapshot_id)

    def test_update_rejected(self, session_factory, snapshot_id):
        db = session_factory()
        row = self._get(db, snapshot_id)
        row.overview = "rewritten"
        with pytest.raises(SnapshotImmutableError):
            db.commit()
        db.rollback()
        db.close()

    def test_delete_rejected(self, session_factory, snapshot_id):
        db = session_factory()
        db.delete(self._get(db, snapshot_id))
        with pytest.raises(SnapshotImmutableError):
            db.commit()
        db.rollback()
        db.close()

    def test_bulk_update_rejected(self, session_factory, snapshot_id):
        db = session_factory()
        with pytest.raises(SnapshotImmutableError):
            db.execute(update(AudienceSynthesis).values(overview="rewritten"))
        db.rollback()
        db.close()

    def test_earlier_version_unchanged_by_later_ones(self, session_factory, project_id, add_conversation, ctx):
        orchestrator = _orchestrator(session_factory)
        add_conversation(1)
        before = orchestrator.regenerate(project_id, ctx).synthesis

        add_conversation(2, sentiment="negative", topics=["Pricing"])
        orchestrator.regenerate(project_id, ctx)
        orchestrator.regenerate(project_id, ctx, full=True)

        assert orchestrator.get_version(project_id, 1) == before

    def test_version_sequence_check(self):
        check_version_sequence([1, 2, 3])
        with pytest.raises(VersionSequenceError):
            check_version_sequence([1, 3])
        with pytest.raises(VersionSequenceError):
            check_version_sequence([2])


class TestConcurrency:
    """Concurrent triggers for one project."""

    def test_concurrent_triggers_share_one_run(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1)
        generator = CountingGenerator(delay=0.5)
        orchestrator = _orchestrator(session_factory, generator=generator)
        outcomes = []
        lock = threading.Lock()

        def trigger():
            outcome = orchestrator.regenerate(project_id, ctx.child())
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=trigger) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert len(outcomes) == 5
        assert generator.calls == 1
        assert {o.version for o in outcomes} == {1}
        assert _row_count(session_factory, project_id) == 1

    def test_race_between_processes_commits_one_version(self, session_factory, project_id, add_conversation, ctx):
        """Two orchestrators stand in for two processes with separate single-flight state."""
        add_conversation(1)
        barrier = threading.Barrier(2)
        orchestrators = [
            _orchestrator(session_factory, generator=BarrierGenerator(barrier))
            for _ in range(2)
        ]
        outcomes = []
        lock = threading.Lock()

        def trigger(orchestrator):
            outcome = orchestrator.regenerate(project_id, ctx.child())
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=trigger, args=(o,)) for o in orchestrators]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == ["conflict", "created"]
        assert {o.version for o in outcomes} == {1}
        assert _row_count(session_factory, project_id) == 1

        winner = next(o for o in outcomes if o.status == OutcomeStatus.CREATED)
        loser = next(o for o in outcomes if o.status == OutcomeStatus.CONFLICT)
        assert loser.synthesis == winner.synthesis


class TestFailures:
    """Failed generations leave the current synthesis untouched."""

    def test_generator_error(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1)
        good = _orchestrator(session_factory).regenerate(project_id, ctx)
        add_conversation(2)

        with pytest.raises(SynthesisGenerationError) as exc_info:
            _orchestrator(session_factory, generator=FailingGenerator()).regenerate(project_id, ctx)

        assert exc_info.value.kind == "generator"
        assert "upstream model unavailable" in str(exc_info.value)
        assert _row_count(session_factory, project_id) == 1
        assert _orchestrator(session_factory).get_current(project_id) == good.synthesis

    def test_failure_is_traced(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1)

        with pytest.raises(SynthesisGenerationError):
            _orchestrator(session_factory, generator=FailingGenerator()).regenerate(project_id, ctx)

        db = session_factory()
        trace = db.query(DecisionTrace).filter(DecisionTrace.request_id == ctx.request_id).one()
        assert trace.trace_json["result"] == "failed"
        assert "upstream model unavailable" in trace.trace_json["error"]
        db.close()

    def test_timeout(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1)
        orchestrator = _orchestrator(session_factory, generator=HangingGenerator(), timeout=0.2)

        with pytest.raises(SynthesisGenerationError) as exc_info:
            orchestrator.regenerate(project_id, ctx)

        assert exc_info.value.kind == "timeout"
        assert _row_count(session_factory, project_id) == 0

    def test_failure_is_not_retried_automatically(self, session_factory, project_id, add_conversation, ctx):
        add_conversation(1)
        generator = FailingGenerator()
        orchestrator = _orchestrator(session_factory, generator=generator)

        with pytest.raises(SynthesisGenerationError):
            orchestrator.regenerate(project_id, ctx)

        orchestrator.generator = SynthesisEngine()
        outcome = orchestrator.regenerate(project_id, ctx)
        assert outcome.status == OutcomeStatus.CREATED
        assert outcome.version == 1
