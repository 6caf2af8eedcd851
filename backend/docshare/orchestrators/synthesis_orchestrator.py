"""
Audience Synthesis Orchestrator

Generates new versions of a project's audience synthesis and serves the
read paths over them.

Versioning:
- Versions are append-only and gap-free per project (1, 2, ..., N)
- Regeneration is single-flight per project inside a process
- Across processes UNIQUE(project_id, version) decides: the losing writer
  rolls back and reports a conflict carrying the winner's version
"""
import enum
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from docshare.context import ExecutionContext
from docshare.database import SessionLocal, session_scope
from docshare.models.audience_synthesis import AudienceSynthesis
from docshare.models.conversation import Conversation
from docshare.models.document import Document
from docshare.models.project import Project
from docshare.orchestrators.base import BaseOrchestrator, OrchestrationError, RunTrace
from docshare.services.synthesis_engine import (
    ConversationDigest,
    MessageDigest,
    PreviousSynthesis,
    SynthesisData,
    SynthesisEngine,
    SynthesisGenerator,
)
from docshare.utils.invariants import check_version_sequence
from docshare.utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)


class SynthesisOrchestratorError(OrchestrationError):
    """Base exception for synthesis orchestrator errors."""
    pass


class ProjectNotFoundError(SynthesisOrchestratorError):
    """Raised when the project does not exist."""
    pass


class SynthesisNotFoundError(SynthesisOrchestratorError):
    """Raised when a requested synthesis version does not exist."""
    pass


class SynthesisGenerationError(SynthesisOrchestratorError):
    """
    Raised when a regeneration attempt is abandoned.

    Nothing is committed; the project's current synthesis is unchanged.
    A new explicit trigger is needed to try again.

    Attributes:
        kind: data_fetch | generator | timeout | persist
    """

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"{kind}: {message}")


class OutcomeStatus(str, enum.Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class SynthesisOutcome:
    """
    Result of a regeneration trigger.

    ``synthesis`` is the new version for ``created``, the unchanged current
    version (or None) for ``skipped``, and the winning concurrent version
    for ``conflict``.
    """
    status: OutcomeStatus
    synthesis: Optional[dict]
    reason: Optional[str] = None

    @property
    def version(self) -> Optional[int]:
        return self.synthesis["version"] if self.synthesis else None


class SynthesisOrchestrator(BaseOrchestrator):
    """
    Orchestrates audience synthesis regeneration.

    Pipeline:
    1. Load the latest version (the base for version N + 1)
    2. Load ended conversations after its covered end date, or all of
       them for a full regeneration
    3. Skip if the new window is below the configured thresholds
    4. Generate the payload (bounded by ``timeout``)
    5. Insert version N + 1; a uniqueness conflict means another writer won
    """

    @property
    def orchestrator_name(self) -> str:
        return "audience_synthesis_orchestrator"

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        generator: Optional[SynthesisGenerator] = None,
        min_conversations: Optional[int] = None,
        min_messages: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            session_factory: Callable returning a new Session
            generator: Synthesis generator (defaults to the heuristic engine)
            min_conversations: Skip below this many new conversations
            min_messages: Skip below this many new messages
            timeout: Seconds a generator may run before the attempt is abandoned
        """
        from docshare.config import get_settings

        settings = get_settings()
        self.session_factory = session_factory
        self.generator = generator or SynthesisEngine()
        self.min_conversations = (
            settings.synthesis_min_conversations if min_conversations is None else min_conversations
        )
        self.min_messages = settings.synthesis_min_messages if min_messages is None else min_messages
        self.timeout = settings.synthesis_timeout_seconds if timeout is None else timeout
        self._flight = SingleFlight()

    # Read paths

    def get_current(self, project_id: UUID) -> Optional[dict]:
        """Highest version for the project, or None if none exists yet."""
        with session_scope(self.session_factory) as db:
            row = self._latest(db, project_id)
            return row.to_dict() if row else None

    def list_versions(self, project_id: UUID) -> List[dict]:
        """Version metadata ordered by version ascending."""
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(
                    AudienceSynthesis.id,
                    AudienceSynthesis.version,
                    AudienceSynthesis.conversation_count,
                    AudienceSynthesis.created_at,
                )
                .where(AudienceSynthesis.project_id == project_id)
                .order_by(AudienceSynthesis.version.asc())
            ).all()

        check_version_sequence([r.version for r in rows], project_id=str(project_id))
        return [
            {
                "id": str(r.id),
                "version": r.version,
                "conversationCount": r.conversation_count,
                "createdAt": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]

    def get_version(self, project_id: UUID, version: int) -> dict:
        """
        One specific version.

        Raises:
            SynthesisNotFoundError: If the project has no such version
        """
        with session_scope(self.session_factory) as db:
            row = self._by_version(db, project_id, version)
            if row is None:
                raise SynthesisNotFoundError(
                    f"Synthesis version {version} not found for project {project_id}"
                )
            return row.to_dict()

    # Regeneration

    def regenerate(
        self,
        project_id: UUID,
        ctx: ExecutionContext,
        full: bool = False,
    ) -> SynthesisOutcome:
        """
        Generate the next synthesis version for a project.

        Concurrent calls for the same project share one run and its outcome.

        Args:
            project_id: Project to synthesise
            ctx: Execution context
            full: Recompute from all ended conversations instead of merging
                the new ones into the latest version

        Returns:
            SynthesisOutcome (created, skipped or conflict)

        Raises:
            ProjectNotFoundError: If the project does not exist
            SynthesisGenerationError: If the attempt was abandoned
        """
        return self._flight.do(project_id, lambda: self._regenerate(project_id, ctx, full))

    def _regenerate(self, project_id: UUID, ctx: ExecutionContext, full: bool) -> SynthesisOutcome:
        trace = self.start_trace(ctx, subject=f"Project:{project_id}")
        mode = "full" if full else "incremental"
        logger.info("Regenerating synthesis for project %s (%s, %s)", project_id, mode, ctx.log_extra())

        try:
            previous, conversations, current = self._load_inputs(project_id, full, trace)
        except SQLAlchemyError as e:
            raise self._abandon(trace, SynthesisGenerationError("data_fetch", str(e)))

        message_total = sum(c.message_count for c in conversations)
        below = self._below_threshold(len(conversations), message_total)
        trace.log_step("check_threshold", details={
            "conversations": len(conversations),
            "messages": message_total,
            "min_conversations": self.min_conversations,
            "min_messages": self.min_messages,
            "skipped": below is not None,
        })
        if below:
            with session_scope(self.session_factory) as db:
                self.persist_trace(db, trace)
            logger.info("Synthesis for project %s skipped: %s", project_id, below)
            return SynthesisOutcome(OutcomeStatus.SKIPPED, current, reason=below)

        base = None if full else previous
        try:
            with trace.step("generate") as step:
                data = self._generate(conversations, base)
                step.details = {"generator": type(self.generator).__name__}
        except SynthesisGenerationError as e:
            raise self._abandon(trace, e)

        next_version = (previous.version if previous else 0) + 1
        return self._insert_version(project_id, next_version, data, conversations, base, trace, ctx)

    def _load_inputs(
        self,
        project_id: UUID,
        full: bool,
        trace: RunTrace,
    ) -> Tuple[Optional[PreviousSynthesis], List[ConversationDigest], Optional[dict]]:
        with session_scope(self.session_factory) as db:
            if db.get(Project, project_id) is None:
                raise ProjectNotFoundError(f"Project {project_id} not found")

            with trace.step("load_previous") as step:
                row = self._latest(db, project_id)
                previous = None
                current = None
                if row is not None:
                    previous = PreviousSynthesis(
                        version=row.version,
                        data=SynthesisData.from_row(row),
                        conversation_count=row.conversation_count,
                        total_messages=row.total_messages,
                        date_range_from=row.date_range_from,
                        date_range_to=row.date_range_to,
                    )
                    current = row.to_dict()
                step.details = {"previous_version": previous.version if previous else None}

            with trace.step("load_conversations") as step:
                since = None if full or previous is None else previous.date_range_to
                conversations = self._load_conversations(db, project_id, since)
                step.details = {"since": since.isoformat() if since else None, "count": len(conversations)}

            trace.add_evidence(
                "conversation_window",
                {"conversation_ids": [c.id for c in conversations], "mode": "full" if full else "incremental"},
                source=f"Project:{project_id}",
            )
        return previous, conversations, current

    def _load_conversations(self, db: Session, project_id: UUID, since) -> List[ConversationDigest]:
        query = (
            select(Conversation)
            .options(selectinload(Conversation.messages))
            .where(Conversation.project_id == project_id, Conversation.ended_at.isnot(None))
            .order_by(Conversation.ended_at.asc(), Conversation.id.asc())
        )
        if since is not None:
            query = query.where(Conversation.ended_at > since)
        conversations = db.execute(query).scalars().all()

        names = self._document_names(db, [
            doc_id
            for c in conversations
            for m in c.messages
            for doc_id in (m.cited_document_ids or [])
        ])
        return [self._digest(c, names) for c in conversations]

    @staticmethod
    def _document_names(db: Session, raw_ids: Sequence[str]) -> Dict[str, str]:
        ids = set()
        for raw in raw_ids:
            try:
                ids.add(UUID(str(raw)))
            except ValueError:
                continue
        if not ids:
            return {}
        rows = db.execute(
            select(Document.id, Document.original_filename).where(Document.id.in_(ids))
        ).all()
        return {str(r.id): r.original_filename for r in rows}

    @staticmethod
    def _digest(conversation: Conversation, names: Dict[str, str]) -> ConversationDigest:
        messages = [
            MessageDigest(
                role=m.role,
                content=m.content,
                cited_documents=[names.get(str(d), str(d)) for d in (m.cited_document_ids or [])],
                cited_sections=[
                    (str(s.get("documentId")), s.get("section"))
                    for s in (m.cited_sections or [])
                    if isinstance(s, dict) and s.get("section")
                ],
            )
            for m in conversation.messages
        ]
        return ConversationDigest(
            id=str(conversation.id),
            started_at=conversation.started_at,
            ended_at=conversation.ended_at,
            message_count=conversation.message_count or len(messages),
            sentiment=conversation.sentiment,
            summary=conversation.summary,
            topics=list(conversation.topics or []),
            messages=messages,
        )

    def _below_threshold(self, conversations: int, messages: int) -> Optional[str]:
        if conversations == 0:
            return "no new ended conversations"
        if conversations < self.min_conversations:
            return f"{conversations} new conversation(s), need {self.min_conversations}"
        if messages < self.min_messages:
            return f"{messages} new message(s), need {self.min_messages}"
        return None

    def _generate(
        self,
        conversations: List[ConversationDigest],
        previous: Optional[PreviousSynthesis],
    ) -> SynthesisData:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="docshare-synthesis")
        try:
            future = executor.submit(self.generator.generate, conversations, previous)
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            raise SynthesisGenerationError(
                "timeout", f"Synthesis generation timed out after {self.timeout:g}s"
            )
        except Exception as e:
            raise SynthesisGenerationError("generator", f"{type(e).__name__}: {e}") from e
        finally:
            executor.shutdown(wait=False)

    def _insert_version(
        self,
        project_id: UUID,
        version: int,
        data: SynthesisData,
        conversations: List[ConversationDigest],
        base: Optional[PreviousSynthesis],
        trace: RunTrace,
        ctx: ExecutionContext,
    ) -> SynthesisOutcome:
        window_messages = sum(c.message_count for c in conversations)
        date_from = base.date_range_from if base else min(c.started_at for c in conversations)
        date_to = max(c.ended_at for c in conversations)

        try:
            with session_scope(self.session_factory) as db:
                with trace.step("insert_version") as step:
                    row = AudienceSynthesis(
                        project_id=project_id,
                        version=version,
                        overview=data.overview,
                        common_questions=data.common_questions,
                        knowledge_gaps=data.knowledge_gaps,
                        document_suggestions=data.document_suggestions,
                        sentiment_trend=data.sentiment_trend,
                        insights=data.insights,
                        conversation_count=len(conversations) + (base.conversation_count if base else 0),
                        total_messages=window_messages + (base.total_messages if base else 0),
                        date_range_from=date_from,
                        date_range_to=date_to,
                    )
                    db.add(row)
                    db.flush()
                    step.details = {"version": version}
                self.persist_trace(db, trace)
                payload = row.to_dict()
        except IntegrityError:
            return self._conflict(project_id, version, trace, ctx)
        except SQLAlchemyError as e:
            raise self._abandon(trace, SynthesisGenerationError("persist", str(e)))

        logger.info(
            "Created synthesis version %d for project %s (%s)",
            version, project_id, ctx.log_extra(),
        )
        return SynthesisOutcome(OutcomeStatus.CREATED, payload)

    def _conflict(self, project_id: UUID, version: int, trace: RunTrace, ctx: ExecutionContext) -> SynthesisOutcome:
        reason = f"version {version} was committed by a concurrent regeneration"
        logger.warning("Synthesis for project %s lost a race: %s (%s)", project_id, reason, ctx.log_extra())
        with session_scope(self.session_factory) as db:
            winner = self._by_version(db, project_id, version)
            trace.log_step("resolve_conflict", status="skipped", details={"version": version})
            self.persist_trace(db, trace)
            return SynthesisOutcome(OutcomeStatus.CONFLICT, winner.to_dict() if winner else None, reason=reason)

    def _abandon(self, trace: RunTrace, error: SynthesisGenerationError) -> SynthesisGenerationError:
        logger.error("Synthesis generation abandoned: %s (%s)", error, trace.ctx.log_extra())
        try:
            with session_scope(self.session_factory) as db:
                self.persist_trace(db, trace, error=str(error))
        except SQLAlchemyError:
            logger.exception("Could not record decision trace for abandoned synthesis")
        return error

    @staticmethod
    def _latest(db: Session, project_id: UUID) -> Optional[AudienceSynthesis]:
        return db.execute(
            select(AudienceSynthesis)
            .where(AudienceSynthesis.project_id == project_id)
            .order_by(AudienceSynthesis.version.desc())
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def _by_version(db: Session, project_id: UUID, version: int) -> Optional[AudienceSynthesis]:
        return db.execute(
            select(AudienceSynthesis).where(
                AudienceSynthesis.project_id == project_id,
                AudienceSynthesis.version == version,
            )
        ).scalar_one_or_none()
