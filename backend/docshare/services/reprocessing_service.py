"""Reprocessing service: send completed or failed documents back through the pipeline."""
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select

from docshare.context import ExecutionContext
from docshare.database import SessionLocal, session_scope
from docshare.models.document import Document, DocumentStatus
from docshare.models.document_chunk import DocumentChunk
from docshare.services import document_status

logger = logging.getLogger(__name__)

REPROCESSABLE_STATUSES = (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


class ReprocessingError(Exception):
    """Base exception for reprocessing errors."""
    pass


class InvalidReprocessingScopeError(ReprocessingError):
    """Raised when the requested statuses include one reprocessing cannot leave."""
    pass


@dataclass
class ReprocessingStats:
    """Counts reported back to the operator."""
    documents_reset: int = 0
    chunks_deleted: int = 0
    skipped: int = 0
    document_ids: List[UUID] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "documentsReset": self.documents_reset,
            "chunksDeleted": self.chunks_deleted,
            "skipped": self.skipped,
            "documentIds": [str(d) for d in self.document_ids],
        }


class ReprocessingService:
    """
    Operator-triggered bulk reset of documents to ``pending``.

    Per document, in one transaction: reset the status (clearing the error),
    then delete every chunk. A document that is already pending, is being
    processed, or changed status under us is skipped; running the same
    request twice therefore resets nothing the second time.
    """

    def __init__(self, session_factory: Callable = SessionLocal):
        self.session_factory = session_factory

    def reprocess(
        self,
        ctx: ExecutionContext,
        document_ids: Optional[Iterable[UUID]] = None,
        project_id: Optional[UUID] = None,
        statuses: Sequence[DocumentStatus] = REPROCESSABLE_STATUSES,
    ) -> ReprocessingStats:
        """
        Reset matching documents so the scheduler picks them up again.

        Args:
            ctx: Execution context recorded on each status event
            document_ids: Restrict to these documents (all documents if None)
            project_id: Restrict to one project
            statuses: Which current statuses to reset

        Returns:
            ReprocessingStats with reset/skip counts and chunks deleted

        Raises:
            InvalidReprocessingScopeError: If ``statuses`` names a status
                that cannot move to pending
        """
        statuses = tuple(DocumentStatus(s) for s in statuses)
        invalid = [s.value for s in statuses if s not in REPROCESSABLE_STATUSES]
        if invalid:
            raise InvalidReprocessingScopeError(
                f"Cannot reprocess documents in status: {', '.join(invalid)}"
            )

        stats = ReprocessingStats()
        for document_id in self._select_documents(document_ids, project_id):
            if self._reset_one(document_id, statuses, ctx, stats):
                stats.document_ids.append(document_id)
            else:
                stats.skipped += 1

        logger.info(
            "Reprocessing reset %d document(s), deleted %d chunk(s), skipped %d (%s)",
            stats.documents_reset, stats.chunks_deleted, stats.skipped, ctx.log_extra(),
        )
        return stats

    def _select_documents(
        self,
        document_ids: Optional[Iterable[UUID]],
        project_id: Optional[UUID],
    ) -> List[UUID]:
        query = select(Document.id).order_by(Document.uploaded_at.asc(), Document.id.asc())
        if document_ids is not None:
            ids = list(document_ids)
            if not ids:
                return []
            query = query.where(Document.id.in_(ids))
        if project_id is not None:
            query = query.where(Document.project_id == project_id)

        with session_scope(self.session_factory) as db:
            return list(db.execute(query).scalars().all())

    def _reset_one(
        self,
        document_id: UUID,
        statuses: Sequence[DocumentStatus],
        ctx: ExecutionContext,
        stats: ReprocessingStats,
    ) -> bool:
        with session_scope(self.session_factory) as db:
            current = db.execute(
                select(Document.status).where(Document.id == document_id)
            ).scalar_one_or_none()
            if current is None or current not in statuses:
                return False

            if not document_status.reset_to_pending(db, document_id, current, ctx):
                return False

            deleted = db.query(DocumentChunk).filter(
                DocumentChunk.document_id == document_id
            ).delete(synchronize_session=False)

        stats.documents_reset += 1
        stats.chunks_deleted += deleted
        logger.debug("Document %s reset to pending, %d chunk(s) deleted", document_id, deleted)
        return True
