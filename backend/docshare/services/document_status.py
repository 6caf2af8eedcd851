"""
Document status state machine.

Legal edges:
    pending    -> processing           (scheduler claim)
    processing -> completed | failed   (outcome report)
    completed  -> pending              (explicit reprocessing only)
    failed     -> pending              (explicit reprocessing only)

Every write is a single compare-and-set UPDATE against the expected
current status. A transition that does not apply (because another actor
got there first) changes nothing and records nothing.
"""
import logging
from typing import Dict, FrozenSet, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from docshare.context import ExecutionContext
from docshare.models.base import utcnow
from docshare.models.document import Document, DocumentStatus
from docshare.models.document_status_event import DocumentStatusEvent
from docshare.utils.invariants import IllegalStatusTransitionError, InvariantViolationError

logger = logging.getLogger(__name__)


LEGAL_TRANSITIONS: Dict[DocumentStatus, FrozenSet[DocumentStatus]] = {
    DocumentStatus.PENDING: frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.COMPLETED, DocumentStatus.FAILED}),
    DocumentStatus.COMPLETED: frozenset({DocumentStatus.PENDING}),
    DocumentStatus.FAILED: frozenset({DocumentStatus.PENDING}),
}

# Edges that only an operator-triggered reprocessing run may take
REPROCESSING_EDGES = frozenset({
    (DocumentStatus.COMPLETED, DocumentStatus.PENDING),
    (DocumentStatus.FAILED, DocumentStatus.PENDING),
})


def check_transition_table(table: Dict[DocumentStatus, FrozenSet[DocumentStatus]]) -> None:
    """Raise unless ``table`` has an entry for every status and only known targets."""
    missing = set(DocumentStatus) - set(table)
    unknown = {t for targets in table.values() for t in targets} - set(DocumentStatus)
    if missing or unknown:
        raise InvariantViolationError(
            "status_transition_table",
            "Transition table must cover every document status",
            details={
                "missing": sorted(s.value for s in missing),
                "unknown_targets": sorted(str(t) for t in unknown),
            },
        )


check_transition_table(LEGAL_TRANSITIONS)


def allowed_targets(source: DocumentStatus) -> FrozenSet[DocumentStatus]:
    """Statuses reachable from ``source``; unknown statuses raise."""
    try:
        return LEGAL_TRANSITIONS[DocumentStatus(source)]
    except (KeyError, ValueError) as e:
        raise IllegalStatusTransitionError(
            f"Unknown document status: {source!r}",
            details={"status": str(source)},
        ) from e


def check_transition(
    source: DocumentStatus,
    target: DocumentStatus,
    via_reprocessing: bool = False,
) -> None:
    """
    Validate an edge without touching the database.

    Raises:
        IllegalStatusTransitionError: If the edge is not legal, or is a
            reprocessing edge requested outside of reprocessing
    """
    source = DocumentStatus(source)
    target = DocumentStatus(target)
    if target not in allowed_targets(source):
        raise IllegalStatusTransitionError(
            f"Transition {source.value} -> {target.value} is not allowed",
            details={"from": source.value, "to": target.value},
        )
    if (source, target) in REPROCESSING_EDGES and not via_reprocessing:
        raise IllegalStatusTransitionError(
            f"Transition {source.value} -> {target.value} requires explicit reprocessing",
            details={"from": source.value, "to": target.value},
        )


def transition(
    db: Session,
    document_id: UUID,
    expected: DocumentStatus,
    target: DocumentStatus,
    ctx: ExecutionContext,
    detail: Optional[str] = None,
    via_reprocessing: bool = False,
    **values,
) -> bool:
    """
    Atomically move a document from ``expected`` to ``target``.

    Does not commit; the caller owns the transaction.

    Args:
        db: Database session
        document_id: Document to transition
        expected: Status the document must currently have
        target: Status to move to
        ctx: Execution context recorded on the audit event
        detail: Diagnostic text stored on the audit event
        via_reprocessing: Must be True for completed/failed -> pending
        **values: Extra column values written in the same UPDATE

    Returns:
        True if this call applied the transition, False if the document was
        not in ``expected`` (someone else won, or it does not exist)

    Raises:
        IllegalStatusTransitionError: If the edge itself is illegal
    """
    check_transition(expected, target, via_reprocessing=via_reprocessing)

    stmt = (
        update(Document)
        .where(Document.id == document_id, Document.status == expected)
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        logger.debug(
            "Transition %s -> %s did not apply to document %s (%s)",
            expected.value, target.value, document_id, ctx.log_extra(),
        )
        return False

    cached = db.identity_map.get(db.identity_key(Document, document_id))
    if cached is not None:
        db.expire(cached)

    next_sequence = db.execute(
        select(func.coalesce(func.max(DocumentStatusEvent.sequence), 0) + 1)
        .where(DocumentStatusEvent.document_id == document_id)
    ).scalar_one()
    db.add(DocumentStatusEvent(
        document_id=document_id,
        sequence=next_sequence,
        from_status=expected,
        to_status=target,
        actor=ctx.actor,
        request_id=ctx.request_id,
        detail=detail,
    ))
    db.flush()

    logger.info(
        "Document %s: %s -> %s (%s)",
        document_id, expected.value, target.value, ctx.log_extra(),
    )
    return True


def claim(db: Session, document_id: UUID, ctx: ExecutionContext) -> bool:
    """pending -> processing. The CAS is the scheduler's mutual exclusion."""
    return transition(db, document_id, DocumentStatus.PENDING, DocumentStatus.PROCESSING, ctx)


def mark_completed(db: Session, document_id: UUID, ctx: ExecutionContext, **values) -> bool:
    """processing -> completed, clearing any previous error."""
    return transition(
        db,
        document_id,
        DocumentStatus.PROCESSING,
        DocumentStatus.COMPLETED,
        ctx,
        processing_error=None,
        processed_at=utcnow(),
        **values,
    )


def mark_failed(db: Session, document_id: UUID, error: str, ctx: ExecutionContext) -> bool:
    """processing -> failed, persisting a human-readable error."""
    return transition(
        db,
        document_id,
        DocumentStatus.PROCESSING,
        DocumentStatus.FAILED,
        ctx,
        detail=error,
        processing_error=error,
    )


def reset_to_pending(
    db: Session,
    document_id: UUID,
    current: DocumentStatus,
    ctx: ExecutionContext,
) -> bool:
    """completed/failed -> pending for reprocessing, clearing the error."""
    return transition(
        db,
        document_id,
        current,
        DocumentStatus.PENDING,
        ctx,
        detail="reprocessing requested",
        via_reprocessing=True,
        processing_error=None,
    )
