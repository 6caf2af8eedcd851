"""
System invariants and validation utilities.

Enforces critical system constraints:
1. Document status only moves along legal edges
2. Synthesis snapshots are never updated or deleted
3. Document chunks are never patched in place
4. Synthesis versions per project are gap-free and strictly increasing

Fail fast with explicit errors.
"""

from typing import List, Optional

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from docshare.models.audience_synthesis import AudienceSynthesis
from docshare.models.document_chunk import DocumentChunk


class InvariantViolationError(Exception):
    """Base exception for invariant violations."""

    def __init__(self, invariant_name: str, message: str, details: dict = None):
        self.invariant_name = invariant_name
        self.details = details or {}
        super().__init__(f"[INVARIANT VIOLATION: {invariant_name}] {message}")


class IllegalStatusTransitionError(InvariantViolationError):
    """Raised when a document status transition is not on the legal edge list."""

    def __init__(self, message: str, details: dict = None):
        super().__init__("illegal_status_transition", message, details)


class SnapshotImmutableError(InvariantViolationError):
    """Raised when a persisted synthesis snapshot would be modified or deleted."""

    def __init__(self, message: str, details: dict = None):
        super().__init__("synthesis_snapshot_immutable", message, details)


class ChunkImmutableError(InvariantViolationError):
    """Raised when a persisted chunk would be modified in place."""

    def __init__(self, message: str, details: dict = None):
        super().__init__("document_chunk_immutable", message, details)


class VersionSequenceError(InvariantViolationError):
    """Raised when a project's synthesis versions are not 1..N without gaps."""

    def __init__(self, message: str, details: dict = None):
        super().__init__("synthesis_version_sequence", message, details)


def _has_column_changes(target) -> bool:
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if state.attrs[attr.key].history.has_changes():
            return True
    return False


@event.listens_for(AudienceSynthesis, "before_update")
def _reject_synthesis_update(mapper, connection, target):
    if _has_column_changes(target):
        raise SnapshotImmutableError(
            "Audience synthesis snapshots cannot be modified; generate a new version",
            details={"synthesis_id": str(target.id), "version": target.version},
        )


@event.listens_for(AudienceSynthesis, "before_delete")
def _reject_synthesis_delete(mapper, connection, target):
    raise SnapshotImmutableError(
        "Audience synthesis snapshots cannot be deleted",
        details={"synthesis_id": str(target.id), "version": target.version},
    )


@event.listens_for(DocumentChunk, "before_update")
def _reject_chunk_update(mapper, connection, target):
    if _has_column_changes(target):
        raise ChunkImmutableError(
            "Document chunks are replaced wholesale on reprocessing, never patched",
            details={"chunk_id": str(target.id), "document_id": str(target.document_id)},
        )


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_snapshot_writes(orm_execute_state):
    """Bulk UPDATE/DELETE statements bypass mapper events; guard them here."""
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is None:
        return
    if mapper.class_ is AudienceSynthesis:
        raise SnapshotImmutableError(
            "Bulk update/delete of audience synthesis snapshots is not allowed"
        )
    if mapper.class_ is DocumentChunk and orm_execute_state.is_update:
        raise ChunkImmutableError(
            "Bulk update of document chunks is not allowed"
        )


def check_version_sequence(versions: List[int], project_id: Optional[str] = None) -> None:
    """
    Invariant: a project's synthesis versions read in order are 1, 2, ..., N.

    Args:
        versions: Version numbers in ascending order
        project_id: Project the versions belong to (for the error details)

    Raises:
        VersionSequenceError: If a gap, duplicate or non-positive version exists
    """
    expected = list(range(1, len(versions) + 1))
    if list(versions) != expected:
        raise VersionSequenceError(
            f"Synthesis versions {versions} are not a gap-free sequence starting at 1",
            details={"project_id": project_id, "versions": list(versions)},
        )
