"""Audit trail of document status transitions."""
from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from docshare.database import Base
from docshare.models.base import BaseModel, GUID
from docshare.models.document import DocumentStatus


def _status_enum(name: str) -> SQLEnum:
    return SQLEnum(
        DocumentStatus,
        name=name,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


class DocumentStatusEvent(Base, BaseModel):
    """
    One applied status transition.

    Rows are appended only when a transition actually took effect, so the
    sequence of events for a document always walks legal edges.

    Attributes:
        document_id: Document that changed
        sequence: Monotonic per-document counter
        from_status: Status before the transition
        to_status: Status after the transition
        actor: ExecutionContext.actor that requested it
        request_id: ExecutionContext.request_id that requested it
        detail: Error text or other diagnostic
    """

    __tablename__ = "document_status_events"

    document_id = Column(
        GUID(),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    sequence = Column(Integer, nullable=False)
    from_status = Column(_status_enum("document_status_from"), nullable=False)
    to_status = Column(_status_enum("document_status_to"), nullable=False)
    actor = Column(String(255), nullable=False)
    request_id = Column(String(255), nullable=False, index=True)
    detail = Column(Text, nullable=True)

    # Relationships
    document = relationship("Document", back_populates="status_events")

    def __repr__(self):
        return (
            f"<DocumentStatusEvent(document_id='{self.document_id}', "
            f"{self.from_status.value}->{self.to_status.value})>"
        )
