"""Document model and its processing status."""
import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from docshare.database import Base
from docshare.models.base import BaseModel, GUID, JSONType, utcnow


class DocumentStatus(str, enum.Enum):
    """Pipeline position of a document."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Document(Base, BaseModel):
    """
    An uploaded file that goes through text extraction and chunking.

    ``status`` is the single source of truth for where the document is in
    the pipeline. It is only ever written through
    ``docshare.services.document_status``; never assign it directly.

    Attributes:
        project_id: Owning project
        filename: Stored filename
        original_filename: Name the file was uploaded under
        mime_type: Declared media type
        file_path: Location of the stored file
        status: pending | processing | completed | failed
        processing_error: Diagnostic text, set only while status is failed
        uploaded_at: Upload time (claim order is oldest first)
        processed_at: Time of the last successful processing run
        title: Title extracted by the processor
        outline_json: Section outline extracted by the processor
        page_count: Page count when the format has pages
        word_count: Word count of the extracted text
    """

    __tablename__ = "documents"

    project_id = Column(
        GUID(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    filename = Column(String(512), nullable=False)
    original_filename = Column(String(512), nullable=True)
    mime_type = Column(String(255), nullable=False)
    file_path = Column(String(1024), nullable=False)

    status = Column(
        SQLEnum(
            DocumentStatus,
            name="document_status",
            values_callable=lambda e: [m.value for m in e],
            validate_strings=True,
        ),
        nullable=False,
        default=DocumentStatus.PENDING,
        index=True
    )
    processing_error = Column(Text, nullable=True)

    uploaded_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)

    # Processor output (chunks live in document_chunks)
    title = Column(String(255), nullable=True)
    outline_json = Column(JSONType, nullable=True)
    page_count = Column(Integer, nullable=True)
    word_count = Column(Integer, nullable=True)

    # Relationships
    project = relationship("Project", back_populates="documents")
    chunks = relationship(
        "DocumentChunk",
        back_populates="document",
        order_by="DocumentChunk.chunk_index",
        passive_deletes=True,
    )
    status_events = relationship(
        "DocumentStatusEvent",
        back_populates="document",
        order_by="DocumentStatusEvent.sequence",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Document(id='{self.id}', status='{self.status}')>"
