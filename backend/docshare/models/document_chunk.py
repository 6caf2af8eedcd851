"""DocumentChunk model."""
from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from docshare.database import Base
from docshare.models.base import BaseModel, GUID


class DocumentChunk(Base, BaseModel):
    """
    A contiguous span of a document's extracted text.

    Chunks are immutable once created. A reprocessing run deletes every
    chunk of the document and the next successful run creates a fresh set;
    they are never patched in place.

    Attributes:
        document_id: Owning document
        chunk_index: Ordinal position within the document
        section_id: Stable id of the outline section the chunk belongs to
        section_title: Title of that section
        start_char: Start offset into the extracted text
        end_char: End offset (exclusive) into the extracted text
        content: Chunk text
    """

    __tablename__ = "document_chunks"

    document_id = Column(
        GUID(),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    chunk_index = Column(Integer, nullable=False)
    section_id = Column(String(64), nullable=True)
    section_title = Column(String(512), nullable=True)
    start_char = Column(Integer, nullable=False)
    end_char = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)

    # Relationships
    document = relationship("Document", back_populates="chunks")
