"""
Services package.

Services contain business logic and data access layer.

Services should:
    - Accept a database session (or session factory) as parameter
    - Perform database operations through the status state machine
    - Implement business logic
    - Return data or raise exceptions
"""

from docshare.services.document_chunker import (
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    ChunkSpec,
    chunk_by_sections,
    chunk_text,
)
from docshare.services.document_processor import (
    DocumentProcessingError,
    OutlineSection,
    ProcessedDocument,
    UnsupportedDocumentTypeError,
    process_document,
)
from docshare.services.reprocessing_service import (
    InvalidReprocessingScopeError,
    ReprocessingError,
    ReprocessingService,
    ReprocessingStats,
)
from docshare.services.synthesis_engine import (
    ConversationDigest,
    MessageDigest,
    PreviousSynthesis,
    SynthesisData,
    SynthesisEngine,
    SynthesisGenerator,
)

__all__ = [
    "CHUNK_OVERLAP",
    "CHUNK_SIZE",
    "ChunkSpec",
    "chunk_by_sections",
    "chunk_text",
    "DocumentProcessingError",
    "OutlineSection",
    "ProcessedDocument",
    "UnsupportedDocumentTypeError",
    "process_document",
    "InvalidReprocessingScopeError",
    "ReprocessingError",
    "ReprocessingService",
    "ReprocessingStats",
    "ConversationDigest",
    "MessageDigest",
    "PreviousSynthesis",
    "SynthesisData",
    "SynthesisEngine",
    "SynthesisGenerator",
]
