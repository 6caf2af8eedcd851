"""
Document processor.

``process_document`` runs inside an isolated worker unit. It is a pure
function of its inputs: it reads the file, extracts text and an outline,
chunks the text, and returns plain picklable dataclasses. It never touches
the database or any state of the pool manager.
"""
import hashlib
import logging
import os
import re
import zipfile
from dataclasses import dataclass, field
from typing import List, Optional
from xml.etree import ElementTree

from docshare.services.document_chunker import ChunkSpec, chunk_by_sections, chunk_text

logger = logging.getLogger(__name__)

TEXT_MIME_TYPES = {"text/plain", "text/markdown", "text/csv", "text/x-markdown"}
PDF_MIME_TYPE = "application/pdf"
DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

_WORD_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"
_NUMBERED_HEADING = re.compile(r"^(\d+(\.\d+)*|[A-Z])\.\s+\S")
_MARKDOWN_HEADING = re.compile(r"^(#{1,6})\s+(.+)$")

FALLBACK_SECTION_TITLE = "Document Content"


class DocumentProcessingError(Exception):
    """Raised when a document cannot be turned into text."""
    pass


class UnsupportedDocumentTypeError(DocumentProcessingError):
    """Raised when the declared media type has no extractor."""
    pass


@dataclass
class OutlineSection:
    """A heading detected in the extracted text."""
    id: str
    title: str
    level: int
    position: int


@dataclass
class ProcessedDocument:
    """Everything a processing run produces for one document."""
    title: str
    full_text: str
    outline: List[OutlineSection]
    word_count: int
    page_count: Optional[int] = None
    chunks: List[ChunkSpec] = field(default_factory=list)

    def outline_json(self) -> List[dict]:
        return [
            {"id": s.id, "title": s.title, "level": s.level, "position": s.position}
            for s in self.outline
        ]


def generate_section_id(title: str, level: int, position: int) -> str:
    """Stable section id derived from title, level and position."""
    content = "|".join([title.lower().strip(), str(level), str(position)])
    return "section-" + hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def extract_outline(text: str) -> List[OutlineSection]:
    """
    Detect headings: Markdown ``#`` lines, numbered lines (``1.``, ``2.3.``,
    ``A.``) and ALL-CAPS lines longer than three characters.

    Falls back to a single "Document Content" section.
    """
    outline: List[OutlineSection] = []
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue

        md = _MARKDOWN_HEADING.match(stripped)
        if md:
            level, title = len(md.group(1)), md.group(2).strip()
        elif _NUMBERED_HEADING.match(stripped):
            level, title = 2, stripped
        elif stripped.isupper() and len(stripped) > 3 and any(c.isalpha() for c in stripped):
            level, title = 1, stripped
        else:
            continue

        position = len(outline)
        outline.append(OutlineSection(
            id=generate_section_id(title, level, position),
            title=title,
            level=level,
            position=position,
        ))

    if not outline:
        outline.append(OutlineSection(
            id=generate_section_id(FALLBACK_SECTION_TITLE, 1, 0),
            title=FALLBACK_SECTION_TITLE,
            level=1,
            position=0,
        ))
    return outline


def _read_text_file(file_path: str) -> str:
    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


def _read_pdf(file_path: str):
    import pdfplumber

    with pdfplumber.open(file_path) as pdf:
        pages = [page.extract_text() or "" for page in pdf.pages]
    return "\n\n".join(pages), len(pages)


def _read_docx(file_path: str) -> str:
    with zipfile.ZipFile(file_path) as archive:
        xml_bytes = archive.read("word/document.xml")
    root = ElementTree.fromstring(xml_bytes)
    paragraphs = []
    for paragraph in root.iter(f"{_WORD_NS}p"):
        texts = [node.text or "" for node in paragraph.iter(f"{_WORD_NS}t")]
        paragraphs.append("".join(texts))
    return "\n".join(paragraphs)


def extract_text(file_path: str, mime_type: str):
    """
    Extract raw text for a supported media type.

    Returns:
        (text, page_count) where page_count is None for unpaged formats

    Raises:
        UnsupportedDocumentTypeError: If no extractor handles ``mime_type``
        DocumentProcessingError: If the file is missing or cannot be parsed
    """
    if not os.path.exists(file_path):
        raise DocumentProcessingError(f"File not found: {file_path}")

    base_type = (mime_type or "").split(";")[0].strip().lower()
    try:
        if base_type in TEXT_MIME_TYPES:
            return _read_text_file(file_path), None
        if base_type == PDF_MIME_TYPE:
            return _read_pdf(file_path)
        if base_type == DOCX_MIME_TYPE:
            return _read_docx(file_path), None
    except DocumentProcessingError:
        raise
    except Exception as e:
        raise DocumentProcessingError(
            f"Failed to extract text from {os.path.basename(file_path)}: {e}"
        ) from e

    raise UnsupportedDocumentTypeError(f"Unsupported document type: {mime_type}")


def process_document(file_path: str, mime_type: str) -> ProcessedDocument:
    """
    Turn a stored file into text, outline and chunks.

    Outline detection is best-effort: if it fails, the text is still chunked
    without section tags rather than failing the whole document.

    Raises:
        DocumentProcessingError: If text extraction fails
    """
    text, page_count = extract_text(file_path, mime_type)
    if not text.strip():
        raise DocumentProcessingError("Document contains no extractable text")

    first_line = next((line.strip() for line in text.split("\n") if line.strip()), "")
    title = first_line[:100] or "Untitled"

    try:
        outline = extract_outline(text)
        chunks = chunk_by_sections(text, outline)
    except Exception as e:
        logger.warning("Outline extraction failed for %s, chunking whole text: %s", file_path, e)
        outline = []
        chunks = chunk_text(text)

    return ProcessedDocument(
        title=title,
        full_text=text,
        outline=outline,
        word_count=len(text.split()),
        page_count=page_count,
        chunks=chunks,
    )
