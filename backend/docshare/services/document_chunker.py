"""Section-aware text chunking with overlapping windows."""
from dataclasses import dataclass
from typing import List, Optional

CHUNK_SIZE = 1000  # ~1000 characters per chunk
CHUNK_OVERLAP = 200  # 200 character overlap between chunks


@dataclass
class ChunkSpec:
    """A chunk boundary produced by the chunker (not yet persisted)."""
    content: str
    chunk_index: int
    start_char: int
    end_char: int
    section_id: Optional[str] = None
    section_title: Optional[str] = None


def chunk_text(
    text: str,
    chunk_size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> List[ChunkSpec]:
    """
    Split text into overlapping fixed-size windows.

    Offsets are relative to ``text``. The window always advances, even when
    ``overlap >= chunk_size``.
    """
    if not text or not text.strip():
        return []

    if len(text) <= chunk_size:
        return [ChunkSpec(content=text.strip(), chunk_index=0, start_char=0, end_char=len(text))]

    chunks: List[ChunkSpec] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        content = text[start:end].strip()
        if content:
            chunks.append(ChunkSpec(
                content=content,
                chunk_index=len(chunks),
                start_char=start,
                end_char=end,
            ))
        if end >= len(text):
            break
        next_start = end - overlap
        start = next_start if next_start > start else end

    return chunks


def chunk_by_sections(full_text: str, outline: list) -> List[ChunkSpec]:
    """
    Chunk each outline section separately and tag chunks with it.

    A section spans from its title's first occurrence to the next section's
    title. Sections whose title cannot be found are skipped; if nothing can
    be located the whole text is chunked untagged.

    Args:
        full_text: Extracted document text
        outline: Sequence of objects with ``id`` and ``title``

    Returns:
        Chunks with globally sequential ``chunk_index`` values
    """
    chunks: List[ChunkSpec] = []
    search_from = 0

    for i, section in enumerate(outline):
        section_start = full_text.find(section.title, search_from)
        if section_start == -1:
            continue

        section_end = len(full_text)
        for following in outline[i + 1:]:
            found = full_text.find(following.title, section_start + len(section.title))
            if found != -1:
                section_end = found
                break

        for piece in chunk_text(full_text[section_start:section_end]):
            chunks.append(ChunkSpec(
                content=piece.content,
                chunk_index=len(chunks),
                start_char=section_start + piece.start_char,
                end_char=section_start + piece.end_char,
                section_id=section.id,
                section_title=section.title,
            ))
        search_from = section_start + len(section.title)

    if not chunks:
        return chunk_text(full_text)
    return chunks
