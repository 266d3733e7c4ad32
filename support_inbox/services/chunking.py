import re
from typing import List, Optional
from pydantic import BaseModel
from config.settings import settings

HEADER_PATTERN = re.compile(r"^#{1,6}\s+.+$", re.MULTILINE)
SENTENCE_END_PATTERN = re.compile(r"[.!?]\s+(?=[A-Z])")


class TextChunk(BaseModel):
    content: str
    index: int
    start_offset: int
    end_offset: int


def _find_natural_break(text: str, start: int, max_end: int) -> int:
    """Prefer a paragraph, then sentence, newline or word boundary in the back half"""
    window = text[start:max_end]
    half = len(window) * 0.5

    paragraph = window.rfind("\n\n")
    if paragraph > half:
        return start + paragraph + 2

    sentence_ends = list(SENTENCE_END_PATTERN.finditer(window))
    if sentence_ends and sentence_ends[-1].start() > half:
        return start + sentence_ends[-1].end()

    newline = window.rfind("\n")
    if newline > half:
        return start + newline + 1

    space = window.rfind(" ")
    if space > half:
        return start + space + 1

    return max_end


def chunk_text(text: str,
               max_chunk_size: Optional[int] = None,
               overlap: Optional[int] = None,
               min_chunk_size: Optional[int] = None) -> List[TextChunk]:
    """Split text into overlapping windows broken at natural boundaries"""
    max_chunk_size = max_chunk_size or settings.CHUNK_MAX_SIZE
    overlap = settings.CHUNK_OVERLAP if overlap is None else overlap
    min_chunk_size = settings.CHUNK_MIN_SIZE if min_chunk_size is None else min_chunk_size

    trimmed = (text or "").strip()
    if not trimmed:
        return []
    if len(trimmed) <= max_chunk_size:
        return [TextChunk(content=trimmed, index=0, start_offset=0, end_offset=len(trimmed))]

    chunks: List[TextChunk] = []
    start = 0
    while start < len(trimmed):
        end = min(start + max_chunk_size, len(trimmed))
        if end < len(trimmed):
            end = _find_natural_break(trimmed, start, end)

        content = trimmed[start:end].strip()
        is_last = start + max_chunk_size >= len(trimmed)
        if len(content) >= min_chunk_size or is_last:
            chunks.append(TextChunk(content=content, index=len(chunks),
                                    start_offset=start, end_offset=end))
        if is_last:
            break

        next_start = end - overlap
        if next_start <= start:
            break
        start = next_start

    return chunks


def chunk_markdown(markdown: str,
                   max_chunk_size: Optional[int] = None,
                   overlap: Optional[int] = None,
                   min_chunk_size: Optional[int] = None) -> List[TextChunk]:
    """Chunk markdown section by section, keeping each header with its body"""
    max_chunk_size = max_chunk_size or settings.CHUNK_MAX_SIZE
    min_chunk_size = settings.CHUNK_MIN_SIZE if min_chunk_size is None else min_chunk_size

    if not markdown or not markdown.strip():
        return []

    boundaries = [m.start() for m in HEADER_PATTERN.finditer(markdown)]
    if not boundaries or boundaries[0] != 0:
        boundaries.insert(0, 0)
    boundaries.append(len(markdown))

    chunks: List[TextChunk] = []
    for section_start, section_end in zip(boundaries, boundaries[1:]):
        section = markdown[section_start:section_end]
        if not section.strip():
            continue
        if len(section) <= max_chunk_size:
            if len(section.strip()) >= min_chunk_size:
                chunks.append(TextChunk(content=section.strip(), index=len(chunks),
                                        start_offset=section_start, end_offset=section_end))
            continue
        for sub in chunk_text(section, max_chunk_size, overlap, min_chunk_size):
            chunks.append(TextChunk(content=sub.content, index=len(chunks),
                                    start_offset=section_start + sub.start_offset,
                                    end_offset=section_start + sub.end_offset))

    # Short documents still need one chunk to be searchable
    if not chunks:
        stripped = markdown.strip()
        chunks.append(TextChunk(content=stripped, index=0, start_offset=0, end_offset=len(stripped)))

    return chunks
