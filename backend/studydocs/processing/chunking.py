"""
Text Chunker  —  Boundary-Preserving Overlapping Segmentation
══════════════════════════════════════════════════════════════

Splits extracted document text into bounded, overlapping chunks sized for
the embedding model, keeping paragraph and sentence boundaries intact
wherever the size limit allows.

Modes (first enabled one wins)
──────────────────────────────
  1. Paragraphs   split on blank lines; accumulate paragraphs into a buffer
                  and flush when the next one would overflow max_chunk_size.
                  A single paragraph larger than the limit is re-chunked
                  in sentence mode.
  2. Sentences    split on runs ending in . ! ? ; same accumulate/flush.
                  A single sentence larger than the limit is re-chunked
                  in character mode.
  3. Characters   fixed window of max_chunk_size, stride
                  max_chunk_size - overlap.

Overlap
───────
  On every flush the trailing `overlap` characters of the closed chunk are
  cut forward to the first word boundary and seed the next chunk, so
  neighbouring chunks share context. The seed is dropped when it would push
  the next chunk past max_chunk_size.

Positions
─────────
  start_position / end_position are offsets into the normalized text.
  end_position - start_position == len(content). An overlap-seeded chunk
  starts inside the previous chunk, so start[i+1] < end[i].

Markdown
────────
  chunk_markdown() first cuts the document at heading lines (# .. ######),
  keeps each section whole when it fits and paragraph-chunks the rest.
  Every markdown chunk is tagged metadata["type"] = "markdown-section".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Callable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_MAX_CHUNK_SIZE = 1000   # characters
DEFAULT_OVERLAP        = 200    # characters

MARKDOWN_SECTION = "markdown-section"

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
# A trailing fragment without terminal punctuation is kept as its own sentence
_SENTENCE_RE        = re.compile(r"[^.!?]+(?:[.!?]+|$)")
_SENTENCE_END_RE    = re.compile(r"[.!?]+")
_HEADING_RE         = re.compile(r"^#{1,6}\s")
_SPACES_RE          = re.compile(r" +")

PARAGRAPH_SEPARATOR = "\n\n"
SENTENCE_SEPARATOR  = " "


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkOptions:
    max_chunk_size:      int  = DEFAULT_MAX_CHUNK_SIZE
    overlap:             int  = DEFAULT_OVERLAP
    preserve_paragraphs: bool = True
    preserve_sentences:  bool = True


@dataclass
class TextChunk:
    """
    One chunk of a document.

    index is the 0-based position in the sequence produced by a single
    chunk_text / chunk_markdown call, sub-chunks included.
    """
    content:        str
    index:          int
    start_position: int
    end_position:   int
    metadata:       dict = field(default_factory=dict)


@dataclass
class _Unit:
    """A paragraph, sentence or section with its offset in the parent text."""
    text:   str
    offset: int


@dataclass
class _Piece:
    """A chunk before indices are assigned."""
    content:  str
    start:    int
    metadata: dict

    def shifted(self, by: int, **extra_meta) -> "_Piece":
        return replace(self, start=self.start + by, metadata={**self.metadata, **extra_meta})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_text(text: str) -> str:
    """CRLF/CR → LF, tabs → space, collapse space runs, trim."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\t", " ")
    text = _SPACES_RE.sub(" ", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(text.split())


def count_sentences(text: str) -> int:
    return len(_SENTENCE_END_RE.findall(text))


def overlap_text(text: str, overlap: int) -> str:
    """
    Trailing `overlap` characters of `text`, starting after the first space
    so the seed does not begin mid-word. Empty when overlap is disabled or
    covers the whole text.
    """
    if overlap <= 0 or overlap >= len(text):
        return ""
    tail = text[-overlap:]
    first_space = tail.find(" ")
    if first_space > 0:
        return tail[first_space + 1:]
    return tail


def _trimmed_unit(raw: str, offset: int) -> _Unit:
    stripped = raw.lstrip()
    return _Unit(text=stripped.rstrip(), offset=offset + (len(raw) - len(stripped)))


def _split_paragraphs(text: str) -> list[_Unit]:
    units: list[_Unit] = []
    cursor = 0
    for match in _PARAGRAPH_SPLIT_RE.finditer(text):
        units.append(_trimmed_unit(text[cursor:match.start()], cursor))
        cursor = match.end()
    units.append(_trimmed_unit(text[cursor:], cursor))
    return [u for u in units if u.text]


def _split_sentences(text: str) -> list[_Unit]:
    units = [_trimmed_unit(m.group(0), m.start()) for m in _SENTENCE_RE.finditer(text)]
    units = [u for u in units if u.text]
    if not units and text.strip():
        units = [_trimmed_unit(text, 0)]
    return units


def _split_markdown_sections(text: str) -> list[_Unit]:
    """Cut at heading lines; each heading starts a new section."""
    sections: list[_Unit] = []
    section_start = 0
    offset = 0
    for line in text.split("\n"):
        if _HEADING_RE.match(line) and offset > section_start:
            sections.append(_trimmed_unit(text[section_start:offset], section_start))
            section_start = offset
        offset += len(line) + 1
    sections.append(_trimmed_unit(text[section_start:], section_start))
    return [s for s in sections if s.text]


def _make_piece(buffer: str, start: int, **extra_meta) -> _Piece:
    content = buffer.strip()
    start  += len(buffer) - len(buffer.lstrip())
    metadata = {
        "word_count":     count_words(content),
        "sentence_count": count_sentences(content),
        **extra_meta,
    }
    return _Piece(content=content, start=start, metadata=metadata)


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class TextChunker:
    """
    Stateless chunker. Safe to share across tasks in a worker process.

    Usage:
        chunker = TextChunker()
        chunks  = chunker.chunk_text(text, ChunkOptions(max_chunk_size=1000, overlap=200))
    """

    def chunk_text(self, text: str, options: ChunkOptions | None = None) -> list[TextChunk]:
        options = options or ChunkOptions()
        logger.info(
            "Chunking text | chars=%d max_size=%d overlap=%d",
            len(text or ""), options.max_chunk_size, options.overlap,
        )

        clean = normalize_text(text or "")
        if not clean:
            return []

        if options.preserve_paragraphs:
            pieces = self._chunk_by_paragraphs(clean, options.max_chunk_size, options.overlap)
        elif options.preserve_sentences:
            pieces = self._chunk_by_sentences(clean, options.max_chunk_size, options.overlap)
        else:
            pieces = self._chunk_by_characters(clean, options.max_chunk_size, options.overlap)

        chunks = _index(pieces)
        logger.info("Chunking done | chunks=%d", len(chunks))
        return chunks

    def chunk_markdown(self, markdown: str, options: ChunkOptions | None = None) -> list[TextChunk]:
        options = options or ChunkOptions()
        logger.info("Chunking markdown | chars=%d", len(markdown or ""))

        clean = normalize_text(markdown or "")
        if not clean:
            return []

        pieces: list[_Piece] = []
        for section in _split_markdown_sections(clean):
            if len(section.text) <= options.max_chunk_size:
                piece = _make_piece(section.text, section.offset, type=MARKDOWN_SECTION)
                pieces.append(piece)
                continue
            sub = self._chunk_by_paragraphs(section.text, options.max_chunk_size, options.overlap)
            pieces.extend(p.shifted(section.offset, type=MARKDOWN_SECTION) for p in sub)

        return _index(pieces)

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def _chunk_by_paragraphs(self, text: str, max_size: int, overlap: int) -> list[_Piece]:
        def oversized(unit: _Unit, position: int) -> list[_Piece]:
            sub = self._chunk_by_sentences(unit.text, max_size, overlap)
            return [p.shifted(unit.offset, paragraph_index=position) for p in sub]

        return _accumulate(
            _split_paragraphs(text),
            max_size,
            overlap,
            separator=PARAGRAPH_SEPARATOR,
            on_oversized=oversized,
            flush_meta=lambda last, count: {"paragraph_index": last},
        )

    def _chunk_by_sentences(self, text: str, max_size: int, overlap: int) -> list[_Piece]:
        def oversized(unit: _Unit, position: int) -> list[_Piece]:
            sub = self._chunk_by_characters(unit.text, max_size, overlap)
            return [p.shifted(unit.offset) for p in sub]

        return _accumulate(
            _split_sentences(text),
            max_size,
            overlap,
            separator=SENTENCE_SEPARATOR,
            on_oversized=oversized,
            flush_meta=lambda last, count: {"sentence_count": count},
        )

    def _chunk_by_characters(self, text: str, max_size: int, overlap: int) -> list[_Piece]:
        """
        Fixed window over raw characters. Also the fallback for a single
        word longer than max_size, so it must terminate for any input.
        """
        pieces: list[_Piece] = []
        stride = max(1, max_size - max(0, overlap))
        start = 0
        while start < len(text):
            end = min(start + max_size, len(text))
            window = text[start:end]
            if window.strip():
                pieces.append(_make_piece(window, start))
            if end >= len(text):
                break
            start += stride
        return pieces


# ---------------------------------------------------------------------------
# Accumulate / flush
# ---------------------------------------------------------------------------

def _accumulate(
    units:        list[_Unit],
    max_size:     int,
    overlap:      int,
    *,
    separator:    str,
    on_oversized: Callable[[_Unit, int], list[_Piece]],
    flush_meta:   Callable[[int, int], dict],
) -> list[_Piece]:
    """
    Greedy packing shared by paragraph and sentence mode.

    flush_meta(last_unit, unit_count) supplies the mode-specific
    metadata for a buffer-built chunk.
    """
    pieces: list[_Piece] = []

    buffer       = ""
    buffer_start = 0
    last_unit    = -1
    unit_count   = 0

    def flush() -> _Piece:
        piece = _make_piece(buffer, buffer_start, **flush_meta(last_unit, unit_count))
        pieces.append(piece)
        return piece

    for position, unit in enumerate(units):
        if len(unit.text) > max_size:
            if unit_count:
                flush()
            buffer, unit_count = "", 0
            pieces.extend(on_oversized(unit, position))
            continue

        if unit_count and len(buffer) + len(separator) + len(unit.text) > max_size:
            closed = flush()
            seed = overlap_text(closed.content, overlap)
            if seed and len(seed) + len(separator) + len(unit.text) <= max_size:
                buffer       = seed
                buffer_start = closed.start + len(closed.content) - len(seed)
            else:
                buffer = ""
            unit_count = 0

        if buffer:
            buffer += separator + unit.text
        else:
            buffer       = unit.text
            buffer_start = unit.offset

        last_unit   = position
        unit_count += 1

    if unit_count:
        flush()

    return pieces


def _index(pieces: list[_Piece]) -> list[TextChunk]:
    return [
        TextChunk(
            content=p.content,
            index=i,
            start_position=p.start,
            end_position=p.start + len(p.content),
            metadata=p.metadata,
        )
        for i, p in enumerate(pieces)
    ]
