"""
Chunking Engine  —  Structure / Page / Content-Aware Segmentation
══════════════════════════════════════════════════════════════════

Strategy is chosen by the shape of the ExtractionResult:

  structure.headings present (and config.preserve_structure)
      → structure-based: one chunk per heading section; long sections are
        re-chunked content-aware and tagged with their parent heading
  page_texts from the self-hosted PDF extractor and ≤ PAGE_CHUNK_MAX_PAGES pages
      → page-based: one chunk per page above min_chunk_size; short pages
        are dropped, not merged
  otherwise
      → smart (content-aware) chunking with sentence-trimmed overlap

Tables, footnotes and external image descriptions are appended as
separate chunks after the body chunks. chunk_index is assigned once at
the end, so indices are contiguous 0..n-1 whatever mix of strategies
contributed.

Smart chunking
──────────────
  paragraphs = text split on blank lines (oversized paragraphs are first
               split at sentence boundaries)

  buffer += paragraph  until  len(buffer + paragraph) > max_chunk_size
      buffer ≥ min_chunk_size → emit buffer, reseed with overlap tail
      buffer <  min_chunk_size → append anyway (never emit below min,
                                 except the trailing chunk)

  overlap tail: last overlap_size chars, extended back to the nearest
  sentence start inside the last 2 × overlap_size chars when one exists.

Confidence (smart / page chunks)
────────────────────────────────
  0.8  +0.1 if 300 ≤ len ≤ 1500  +0.1 if ends on . ! ?  −0.2 if len < 200
  clamped to [0.1, 1.0]
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field

from app.processing.errors import ErrorKind, ProcessingError, ProcessingStage
from app.processing.types import (
    DEFAULT_CHUNKING_CONFIGS,
    ChunkingConfig,
    ContentType,
    DocumentChunk,
    ExtractionResult,
    Heading,
    Metadata,
    PageText,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

PAGE_CHUNK_MAX_PAGES = 10
# Only the self-hosted PDF extractor produces page texts that map 1:1 to pages
PAGE_CHUNK_EXTRACTION_METHOD = "self-hosted-pymupdf"

BASE_CONFIDENCE      = 0.8
GOOD_LENGTH_BAND     = (300, 1500)
SHORT_CHUNK_FLOOR    = 200
MIN_CONFIDENCE       = 0.1
MAX_CONFIDENCE       = 1.0

# Words shorter than this are ignored when attributing chunks to pages
MIN_ATTRIBUTION_WORD_LEN = 4

STRATEGY_STRUCTURE = "structure_based"
STRATEGY_PAGE      = "page_based"
STRATEGY_SMART     = "smart"

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE  = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_START_RE  = re.compile(r"[.!?]\s+")
_WORD_RE            = re.compile(r"\w+")
_TERMINAL_PUNCT     = (".", "!", "?")


def get_chunking_config(profile: str | None) -> ChunkingConfig:
    """Resolve a named preset; unknown or missing names fall back to 'academic'."""
    return DEFAULT_CHUNKING_CONFIGS.get(profile or "academic", DEFAULT_CHUNKING_CONFIGS["academic"])


# ---------------------------------------------------------------------------
# Scoring helpers (pure)
# ---------------------------------------------------------------------------

def score_chunk(content: str) -> float:
    length = len(content)
    score  = BASE_CONFIDENCE
    if GOOD_LENGTH_BAND[0] <= length <= GOOD_LENGTH_BAND[1]:
        score += 0.1
    if content.rstrip().endswith(_TERMINAL_PUNCT):
        score += 0.1
    if length < SHORT_CHUNK_FLOOR:
        score -= 0.2
    return round(min(MAX_CONFIDENCE, max(MIN_CONFIDENCE, score)), 2)


def _attribution_words(text: str) -> set[str]:
    return {w.lower() for w in _WORD_RE.findall(text) if len(w) >= MIN_ATTRIBUTION_WORD_LEN}


def attribute_page(content: str, pages: list[tuple[int, set[str]]]) -> int | None:
    """
    Page whose text shares the most >3-character words with `content`.
    Ties go to the earliest page; no overlap at all → None.
    """
    words = _attribution_words(content)
    best_page, best_overlap = None, 0
    for page_number, page_words in pages:
        overlap = len(words & page_words)
        if overlap > best_overlap:
            best_page, best_overlap = page_number, overlap
    return best_page


def overlap_tail(text: str, overlap_size: int) -> str:
    """
    Suffix of `text` used to seed the next chunk.

    Starts at the nearest sentence start at or before the raw
    `overlap_size` cut, searching no further back than 2 × overlap_size.
    Falls back to the raw character cut.
    """
    if overlap_size <= 0 or not text:
        return ""
    if len(text) <= overlap_size:
        return text.strip()

    window_start = max(0, len(text) - 2 * overlap_size)
    raw_cut      = len(text) - overlap_size
    window       = text[window_start:raw_cut]

    starts = [m.end() for m in _SENTENCE_START_RE.finditer(window)]
    cut    = window_start + starts[-1] if starts else raw_cut
    return text[cut:].strip()


def _normalize_text(text: str) -> str:
    """
    Normalize Unicode, strip zero-width characters, collapse excess blank lines.
    Preserves paragraph breaks (double newlines).
    """
    text = unicodedata.normalize("NFC", text)
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = [line.rstrip() for line in text.splitlines()]
    return "\n".join(lines).strip()


# ---------------------------------------------------------------------------
# Pending chunk (index assigned at the end)
# ---------------------------------------------------------------------------

@dataclass
class _Pending:
    id:           str
    content:      str
    content_type: ContentType = ContentType.TEXT
    page_number:  int | None = None
    metadata:     Metadata = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ChunkingEngine:
    """
    Stateless chunker: ExtractionResult → ordered DocumentChunk list.

    Usage:
        engine = ChunkingEngine()
        chunks = engine.chunk(document_id, extraction, DEFAULT_CHUNKING_CONFIGS["academic"])
    """

    def chunk(
        self,
        document_id: str,
        result:      ExtractionResult,
        config:      ChunkingConfig | None = None,
    ) -> list[DocumentChunk]:
        config = config or DEFAULT_CHUNKING_CONFIGS["academic"]
        try:
            pending, strategy = self._body_chunks(document_id, result, config)
            pending.extend(self._auxiliary_chunks(document_id, result))
            chunks = self._finalize(document_id, pending, result)
        except ProcessingError:
            raise
        except Exception as exc:
            raise ProcessingError(
                ErrorKind.CHUNKING_FAILED,
                f"Chunking failed for document {document_id}: {exc}",
                stage=ProcessingStage.CHUNKING,
                original_cause=exc,
            ) from exc

        if not chunks:
            raise ProcessingError(
                ErrorKind.INSUFFICIENT_CONTENT,
                f"No chunks produced for document {document_id}",
                stage=ProcessingStage.CHUNKING,
            )

        logger.info(
            "ChunkingEngine | doc=%s strategy=%s chunks=%d avg_chars=%.0f",
            document_id, strategy, len(chunks),
            sum(c.character_count for c in chunks) / max(1, len(chunks)),
        )
        return chunks

    # ------------------------------------------------------------------
    # Strategy dispatch
    # ------------------------------------------------------------------

    def _body_chunks(
        self,
        document_id: str,
        result:      ExtractionResult,
        config:      ChunkingConfig,
    ) -> tuple[list[_Pending], str]:
        text = _normalize_text(result.text)

        if config.preserve_structure and result.structure and result.structure.headings:
            pending = self.chunk_by_structure(document_id, text, result.structure.headings, config)
            if pending:
                return pending, STRATEGY_STRUCTURE

        if (
            result.page_texts
            and len(result.page_texts) <= PAGE_CHUNK_MAX_PAGES
            and result.metadata.get("extraction_method") == PAGE_CHUNK_EXTRACTION_METHOD
        ):
            pending = self.chunk_by_pages(document_id, result.page_texts, config)
            if pending:
                return pending, STRATEGY_PAGE

        return self.chunk_smart(document_id, text, config), STRATEGY_SMART

    # ------------------------------------------------------------------
    # Page-based
    # ------------------------------------------------------------------

    def chunk_by_pages(
        self,
        document_id: str,
        pages:       list[PageText],
        config:      ChunkingConfig,
    ) -> list[_Pending]:
        pending: list[_Pending] = []
        for page in sorted(pages, key=lambda p: p.page_number):
            content = page.text.strip()
            if len(content) <= config.min_chunk_size:
                continue
            pending.append(_Pending(
                id=f"{document_id}_page_{page.page_number}",
                content=content,
                page_number=page.page_number,
                metadata={
                    "chunking_strategy": STRATEGY_PAGE,
                    "confidence":        score_chunk(content),
                },
            ))
        return pending

    # ------------------------------------------------------------------
    # Structure-based
    # ------------------------------------------------------------------

    def chunk_by_structure(
        self,
        document_id: str,
        text:        str,
        headings:    list[Heading],
        config:      ChunkingConfig,
    ) -> list[_Pending]:
        # Locate headings in order; a heading not found after the cursor is skipped
        located: list[tuple[int, Heading]] = []
        cursor = 0
        for heading in headings:
            pos = text.find(heading.text, cursor)
            if pos == -1:
                continue
            located.append((pos, heading))
            cursor = pos + len(heading.text)

        if not located:
            return []

        pending: list[_Pending] = []

        preamble = text[:located[0][0]].strip()
        if preamble:
            pending.append(_Pending(
                id=f"{document_id}_preamble",
                content=preamble,
                metadata={"chunking_strategy": STRATEGY_STRUCTURE, "section_type": "preamble"},
            ))

        for i, (start, heading) in enumerate(located):
            end     = located[i + 1][0] if i + 1 < len(located) else len(text)
            section = text[start:end].strip()
            if not section:
                continue

            base_meta: Metadata = {
                "chunking_strategy": STRATEGY_STRUCTURE,
                "heading":           heading.text,
                "heading_level":     heading.level,
                "heading_id":        heading.id,
            }

            if len(section) <= config.max_chunk_size:
                pending.append(_Pending(
                    id=f"{document_id}_section_{i}",
                    content=section,
                    content_type=ContentType.HEADING if section == heading.text else ContentType.TEXT,
                    metadata=base_meta,
                ))
                continue

            for j, (content, overlap_len) in enumerate(self._smart_segments(section, config)):
                pending.append(_Pending(
                    id=f"{document_id}_section_{i}_{j}",
                    content=content,
                    metadata={
                        **base_meta,
                        "parent_heading": heading.text,
                        "sub_chunk":      j,
                        "overlap_length": overlap_len,
                        "confidence":     score_chunk(content),
                    },
                ))
        return pending

    # ------------------------------------------------------------------
    # Smart (content-aware)
    # ------------------------------------------------------------------

    def chunk_smart(
        self,
        document_id: str,
        text:        str,
        config:      ChunkingConfig,
    ) -> list[_Pending]:
        return [
            _Pending(
                id=f"{document_id}_chunk_{i}",
                content=content,
                metadata={
                    "chunking_strategy": STRATEGY_SMART,
                    "overlap_length":    overlap_len,
                    "confidence":        score_chunk(content),
                },
            )
            for i, (content, overlap_len) in enumerate(self._smart_segments(text, config))
        ]

    def _smart_segments(self, text: str, config: ChunkingConfig) -> list[tuple[str, int]]:
        """(content, overlap_length) pairs in document order."""
        segments: list[tuple[str, int]] = []
        buffer      = ""
        buffer_seed = 0

        for para in self._paragraphs(text, config.max_chunk_size):
            candidate = f"{buffer}\n\n{para}" if buffer else para
            if buffer and len(candidate) > config.max_chunk_size and len(buffer) >= config.min_chunk_size:
                segments.append((buffer, buffer_seed))
                seed        = overlap_tail(buffer, config.overlap_size)
                buffer      = f"{seed}\n\n{para}" if seed else para
                buffer_seed = len(seed)
            else:
                buffer = candidate

        if buffer.strip():
            segments.append((buffer, buffer_seed))
        return segments

    @staticmethod
    def _paragraphs(text: str, max_size: int) -> list[str]:
        """Blank-line paragraphs; oversized ones split at sentence boundaries."""
        out: list[str] = []
        for para in _PARAGRAPH_SPLIT_RE.split(text):
            para = para.strip()
            if not para:
                continue
            if len(para) <= max_size:
                out.append(para)
                continue

            piece = ""
            for sentence in _SENTENCE_SPLIT_RE.split(para):
                # A single sentence longer than max_size is hard-cut
                while len(sentence) > max_size:
                    if piece:
                        out.append(piece)
                        piece = ""
                    out.append(sentence[:max_size].strip())
                    sentence = sentence[max_size:]
                if not sentence.strip():
                    continue
                if piece and len(piece) + 1 + len(sentence) > max_size:
                    out.append(piece)
                    piece = sentence
                else:
                    piece = f"{piece} {sentence}" if piece else sentence
            if piece:
                out.append(piece)
        return [p for p in out if p]

    # ------------------------------------------------------------------
    # Tables / footnotes / image descriptions
    # ------------------------------------------------------------------

    def _auxiliary_chunks(self, document_id: str, result: ExtractionResult) -> list[_Pending]:
        pending: list[_Pending] = []

        if result.structure:
            for table in result.structure.tables:
                if not table.content.strip():
                    continue
                pending.append(_Pending(
                    id=f"{document_id}_table_{table.position}",
                    content=table.content.strip(),
                    content_type=ContentType.TABLE,
                    page_number=table.page_number,
                    metadata={
                        "source_type":       "table",
                        "chunking_strategy": "table",
                        "table_position":    table.position,
                        "rows":              table.rows,
                        "columns":           table.columns,
                    },
                ))

            for note in result.structure.footnotes:
                if not note.text.strip():
                    continue
                pending.append(_Pending(
                    id=f"{document_id}_footnote_{note.position}",
                    content=note.text.strip(),
                    metadata={
                        "source_type":       "footnote",
                        "chunking_strategy": "footnote",
                        "footnote_id":       note.id,
                        "footnote_position": note.position,
                    },
                ))

        for i, image in enumerate(result.images):
            if not image.description.strip():
                continue
            pending.append(_Pending(
                id=f"{document_id}_image_{i}",
                content=image.description.strip(),
                page_number=image.page_number,
                metadata={
                    "source_type":       "image_description",
                    "chunking_strategy": "image_description",
                    "image_position":    i,
                },
            ))

        return pending

    # ------------------------------------------------------------------
    # Index assignment
    # ------------------------------------------------------------------

    def _finalize(
        self,
        document_id: str,
        pending:     list[_Pending],
        result:      ExtractionResult,
    ) -> list[DocumentChunk]:
        page_words = [
            (p.page_number, _attribution_words(p.text))
            for p in sorted(result.page_texts or [], key=lambda p: p.page_number)
        ]
        extraction_method = result.metadata.get("extraction_method")

        chunks: list[DocumentChunk] = []
        for item in pending:
            if not item.content.strip():
                continue
            page_number = item.page_number
            if page_number is None and page_words:
                page_number = attribute_page(item.content, page_words)

            metadata: Metadata = {"source_type": "text", **item.metadata}
            if extraction_method:
                metadata.setdefault("extraction_method", extraction_method)

            chunks.append(DocumentChunk(
                id=item.id,
                document_id=document_id,
                chunk_index=len(chunks),
                content=item.content,
                content_type=item.content_type,
                character_count=len(item.content),
                page_number=page_number,
                metadata=metadata,
            ))
        return chunks
