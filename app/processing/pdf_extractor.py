"""
Self-Hosted PDF Extractor  —  PyMuPDF with layout-aware line reconstruction
═══════════════════════════════════════════════════════════════════════════

Pipeline per document
─────────────────────
  1. Size guard (FILE_TOO_LARGE, recoverable: resubmit async / smaller)
  2. fitz.open() → CORRUPTED_FILE on failure, PASSWORD_PROTECTED if encrypted
  3. Page-count guard (MEMORY_LIMIT_EXCEEDED, recoverable via external fallback)
  4. For each page: positioned spans → TextFragment → reconstruct_lines()
       a failing page becomes "[Page N: extraction failed]", never aborts
  5. Content floor (NO_CONTENT_EXTRACTED, recoverable: scanned PDFs → external OCR)
  6. Metadata (title / author / dates), best-effort

Line reconstruction (preserve_formatting=True)
──────────────────────────────────────────────
  Fragments carry PDF user-space coordinates (y grows upwards), so sorting
  by descending y reads the page top-to-bottom:

      y=700  "Hello"(x=0)  "World"(x=50)   →  "Hello World"
      y=688  "Second line"                  →  "Second line"

  A fragment joins the running line while |y - line_y| < LINE_TOLERANCE.
  Within a line fragments are ordered by x and joined with a single space
  unless the text so far ends in whitespace or sentence-terminal punctuation,
  or the next fragment starts with whitespace or closing punctuation.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime

from app.core.config import settings
from app.processing.base import Extractor, collapse_whitespace, count_words
from app.processing.errors import (
    PDF_MIME,
    ErrorKind,
    ProcessingError,
    ProcessingStage,
    map_pdf_error,
)
from app.processing.types import MIN_CONTENT_CHARS, ExtractionResult, PageText

logger = logging.getLogger(__name__)

# Max vertical distance (PDF units) for two fragments to share a line
LINE_TOLERANCE = 5.0

_SENTENCE_END     = (".", "!", "?")
_CLOSING_PUNCT    = (",", ";", ":", ".", "!", "?", ")", "]", "}")
_MULTI_NEWLINE_RE = re.compile(r"\n{3,}")
_PDF_DATE_RE      = re.compile(
    r"^D:(\d{4})(\d{2})?(\d{2})?(\d{2})?(\d{2})?(\d{2})?"
)

PAGE_FAILED_PLACEHOLDER = "[Page {page}: extraction failed]"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass
class TextFragment:
    """A positioned run of text as reported by the PDF text layer."""
    text:      str
    x:         float
    y:         float          # PDF user space: larger y = higher on the page
    font_name: str   = ""
    font_size: float = 0.0


@dataclass
class PdfExtractionOptions:
    max_pages:           int  = field(default_factory=lambda: settings.pdf_max_pages)
    preserve_formatting: bool = True
    extract_metadata:    bool = True
    max_file_size:       int  = field(default_factory=lambda: settings.pdf_max_file_size_bytes)


# ---------------------------------------------------------------------------
# Pure text reconstruction
# ---------------------------------------------------------------------------

def _needs_space(line: str, fragment: str) -> bool:
    if not line or not fragment:
        return False
    if line[-1].isspace() or fragment[0].isspace():
        return False
    if line.endswith(_SENTENCE_END):
        return False
    if fragment.startswith(_CLOSING_PUNCT):
        return False
    return True


def reconstruct_lines(
    fragments:           list[TextFragment],
    preserve_formatting: bool = True,
    tolerance:           float = LINE_TOLERANCE,
) -> str:
    """
    Rebuild page text from positioned fragments.

    preserve_formatting=False: single-space join in stream order, whitespace
    collapsed. preserve_formatting=True: line grouping as described in the
    module docstring; lines joined with "\\n", 3+ newlines collapsed to 2.
    """
    if not preserve_formatting:
        return collapse_whitespace(" ".join(f.text for f in fragments))

    items = [f for f in fragments if f.text.strip()]
    if not items:
        return ""

    # Top-to-bottom, then left-to-right
    items.sort(key=lambda f: (-f.y, f.x))

    lines: list[list[TextFragment]] = []
    line_y: float | None = None
    for frag in items:
        if line_y is None or abs(frag.y - line_y) >= tolerance:
            lines.append([frag])
            line_y = frag.y
        else:
            lines[-1].append(frag)

    rendered: list[str] = []
    for line in lines:
        text = ""
        for frag in sorted(line, key=lambda f: f.x):
            if _needs_space(text, frag.text):
                text += " "
            text += frag.text
        text = collapse_whitespace(text)
        if text:
            rendered.append(text)

    return _MULTI_NEWLINE_RE.sub("\n\n", "\n".join(rendered))


def parse_pdf_date(value: str | None) -> str | None:
    """
    Convert a PDF date string (D:YYYYMMDDHHmmSS…) to ISO-8601 UTC.
    Returns the input unchanged when it cannot be parsed.
    """
    if not value:
        return value
    match = _PDF_DATE_RE.match(value)
    if not match:
        return value
    year, month, day, hour, minute, second = match.groups()
    try:
        parsed = datetime(
            int(year),
            int(month or 1),
            int(day or 1),
            int(hour or 0),
            int(minute or 0),
            int(second or 0),
        )
    except ValueError:
        return value
    return parsed.strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class PdfExtractor(Extractor):
    """
    In-process PDF extraction over the native text layer.

    Cannot OCR image-only pages: those produce no text and usually end in
    NO_CONTENT_EXTRACTED, which the hybrid processor treats as a cue to
    fall back to the external service.
    """

    @property
    def strategy_name(self) -> str:
        return "self-hosted-pymupdf"

    async def extract(
        self,
        buffer:    bytes,
        file_name: str,
        options:   PdfExtractionOptions | None = None,
    ) -> ExtractionResult:
        opts = options or PdfExtractionOptions()
        t0   = time.monotonic()

        if len(buffer) > opts.max_file_size:
            raise ProcessingError(
                ErrorKind.FILE_TOO_LARGE,
                f"PDF size {len(buffer)} exceeds limit {opts.max_file_size}",
                stage=ProcessingStage.VALIDATION,
                recoverable=True,
                file_name=file_name,
                file_type=PDF_MIME,
            )

        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(
                None, self._extract_sync, buffer, file_name, opts,
            )
        except ProcessingError:
            raise
        except Exception as exc:
            raise map_pdf_error(exc, file_name) from exc

        result.processing_time_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "PdfExtractor | file=%s pages=%d chars=%d elapsed_ms=%.0f",
            file_name, result.page_count, len(result.text), result.processing_time_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Blocking extraction, run in a thread executor
    # ------------------------------------------------------------------

    def _extract_sync(
        self,
        buffer:    bytes,
        file_name: str,
        opts:      PdfExtractionOptions,
    ) -> ExtractionResult:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        try:
            doc = fitz.open(stream=buffer, filetype="pdf")
        except Exception as exc:
            raise map_pdf_error(exc, file_name) from exc

        with doc:
            if doc.needs_pass:
                raise ProcessingError(
                    ErrorKind.PASSWORD_PROTECTED,
                    "PDF is encrypted and requires a password",
                    stage=ProcessingStage.VALIDATION,
                    file_name=file_name,
                    file_type=PDF_MIME,
                )

            if doc.page_count > opts.max_pages:
                raise ProcessingError(
                    ErrorKind.MEMORY_LIMIT_EXCEEDED,
                    f"Document has {doc.page_count} pages, exceeding limit of {opts.max_pages}",
                    recoverable=True,
                    file_name=file_name,
                    file_type=PDF_MIME,
                )

            pages: list[PageText] = []
            failed_pages: list[int] = []
            for page_number, page in enumerate(doc, start=1):
                try:
                    text = reconstruct_lines(
                        self._page_fragments(page),
                        preserve_formatting=opts.preserve_formatting,
                    )
                    pages.append(PageText(page_number, text, count_words(text)))
                except Exception as exc:
                    logger.warning(
                        "PdfExtractor | page extraction failed file=%s page=%d error=%s",
                        file_name, page_number, exc,
                    )
                    failed_pages.append(page_number)
                    pages.append(PageText(
                        page_number,
                        PAGE_FAILED_PLACEHOLDER.format(page=page_number),
                        0,
                    ))

            full_text = "\n\n".join(p.text for p in pages).strip()
            extracted = "".join(p.text for p in pages if p.page_number not in failed_pages).strip()
            if len(extracted) < MIN_CONTENT_CHARS:
                raise ProcessingError(
                    ErrorKind.NO_CONTENT_EXTRACTED,
                    f"Only {len(extracted)} characters extracted from {len(pages)} pages",
                    stage=ProcessingStage.EXTRACTION,
                    recoverable=True,
                    file_name=file_name,
                    file_type=PDF_MIME,
                )

            metadata: dict = {
                "extraction_method":   self.strategy_name,
                "page_count":          len(pages),
                "word_count":          sum(p.word_count for p in pages),
                "preserve_formatting": opts.preserve_formatting,
                "failed_pages":        failed_pages,
            }
            if opts.extract_metadata:
                metadata.update(self._document_metadata(doc, file_name))

        return ExtractionResult(
            text=full_text,
            metadata=metadata,
            page_texts=pages,
            cost_estimate=0.0,
        )

    @staticmethod
    def _page_fragments(page) -> list[TextFragment]:
        """Flatten PyMuPDF's block → line → span tree into TextFragments."""
        height = page.rect.height
        fragments: list[TextFragment] = []
        for block in page.get_text("dict").get("blocks", []):
            if block.get("type", 0) != 0:   # 1 = image block
                continue
            for line in block.get("lines", []):
                for span in line.get("spans", []):
                    x, y = span.get("origin", span["bbox"][:2])
                    fragments.append(TextFragment(
                        text=span.get("text", ""),
                        x=float(x),
                        y=float(height - y),
                        font_name=span.get("font", ""),
                        font_size=float(span.get("size", 0.0)),
                    ))
        return fragments

    @staticmethod
    def _document_metadata(doc, file_name: str) -> dict:
        """Best-effort: a broken info dictionary never fails the extraction."""
        try:
            info = doc.metadata or {}
            extracted = {
                "title":             info.get("title") or None,
                "author":            info.get("author") or None,
                "subject":           info.get("subject") or None,
                "creator":           info.get("creator") or None,
                "producer":          info.get("producer") or None,
                "creation_date":     parse_pdf_date(info.get("creationDate") or None),
                "modification_date": parse_pdf_date(info.get("modDate") or None),
            }
            return {k: v for k, v in extracted.items() if v is not None}
        except Exception as exc:
            logger.warning("PdfExtractor | metadata unavailable file=%s error=%s", file_name, exc)
            return {}
