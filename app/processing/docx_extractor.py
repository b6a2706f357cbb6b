"""
Self-Hosted DOCX Extractor  —  mammoth + lxml
═════════════════════════════════════════════

  buffer ──► mammoth.convert_to_html(style map) ──► clean_mammoth_html()
     │                                                   │
     │                                   extract_structure()   html_to_markdown()
     │                                    headings/tables/       headings, emphasis,
     │                                    footnotes              quotes, fenced code
     │
     └──► mammoth.extract_raw_text() ──► ExtractionResult.text

The style map translates named Word paragraph styles into semantic tags so
that headings, quotes, captions, bibliography entries and code survive the
conversion. python-docx supplies the core properties (title, author, dates).

Failure policy
──────────────
  • container / parse failure (not a zip, missing document.xml) → CORRUPTED_FILE
  • structure or markdown failure → empty structure / "" (logged)
  • image collection failure      → zero images (logged)
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from dataclasses import dataclass, field

import mammoth
from lxml import html as lxml_html

from app.core.config import settings
from app.processing.base import Extractor, count_words
from app.processing.errors import (
    DOCX_MIME,
    ErrorKind,
    FileValidator,
    ProcessingError,
    ProcessingStage,
    map_docx_error,
)
from app.processing.types import (
    MIN_CONTENT_CHARS,
    DocumentStructure,
    ExtractedImage,
    ExtractionResult,
    Footnote,
    Heading,
    Table,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Style mapping
# ---------------------------------------------------------------------------

ACADEMIC_STYLE_MAP: tuple[str, ...] = (
    # Headings
    "p[style-name='Heading 1'] => h1:fresh",
    "p[style-name='Heading 2'] => h2:fresh",
    "p[style-name='Heading 3'] => h3:fresh",
    "p[style-name='Heading 4'] => h4:fresh",
    # Common academic styles
    "p[style-name='Title'] => h1.title:fresh",
    "p[style-name='Abstract'] => p.abstract",
    "p[style-name='Quote'] => blockquote:fresh",
    "p[style-name='Caption'] => p.caption",
    "p[style-name='Bibliography'] => p.bibliography",
    # Code
    "p[style-name='Code'] => pre:fresh",
    "r[style-name='Code Char'] => code",
    # Lists
    "p[style-name='List Paragraph'] => ul > li:fresh",
    "p[style-name='Bullet'] => ul > li:fresh",
)

# Extra mappings applied when include_styles=True
CITATION_STYLE_MAP: tuple[str, ...] = (
    "r[style-name='Citation'] => span.citation",
    "p[style-name='Citation'] => p.citation",
    "p[style-name='Reference'] => p.reference",
    "p[style-name='Footnote Text'] => p.footnote",
    "p[style-name='Equation'] => p.equation",
)

_EMPTY_P_RE         = re.compile(r"<p>\s*</p>")
_WS_RE              = re.compile(r"\s+")
_MAMMOTH_ATTR_RE    = re.compile(r'\s*data-mammoth-[^=]*="[^"]*"')
_MULTI_NEWLINE_RE   = re.compile(r"\n{3,}")
_TRAILING_SPACE_RE  = re.compile(r"[ \t]+$", re.MULTILINE)
_HEADING_TAGS       = ("h1", "h2", "h3", "h4", "h5", "h6")


@dataclass
class DocxExtractionOptions:
    preserve_images:     bool = False
    convert_to_markdown: bool = True
    extract_structure:   bool = True
    include_styles:      bool = True
    handle_footnotes:    bool = True
    max_file_size:       int  = field(default_factory=lambda: settings.docx_max_file_size_bytes)


# ---------------------------------------------------------------------------
# HTML helpers (pure)
# ---------------------------------------------------------------------------

def clean_mammoth_html(html: str) -> str:
    """Drop empty paragraphs, collapse whitespace, strip data-mammoth-* attributes."""
    html = _EMPTY_P_RE.sub("", html)
    html = _WS_RE.sub(" ", html)
    html = _MAMMOTH_ATTR_RE.sub("", html)
    return html.strip()


def _parse_fragment(html: str):
    return lxml_html.fromstring(f"<div>{html}</div>")


def _element_text(el) -> str:
    return _WS_RE.sub(" ", el.text_content()).strip()


def _table_rows(table) -> list[list[str]]:
    return [
        [_element_text(cell) for cell in row.xpath("./td|./th")]
        for row in table.xpath(".//tr")
    ]


def _drop_backlinks(root) -> None:
    """Remove mammoth's footnote back-reference arrows before reading text."""
    for link in root.xpath('.//a[starts-with(@href, "#footnote-ref")]'):
        link.drop_tree()


def extract_structure(html: str) -> DocumentStructure:
    """
    Collect headings, tables and footnote-like elements from cleaned HTML.
    Returns an empty structure if the markup cannot be parsed.
    """
    try:
        root = _parse_fragment(html)
    except Exception as exc:
        logger.warning("DocxExtractor | structure parse failed: %s", exc)
        return DocumentStructure()

    structure = DocumentStructure()

    for el in root.iter(*_HEADING_TAGS):
        text = _element_text(el)
        if not text:
            continue
        level = int(el.tag[1])
        structure.headings.append(
            Heading(level=level, text=text, id=f"heading_{len(structure.headings)}_{level}")
        )

    for position, table in enumerate(root.iter("table")):
        rows = _table_rows(table)
        structure.tables.append(Table(
            rows=len(rows),
            columns=len(rows[0]) if rows else 0,
            content="\n".join(" | ".join(cells) for cells in rows).strip(),
            position=position,
        ))

    _drop_backlinks(root)
    seen: set[int] = set()
    candidates = root.xpath(
        '//*[contains(@class, "footnote") or (self::li and starts-with(@id, "footnote-"))]'
    )
    for el in candidates:
        if id(el) in seen:
            continue
        seen.add(id(el))
        text = _element_text(el)
        if not text:
            continue
        position = len(structure.footnotes)
        structure.footnotes.append(Footnote(id=f"footnote_{position}", text=text, position=position))

    return structure


def html_to_markdown(html: str) -> str:
    """
    Render cleaned mammoth HTML as markdown.

    Academic markup renders distinctly:
      span/p.citation  → *citation*
      p.footnote       → [^footnote]: text
      p.reference      → text fenced between --- rules
    Returns "" if the markup cannot be converted.
    """
    try:
        root = _parse_fragment(html)
        _drop_backlinks(root)
        markdown = _render_blocks(root)
    except Exception as exc:
        logger.warning("DocxExtractor | markdown conversion failed: %s", exc)
        return ""

    markdown = _MULTI_NEWLINE_RE.sub("\n\n", markdown)
    markdown = _TRAILING_SPACE_RE.sub("", markdown)
    return markdown.strip()


def _classes(el) -> set[str]:
    return set((el.get("class") or "").split())


def _render_inline(el) -> str:
    parts: list[str] = [el.text or ""]
    for child in el:
        parts.append(_render_inline_element(child))
        parts.append(child.tail or "")
    return "".join(parts)


def _render_inline_element(el) -> str:
    tag = el.tag if isinstance(el.tag, str) else ""
    inner = _render_inline(el)
    if tag in ("strong", "b"):
        return f"**{inner.strip()}**" if inner.strip() else ""
    if tag in ("em", "i") or "citation" in _classes(el):
        return f"*{inner.strip()}*" if inner.strip() else ""
    if tag == "code":
        return f"`{inner}`"
    if tag == "br":
        return "\n"
    if tag == "sup":
        link = el.find("a")
        if link is not None and (link.get("href") or "").startswith("#footnote-"):
            return f"[^{_render_inline(link).strip('[] ')}]"
        return inner
    if tag == "a":
        href = el.get("href") or ""
        return f"[{inner}]({href})" if href and not href.startswith("#") else inner
    if tag == "img":
        alt = el.get("alt") or ""
        return f"![{alt}]" if alt else ""
    return inner


def _render_list(el, ordered: bool) -> str:
    lines: list[str] = []
    for number, item in enumerate(el.iterchildren("li"), start=1):
        marker = f"{number}." if ordered else "-"
        text = _WS_RE.sub(" ", _render_inline(item)).strip()
        if text:
            lines.append(f"{marker} {text}")
    return "\n".join(lines) + "\n\n" if lines else ""


def _render_table(el) -> str:
    rows = _table_rows(el)
    if not rows:
        return ""
    width = max(len(r) for r in rows)
    out = []
    for i, row in enumerate(rows):
        cells = row + [""] * (width - len(row))
        out.append("| " + " | ".join(cells) + " |")
        if i == 0:
            out.append("|" + " --- |" * width)
    return "\n".join(out) + "\n\n"


def _render_blocks(root) -> str:
    parts: list[str] = []
    if root.text and root.text.strip():
        parts.append(root.text.strip() + "\n\n")
    for el in root:
        tag = el.tag if isinstance(el.tag, str) else ""
        classes = _classes(el)
        if tag in _HEADING_TAGS:
            parts.append(f"\n{'#' * int(tag[1])} {_render_inline(el).strip()}\n\n")
        elif tag == "p":
            text = _render_inline(el).strip()
            if not text:
                pass
            elif "footnote" in classes:
                parts.append(f"[^footnote]: {text}\n\n")
            elif "reference" in classes:
                parts.append(f"\n---\n{text}\n---\n\n")
            elif "citation" in classes:
                parts.append(f"*{text}*\n\n")
            else:
                parts.append(text + "\n\n")
        elif tag == "pre":
            parts.append(f"```\n{el.text_content().strip()}\n```\n\n")
        elif tag == "blockquote":
            inner = _render_blocks(el).strip()
            parts.append("\n".join(f"> {line}" if line else ">" for line in inner.split("\n")) + "\n\n")
        elif tag in ("ul", "ol"):
            parts.append(_render_list(el, ordered=tag == "ol"))
        elif tag == "table":
            parts.append(_render_table(el))
        elif tag == "div":
            parts.append(_render_blocks(el))
        else:
            text = _render_inline_element(el).strip()
            if text:
                parts.append(text + "\n\n")
        if el.tail and el.tail.strip():
            parts.append(el.tail.strip() + "\n\n")
    return "".join(parts)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class DocxExtractor(Extractor):
    """In-process DOCX extraction via mammoth (HTML + raw text)."""

    @property
    def strategy_name(self) -> str:
        return "self-hosted-mammoth"

    async def extract(
        self,
        buffer:    bytes,
        file_name: str,
        options:   DocxExtractionOptions | None = None,
    ) -> ExtractionResult:
        opts = options or DocxExtractionOptions()
        t0   = time.monotonic()

        FileValidator.validate_file_name(file_name)
        if len(buffer) > opts.max_file_size:
            raise ProcessingError(
                ErrorKind.FILE_TOO_LARGE,
                f"DOCX size {len(buffer)} exceeds limit {opts.max_file_size}",
                stage=ProcessingStage.VALIDATION,
                recoverable=True,
                file_name=file_name,
                file_type=DOCX_MIME,
            )

        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(
                None, self._extract_sync, buffer, file_name, opts,
            )
        except ProcessingError:
            raise
        except Exception as exc:
            raise map_docx_error(exc, file_name) from exc

        result.processing_time_ms = (time.monotonic() - t0) * 1000
        result.metadata["processing_time_ms"] = round(result.processing_time_ms, 1)
        logger.info(
            "DocxExtractor | file=%s words=%s headings=%d tables=%d images=%d elapsed_ms=%.0f",
            file_name,
            result.metadata.get("word_count"),
            len(result.structure.headings) if result.structure else 0,
            len(result.structure.tables) if result.structure else 0,
            len(result.images),
            result.processing_time_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Blocking extraction, run in a thread executor
    # ------------------------------------------------------------------

    def _extract_sync(
        self,
        buffer:    bytes,
        file_name: str,
        opts:      DocxExtractionOptions,
    ) -> ExtractionResult:
        collector = _ImageCollector(keep_details=opts.preserve_images)
        style_map = ACADEMIC_STYLE_MAP + (CITATION_STYLE_MAP if opts.include_styles else ())

        try:
            converted = mammoth.convert_to_html(
                io.BytesIO(buffer),
                style_map="\n".join(style_map),
                convert_image=mammoth.images.img_element(collector),
            )
            raw = mammoth.extract_raw_text(io.BytesIO(buffer))
        except Exception as exc:
            raise map_docx_error(exc, file_name) from exc

        messages = [
            {"type": getattr(m, "type", "warning"), "message": getattr(m, "message", str(m))}
            for m in converted.messages
        ]
        for msg in messages:
            logger.debug("DocxExtractor | mammoth message: %s", msg["message"])

        text = raw.value.strip()
        if len(text) < MIN_CONTENT_CHARS:
            raise ProcessingError(
                ErrorKind.NO_CONTENT_EXTRACTED,
                f"Only {len(text)} characters extracted",
                stage=ProcessingStage.EXTRACTION,
                recoverable=True,
                file_name=file_name,
                file_type=DOCX_MIME,
            )

        html = clean_mammoth_html(converted.value)

        structure = None
        if opts.extract_structure:
            structure = extract_structure(html)
            if not opts.handle_footnotes:
                structure.footnotes = []

        structured_text = html_to_markdown(html) if opts.convert_to_markdown else None

        images = collector.images if opts.preserve_images else []
        if collector.failed:
            images = []

        metadata: dict = {
            "extraction_method":   self.strategy_name,
            "word_count":          count_words(text),
            "paragraph_count":     html.count("<p>") + html.count("<p "),
            "heading_count":       sum(html.count(f"<{tag}") for tag in _HEADING_TAGS),
            "image_count":         collector.count,
            "conversion_messages": messages,
        }
        metadata.update(self._core_properties(buffer, file_name))

        return ExtractionResult(
            text=text,
            metadata=metadata,
            structured_text=structured_text,
            structure=structure,
            images=images,
            cost_estimate=0.0,
        )

    @staticmethod
    def _core_properties(buffer: bytes, file_name: str) -> dict:
        """Title / author / dates from docProps/core.xml; best-effort."""
        try:
            import docx

            props = docx.Document(io.BytesIO(buffer)).core_properties
            extracted = {
                "title":             props.title or None,
                "author":            props.author or None,
                "subject":           props.subject or None,
                "creation_date":     props.created.isoformat() if props.created else None,
                "modification_date": props.modified.isoformat() if props.modified else None,
            }
            return {k: v for k, v in extracted.items() if v is not None}
        except Exception as exc:
            logger.warning("DocxExtractor | core properties unavailable file=%s error=%s", file_name, exc)
            return {}


class _ImageCollector:
    """
    mammoth convert_image callback.

    Never raises: a failing image marks the collector failed so the
    extraction continues with zero images.
    """

    def __init__(self, keep_details: bool) -> None:
        self.keep_details = keep_details
        self.images: list[ExtractedImage] = []
        self.count  = 0
        self.failed = False

    def __call__(self, image) -> dict:
        self.count += 1
        alt = getattr(image, "alt_text", None) or ""
        if not self.keep_details or self.failed:
            return {"alt": alt} if alt else {}
        try:
            with image.open() as stream:
                size = len(stream.read())
            self.images.append(ExtractedImage(
                content_type=image.content_type or "application/octet-stream",
                alt_text=alt,
                size_bytes=size,
            ))
        except Exception as exc:
            logger.warning("DocxExtractor | image extraction failed: %s", exc)
            self.failed = True
        return {"alt": alt} if alt else {}
