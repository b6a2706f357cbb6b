"""
Shared data types for the ingestion core.

ExtractionResult is the normalized output of every extraction path
(self-hosted PDF, self-hosted DOCX, external service). DocumentChunk is the
unit handed to the indexing collaborator. Both serialise to plain dicts so
they can be stored in the job row (JSONB) and returned by the API.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Union

# Typed metadata values: string, number, bool, string-list
MetadataValue = Union[str, int, float, bool, list, None]
Metadata = dict[str, MetadataValue]

# A successful extraction must carry more than this many characters
MIN_CONTENT_CHARS = 10


# ---------------------------------------------------------------------------
# Document structure
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    page_number: int   # 1-based
    text:        str
    word_count:  int


@dataclass
class Heading:
    level: int   # 1–6
    text:  str
    id:    str   # stable: heading_<index>_<level>


@dataclass
class Table:
    rows:        int
    columns:     int
    content:     str          # flattened text, row-wise
    position:    int          # ordinal among the document's tables
    page_number: int | None = None


@dataclass
class Footnote:
    id:       str
    text:     str
    position: int


@dataclass
class DocumentStructure:
    headings:  list[Heading]  = field(default_factory=list)
    tables:    list[Table]    = field(default_factory=list)
    footnotes: list[Footnote] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.headings or self.tables or self.footnotes)


@dataclass
class ExtractedImage:
    """An image found in the document; description is opaque external output."""
    content_type: str
    alt_text:     str = ""
    page_number:  int | None = None
    description:  str = ""
    size_bytes:   int = 0


# ---------------------------------------------------------------------------
# Extraction result
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text               : full plain-text content (non-empty on success)
    metadata           : extractor-reported properties (title, author, counts,
                         extraction_method tag, …)
    processing_time_ms : wall-clock extraction time
    cost_estimate      : USD; 0.0 for self-hosted extraction
    structured_text    : markdown rendering (DOCX) when requested
    page_texts         : ordered by page_number for paginated formats
    structure          : headings / tables / footnotes when detected
    images             : images found (best-effort)
    """
    text:               str
    metadata:           Metadata = field(default_factory=dict)
    processing_time_ms: float = 0.0
    cost_estimate:      float = 0.0
    structured_text:    str | None = None
    page_texts:         list[PageText] | None = None
    structure:          DocumentStructure | None = None
    images:             list[ExtractedImage] = field(default_factory=list)

    @property
    def page_count(self) -> int:
        return len(self.page_texts) if self.page_texts else 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionResult":
        page_texts = data.get("page_texts")
        structure  = data.get("structure")
        return cls(
            text=data.get("text", ""),
            metadata=dict(data.get("metadata") or {}),
            processing_time_ms=float(data.get("processing_time_ms", 0.0)),
            cost_estimate=float(data.get("cost_estimate", 0.0)),
            structured_text=data.get("structured_text"),
            page_texts=[PageText(**p) for p in page_texts] if page_texts is not None else None,
            structure=DocumentStructure(
                headings=[Heading(**h) for h in structure.get("headings", [])],
                tables=[Table(**t) for t in structure.get("tables", [])],
                footnotes=[Footnote(**f) for f in structure.get("footnotes", [])],
            ) if structure is not None else None,
            images=[ExtractedImage(**i) for i in data.get("images", [])],
        )


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

class ContentType(str, Enum):
    TEXT    = "text"
    HEADING = "heading"
    TABLE   = "table"
    LIST    = "list"


class ChunkBoundary(str, Enum):
    SENTENCE  = "sentence"
    PARAGRAPH = "paragraph"
    SECTION   = "section"


@dataclass
class DocumentChunk:
    """
    Atomic retrievable unit.

    id is stable for a given (document_id, strategy position) so the
    indexing collaborator can upsert idempotently on re-processing.
    """
    id:              str
    document_id:     str
    chunk_index:     int          # 0-based, contiguous per document
    content:         str
    content_type:    ContentType
    character_count: int          # == len(content)
    page_number:     int | None = None
    metadata:        Metadata = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.content or not self.content.strip():
            raise ValueError(f"chunk {self.id} has no content")
        if self.character_count != len(self.content):
            raise ValueError(f"chunk {self.id} character_count mismatch")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["content_type"] = self.content_type.value
        return data


@dataclass(frozen=True)
class ChunkingConfig:
    """All sizes in characters. Requires 0 < overlap < min <= max."""
    max_chunk_size:     int
    min_chunk_size:     int
    overlap_size:       int
    chunk_boundary:     ChunkBoundary = ChunkBoundary.SENTENCE
    preserve_structure: bool = True

    def __post_init__(self) -> None:
        if not 0 < self.overlap_size < self.min_chunk_size <= self.max_chunk_size:
            raise ValueError(
                "ChunkingConfig requires 0 < overlap_size < min_chunk_size <= max_chunk_size "
                f"(got overlap={self.overlap_size} min={self.min_chunk_size} max={self.max_chunk_size})"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_chunk_size":     self.max_chunk_size,
            "min_chunk_size":     self.min_chunk_size,
            "overlap_size":       self.overlap_size,
            "chunk_boundary":     self.chunk_boundary.value,
            "preserve_structure": self.preserve_structure,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChunkingConfig":
        return cls(
            max_chunk_size=int(data["max_chunk_size"]),
            min_chunk_size=int(data["min_chunk_size"]),
            overlap_size=int(data["overlap_size"]),
            chunk_boundary=ChunkBoundary(data.get("chunk_boundary", ChunkBoundary.SENTENCE.value)),
            preserve_structure=bool(data.get("preserve_structure", True)),
        )


DEFAULT_CHUNKING_CONFIGS: dict[str, ChunkingConfig] = {
    "academic": ChunkingConfig(
        max_chunk_size=1000, min_chunk_size=200, overlap_size=100,
        chunk_boundary=ChunkBoundary.SENTENCE, preserve_structure=True,
    ),
    "general": ChunkingConfig(
        max_chunk_size=800, min_chunk_size=150, overlap_size=80,
        chunk_boundary=ChunkBoundary.SENTENCE, preserve_structure=False,
    ),
    "technical": ChunkingConfig(
        max_chunk_size=1200, min_chunk_size=250, overlap_size=120,
        chunk_boundary=ChunkBoundary.PARAGRAPH, preserve_structure=True,
    ),
}
