"""
Document Processing Package
════════════════════════════

Turns an uploaded academic file into ordered, indexable chunks:

  Strategy Selection → Extraction (self-hosted | external) → Chunking

Modules
───────
  strategy.py         Pure strategy selector + side-effect free recommendation
  pdf_extractor.py    PyMuPDF extraction with layout-aware line reconstruction
  docx_extractor.py   mammoth + lxml conversion: markdown, headings, tables, footnotes
  external_client.py  httpx client for the external parsing service (tenacity retries)
  hybrid.py           Direct path: self-hosted first, external fallback
  chunking.py         Structure-based / page-based / smart chunking
  unified.py          Entry point: direct result or async job handle
  errors.py           ErrorKind taxonomy, library error mappers, FileValidator
  types.py            ExtractionResult, DocumentChunk, ChunkingConfig

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Failures are ProcessingError, never bare library exceptions.
  • Extractors are selected through the Strategy enum, not by dynamic lookup.
  • Every step emits pipe-delimited structured log lines.
"""

from app.processing.chunking import ChunkingEngine
from app.processing.errors import ErrorKind, ProcessingError
from app.processing.strategy import Strategy, select_strategy
from app.processing.types import ChunkingConfig, DocumentChunk, ExtractionResult

__all__ = [
    "ChunkingConfig",
    "ChunkingEngine",
    "DocumentChunk",
    "ErrorKind",
    "ExtractionResult",
    "ProcessingError",
    "Strategy",
    "select_strategy",
]
