"""
Extractor interface shared by the self-hosted extractors.

Implementations are selected through the Strategy enum in strategy.py,
never by dynamic lookup.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any

from app.processing.types import ExtractionResult

_WS_RE = re.compile(r"\s+")


class Extractor(ABC):
    """
    All implementations:
      - accept raw bytes (never a file path, keeps workers stateless)
      - return an ExtractionResult whose text passes the content floor
      - raise ProcessingError on failure, never a library exception
    """

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging and the extraction_method metadata tag."""

    @abstractmethod
    async def extract(
        self,
        buffer:    bytes,
        file_name: str,
        options:   Any = None,
    ) -> ExtractionResult:
        """Extract text and metadata from `buffer`."""


def count_words(text: str) -> int:
    return len(text.split()) if text.strip() else 0


def collapse_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()
