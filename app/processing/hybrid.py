"""
Hybrid Processor  —  direct (in-request) extraction with external fallback
══════════════════════════════════════════════════════════════════════════

  select_strategy(force_direct=True)
      │
      ├─ SELF_HOSTED ─► PdfExtractor / DocxExtractor
      │                     │ recoverable ProcessingError
      │                     │ & enable_fallback & external configured
      │                     ▼
      └─ EXTERNAL ────► ExternalExtractionClient.extract()
                            │ job_id → wait_for_result(max_wait_seconds)
                            ▼
                       ExtractionResult
                         metadata.processing_strategy = self-hosted | external
                         metadata.fallback_used       = bool

Non-recoverable self-hosted failures (corrupted, password protected) and
exhausted external failures are raised unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.core.config import settings
from app.processing.base import Extractor
from app.processing.docx_extractor import DocxExtractionOptions, DocxExtractor
from app.processing.errors import (
    DOCX_MIME,
    PDF_MIME,
    ProcessingError,
    log_processing_error,
)
from app.processing.external_client import ExternalExtractionClient
from app.processing.pdf_extractor import PdfExtractionOptions, PdfExtractor
from app.processing.strategy import Strategy, StrategyOptions, select_strategy
from app.processing.types import ExtractionResult

logger = logging.getLogger(__name__)


@dataclass
class HybridOptions:
    prefer_self_hosted:        bool  = False
    require_advanced_features: bool  = False
    enable_fallback:           bool  = True
    max_cost_per_document:     float | None = None
    preserve_formatting:       bool  = True
    extract_metadata:          bool  = True
    preserve_images:           bool  = False
    convert_to_markdown:       bool  = True
    max_wait_seconds:          float = field(default_factory=lambda: float(settings.external_max_wait_seconds))
    # Background workers lift the in-request size ceiling to the async upload limit
    max_file_size_bytes:       int | None = None


class HybridProcessor:
    """Runs one document through the direct path and returns its ExtractionResult."""

    def __init__(
        self,
        pdf_extractor:   PdfExtractor | None = None,
        docx_extractor:  DocxExtractor | None = None,
        external_client: ExternalExtractionClient | None = None,
    ) -> None:
        self._extractors: dict[str, Extractor] = {
            PDF_MIME:  pdf_extractor or PdfExtractor(),
            DOCX_MIME: docx_extractor or DocxExtractor(),
        }
        self._external = external_client or ExternalExtractionClient()

    @property
    def external_client(self) -> ExternalExtractionClient:
        return self._external

    async def process(
        self,
        buffer:    bytes,
        mime_type: str,
        file_name: str,
        options:   HybridOptions | None = None,
    ) -> ExtractionResult:
        opts     = options or HybridOptions()
        strategy = select_strategy(
            len(buffer), mime_type, file_name,
            StrategyOptions(
                prefer_self_hosted=opts.prefer_self_hosted,
                require_advanced_features=opts.require_advanced_features,
                force_direct=True,
                max_cost_per_document=opts.max_cost_per_document,
            ),
            external_configured=self._external.is_configured,
        )
        logger.info(
            "HybridProcessor | file=%s mime=%s size=%d strategy=%s",
            file_name, mime_type, len(buffer), strategy.value,
        )

        if strategy is Strategy.EXTERNAL:
            result = await self._extract_external(buffer, mime_type, file_name, opts)
            return self._annotate(result, Strategy.EXTERNAL, fallback_used=False)

        try:
            result = await self._extract_self_hosted(buffer, mime_type, file_name, opts)
            return self._annotate(result, Strategy.SELF_HOSTED, fallback_used=False)
        except ProcessingError as err:
            if not self._can_fall_back(err, mime_type, opts):
                raise
            log_processing_error(err, "HybridProcessor | self-hosted failed, falling back")
            fallback_kind = err.kind

        result = await self._extract_external(buffer, mime_type, file_name, opts)
        result.metadata["fallback_reason"] = fallback_kind.value
        return self._annotate(result, Strategy.EXTERNAL, fallback_used=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    async def _extract_self_hosted(
        self,
        buffer:    bytes,
        mime_type: str,
        file_name: str,
        opts:      HybridOptions,
    ) -> ExtractionResult:
        extractor = self._extractors[mime_type]
        if mime_type == PDF_MIME:
            extractor_options = PdfExtractionOptions(
                preserve_formatting=opts.preserve_formatting,
                extract_metadata=opts.extract_metadata,
            )
        else:
            extractor_options = DocxExtractionOptions(
                preserve_images=opts.preserve_images,
                convert_to_markdown=opts.convert_to_markdown,
            )
        if opts.max_file_size_bytes is not None:
            extractor_options.max_file_size = opts.max_file_size_bytes
        return await extractor.extract(buffer, file_name, extractor_options)

    async def _extract_external(
        self,
        buffer:    bytes,
        mime_type: str,
        file_name: str,
        opts:      HybridOptions,
    ) -> ExtractionResult:
        submission = await self._external.extract(buffer, mime_type, file_name)
        if not submission.is_async:
            return submission.result

        logger.info(
            "HybridProcessor | waiting for external job=%s max_wait=%.0fs",
            submission.job_id, opts.max_wait_seconds,
        )
        return await self._external.wait_for_result(
            submission.job_id,
            max_wait_seconds=opts.max_wait_seconds,
            file_name=file_name,
            file_size=len(buffer),
        )

    def _can_fall_back(self, err: ProcessingError, mime_type: str, opts: HybridOptions) -> bool:
        return (
            err.recoverable
            and opts.enable_fallback
            and self._external.is_configured
            and self._external.supports(mime_type)
        )

    @staticmethod
    def _annotate(result: ExtractionResult, strategy: Strategy, fallback_used: bool) -> ExtractionResult:
        result.metadata["processing_strategy"] = strategy.value
        result.metadata["fallback_used"]       = fallback_used
        return result
