"""
Unified Processor  —  single entry point for document ingestion
═══════════════════════════════════════════════════════════════

  process_document(buffer, mime_type, file_name, options)
      │
      ├─ FileValidator (name, size ≤ max_async_file_size_bytes)
      ├─ recommendation_for()          → returned on every result
      ├─ select_strategy()
      │
      ├─ ASYNC_BACKGROUND ─► AsyncJobManager.submit()
      │                        → {is_async, job_id, estimated_completion}
      │
      └─ SELF_HOSTED / EXTERNAL ─► HybridProcessor.process()
                                   ChunkingEngine.chunk()
                                   → {data, chunks}

Failures never escape process_document(): they come back as
UnifiedProcessingResult(success=False, error=ProcessingError). Job reads,
waits and stats raise ProcessingError like the job manager does.

Direct-mode stats are in-process counters keyed by user id; async stats
come from the processing_jobs table.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.core.config import settings
from app.models.jobs import JobPriority, ProcessingJob
from app.processing.chunking import ChunkingEngine
from app.processing.errors import (
    ErrorKind,
    FileValidator,
    ProcessingError,
    ProcessingStage,
    log_processing_error,
)
from app.processing.hybrid import HybridOptions, HybridProcessor
from app.processing.strategy import (
    ProcessingRecommendation,
    Strategy,
    StrategyOptions,
    recommendation_for,
    select_strategy,
)
from app.processing.types import (
    DEFAULT_CHUNKING_CONFIGS,
    ChunkingConfig,
    DocumentChunk,
    ExtractionResult,
)
from app.services.async_jobs import AsyncJobManager, SubmitOptions

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Options / results
# ---------------------------------------------------------------------------

@dataclass
class UnifiedProcessingOptions:
    user_id:                   str | None = None
    course_id:                 str | None = None
    document_id:               str | None = None
    force_async:               bool = False
    force_direct:              bool = False
    prefer_self_hosted:        bool = False
    require_advanced_features: bool = False
    enable_fallback:           bool = True
    max_cost_per_document:     float | None = None
    preserve_formatting:       bool = True
    extract_metadata:          bool = True
    priority:                  JobPriority = JobPriority.NORMAL
    max_async_wait_seconds:    float | None = None
    callback_url:              str | None = None
    chunking_config:           ChunkingConfig | None = None

    def strategy_options(self) -> StrategyOptions:
        return StrategyOptions(
            prefer_self_hosted=self.prefer_self_hosted,
            require_advanced_features=self.require_advanced_features,
            force_async=self.force_async,
            force_direct=self.force_direct,
            max_cost_per_document=self.max_cost_per_document,
        )

    def hybrid_options(self) -> HybridOptions:
        opts = HybridOptions(
            prefer_self_hosted=self.prefer_self_hosted,
            require_advanced_features=self.require_advanced_features,
            enable_fallback=self.enable_fallback,
            max_cost_per_document=self.max_cost_per_document,
            preserve_formatting=self.preserve_formatting,
            extract_metadata=self.extract_metadata,
        )
        if self.max_async_wait_seconds:
            opts.max_wait_seconds = float(self.max_async_wait_seconds)
        return opts

    def job_extras(self) -> dict[str, Any]:
        """Extraction flags persisted on the job row for the worker."""
        extras: dict[str, Any] = {
            "preserve_formatting":       self.preserve_formatting,
            "extract_metadata":          self.extract_metadata,
            "require_advanced_features": self.require_advanced_features,
            "prefer_self_hosted":        self.prefer_self_hosted,
            "enable_fallback":           self.enable_fallback,
        }
        if self.max_cost_per_document is not None:
            extras["max_cost_per_document"] = self.max_cost_per_document
        if self.max_async_wait_seconds:
            extras["max_wait_seconds"] = float(self.max_async_wait_seconds)
        if self.document_id:
            extras["document_id"] = self.document_id
        return extras


@dataclass
class UnifiedProcessingResult:
    success:              bool
    is_async:             bool = False
    data:                 ExtractionResult | None = None
    chunks:               list[DocumentChunk] = field(default_factory=list)
    job_id:               str | None = None
    estimated_completion: datetime | None = None
    error:                ProcessingError | None = None
    recommendation:       ProcessingRecommendation | None = None


# ---------------------------------------------------------------------------
# Direct-mode counters
# ---------------------------------------------------------------------------

@dataclass
class _ModeCounters:
    total:         int = 0
    succeeded:     int = 0
    failed:        int = 0
    total_seconds: float = 0.0


class DirectModeStats:
    """Thread-safe per-user counters for in-request processing."""

    def __init__(self) -> None:
        self._lock     = threading.Lock()
        self._counters: dict[str, _ModeCounters] = {}

    def record(self, user_id: str | None, success: bool, elapsed_seconds: float) -> None:
        with self._lock:
            counters = self._counters.setdefault(user_id or "anonymous", _ModeCounters())
            counters.total += 1
            if success:
                counters.succeeded     += 1
                counters.total_seconds += elapsed_seconds
            else:
                counters.failed += 1

    def snapshot(self, user_id: str | None) -> dict[str, Any]:
        with self._lock:
            c = self._counters.get(user_id or "anonymous", _ModeCounters())
            finished = c.succeeded + c.failed
            return {
                "total":                      c.total,
                "queued":                     0,
                "success_rate":               round(c.succeeded / finished, 4) if finished else 0.0,
                "average_processing_seconds": round(c.total_seconds / c.succeeded, 2) if c.succeeded else 0.0,
            }


_direct_stats = DirectModeStats()


# ---------------------------------------------------------------------------
# Job payloads
# ---------------------------------------------------------------------------

def job_status_payload(job: ProcessingJob) -> dict[str, Any]:
    """Job status contract: {status, result?, estimated_completion?, error?}."""
    payload: dict[str, Any] = {
        "job_id":               job.id,
        "status":               job.status,
        "priority":             job.priority,
        "file_name":            job.file_name,
        "file_type":            job.file_type,
        "file_size":            job.file_size,
        "course_id":            job.course_id,
        "created_at":           job.created_at,
        "updated_at":           job.updated_at,
        "started_at":           job.started_at,
        "completed_at":         job.completed_at,
        "estimated_completion": job.estimated_completion,
    }
    if job.result is not None:
        payload["result"] = job.result
    if job.error is not None:
        payload["error"] = job.error
    return payload


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class UnifiedProcessor:
    """
    Stateless service object — one instance per request.
    The job manager is optional: without one the async path is unavailable.
    """

    def __init__(
        self,
        job_manager:  AsyncJobManager | None = None,
        hybrid:       HybridProcessor | None = None,
        chunker:      ChunkingEngine | None = None,
        direct_stats: DirectModeStats | None = None,
    ) -> None:
        self._jobs    = job_manager
        self._hybrid  = hybrid or HybridProcessor()
        self._chunker = chunker or ChunkingEngine()
        self._stats   = direct_stats or _direct_stats

    @property
    def external_configured(self) -> bool:
        return self._hybrid.external_client.is_configured

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def process_document(
        self,
        buffer:    bytes,
        mime_type: str,
        file_name: str,
        options:   UnifiedProcessingOptions | None = None,
    ) -> UnifiedProcessingResult:
        opts           = options or UnifiedProcessingOptions()
        recommendation: ProcessingRecommendation | None = None

        try:
            # ---- Step 1: Validate -----------------------------------------
            FileValidator.validate_file_name(file_name)
            FileValidator.validate_file_size(len(buffer), settings.max_async_file_size_bytes)

            # ---- Step 2: Recommend + select -------------------------------
            recommendation = recommendation_for(
                len(buffer), mime_type, file_name, external_configured=self.external_configured,
            )
            strategy = select_strategy(
                len(buffer), mime_type, file_name,
                opts.strategy_options(),
                external_configured=self.external_configured,
            )
            logger.info(
                "UnifiedProcessor | user=%s file=%s size=%d strategy=%s",
                opts.user_id, file_name, len(buffer), strategy.value,
            )

            # ---- Step 3: Dispatch -----------------------------------------
            if strategy is Strategy.ASYNC_BACKGROUND:
                return await self._submit_async(buffer, mime_type, file_name, opts, recommendation)
            return await self._process_direct(buffer, mime_type, file_name, opts, recommendation)

        except ProcessingError as err:
            log_processing_error(err, f"UnifiedProcessor | file={file_name}")
            return UnifiedProcessingResult(success=False, error=err, recommendation=recommendation)

    async def _submit_async(
        self,
        buffer:         bytes,
        mime_type:      str,
        file_name:      str,
        opts:           UnifiedProcessingOptions,
        recommendation: ProcessingRecommendation,
    ) -> UnifiedProcessingResult:
        handle = await self._require_jobs(file_name, mime_type).submit(
            buffer, mime_type, file_name,
            SubmitOptions(
                user_id=opts.user_id or "",
                course_id=opts.course_id,
                priority=opts.priority,
                callback_url=opts.callback_url,
                chunking_config=opts.chunking_config,
                extra=opts.job_extras(),
            ),
        )
        return UnifiedProcessingResult(
            success=True,
            is_async=True,
            job_id=handle.job_id,
            estimated_completion=handle.estimated_completion,
            recommendation=recommendation,
        )

    async def _process_direct(
        self,
        buffer:         bytes,
        mime_type:      str,
        file_name:      str,
        opts:           UnifiedProcessingOptions,
        recommendation: ProcessingRecommendation,
    ) -> UnifiedProcessingResult:
        started     = time.perf_counter()
        document_id = opts.document_id or f"doc_{uuid.uuid4().hex}"
        try:
            extraction = await self._hybrid.process(buffer, mime_type, file_name, opts.hybrid_options())
            chunks     = self._chunker.chunk(
                document_id, extraction, opts.chunking_config or DEFAULT_CHUNKING_CONFIGS["academic"],
            )
        except ProcessingError:
            self._stats.record(opts.user_id, False, time.perf_counter() - started)
            raise

        elapsed = time.perf_counter() - started
        self._stats.record(opts.user_id, True, elapsed)

        extraction.metadata.update({
            "processing_mode": "direct",
            "user_id":         opts.user_id,
            "course_id":       opts.course_id,
        })
        logger.info(
            "UnifiedProcessor | direct ok doc=%s chunks=%d elapsed_ms=%.0f",
            document_id, len(chunks), elapsed * 1000,
        )
        return UnifiedProcessingResult(
            success=True,
            data=extraction,
            chunks=chunks,
            recommendation=recommendation,
        )

    # ------------------------------------------------------------------
    # Async job reads
    # ------------------------------------------------------------------

    async def check_async_job_status(self, job_id: str, user_id: str) -> dict[str, Any]:
        job = await self._require_jobs().get_status(job_id, user_id)
        return job_status_payload(job)

    async def wait_for_async_completion(
        self,
        job_id:                str,
        user_id:               str,
        max_wait_seconds:      float = 300.0,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> dict[str, Any]:
        """
        Poll the job row until it reaches a terminal state.
        Exceeding max_wait_seconds raises PROCESSING_TIMEOUT; the job itself
        is left untouched.
        """
        jobs     = self._require_jobs()
        deadline = time.monotonic() + max_wait_seconds

        while True:
            job = await jobs.get_status(job_id, user_id)
            if job.is_terminal:
                return job_status_payload(job)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProcessingError(
                    ErrorKind.PROCESSING_TIMEOUT,
                    f"Job {job_id} still {job.status} after {max_wait_seconds:.0f}s",
                    stage=ProcessingStage.FINALIZATION,
                    recoverable=True,
                    file_name=job.file_name,
                    file_type=job.file_type,
                )
            await asyncio.sleep(min(poll_interval_seconds, remaining))

    async def get_processing_stats(self, user_id: str) -> dict[str, Any]:
        direct = self._stats.snapshot(user_id)
        async_stats = (
            await self._jobs.get_job_stats(user_id) if self._jobs is not None
            else {"total": 0, "queued": 0, "success_rate": 0.0, "average_processing_seconds": 0.0}
        )
        return {
            "direct": direct,
            "async":  async_stats,
            "total":  direct["total"] + async_stats["total"],
        }

    def get_processing_recommendation(
        self,
        file_size: int,
        mime_type: str,
        file_name: str,
    ) -> ProcessingRecommendation:
        return recommendation_for(
            file_size, mime_type, file_name, external_configured=self.external_configured,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require_jobs(self, file_name: str | None = None, file_type: str | None = None) -> AsyncJobManager:
        if self._jobs is None:
            raise ProcessingError(
                ErrorKind.DEPENDENCY_ERROR,
                "Async processing requested but no job manager is available",
                stage=ProcessingStage.VALIDATION,
                file_name=file_name,
                file_type=file_type,
            )
        return self._jobs
