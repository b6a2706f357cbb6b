"""
Strategy Selector  —  self-hosted vs external vs async-background
═════════════════════════════════════════════════════════════════

select_strategy() is a pure function of its arguments (plus two settings
values that can be passed explicitly): identical inputs always give the
identical Strategy, so retries are idempotent.

Decision order (first match wins)
─────────────────────────────────
  1. force_async                                      → ASYNC_BACKGROUND
  2. force_direct                                     → rules 3–9, never async
  3. require_advanced_features & external configured  → EXTERNAL
  4. prefer_self_hosted & not require_advanced        → SELF_HOSTED
  5. mime not PDF/DOCX  → EXTERNAL if configured, else UNSUPPORTED_FORMAT
  6. external not configured → SELF_HOSTED below the ceiling, else ASYNC
  7. heuristic recommendation says external, within max_cost → EXTERNAL
  8. max_cost_per_document exceeded by the external estimate → SELF_HOSTED
  9. default                                          → SELF_HOSTED

  PDF above the large-file ceiling never runs self-hosted in-request:
  SELF_HOSTED is promoted to ASYNC_BACKGROUND unless force_direct is set.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum

from app.core.config import settings
from app.processing.errors import (
    DOCX_MIME,
    PDF_MIME,
    ErrorKind,
    ProcessingError,
    ProcessingStage,
)
from app.processing.external_client import estimate_external_cost

MB = 1024 * 1024

SELF_HOSTED_MIME_TYPES = frozenset({PDF_MIME, DOCX_MIME})

# Keywords in a file name that suggest tables / forms / complex layout
PDF_COMPLEX_KEYWORDS = (
    "financial", "report", "statement", "invoice", "form",
    "table", "chart", "diagram", "technical", "manual",
)
DOCX_COMPLEX_KEYWORDS = (
    "template", "form", "legal", "contract", "proposal",
    "technical", "manual", "specification", "report",
)

PDF_EXTERNAL_THRESHOLD_BYTES  = 20 * MB
DOCX_EXTERNAL_THRESHOLD_BYTES = 50 * MB
ASYNC_THRESHOLD_BYTES         = 50 * MB
SLOW_DOCX_THRESHOLD_BYTES     = 10 * MB


class Strategy(str, Enum):
    SELF_HOSTED      = "self-hosted"
    EXTERNAL         = "external"
    ASYNC_BACKGROUND = "async-background"


@dataclass(frozen=True)
class StrategyOptions:
    prefer_self_hosted:        bool = False
    require_advanced_features: bool = False
    force_async:               bool = False
    force_direct:              bool = False
    max_cost_per_document:     float | None = None


@dataclass
class ProcessingRecommendation:
    strategy:               Strategy
    method:                 str
    reasons:                list[str] = field(default_factory=list)
    estimated_time_seconds: int = 0
    estimated_cost:         float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        return data


def is_self_hosted_supported(mime_type: str) -> bool:
    return mime_type in SELF_HOSTED_MIME_TYPES


def _has_keyword(file_name: str, keywords: tuple[str, ...]) -> str | None:
    lowered = (file_name or "").lower()
    return next((k for k in keywords if k in lowered), None)


# ---------------------------------------------------------------------------
# Recommendation (side-effect free preview)
# ---------------------------------------------------------------------------

def get_processing_recommendation(
    file_size: int,
    mime_type: str,
    file_name: str,
) -> ProcessingRecommendation:
    """Heuristic preview of strategy, latency and cost for a file."""
    size_mb = file_size / MB

    if mime_type == PDF_MIME:
        if file_size > ASYNC_THRESHOLD_BYTES:
            return ProcessingRecommendation(
                Strategy.ASYNC_BACKGROUND, "background-service",
                [f"Large PDF ({size_mb:.1f}MB) is processed in the background"],
                600, 0.0,
            )
        if file_size > PDF_EXTERNAL_THRESHOLD_BYTES:
            return ProcessingRecommendation(
                Strategy.EXTERNAL, "external-service",
                [f"PDF larger than {PDF_EXTERNAL_THRESHOLD_BYTES // MB}MB benefits from the external service"],
                180, estimate_external_cost(file_size),
            )
        keyword = _has_keyword(file_name, PDF_COMPLEX_KEYWORDS)
        if keyword:
            return ProcessingRecommendation(
                Strategy.EXTERNAL, "external-service",
                [f"File name suggests complex layout ('{keyword}'): tables or forms likely"],
                90, estimate_external_cost(file_size),
            )
        return ProcessingRecommendation(
            Strategy.SELF_HOSTED, "self-hosted-pymupdf",
            ["Standard PDF: fast self-hosted extraction"],
            max(10, math.ceil(size_mb) * 5), 0.0,
        )

    if mime_type == DOCX_MIME:
        seconds = 90 if file_size > SLOW_DOCX_THRESHOLD_BYTES else 30
        keyword = _has_keyword(file_name, DOCX_COMPLEX_KEYWORDS)
        if keyword or file_size > DOCX_EXTERNAL_THRESHOLD_BYTES:
            reason = (
                f"File name suggests complex formatting ('{keyword}')" if keyword
                else f"DOCX larger than {DOCX_EXTERNAL_THRESHOLD_BYTES // MB}MB"
            )
            return ProcessingRecommendation(
                Strategy.EXTERNAL, "external-service", [reason],
                seconds, estimate_external_cost(file_size),
            )
        return ProcessingRecommendation(
            Strategy.SELF_HOSTED, "self-hosted-mammoth",
            ["Standard DOCX: structure-aware self-hosted conversion"],
            seconds, 0.0,
        )

    return ProcessingRecommendation(
        Strategy.ASYNC_BACKGROUND, "background-service",
        [f"{mime_type or 'Unknown type'} is not handled in-request"],
        300 if file_size > SLOW_DOCX_THRESHOLD_BYTES else 120, 0.0,
    )


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def select_strategy(
    file_size:           int,
    mime_type:           str,
    file_name:           str,
    options:             StrategyOptions | None = None,
    *,
    external_configured: bool | None = None,
    large_file_ceiling:  int | None = None,
) -> Strategy:
    opts       = options or StrategyOptions()
    configured = settings.external_service_configured if external_configured is None else external_configured
    ceiling    = settings.max_direct_file_size_bytes if large_file_ceiling is None else large_file_ceiling

    # ── Rule 1 ──
    if opts.force_async:
        return Strategy.ASYNC_BACKGROUND

    # ── Rule 2 ──
    allow_async = not opts.force_direct

    strategy = _select_direct_or_async(
        file_size, mime_type, file_name, opts, configured, ceiling, allow_async,
    )

    if (
        allow_async
        and strategy is Strategy.SELF_HOSTED
        and mime_type == PDF_MIME
        and file_size > ceiling
    ):
        return Strategy.ASYNC_BACKGROUND
    return strategy


def _select_direct_or_async(
    file_size:   int,
    mime_type:   str,
    file_name:   str,
    opts:        StrategyOptions,
    configured:  bool,
    ceiling:     int,
    allow_async: bool,
) -> Strategy:
    # ── Rule 3 ──
    if opts.require_advanced_features and configured:
        return Strategy.EXTERNAL

    supported = is_self_hosted_supported(mime_type)

    # ── Rule 4 ──
    if opts.prefer_self_hosted and not opts.require_advanced_features and supported:
        return Strategy.SELF_HOSTED

    # ── Rule 5 ──
    if not supported:
        if configured:
            return Strategy.EXTERNAL
        raise ProcessingError(
            ErrorKind.UNSUPPORTED_FORMAT,
            f"No extractor available for {mime_type}: self-hosted handles PDF/DOCX only "
            "and the external service is not configured",
            stage=ProcessingStage.VALIDATION,
            file_name=file_name,
            file_type=mime_type,
        )

    # ── Rule 6 ──
    if not configured:
        if file_size < ceiling or not allow_async:
            return Strategy.SELF_HOSTED
        return Strategy.ASYNC_BACKGROUND

    # ── Rule 7 ──
    over_budget = (
        opts.max_cost_per_document is not None
        and estimate_external_cost(file_size) > opts.max_cost_per_document
    )
    recommendation = get_processing_recommendation(file_size, mime_type, file_name)
    if recommendation.strategy is Strategy.EXTERNAL and not over_budget:
        return Strategy.EXTERNAL

    # ── Rules 8 / 9 ──  over budget, or nothing pointed elsewhere
    return Strategy.SELF_HOSTED


def recommendation_for(
    file_size: int,
    mime_type: str,
    file_name: str,
    external_configured: bool | None = None,
) -> ProcessingRecommendation:
    """
    Recommendation contract as exposed to clients: an external recommendation
    is downgraded to self-hosted (or async) when no external service exists.
    """
    configured = settings.external_service_configured if external_configured is None else external_configured
    rec = get_processing_recommendation(file_size, mime_type, file_name)
    if rec.strategy is Strategy.EXTERNAL and not configured:
        rec.reasons.append("External service not configured: using self-hosted extraction")
        rec.strategy       = Strategy.SELF_HOSTED
        rec.method         = "self-hosted-pymupdf" if mime_type == PDF_MIME else "self-hosted-mammoth"
        rec.estimated_cost = 0.0
    elif rec.strategy is Strategy.EXTERNAL:
        rec.reasons.append("External service configured: advanced table and image extraction")
    return rec
