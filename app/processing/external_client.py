"""
External Extraction Client  —  third-party document parsing over HTTP
═════════════════════════════════════════════════════════════════════

  extract(buffer, mime, name)
      │
      ├─ PDF / DOCX  → POST /v1/pdf-parse     (multipart field "file")
      └─ images      → POST /v1/image-parse
              │
              ├─ {"job_id": …}          → ExternalSubmission(job_id=…)
              └─ {"text", "tables", …}  → ExternalSubmission(result=…)

  poll_status(job_id)      GET /v1/fetchoutput?job_id=…
  wait_for_result(job_id)  poll at a fixed interval up to max_wait_seconds;
                           exceeding it raises PROCESSING_TIMEOUT and leaves
                           the remote job alone

Retry policy (tenacity)
───────────────────────
  Retryable:     timeouts, connection errors, HTTP 429, HTTP 5xx
  Non-retryable: 401/403 (auth), 402 (quota), 400/415 (unsupported), other 4xx
  Attempts: 3, linear backoff (2 s, 4 s, …)

Cost model: max(1, ceil(size / 1 MB)) pages × COST_PER_PAGE_USD.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from app.core.config import settings
from app.processing.errors import (
    DOCX_MIME,
    PDF_MIME,
    ErrorKind,
    ProcessingError,
    ProcessingStage,
)
from app.processing.types import (
    MIN_CONTENT_CHARS,
    DocumentStructure,
    ExtractedImage,
    ExtractionResult,
    PageText,
    Table,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COST_PER_PAGE_USD = 0.00125
BYTES_PER_PAGE    = 1024 * 1024

IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
EXTERNAL_SUPPORTED_MIME_TYPES = frozenset({PDF_MIME, DOCX_MIME}) | IMAGE_MIME_TYPES

DOCUMENT_PARSE_PATH = "/v1/pdf-parse"
IMAGE_PARSE_PATH    = "/v1/image-parse"
FETCH_OUTPUT_PATH   = "/v1/fetchoutput"

DEFAULT_POLL_INTERVAL_SECONDS = 5.0

_TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})


def estimate_external_cost(file_size_bytes: int) -> float:
    """USD estimate; pages are approximated as one per started megabyte."""
    pages = max(1, math.ceil(file_size_bytes / BYTES_PER_PAGE))
    return round(pages * COST_PER_PAGE_USD, 6)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class ExternalSubmission:
    """Either an immediate result or a remote job handle, never both."""
    result: ExtractionResult | None = None
    job_id: str | None = None

    @property
    def is_async(self) -> bool:
        return self.job_id is not None


@dataclass
class ExternalJobStatus:
    state:  str                              # completed | pending | failed
    result: ExtractionResult | None = None
    error:  ProcessingError | None = None

    @property
    def is_completed(self) -> bool:
        return self.state == "completed"

    @property
    def is_pending(self) -> bool:
        return self.state == "pending"


class _TransientStatusError(Exception):
    """Raised inside the retry loop for 429 / 5xx so tenacity retries it."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body[:200]}")
        self.status_code = status_code


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (_TransientStatusError, httpx.TimeoutException, httpx.TransportError))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

@dataclass
class ExternalExtractionClient:
    api_key:         str   = field(default_factory=lambda: settings.external_extraction_api_key)
    base_url:        str   = field(default_factory=lambda: settings.external_extraction_base_url)
    timeout_seconds: float = field(default_factory=lambda: settings.external_extraction_timeout_seconds)
    max_attempts:    int   = field(default_factory=lambda: settings.external_extraction_max_retries)
    wait_start:      float = 2.0
    wait_increment:  float = 2.0
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    transport:       httpx.AsyncBaseTransport | None = None

    strategy_name = "external"

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def supports(mime_type: str) -> bool:
        return mime_type in EXTERNAL_SUPPORTED_MIME_TYPES

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def extract(self, buffer: bytes, mime_type: str, file_name: str) -> ExternalSubmission:
        self._require_configured(file_name, mime_type)
        if not self.supports(mime_type):
            raise ProcessingError(
                ErrorKind.UNSUPPORTED_FORMAT,
                f"External service does not accept {mime_type}",
                stage=ProcessingStage.VALIDATION,
                file_name=file_name,
                file_type=mime_type,
            )

        path = IMAGE_PARSE_PATH if mime_type in IMAGE_MIME_TYPES else DOCUMENT_PARSE_PATH
        t0   = time.monotonic()
        payload = await self._request(
            "POST", path,
            file_name=file_name, file_type=mime_type,
            files={"file": (file_name, buffer, mime_type)},
        )

        job_id = payload.get("job_id")
        if job_id:
            logger.info(
                "ExternalClient | async job accepted file=%s job_id=%s", file_name, job_id,
            )
            return ExternalSubmission(job_id=str(job_id))

        result = self._parse_output(
            payload, file_name=file_name, file_type=mime_type, file_size=len(buffer),
        )
        result.processing_time_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "ExternalClient | file=%s chars=%d tables=%d images=%d cost=%.5f elapsed_ms=%.0f",
            file_name, len(result.text),
            len(result.structure.tables) if result.structure else 0,
            len(result.images), result.cost_estimate, result.processing_time_ms,
        )
        return ExternalSubmission(result=result)

    async def poll_status(
        self,
        job_id:    str,
        file_name: str | None = None,
        file_size: int = 0,
    ) -> ExternalJobStatus:
        self._require_configured(file_name, None)
        payload = await self._request(
            "GET", FETCH_OUTPUT_PATH, file_name=file_name, params={"job_id": job_id},
        )

        status = str(payload.get("status", "")).lower()
        if status == "failed" or payload.get("error"):
            return ExternalJobStatus(
                state="failed",
                error=ProcessingError(
                    ErrorKind.EXTERNAL_SERVICE_ERROR,
                    f"External job {job_id} failed: {payload.get('error') or 'unknown error'}",
                    stage=ProcessingStage.EXTRACTION,
                    file_name=file_name,
                ),
            )

        if payload.get("text") or payload.get("images"):
            result = self._parse_output(payload, file_name=file_name, file_size=file_size)
            result.metadata["external_job_id"] = job_id
            return ExternalJobStatus(state="completed", result=result)

        return ExternalJobStatus(state="pending")

    async def wait_for_result(
        self,
        job_id:                str,
        max_wait_seconds:      float,
        poll_interval_seconds: float | None = None,
        file_name:             str | None = None,
        file_size:             int = 0,
    ) -> ExtractionResult:
        """
        Poll until the remote job completes or max_wait_seconds elapses.
        Cancelling the awaiting task stops polling immediately.
        """
        interval = poll_interval_seconds if poll_interval_seconds is not None else self.poll_interval_seconds
        deadline = time.monotonic() + max_wait_seconds

        while True:
            status = await self.poll_status(job_id, file_name=file_name, file_size=file_size)
            if status.is_completed:
                return status.result
            if status.state == "failed":
                raise status.error

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProcessingError(
                    ErrorKind.PROCESSING_TIMEOUT,
                    f"External job {job_id} did not complete within {max_wait_seconds:.0f}s",
                    stage=ProcessingStage.EXTRACTION,
                    recoverable=True,
                    file_name=file_name,
                )
            await asyncio.sleep(min(interval, remaining))

    # ------------------------------------------------------------------
    # HTTP with retries
    # ------------------------------------------------------------------

    async def _request(
        self,
        method:    str,
        path:      str,
        file_name: str | None = None,
        file_type: str | None = None,
        **kwargs:  Any,
    ) -> dict:
        headers  = {"Authorization": f"Bearer {self.api_key}"}
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.wait_start, increment=self.wait_increment),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self.transport,
            ) as http:
                async for attempt in retrying:
                    with attempt:
                        response = await http.request(method, path, headers=headers, **kwargs)
                        if response.status_code in _TRANSIENT_STATUS:
                            logger.warning(
                                "ExternalClient | transient status=%d path=%s attempt=%d",
                                response.status_code, path, attempt.retry_state.attempt_number,
                            )
                            raise _TransientStatusError(response.status_code, response.text)
        except httpx.TimeoutException as exc:
            raise ProcessingError(
                ErrorKind.PROCESSING_TIMEOUT,
                f"External service timed out after {self.max_attempts} attempts: {exc}",
                stage=ProcessingStage.EXTRACTION,
                recoverable=True,
                original_cause=exc,
                file_name=file_name,
                file_type=file_type,
            ) from exc
        except _TransientStatusError as exc:
            raise ProcessingError(
                ErrorKind.EXTERNAL_SERVICE_ERROR,
                f"External service unavailable after {self.max_attempts} attempts: {exc}",
                stage=ProcessingStage.EXTRACTION,
                recoverable=True,
                original_cause=exc,
                file_name=file_name,
                file_type=file_type,
            ) from exc
        except httpx.TransportError as exc:
            raise ProcessingError(
                ErrorKind.EXTERNAL_SERVICE_ERROR,
                f"External service unreachable: {exc}",
                stage=ProcessingStage.EXTRACTION,
                recoverable=True,
                original_cause=exc,
                file_name=file_name,
                file_type=file_type,
            ) from exc

        if response.status_code >= 400:
            raise self._status_error(response, file_name, file_type)

        try:
            return response.json()
        except ValueError as exc:
            raise ProcessingError(
                ErrorKind.EXTERNAL_SERVICE_ERROR,
                "External service returned a non-JSON response",
                stage=ProcessingStage.EXTRACTION,
                original_cause=exc,
                file_name=file_name,
                file_type=file_type,
            ) from exc

    @staticmethod
    def _status_error(
        response:  httpx.Response,
        file_name: str | None,
        file_type: str | None,
    ) -> ProcessingError:
        code = response.status_code
        if code in (400, 415):
            kind, detail = ErrorKind.UNSUPPORTED_FORMAT, "rejected the file format"
        elif code in (401, 403):
            kind, detail = ErrorKind.EXTERNAL_SERVICE_ERROR, "rejected the API credentials"
        elif code == 402:
            kind, detail = ErrorKind.EXTERNAL_SERVICE_ERROR, "quota exhausted"
        else:
            kind, detail = ErrorKind.EXTERNAL_SERVICE_ERROR, "request failed"
        return ProcessingError(
            kind,
            f"External service {detail} (HTTP {code}): {response.text[:200]}",
            stage=ProcessingStage.EXTRACTION,
            file_name=file_name,
            file_type=file_type,
        )

    def _require_configured(self, file_name: str | None, file_type: str | None) -> None:
        if not self.is_configured:
            raise ProcessingError(
                ErrorKind.EXTERNAL_SERVICE_ERROR,
                "External extraction service is not configured",
                stage=ProcessingStage.VALIDATION,
                file_name=file_name,
                file_type=file_type,
            )

    # ------------------------------------------------------------------
    # Response normalisation
    # ------------------------------------------------------------------

    def _parse_output(
        self,
        payload:   dict,
        file_name: str | None,
        file_type: str | None = None,
        file_size: int = 0,
    ) -> ExtractionResult:
        tables = [
            t for t in (_parse_table(raw, i) for i, raw in enumerate(payload.get("tables") or []))
            if t.content
        ]
        images = [
            ExtractedImage(
                content_type=str(img.get("content_type", "image")),
                description=str(img.get("description") or img.get("text") or "").strip(),
                page_number=img.get("page") or img.get("page_number"),
            )
            for img in payload.get("images") or []
            if isinstance(img, dict)
        ]
        pages = [
            PageText(
                page_number=int(p.get("page_number") or p.get("page") or i + 1),
                text=str(p.get("text") or ""),
                word_count=len(str(p.get("text") or "").split()),
            )
            for i, p in enumerate(payload.get("pages") or [])
            if isinstance(p, dict)
        ]

        text = str(payload.get("text") or "").strip()
        if not text:
            text = "\n\n".join(img.description for img in images if img.description)

        if len(text) < MIN_CONTENT_CHARS:
            raise ProcessingError(
                ErrorKind.NO_CONTENT_EXTRACTED,
                f"External service returned only {len(text)} characters",
                stage=ProcessingStage.EXTRACTION,
                file_name=file_name,
                file_type=file_type,
            )

        metadata: dict = {
            "extraction_method": self.strategy_name,
            "word_count":        len(text.split()),
            "table_count":       len(tables),
            "image_count":       len(images),
        }
        if pages:
            metadata["page_count"] = len(pages)
        for key, value in (payload.get("metadata") or {}).items():
            if isinstance(value, (str, int, float, bool)):
                metadata.setdefault(key, value)

        return ExtractionResult(
            text=text,
            metadata=metadata,
            cost_estimate=estimate_external_cost(file_size),
            page_texts=sorted(pages, key=lambda p: p.page_number) if pages else None,
            structure=DocumentStructure(tables=tables) if tables else None,
            images=images,
        )


def _parse_table(raw: Any, position: int) -> Table:
    """Accepts a bare row list or {"rows": [...], "page": n}; cells joined with ' | '."""
    page = None
    rows = raw
    if isinstance(raw, dict):
        page = raw.get("page") or raw.get("page_number")
        rows = raw.get("rows") or raw.get("data") or []
    rows = [r if isinstance(r, list) else [r] for r in rows or []]
    content = "\n".join(
        " | ".join(str(cell).strip() for cell in row) for row in rows
    ).strip()
    return Table(
        rows=len(rows),
        columns=len(rows[0]) if rows else 0,
        content=content,
        position=position,
        page_number=page,
    )
