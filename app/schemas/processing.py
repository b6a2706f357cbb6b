"""
Processing API — Pydantic Request/Response Schemas

Covers /api/v1/processing:
  - POST /process            direct result (200) or async job handle (202)
  - GET  /jobs/{id}/status   job status contract
  - GET  /jobs               paginated job list
  - GET  /recommendation     strategy / latency / cost preview
  - GET  /stats              per-mode processing stats
  - POST /webhook/processing-complete

Design decisions:
  - user_id always comes from the X-User-ID header, never from the body.
  - ProcessingError bodies use the {success: false, error: {...}} envelope
    built by create_error_response(); everything else uses ErrorResponse.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.processing.errors import ErrorKind


class ChunkingProfile(str, Enum):
    ACADEMIC  = "academic"
    GENERAL   = "general"
    TECHNICAL = "technical"


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------

class ChunkOut(BaseModel):
    id:              str
    document_id:     str
    chunk_index:     int = Field(..., ge=0)
    content:         str
    content_type:    str
    character_count: int = Field(..., gt=0)
    page_number:     int | None = None
    metadata:        dict[str, Any] = Field(default_factory=dict)


class RecommendationOut(BaseModel):
    strategy:               str = Field(..., description="self-hosted | external | async-background")
    method:                 str
    reasons:                list[str] = Field(default_factory=list)
    estimated_time_seconds: int
    estimated_cost:         float = Field(0.0, ge=0.0, description="USD")


# ---------------------------------------------------------------------------
# POST /process
# ---------------------------------------------------------------------------

class DirectProcessingResponse(BaseModel):
    """HTTP 200 — extraction and chunking completed in-request."""
    success:        bool = True
    is_async:       bool = False
    document_id:    str
    data:           dict[str, Any] = Field(..., description="ExtractionResult")
    chunks:         list[ChunkOut]
    recommendation: RecommendationOut | None = None


class AsyncProcessingResponse(BaseModel):
    """HTTP 202 — bytes stored, job queued for the background worker."""
    success:              bool = True
    is_async:             bool = True
    job_id:               str
    status:               str = "queued"
    estimated_completion: datetime | None = None
    status_url:           str
    recommendation:       RecommendationOut | None = None


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class JobStatusResponse(BaseModel):
    job_id:               str
    status:               str
    priority:             str
    file_name:            str
    file_type:            str
    file_size:            int
    course_id:            str | None = None
    created_at:           datetime | None = None
    updated_at:           datetime | None = None
    started_at:           datetime | None = None
    completed_at:         datetime | None = None
    estimated_completion: datetime | None = None
    result:               dict[str, Any] | None = Field(None, description="{extraction, chunks} when completed")
    error:                dict[str, Any] | None = Field(None, description="ProcessingError when failed/timeout")


class JobSummary(BaseModel):
    job_id:               str
    status:               str
    priority:             str
    file_name:            str
    file_type:            str
    file_size:            int
    course_id:            str | None = None
    created_at:           datetime | None = None
    completed_at:         datetime | None = None
    estimated_completion: datetime | None = None


class JobListResponse(BaseModel):
    jobs:     list[JobSummary]
    total:    int
    has_more: bool
    limit:    int
    offset:   int


class CancelJobResponse(BaseModel):
    success: bool = True
    job_id:  str
    status:  str


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

class ModeStats(BaseModel):
    total:                      int = 0
    queued:                     int = 0
    success_rate:               float = 0.0
    average_processing_seconds: float = 0.0
    by_status:                  dict[str, int] | None = None


class ProcessingStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    direct:      ModeStats
    async_stats: ModeStats = Field(..., alias="async")
    total:       int


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

WEBHOOK_STATUSES = frozenset({"processing", "completed", "failed", "timeout"})


class WebhookPayload(BaseModel):
    """Completion notification from an out-of-process executor."""
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId", min_length=1)
    status: str
    result: dict[str, Any] | None = None
    error:  dict[str, Any] | None = None

    @field_validator("status")
    @classmethod
    def status_must_be_reportable(cls, v: str) -> str:
        if v not in WEBHOOK_STATUSES:
            raise ValueError(f"status must be one of {sorted(WEBHOOK_STATUSES)}")
        return v


class WebhookAck(BaseModel):
    success: bool
    job_id:  str
    status:  str


# ---------------------------------------------------------------------------
# Error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """Envelope for validation, auth and unhandled errors."""
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class ProcessingErrorBody(BaseModel):
    type:        str
    message:     str
    details:     str | None = None
    recoverable: bool
    fileName:    str | None = None
    stage:       str
    timestamp:   str


class ProcessingErrorResponse(BaseModel):
    """Body of every ProcessingError response (see create_error_response)."""
    success: bool = False
    error:   ProcessingErrorBody


# ---------------------------------------------------------------------------
# ErrorKind → HTTP status
# ---------------------------------------------------------------------------

HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.FILE_TOO_LARGE:         413,
    ErrorKind.UNSUPPORTED_FORMAT:     415,
    ErrorKind.JOB_NOT_FOUND:          404,
    ErrorKind.INVALID_JOB_STATE:      409,
    ErrorKind.INVALID_FILE_FORMAT:    422,
    ErrorKind.CORRUPTED_FILE:         422,
    ErrorKind.PASSWORD_PROTECTED:     422,
    ErrorKind.NO_CONTENT_EXTRACTED:   422,
    ErrorKind.INSUFFICIENT_CONTENT:   422,
    ErrorKind.EXTERNAL_SERVICE_ERROR: 502,
    ErrorKind.WORKER_OVERLOADED:      503,
    ErrorKind.DEPENDENCY_ERROR:       503,
    ErrorKind.PROCESSING_TIMEOUT:     504,
}


def http_status_for(kind: ErrorKind) -> int:
    return HTTP_STATUS_BY_KIND.get(kind, 500)
