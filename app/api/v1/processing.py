"""
Processing API Router
/api/v1/processing

Implements:
  - Multipart upload → direct extraction + chunks (200) or async job (202)
  - Job status / cancel / list, always scoped to the X-User-ID caller
  - Side-effect free strategy recommendation
  - Per-mode processing stats
  - Completion webhook for out-of-process executors (Bearer webhook_secret)

Request lifecycle (POST /process):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. X-User-ID → user_id (401 if missing)                 │
  │ 2. Content-Length guard (413 before reading the body)    │
  │ 3. MIME type from upload, falling back to the extension  │
  │ 4. UnifiedProcessor.process_document()                   │
  │      direct → 200 {data, chunks}                         │
  │      async  → 202 {job_id, estimated_completion}         │
  │      error  → ProcessingError envelope (see app.main)    │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
import mimetypes
import os
from typing import Optional

from fastapi import APIRouter, File, Form, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy import func

from app.auth.dependencies import DB, CurrentUserId, JobManager, Processor, WebhookAuth
from app.core.config import settings
from app.models.jobs import JobPriority, JobStatus
from app.processing.chunking import get_chunking_config
from app.processing.errors import (
    DOCX_MIME,
    PDF_MIME,
    ErrorKind,
    FileValidator,
    ProcessingError,
    ProcessingStage,
)
from app.processing.unified import UnifiedProcessingOptions, job_status_payload
from app.schemas.processing import (
    AsyncProcessingResponse,
    CancelJobResponse,
    ChunkingProfile,
    ChunkOut,
    DirectProcessingResponse,
    ErrorResponse,
    JobListResponse,
    JobStatusResponse,
    JobSummary,
    ProcessingErrorResponse,
    ProcessingStatsResponse,
    RecommendationOut,
    WebhookAck,
    WebhookPayload,
)
from app.services.async_jobs import MAX_PAGE_SIZE, transition_job

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/processing",
    tags=["Document Processing"],
)

_EXTENSION_MIME: dict[str, str] = {
    ".pdf":  PDF_MIME,
    ".docx": DOCX_MIME,
}
_GENERIC_MIME = {"", "application/octet-stream"}


def _resolve_mime_type(upload: UploadFile) -> str:
    declared = (upload.content_type or "").split(";")[0].strip().lower()
    if declared not in _GENERIC_MIME:
        return declared
    ext = os.path.splitext(upload.filename or "")[1].lower()
    return _EXTENSION_MIME.get(ext) or mimetypes.guess_type(upload.filename or "")[0] or "application/octet-stream"


# ---------------------------------------------------------------------------
# POST /processing/process
# ---------------------------------------------------------------------------

@router.post(
    "/process",
    summary="Process a document (direct or async)",
    description=(
        "Extracts and chunks the file in-request when the selected strategy is "
        "self-hosted or external (200). Large or forced-async files are stored "
        "and queued for the background worker (202)."
    ),
    responses={
        200: {"model": DirectProcessingResponse, "description": "Extraction + chunks"},
        202: {"model": AsyncProcessingResponse, "description": "Job queued"},
        401: {"model": ErrorResponse, "description": "Missing X-User-ID"},
        413: {"model": ProcessingErrorResponse, "description": "File too large"},
        415: {"model": ProcessingErrorResponse, "description": "Unsupported format"},
        422: {"model": ProcessingErrorResponse, "description": "Unreadable or empty document"},
        502: {"model": ProcessingErrorResponse, "description": "External service failure"},
        504: {"model": ProcessingErrorResponse, "description": "Processing timeout"},
    },
)
async def process_document(
    request:   Request,
    processor: Processor,
    user_id:   CurrentUserId,
    file:      UploadFile = File(..., description="PDF, DOCX or image file"),
    course_id: Optional[str] = Form(None),
    document_id:               Optional[str] = Form(None, max_length=200, description="Stable chunk id prefix"),
    force_async:               bool = Form(False),
    force_direct:              bool = Form(False),
    preserve_formatting:       bool = Form(True),
    extract_metadata:          bool = Form(True),
    require_advanced_features: bool = Form(False),
    priority:                  JobPriority = Form(JobPriority.NORMAL),
    max_async_wait_time:       Optional[float] = Form(None, gt=0, description="Seconds to wait on external jobs"),
    callback_url:              Optional[str] = Form(None),
    chunking_profile:          ChunkingProfile = Form(ChunkingProfile.ACADEMIC),
) -> JSONResponse:
    # Guard: reject oversized requests before reading body
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit():
        FileValidator.validate_file_size(
            max(0, int(content_length) - 4096),  # form overhead
            settings.max_async_file_size_bytes,
        )

    buffer    = await file.read()
    mime_type = _resolve_mime_type(file)
    file_name = file.filename or ""

    result = await processor.process_document(
        buffer, mime_type, file_name,
        UnifiedProcessingOptions(
            user_id=user_id,
            course_id=course_id,
            document_id=document_id,
            force_async=force_async,
            force_direct=force_direct,
            preserve_formatting=preserve_formatting,
            extract_metadata=extract_metadata,
            require_advanced_features=require_advanced_features,
            priority=priority,
            max_async_wait_seconds=max_async_wait_time,
            callback_url=callback_url,
            chunking_config=get_chunking_config(chunking_profile.value),
        ),
    )
    if not result.success:
        raise result.error

    recommendation = (
        RecommendationOut(**result.recommendation.to_dict()) if result.recommendation else None
    )

    if result.is_async:
        status_url = f"/api/v1/processing/jobs/{result.job_id}/status"
        body = AsyncProcessingResponse(
            job_id=result.job_id,
            estimated_completion=result.estimated_completion,
            status_url=status_url,
            recommendation=recommendation,
        )
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=body.model_dump(mode="json"),
            headers={"Location": status_url, "X-Job-ID": result.job_id},
        )

    body = DirectProcessingResponse(
        document_id=result.chunks[0].document_id,
        data=result.data.to_dict(),
        chunks=[ChunkOut(**c.to_dict()) for c in result.chunks],
        recommendation=recommendation,
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@router.get(
    "/jobs/{job_id}/status",
    response_model=JobStatusResponse,
    summary="Poll async job status",
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ProcessingErrorResponse, "description": "Unknown job or another user's job"},
    },
)
async def get_job_status(job_id: str, user_id: CurrentUserId, processor: Processor) -> JobStatusResponse:
    return JobStatusResponse(**await processor.check_async_job_status(job_id, user_id))


@router.delete(
    "/jobs/{job_id}",
    response_model=CancelJobResponse,
    summary="Cancel a queued job (or purge a finished one)",
    description=(
        "Cancels a queued job and removes its stored file. With purge=true a "
        "finished, failed or cancelled job row is deleted as well."
    ),
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ProcessingErrorResponse},
        409: {"model": ProcessingErrorResponse, "description": "Job is processing or finished"},
    },
)
async def cancel_job(
    job_id:  str,
    user_id: CurrentUserId,
    jobs:    JobManager,
    purge:   bool = Query(False, description="Delete a terminal job instead of cancelling"),
) -> CancelJobResponse:
    if purge:
        await jobs.delete_job(job_id, user_id)
        return CancelJobResponse(job_id=job_id, status="deleted")
    await jobs.cancel(job_id, user_id)
    return CancelJobResponse(job_id=job_id, status=JobStatus.CANCELLED.value)


@router.get(
    "/jobs",
    response_model=JobListResponse,
    summary="List the caller's jobs",
    responses={401: {"model": ErrorResponse}},
)
async def list_jobs(
    user_id:   CurrentUserId,
    jobs:      JobManager,
    status_:   Optional[JobStatus] = Query(None, alias="status"),
    course_id: Optional[str] = Query(None),
    limit:     int = Query(20, ge=1),
    offset:    int = Query(0, ge=0),
) -> JobListResponse:
    limit = min(limit, MAX_PAGE_SIZE)
    page  = await jobs.get_user_jobs(user_id, status=status_, course_id=course_id, limit=limit, offset=offset)
    return JobListResponse(
        jobs=[
            JobSummary(**{k: v for k, v in job_status_payload(j).items() if k in JobSummary.model_fields})
            for j in page["jobs"]
        ],
        total=page["total"],
        has_more=page["has_more"],
        limit=limit,
        offset=offset,
    )


# ---------------------------------------------------------------------------
# Recommendation / stats
# ---------------------------------------------------------------------------

@router.get(
    "/recommendation",
    response_model=RecommendationOut,
    summary="Preview strategy, latency and cost for a file",
    responses={400: {"model": ErrorResponse, "description": "Missing query parameters"}},
)
async def get_recommendation(
    processor: Processor,
    user_id:   CurrentUserId,
    file_size: Optional[int] = Query(None, ge=0),
    file_type: Optional[str] = Query(None),
    file_name: Optional[str] = Query(None),
):
    if file_size is None or not file_type or not file_name:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(
                error_code="MISSING_PARAMETERS",
                message="file_size, file_type and file_name are required.",
            ).model_dump(mode="json"),
        )
    rec = processor.get_processing_recommendation(file_size, file_type, file_name)
    return RecommendationOut(**rec.to_dict())


@router.get(
    "/stats",
    response_model=ProcessingStatsResponse,
    response_model_by_alias=True,
    summary="Processing stats for the caller (direct + async)",
    responses={401: {"model": ErrorResponse}},
)
async def get_stats(user_id: CurrentUserId, processor: Processor) -> ProcessingStatsResponse:
    stats = await processor.get_processing_stats(user_id)
    return ProcessingStatsResponse(direct=stats["direct"], async_stats=stats["async"], total=stats["total"])


# ---------------------------------------------------------------------------
# POST /processing/webhook/processing-complete
# ---------------------------------------------------------------------------

_WEBHOOK_DEFAULT_ERRORS: dict[str, ErrorKind] = {
    JobStatus.FAILED.value:  ErrorKind.EXTRACTION_FAILED,
    JobStatus.TIMEOUT.value: ErrorKind.PROCESSING_TIMEOUT,
}


@router.post(
    "/webhook/processing-complete",
    response_model=WebhookAck,
    dependencies=[WebhookAuth],
    summary="Out-of-process executor reports a job transition",
    responses={401: {"model": ErrorResponse, "description": "Bad or missing Bearer secret"}},
)
async def processing_complete(payload: WebhookPayload, db: DB) -> WebhookAck:
    """
    processing → queued→processing (started_at)
    completed  → processing→completed (result)
    failed     → processing→failed    (error)
    timeout    → processing→timeout   (error)

    A lost compare-and-swap (duplicate delivery, cancelled job) is
    acknowledged with success=false and changes nothing.
    """
    target = JobStatus(payload.status)

    if target is JobStatus.PROCESSING:
        applied = await transition_job(
            db, payload.job_id, JobStatus.QUEUED, JobStatus.PROCESSING, started_at=func.now(),
        )
    else:
        values: dict = {"completed_at": func.now()}
        if target is JobStatus.COMPLETED:
            values["result"] = payload.result or {}
        else:
            error = (
                ProcessingError.from_dict(payload.error) if payload.error
                else ProcessingError(
                    _WEBHOOK_DEFAULT_ERRORS[target.value],
                    f"Executor reported {target.value} without details",
                    stage=ProcessingStage.EXTRACTION,
                )
            )
            values["error"] = error.to_dict()
        applied = await transition_job(db, payload.job_id, JobStatus.PROCESSING, target, **values)

    logger.info(
        "Webhook | job=%s status=%s applied=%s", payload.job_id, target.value, applied,
    )
    return WebhookAck(success=applied, job_id=payload.job_id, status=target.value)
