"""
Celery Tasks — Async Processing Jobs

Task: execute_processing_job
  1. Load job; skip unless status=queued (cancelled jobs are never touched).
     A row not yet visible is retried; the publish is delayed by
     job_publish_delay_seconds so the submitting request can commit.
  2. Download bytes from S3 (failures → task.retry while still queued)
  3. CAS queued → processing
  4. HybridProcessor (force_direct) + ChunkingEngine
  5. CAS processing → completed {extraction, chunks}
       ProcessingError      → failed   (error.to_dict())
       SoftTimeLimitExceeded → timeout
  6. POST {jobId, status, result?, error?} to callback_url (best-effort)

  Once a job is processing the task never retries itself, so the status
  can only move forward.

Task: requeue_stale_jobs   (beat, 60 s)
  Re-publishes jobs queued for longer than stale_queued_minutes. Handles
  broker failures during the original submission.

Task: expire_stuck_jobs    (beat, 300 s)
  CAS processing → timeout for jobs processing longer than
  stuck_processing_minutes (worker killed by SIGKILL, node lost, …).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from celery import Task
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import func, select

from app.workers.celery_app import JOB_SOFT_TIME_LIMIT, JOB_TIME_LIMIT, celery_app

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.execute_processing_job",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=JOB_SOFT_TIME_LIMIT,
    time_limit=JOB_TIME_LIMIT,
)
def execute_processing_job(self: Task, *, job_id: str) -> dict[str, Any]:
    """download → extract → chunk → persist → notify."""
    return run_async(_execute_processing_job_async(task=self, job_id=job_id))


async def _execute_processing_job_async(task: Task, job_id: str) -> dict[str, Any]:
    from app.db.session import get_admin_db
    from app.models.jobs import JobStatus, ProcessingJob
    from app.processing.chunking import ChunkingEngine
    from app.processing.errors import (
        ErrorKind,
        ProcessingError,
        ProcessingStage,
        get_retry_delay,
        log_processing_error,
        map_generic_error,
    )
    from app.processing.hybrid import HybridProcessor
    from app.processing.types import DEFAULT_CHUNKING_CONFIGS, ChunkingConfig
    from app.services.async_jobs import transition_job
    from app.storage.s3 import S3StorageService

    # --- Phase 1: Load job ---------------------------------------------
    async with get_admin_db() as db:
        job = (await db.execute(
            select(ProcessingJob).where(ProcessingJob.id == job_id)
        )).scalars().first()

    if job is None:
        # The submitting request may not have committed yet
        if task.request.retries < task.max_retries:
            logger.warning("Job not visible yet, retrying | job=%s", job_id)
            raise task.retry(countdown=get_retry_delay(task.request.retries + 1) / 1000)
        logger.error("Job not found | job=%s", job_id)
        return {"status": "not_found", "job_id": job_id}

    if job.status != JobStatus.QUEUED.value:
        logger.warning("Job in status=%s, skipping | job=%s", job.status, job_id)
        return {"status": "skipped", "job_id": job_id, "current_status": job.status}

    # --- Phase 2: Download from S3 (job still queued → safe to retry) ---
    try:
        buffer = await S3StorageService().get_object(job.storage_key)
    except Exception as exc:
        if task.request.retries < task.max_retries:
            logger.warning(
                "S3 download failed, retrying | job=%s attempt=%d error=%s",
                job_id, task.request.retries + 1, exc,
            )
            raise task.retry(exc=exc, countdown=get_retry_delay(task.request.retries + 1) / 1000)
        logger.exception("S3 download failed permanently | job=%s", job_id)
        error = ProcessingError(
            ErrorKind.EXTERNAL_SERVICE_ERROR,
            f"Could not download stored file: {exc}",
            stage=ProcessingStage.VALIDATION,
            original_cause=exc,
            file_name=job.file_name,
            file_type=job.file_type,
        )
        async with get_admin_db() as db:
            if not await transition_job(
                db, job_id, JobStatus.QUEUED, JobStatus.PROCESSING, started_at=func.now(),
            ):
                return {"status": "skipped", "job_id": job_id}
        return await _finish(job, JobStatus.FAILED, error=error.to_dict())

    # --- Phase 3: Claim -------------------------------------------------
    async with get_admin_db() as db:
        claimed = await transition_job(
            db, job_id, JobStatus.QUEUED, JobStatus.PROCESSING, started_at=func.now(),
        )
    if not claimed:
        logger.warning("Job claimed or cancelled concurrently, skipping | job=%s", job_id)
        return {"status": "skipped", "job_id": job_id}

    # --- Phase 4: Extract + chunk ----------------------------------------
    options = dict(job.processing_options or {})
    chunking_config = (
        ChunkingConfig.from_dict(options["chunking_config"])
        if options.get("chunking_config")
        else DEFAULT_CHUNKING_CONFIGS["academic"]
    )

    try:
        extraction = await HybridProcessor().process(
            buffer, job.file_type, job.file_name, hybrid_options_from(options),
        )
        chunks = ChunkingEngine().chunk(options.get("document_id") or job_id, extraction, chunking_config)
    except SoftTimeLimitExceeded:
        logger.error("Job exceeded soft time limit | job=%s", job_id)
        error = ProcessingError(
            ErrorKind.PROCESSING_TIMEOUT,
            "Background processing exceeded the worker time limit",
            stage=ProcessingStage.EXTRACTION,
            recoverable=True,
            file_name=job.file_name,
            file_type=job.file_type,
        )
        return await _finish(job, JobStatus.TIMEOUT, error=error.to_dict())
    except ProcessingError as err:
        log_processing_error(err, f"Job failed | job={job_id}")
        return await _finish(job, JobStatus.FAILED, error=err.to_dict())
    except Exception as exc:
        logger.exception("Unexpected processing error | job=%s", job_id)
        err = map_generic_error(exc, job.file_name, job.file_type)
        return await _finish(job, JobStatus.FAILED, error=err.to_dict())

    extraction.metadata.update({
        "processing_mode": "async",
        "user_id":         job.user_id,
        "course_id":       job.course_id,
    })
    return await _finish(
        job,
        JobStatus.COMPLETED,
        result={
            "extraction": extraction.to_dict(),
            "chunks":     [c.to_dict() for c in chunks],
        },
    )


def hybrid_options_from(options: dict[str, Any]):
    """Extraction flags stored on the job row → HybridOptions.

    Workers accept anything the async upload ceiling let through, so the
    per-format in-request size limits are lifted to that ceiling.
    """
    from app.core.config import settings
    from app.processing.hybrid import HybridOptions

    hybrid = HybridOptions(max_file_size_bytes=settings.max_async_file_size_bytes)
    for name in (
        "preserve_formatting",
        "extract_metadata",
        "require_advanced_features",
        "prefer_self_hosted",
        "enable_fallback",
        "preserve_images",
        "convert_to_markdown",
    ):
        if name in options:
            setattr(hybrid, name, bool(options[name]))
    if options.get("max_wait_seconds"):
        hybrid.max_wait_seconds = float(options["max_wait_seconds"])
    if options.get("max_cost_per_document") is not None:
        hybrid.max_cost_per_document = float(options["max_cost_per_document"])
    return hybrid


async def _finish(job, target, *, result: dict | None = None, error: dict | None = None) -> dict[str, Any]:
    """CAS processing → terminal, then notify the callback URL."""
    from app.db.session import get_admin_db
    from app.models.jobs import JobStatus
    from app.services.async_jobs import transition_job

    async with get_admin_db() as db:
        applied = await transition_job(
            db, job.id, JobStatus.PROCESSING, target,
            completed_at=func.now(), result=result, error=error,
        )

    if not applied:
        logger.warning("Terminal transition lost | job=%s target=%s", job.id, target.value)
        return {"status": "conflict", "job_id": job.id}

    logger.info("Job finished | job=%s status=%s", job.id, target.value)
    if job.callback_url:
        await deliver_webhook(job.callback_url, build_webhook_payload(job.id, target.value, result, error))
    return {"status": target.value, "job_id": job.id}


# ---------------------------------------------------------------------------
# Webhook delivery (fire-and-forget)
# ---------------------------------------------------------------------------

def build_webhook_payload(
    job_id: str,
    status: str,
    result: dict | None = None,
    error:  dict | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"jobId": job_id, "status": status}
    if result is not None:
        payload["result"] = result
    if error is not None:
        payload["error"] = error
    return payload


async def deliver_webhook(
    callback_url: str,
    payload:      dict[str, Any],
    transport:    httpx.AsyncBaseTransport | None = None,
) -> bool:
    """POST the payload; failures are logged and never change job state."""
    try:
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS, transport=transport) as http:
            resp = await http.post(callback_url, json=payload)
            resp.raise_for_status()
        logger.info("Webhook delivered | job=%s url=%s", payload.get("jobId"), callback_url)
        return True
    except httpx.HTTPError as exc:
        logger.warning(
            "Webhook delivery failed | job=%s url=%s error=%s",
            payload.get("jobId"), callback_url, exc,
        )
        return False


# ---------------------------------------------------------------------------
# Stale job scanner (Celery Beat, requeue_sweep_interval_seconds)
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.requeue_stale_jobs",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_jobs() -> dict[str, int]:
    """Re-publish jobs that have sat in 'queued' past stale_queued_minutes."""
    return run_async(_requeue_stale_jobs_async())


async def _requeue_stale_jobs_async() -> dict[str, int]:
    from app.core.config import settings
    from app.db.session import get_admin_db
    from app.models.jobs import JobPriority, JobStatus, ProcessingJob
    from app.services.async_jobs import CELERY_PRIORITY

    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.stale_queued_minutes)
    queued = 0
    async with get_admin_db() as db:
        stale_jobs = (await db.execute(
            select(ProcessingJob).where(
                ProcessingJob.status == JobStatus.QUEUED.value,
                ProcessingJob.created_at < cutoff,
            ).limit(50)
        )).scalars().all()

    for job in stale_jobs:
        execute_processing_job.apply_async(
            kwargs={"job_id": job.id},
            priority=CELERY_PRIORITY[JobPriority(job.priority)],
            countdown=5,
        )
        queued += 1
        logger.info("Re-queued stale job | job=%s user=%s", job.id, job.user_id)

    return {"requeued": queued}


# ---------------------------------------------------------------------------
# Stuck job expiry (Celery Beat, expire_sweep_interval_seconds)
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.expire_stuck_jobs",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def expire_stuck_jobs() -> dict[str, int]:
    """Move jobs processing past stuck_processing_minutes to 'timeout'."""
    return run_async(_expire_stuck_jobs_async())


async def _expire_stuck_jobs_async() -> dict[str, int]:
    from app.core.config import settings
    from app.db.session import get_admin_db
    from app.models.jobs import JobStatus, ProcessingJob
    from app.processing.errors import ErrorKind, ProcessingError, ProcessingStage
    from app.services.async_jobs import transition_job

    cutoff  = datetime.now(timezone.utc) - timedelta(minutes=settings.stuck_processing_minutes)
    expired = 0
    async with get_admin_db() as db:
        stuck_jobs = (await db.execute(
            select(ProcessingJob).where(
                ProcessingJob.status == JobStatus.PROCESSING.value,
                ProcessingJob.started_at < cutoff,
            ).limit(50)
        )).scalars().all()

    for job in stuck_jobs:
        error = ProcessingError(
            ErrorKind.PROCESSING_TIMEOUT,
            f"Job exceeded {settings.stuck_processing_minutes} minutes in processing",
            stage=ProcessingStage.EXTRACTION,
            recoverable=True,
            file_name=job.file_name,
            file_type=job.file_type,
        ).to_dict()
        async with get_admin_db() as db:
            applied = await transition_job(
                db, job.id, JobStatus.PROCESSING, JobStatus.TIMEOUT,
                completed_at=func.now(), error=error,
            )
        if not applied:
            continue
        expired += 1
        logger.warning("Expired stuck job | job=%s user=%s", job.id, job.user_id)
        if job.callback_url:
            await deliver_webhook(job.callback_url, build_webhook_payload(job.id, JobStatus.TIMEOUT.value, error=error))

    return {"expired": expired}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
