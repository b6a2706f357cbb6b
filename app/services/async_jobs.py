"""
Async Job Manager

Owns the ProcessingJob lifecycle on the submitter side:
  1. Validate name / size / format (UNSUPPORTED_FORMAT before any side effect)
  2. Generate job id  job_<epoch_ms>_<base36×9>
  3. Upload raw bytes to S3 under async-processing/<user>/<date>/<job>/<name>
  4. Estimate completion from size, format and priority
  5. Insert the job row (status=queued)
  6. Publish execute_processing_job to Celery (best-effort)

Status reads, cancellation and deletion are always filtered by user_id; a
job owned by someone else is indistinguishable from a missing one.

Every status mutation goes through transition_job(): a conditional UPDATE
keyed on the expected current status, checked via rowcount. The worker
uses the same function for queued → processing → terminal.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.jobs import (
    TERMINAL_STATUSES,
    JobPriority,
    JobStatus,
    ProcessingJob,
    can_transition,
)
from app.processing.errors import (
    DOCX_MIME,
    ErrorKind,
    FileValidator,
    InvalidJobStateError,
    JobNotFoundError,
    ProcessingError,
    ProcessingStage,
)
from app.processing.strategy import is_self_hosted_supported
from app.processing.types import ChunkingConfig
from app.storage.s3 import S3StorageService, build_storage_key

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Celery message priority per job priority (RabbitMQ x-max-priority=10)
CELERY_PRIORITY: dict[JobPriority, int] = {
    JobPriority.HIGH:   9,
    JobPriority.NORMAL: 5,
    JobPriority.LOW:    1,
}

_PRIORITY_MULTIPLIER: dict[JobPriority, float] = {
    JobPriority.HIGH:   1.0,
    JobPriority.NORMAL: 1.5,
    JobPriority.LOW:    2.0,
}
_QUEUE_WAIT_MINUTES: dict[JobPriority, int] = {
    JobPriority.HIGH:   5,
    JobPriority.NORMAL: 10,
    JobPriority.LOW:    15,
}

BASE_PROCESSING_MINUTES = 2.0
MINUTES_PER_MB          = 0.5
DOCX_PENALTY_MINUTES    = 3.0

MAX_PAGE_SIZE = 100

_JOB_ID_ALPHABET = string.digits + string.ascii_lowercase


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def generate_job_id(now_ms: int | None = None) -> str:
    suffix = "".join(secrets.choice(_JOB_ID_ALPHABET) for _ in range(9))
    return f"job_{now_ms if now_ms is not None else int(time.time() * 1000)}_{suffix}"


def estimate_completion(
    file_size: int,
    mime_type: str,
    priority:  JobPriority,
    now:       datetime | None = None,
) -> datetime:
    """
    now + (2 min + 0.5 min/MB [+3 min for Word]) × priority multiplier
        + queue wait (high 5 / normal 10 / low 15 min)
    """
    minutes = BASE_PROCESSING_MINUTES + (file_size / MB) * MINUTES_PER_MB
    if mime_type == DOCX_MIME or "word" in mime_type.lower():
        minutes += DOCX_PENALTY_MINUTES
    minutes = minutes * _PRIORITY_MULTIPLIER[priority] + _QUEUE_WAIT_MINUTES[priority]
    return (now or datetime.now(timezone.utc)) + timedelta(minutes=minutes)


# ---------------------------------------------------------------------------
# Compare-and-swap transition
# ---------------------------------------------------------------------------

async def transition_job(
    db:       AsyncSession,
    job_id:   str,
    expected: JobStatus,
    target:   JobStatus,
    *,
    user_id:  str | None = None,
    **values: Any,
) -> bool:
    """
    UPDATE processing_jobs SET status=target, ... WHERE id=job_id AND status=expected.

    Returns False when the row was not in `expected` (someone else won the
    race, or the job does not exist). Illegal transitions raise before any
    SQL is issued.
    """
    if not can_transition(expected, target):
        raise InvalidJobStateError(
            job_id, expected.value,
            f"Cannot move job from {expected.value} to {target.value}",
        )

    stmt = update(ProcessingJob).where(
        ProcessingJob.id == job_id,
        ProcessingJob.status == expected.value,
    )
    if user_id is not None:
        stmt = stmt.where(ProcessingJob.user_id == user_id)

    result = await db.execute(
        stmt.values(status=target.value, updated_at=func.now(), **values)
    )
    won = result.rowcount == 1
    logger.info(
        "Job transition | job=%s %s→%s applied=%s",
        job_id, expected.value, target.value, won,
    )
    return won


# ---------------------------------------------------------------------------
# Submission types
# ---------------------------------------------------------------------------

@dataclass
class SubmitOptions:
    user_id:         str
    course_id:       str | None = None
    priority:        JobPriority = JobPriority.NORMAL
    callback_url:    str | None = None
    chunking_config: ChunkingConfig | None = None
    extra:           dict = field(default_factory=dict)   # extraction flags for the worker


@dataclass
class JobHandle:
    job_id:               str
    status:               JobStatus
    estimated_completion: datetime


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class AsyncJobManager:
    """
    Stateless service object — one instance per request.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        db:        AsyncSession,
        storage:   S3StorageService,
        publisher: "JobPublisher",
        external_configured: bool | None = None,
    ) -> None:
        self._db        = db
        self._storage   = storage
        self._publisher = publisher
        self._external_configured = (
            settings.external_service_configured if external_configured is None else external_configured
        )

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(
        self,
        buffer:    bytes,
        mime_type: str,
        file_name: str,
        opts:      SubmitOptions,
    ) -> JobHandle:
        if not opts.user_id:
            raise ValueError("user_id is required to submit an async job")

        # ---- Step 1: Validate (no side effects yet) ----------------------
        FileValidator.validate_file_name(file_name)
        FileValidator.validate_file_size(len(buffer), settings.max_async_file_size_bytes)
        if not is_self_hosted_supported(mime_type) and not self._external_configured:
            raise ProcessingError(
                ErrorKind.UNSUPPORTED_FORMAT,
                f"No background extractor for {mime_type} without an external service",
                stage=ProcessingStage.VALIDATION,
                file_name=file_name,
                file_type=mime_type,
            )

        # ---- Step 2: Identity and storage key ----------------------------
        now         = datetime.now(timezone.utc)
        job_id      = generate_job_id(int(now.timestamp() * 1000))
        storage_key = build_storage_key(opts.user_id, job_id, file_name, now)

        logger.info(
            "Async submit | user=%s job=%s file=%s size=%d priority=%s",
            opts.user_id, job_id, file_name, len(buffer), opts.priority.value,
        )

        # ---- Step 3: Upload to S3 ----------------------------------------
        try:
            await self._storage.put_object(
                key=storage_key,
                body=buffer,
                content_type=mime_type,
                metadata={"job_id": job_id, "user_id": opts.user_id, "file_name": file_name},
            )
        except Exception as exc:
            logger.exception("S3 upload failed | job=%s", job_id)
            raise ProcessingError(
                ErrorKind.EXTERNAL_SERVICE_ERROR,
                f"Failed to upload file for async processing: {exc}",
                stage=ProcessingStage.VALIDATION,
                recoverable=True,
                original_cause=exc,
                file_name=file_name,
                file_type=mime_type,
            ) from exc

        # ---- Step 4: Persist job row -------------------------------------
        eta = estimate_completion(len(buffer), mime_type, opts.priority, now)
        options_payload: dict = dict(opts.extra)
        if opts.chunking_config is not None:
            options_payload["chunking_config"] = opts.chunking_config.to_dict()

        job = ProcessingJob(
            id=job_id,
            user_id=opts.user_id,
            course_id=opts.course_id,
            file_name=file_name,
            file_type=mime_type,
            file_size=len(buffer),
            storage_key=storage_key,
            status=JobStatus.QUEUED.value,
            priority=opts.priority.value,
            processing_options=options_payload,
            callback_url=opts.callback_url,
            estimated_completion=eta,
        )
        try:
            self._db.add(job)
            await self._db.flush()
        except Exception as exc:
            logger.exception("Job insert failed | job=%s", job_id)
            await self._delete_object_quietly(storage_key, job_id)
            raise ProcessingError(
                ErrorKind.EXTERNAL_SERVICE_ERROR,
                f"Failed to create processing job: {exc}",
                stage=ProcessingStage.VALIDATION,
                recoverable=True,
                original_cause=exc,
                file_name=file_name,
                file_type=mime_type,
            ) from exc

        # ---- Step 5: Notify the worker (non-fatal) -----------------------
        try:
            await self._publisher.publish_job(job_id, opts.priority)
        except Exception as exc:
            # The job row is durable; requeue_stale_jobs picks it up.
            logger.error("Failed to publish job | job=%s error=%s", job_id, exc)

        return JobHandle(job_id=job_id, status=JobStatus.QUEUED, estimated_completion=eta)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_status(self, job_id: str, user_id: str) -> ProcessingJob:
        result = await self._db.execute(
            select(ProcessingJob).where(
                ProcessingJob.id == job_id,
                ProcessingJob.user_id == user_id,
            )
            # Pollers reuse one session; always reload the row
            .execution_options(populate_existing=True)
        )
        job = result.scalars().first()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_user_jobs(
        self,
        user_id:   str,
        status:    JobStatus | None = None,
        course_id: str | None = None,
        limit:     int = 20,
        offset:    int = 0,
    ) -> dict[str, Any]:
        limit  = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        filters = [ProcessingJob.user_id == user_id]
        if status is not None:
            filters.append(ProcessingJob.status == status.value)
        if course_id is not None:
            filters.append(ProcessingJob.course_id == course_id)

        total = (await self._db.execute(
            select(func.count()).select_from(ProcessingJob).where(*filters)
        )).scalar_one()

        rows = (await self._db.execute(
            select(ProcessingJob)
            .where(*filters)
            .order_by(ProcessingJob.created_at.desc())
            .limit(limit)
            .offset(offset)
        )).scalars().all()

        return {"jobs": list(rows), "total": total, "has_more": total > offset + limit}

    async def get_job_stats(self, user_id: str) -> dict[str, Any]:
        """Per-status counts plus success rate and mean processing time."""
        rows = (await self._db.execute(
            select(ProcessingJob.status, func.count())
            .where(ProcessingJob.user_id == user_id)
            .group_by(ProcessingJob.status)
        )).all()
        counts = {status: count for status, count in rows}

        avg_seconds = (await self._db.execute(
            select(func.avg(func.extract("epoch", ProcessingJob.completed_at - ProcessingJob.started_at)))
            .where(
                ProcessingJob.user_id == user_id,
                ProcessingJob.status == JobStatus.COMPLETED.value,
                ProcessingJob.started_at.is_not(None),
                ProcessingJob.completed_at.is_not(None),
            )
        )).scalar()

        completed = counts.get(JobStatus.COMPLETED.value, 0)
        finished  = completed + counts.get(JobStatus.FAILED.value, 0) + counts.get(JobStatus.TIMEOUT.value, 0)
        return {
            "total":                      sum(counts.values()),
            "by_status":                  {s.value: counts.get(s.value, 0) for s in JobStatus},
            "queued":                     counts.get(JobStatus.QUEUED.value, 0),
            "success_rate":               round(completed / finished, 4) if finished else 0.0,
            "average_processing_seconds": round(float(avg_seconds), 2) if avg_seconds is not None else 0.0,
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str, user_id: str) -> None:
        """queued → cancelled, then remove the uploaded object."""
        job = await self.get_status(job_id, user_id)
        self._ensure_cancellable(job)

        won = await transition_job(
            self._db, job_id, JobStatus.QUEUED, JobStatus.CANCELLED,
            user_id=user_id, completed_at=func.now(),
        )
        if not won:
            # Lost the race: a worker claimed it (or it was cancelled) in between
            current = await self.get_status(job_id, user_id)
            self._ensure_cancellable(current)
            raise InvalidJobStateError(job_id, current.status, "Cannot cancel job in its current state")

        await self._delete_object_quietly(job.storage_key, job_id)
        logger.info("Job cancelled | job=%s user=%s", job_id, user_id)

    async def delete_job(self, job_id: str, user_id: str) -> None:
        """Remove a terminal job row and its stored object."""
        job = await self.get_status(job_id, user_id)
        if JobStatus(job.status) not in TERMINAL_STATUSES:
            raise InvalidJobStateError(
                job_id, job.status,
                "Only finished or cancelled jobs can be deleted. Cancel the job first.",
            )

        await self._db.execute(
            delete(ProcessingJob).where(
                ProcessingJob.id == job_id,
                ProcessingJob.user_id == user_id,
            )
        )
        await self._delete_object_quietly(job.storage_key, job_id)
        logger.info("Job deleted | job=%s user=%s", job_id, user_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_cancellable(job: ProcessingJob) -> None:
        status = JobStatus(job.status)
        if status is JobStatus.QUEUED:
            return
        if status is JobStatus.PROCESSING:
            message = "Cannot cancel job that is already processing"
        elif status is JobStatus.COMPLETED:
            message = "Cannot cancel completed job"
        else:
            message = f"Cannot cancel {status.value} job"
        raise InvalidJobStateError(job.id, status.value, message)

    async def _delete_object_quietly(self, key: str, job_id: str) -> None:
        try:
            await self._storage.delete_object(key)
        except Exception as exc:
            logger.warning("S3 cleanup failed | job=%s key=%s error=%s", job_id, key, exc)


# ---------------------------------------------------------------------------
# Job publisher: Celery apply_async() behind an awaitable
# Injected into AsyncJobManager so it can be mocked in tests.
# ---------------------------------------------------------------------------

class JobPublisher:
    """
    Sends execute_processing_job to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_job(self, job_id: str, priority: JobPriority = JobPriority.NORMAL) -> None:
        """Runs apply_async() in a thread executor to avoid blocking the event loop."""
        from app.workers.tasks import execute_processing_job

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            None,
            lambda: execute_processing_job.apply_async(
                kwargs={"job_id": job_id},
                priority=CELERY_PRIORITY[priority],
                countdown=settings.job_publish_delay_seconds,
            ),
        )
        logger.info("Processing task published | job=%s priority=%s", job_id, priority.value)
