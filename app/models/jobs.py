"""
SQLAlchemy ORM Model — Async Processing Jobs

One row per async-path submission. The row is the only shared mutable
resource between the API (submit / cancel / delete) and the Celery worker
(processing → terminal), so every status change is a conditional UPDATE on
the expected current status.

State machine (status column):
    queued     — bytes in S3, waiting for a worker
    processing — a worker has claimed the job
    completed  — result holds {extraction, chunks}
    failed     — error holds ProcessingError.to_dict()
    timeout    — worker time limit or stuck-job sweep
    cancelled  — cancelled by the owner while still queued

    queued → processing → {completed | failed | timeout}
    queued → cancelled
    Terminal states are never left.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class JobStatus(str, Enum):
    QUEUED     = "queued"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"
    TIMEOUT    = "timeout"
    CANCELLED  = "cancelled"


class JobPriority(str, Enum):
    HIGH   = "high"
    NORMAL = "normal"
    LOW    = "low"


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.TIMEOUT,
    JobStatus.CANCELLED,
})

# Legal transitions; anything else is rejected before touching the row
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED:     frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT}),
    JobStatus.COMPLETED:  frozenset(),
    JobStatus.FAILED:     frozenset(),
    JobStatus.TIMEOUT:    frozenset(),
    JobStatus.CANCELLED:  frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class ProcessingJob(Base):
    """Durable record of an async-path document."""

    __tablename__ = "processing_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed', 'timeout', 'cancelled')",
            name="processing_jobs_status_check",
        ),
        CheckConstraint(
            "priority IN ('high', 'normal', 'low')",
            name="processing_jobs_priority_check",
        ),
        Index("idx_processing_jobs_user_id",    "user_id"),
        Index("idx_processing_jobs_status",     "status"),
        Index("idx_processing_jobs_created_at", "created_at"),
        Index("idx_processing_jobs_user_course", "user_id", "course_id"),
        Index("idx_processing_jobs_queue",      "status", "priority", "created_at"),
    )

    # job_<epoch_ms>_<base36>
    id: Mapped[str] = mapped_column(Text, primary_key=True)

    # Owner: every read and mutation filters on it
    user_id: Mapped[str]             = mapped_column(Text, nullable=False)
    course_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        unique=True,
        comment="async-processing/<user_id>/<YYYY-MM-DD>/<job_id>/<sanitized name>",
    )

    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobStatus.QUEUED.value, server_default=JobStatus.QUEUED.value,
    )
    priority: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobPriority.NORMAL.value, server_default=JobPriority.NORMAL.value,
    )

    # Submission options (chunking config, extraction flags)
    processing_options: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=dict, server_default="{}",
    )
    callback_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )
    started_at: Mapped[Optional[datetime]]           = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]]         = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_completion: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Outcome: exactly one is set once terminal (neither for cancelled)
    result: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    error: Mapped[Optional[dict]]  = mapped_column(JSONB, nullable=True)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.job_status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob id={self.id} user={self.user_id} "
            f"status={self.status} file={self.file_name!r}>"
        )
