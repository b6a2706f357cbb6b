"""
Unit Tests — Async Job Manager
═══════════════════════════════
Tests for app/services/async_jobs.py against a mocked AsyncSession,
mocked S3StorageService and mocked JobPublisher.

Coverage targets:
  ✅ submit(): storage key layout, job row (queued), publish with priority
  ✅ submit(): publish failure is non-fatal (job still queued)
  ✅ submit(): S3 failure → EXTERNAL_SERVICE_ERROR, no row inserted
  ✅ submit(): insert failure removes the uploaded object
  ✅ submit(): unsupported type without external → UNSUPPORTED_FORMAT, no side effects
  ✅ submit(): oversize / bad name rejected before upload
  ✅ get_status(): another user's job → JobNotFoundError
  ✅ JobPublisher: priority mapping, publish delayed past the request commit
  ✅ cancel(): queued → cancelled + object removed
  ✅ cancel(): processing → InvalidJobStateError, status unchanged
  ✅ cancel(): lost race re-reads state
  ✅ delete_job(): terminal only
  ✅ get_user_jobs(): paging clamp and has_more
  ✅ transition_job(): illegal transition rejected without SQL
  ✅ estimate_completion() and generate_job_id()
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.core.config import settings
from app.models.jobs import JobPriority, JobStatus, ProcessingJob
from app.processing.errors import (
    DOCX_MIME,
    PDF_MIME,
    ErrorKind,
    InvalidJobStateError,
    JobNotFoundError,
    ProcessingError,
)
from app.processing.types import DEFAULT_CHUNKING_CONFIGS
from app.services.async_jobs import (
    MAX_PAGE_SIZE,
    AsyncJobManager,
    JobPublisher,
    SubmitOptions,
    estimate_completion,
    generate_job_id,
    transition_job,
)
from app.workers.tasks import execute_processing_job

MB = 1024 * 1024


def _manager(mock_db, mock_storage, mock_publisher, external_configured=False):
    return AsyncJobManager(
        mock_db, mock_storage, mock_publisher, external_configured=external_configured,
    )


def _sql(statement) -> str:
    return str(statement.compile(compile_kwargs={"literal_binds": True}))


@pytest.mark.unit
@pytest.mark.jobs
class TestHelpers:

    def test_job_id_format(self):
        job_id = generate_job_id(1700000000000)
        assert re.fullmatch(r"job_1700000000000_[0-9a-z]{9}", job_id)
        assert generate_job_id() != generate_job_id()

    def test_estimate_completion_normal_pdf(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        eta = estimate_completion(4 * MB, PDF_MIME, JobPriority.NORMAL, now)
        # (2 + 4×0.5) × 1.5 + 10
        assert eta - now == timedelta(minutes=16)

    def test_estimate_completion_high_docx(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        eta = estimate_completion(0, DOCX_MIME, JobPriority.HIGH, now)
        # (2 + 3) × 1.0 + 5
        assert eta - now == timedelta(minutes=10)

    async def test_transition_rejects_illegal_move(self, mock_db):
        with pytest.raises(InvalidJobStateError):
            await transition_job(mock_db, "job_1", JobStatus.COMPLETED, JobStatus.QUEUED)
        mock_db.execute.assert_not_called()

    async def test_transition_reports_lost_race(self, mock_db, db_result):
        mock_db.execute.return_value = db_result(rowcount=0)
        assert await transition_job(mock_db, "job_1", JobStatus.QUEUED, JobStatus.PROCESSING) is False


@pytest.mark.unit
@pytest.mark.jobs
class TestSubmit:

    async def test_submit_happy_path(self, mock_db, mock_storage, mock_publisher, test_user_id):
        manager = _manager(mock_db, mock_storage, mock_publisher)
        handle = await manager.submit(
            b"%PDF-1.7 lecture",
            PDF_MIME,
            "Week 1 Notes.pdf",
            SubmitOptions(
                user_id=test_user_id,
                course_id="course_bio101",
                priority=JobPriority.HIGH,
                chunking_config=DEFAULT_CHUNKING_CONFIGS["technical"],
                extra={"preserve_formatting": True},
            ),
        )

        assert handle.status is JobStatus.QUEUED
        assert handle.job_id.startswith("job_")
        assert handle.estimated_completion > datetime.now(timezone.utc)

        key = mock_storage.put_object.call_args.kwargs["key"]
        assert re.fullmatch(
            rf"async-processing/{test_user_id}/\d{{4}}-\d{{2}}-\d{{2}}/{handle.job_id}/Week_1_Notes\.pdf",
            key,
        )

        job: ProcessingJob = mock_db.add.call_args.args[0]
        assert job.id == handle.job_id
        assert job.status == "queued"
        assert job.priority == "high"
        assert job.storage_key == key
        assert job.course_id == "course_bio101"
        assert job.processing_options["preserve_formatting"] is True
        assert job.processing_options["chunking_config"]["max_chunk_size"] == 1200

        mock_publisher.publish_job.assert_awaited_once_with(handle.job_id, JobPriority.HIGH)

    async def test_publish_failure_is_not_fatal(self, mock_db, mock_storage, mock_publisher, test_user_id):
        mock_publisher.publish_job.side_effect = ConnectionError("broker down")
        handle = await _manager(mock_db, mock_storage, mock_publisher).submit(
            b"%PDF", PDF_MIME, "a.pdf", SubmitOptions(user_id=test_user_id),
        )
        assert handle.status is JobStatus.QUEUED
        mock_db.add.assert_called_once()

    async def test_upload_failure(self, mock_db, mock_storage, mock_publisher, test_user_id):
        mock_storage.put_object.side_effect = RuntimeError("S3 unavailable")
        with pytest.raises(ProcessingError) as exc_info:
            await _manager(mock_db, mock_storage, mock_publisher).submit(
                b"%PDF", PDF_MIME, "a.pdf", SubmitOptions(user_id=test_user_id),
            )
        assert exc_info.value.kind is ErrorKind.EXTERNAL_SERVICE_ERROR
        assert exc_info.value.recoverable is True
        mock_db.add.assert_not_called()
        mock_publisher.publish_job.assert_not_called()

    async def test_insert_failure_cleans_up_object(self, mock_db, mock_storage, mock_publisher, test_user_id):
        mock_db.flush.side_effect = RuntimeError("unique violation")
        with pytest.raises(ProcessingError):
            await _manager(mock_db, mock_storage, mock_publisher).submit(
                b"%PDF", PDF_MIME, "a.pdf", SubmitOptions(user_id=test_user_id),
            )
        uploaded_key = mock_storage.put_object.call_args.kwargs["key"]
        mock_storage.delete_object.assert_awaited_once_with(uploaded_key)
        mock_publisher.publish_job.assert_not_called()

    async def test_unsupported_without_external(self, mock_db, mock_storage, mock_publisher, test_user_id):
        with pytest.raises(ProcessingError) as exc_info:
            await _manager(mock_db, mock_storage, mock_publisher).submit(
                b"plain", "text/plain", "notes.txt", SubmitOptions(user_id=test_user_id),
            )
        assert exc_info.value.kind is ErrorKind.UNSUPPORTED_FORMAT
        mock_storage.put_object.assert_not_called()
        mock_db.add.assert_not_called()

    async def test_unsupported_with_external_is_accepted(self, mock_db, mock_storage, mock_publisher, test_user_id):
        handle = await _manager(mock_db, mock_storage, mock_publisher, external_configured=True).submit(
            b"\x89PNG", "image/png", "scan.png", SubmitOptions(user_id=test_user_id),
        )
        assert handle.status is JobStatus.QUEUED

    async def test_rejects_bad_name_before_upload(self, mock_db, mock_storage, mock_publisher, test_user_id):
        with pytest.raises(ProcessingError) as exc_info:
            await _manager(mock_db, mock_storage, mock_publisher).submit(
                b"%PDF", PDF_MIME, "../../etc/passwd", SubmitOptions(user_id=test_user_id),
            )
        assert exc_info.value.kind is ErrorKind.INVALID_FILE_FORMAT
        mock_storage.put_object.assert_not_called()

    async def test_requires_user(self, mock_db, mock_storage, mock_publisher):
        with pytest.raises(ValueError):
            await _manager(mock_db, mock_storage, mock_publisher).submit(
                b"%PDF", PDF_MIME, "a.pdf", SubmitOptions(user_id=""),
            )


@pytest.mark.unit
@pytest.mark.jobs
class TestReadsAndMutations:

    async def test_get_status_other_user_not_found(
        self, mock_db, mock_storage, mock_publisher, db_result, make_job, test_user_id, other_user_id,
    ):
        job = make_job("completed", user_id=test_user_id)

        async def rows_owned_by_filter(statement, *args, **kwargs):
            owned = f"processing_jobs.user_id = '{job.user_id}'" in _sql(statement)
            return db_result(first=job if owned else None)

        mock_db.execute.side_effect = rows_owned_by_filter
        manager = _manager(mock_db, mock_storage, mock_publisher)

        with pytest.raises(JobNotFoundError) as exc_info:
            await manager.get_status(job.id, other_user_id)
        assert exc_info.value.kind is ErrorKind.JOB_NOT_FOUND

        where = _sql(mock_db.execute.await_args.args[0])
        assert f"processing_jobs.id = '{job.id}'" in where
        assert f"processing_jobs.user_id = '{other_user_id}'" in where
        assert await manager.get_status(job.id, test_user_id) is job

    async def test_get_status_returns_row(self, mock_db, mock_storage, mock_publisher, db_result, make_job):
        job = make_job("processing")
        mock_db.execute.return_value = db_result(first=job)
        assert await _manager(mock_db, mock_storage, mock_publisher).get_status(job.id, job.user_id) is job

    async def test_cancel_queued(self, mock_db, mock_storage, mock_publisher, db_result, make_job):
        job = make_job("queued")
        mock_db.execute.side_effect = [db_result(first=job), db_result(rowcount=1)]

        await _manager(mock_db, mock_storage, mock_publisher).cancel(job.id, job.user_id)

        mock_storage.delete_object.assert_awaited_once_with(job.storage_key)
        assert mock_db.execute.await_count == 2

    async def test_cancel_processing_rejected(self, mock_db, mock_storage, mock_publisher, db_result, make_job):
        job = make_job("processing")
        mock_db.execute.return_value = db_result(first=job)

        with pytest.raises(InvalidJobStateError) as exc_info:
            await _manager(mock_db, mock_storage, mock_publisher).cancel(job.id, job.user_id)

        assert exc_info.value.status == "processing"
        assert "already processing" in exc_info.value.user_message
        assert job.status == "processing"
        assert mock_db.execute.await_count == 1   # no UPDATE issued
        mock_storage.delete_object.assert_not_called()

    async def test_cancel_lost_race(self, mock_db, mock_storage, mock_publisher, db_result, make_job):
        queued    = make_job("queued")
        claimed   = make_job("processing", job_id=queued.id)
        mock_db.execute.side_effect = [
            db_result(first=queued),
            db_result(rowcount=0),
            db_result(first=claimed),
        ]
        with pytest.raises(InvalidJobStateError) as exc_info:
            await _manager(mock_db, mock_storage, mock_publisher).cancel(queued.id, queued.user_id)
        assert exc_info.value.status == "processing"
        mock_storage.delete_object.assert_not_called()

    async def test_delete_requires_terminal(self, mock_db, mock_storage, mock_publisher, db_result, make_job):
        mock_db.execute.return_value = db_result(first=make_job("queued"))
        with pytest.raises(InvalidJobStateError):
            await _manager(mock_db, mock_storage, mock_publisher).delete_job("job_1", "user_123")

    async def test_delete_completed(self, mock_db, mock_storage, mock_publisher, db_result, make_job):
        job = make_job("completed")
        mock_db.execute.side_effect = [db_result(first=job), db_result()]
        await _manager(mock_db, mock_storage, mock_publisher).delete_job(job.id, job.user_id)
        mock_storage.delete_object.assert_awaited_once_with(job.storage_key)

    async def test_user_jobs_paging(self, mock_db, mock_storage, mock_publisher, db_result, make_job):
        jobs = [make_job("completed", job_id=f"job_{i}") for i in range(3)]
        mock_db.execute.side_effect = [db_result(scalar=250), db_result(all_=jobs)]

        page = await _manager(mock_db, mock_storage, mock_publisher).get_user_jobs(
            "user_123", status=JobStatus.COMPLETED, limit=1000, offset=0,
        )

        assert page["total"] == 250
        assert page["jobs"] == jobs
        assert page["has_more"] is True
        list_stmt = mock_db.execute.await_args_list[1].args[0]
        assert list_stmt._limit == MAX_PAGE_SIZE

    async def test_job_stats(self, mock_db, mock_storage, mock_publisher, db_result):
        mock_db.execute.side_effect = [
            db_result(rows=[("completed", 3), ("failed", 1), ("queued", 2)]),
            db_result(scalar=12.5),
        ]
        stats = await _manager(mock_db, mock_storage, mock_publisher).get_job_stats("user_123")
        assert stats["total"] == 6
        assert stats["queued"] == 2
        assert stats["success_rate"] == 0.75
        assert stats["average_processing_seconds"] == 12.5
        assert stats["by_status"]["timeout"] == 0


@pytest.mark.unit
@pytest.mark.jobs
class TestJobPublisher:

    async def test_publish_is_delayed_past_request_commit(self):
        with patch.object(execute_processing_job, "apply_async") as apply_async:
            await JobPublisher().publish_job("job_1", JobPriority.HIGH)

        call = apply_async.call_args.kwargs
        assert call["kwargs"] == {"job_id": "job_1"}
        assert call["priority"] == 9
        assert call["countdown"] == settings.job_publish_delay_seconds
        assert call["countdown"] > 0
