"""
Unit Tests — Celery Processing Tasks
═════════════════════════════════════
The async task bodies are awaited directly. get_admin_db is patched to
yield mock_db, S3StorageService to return canned bytes; extraction and
chunking run for real on generated PDFs.

Coverage targets:
  ✅ queued job → processing → completed, webhook carries result
  ✅ job row not yet visible → retried; still missing after retries → not_found
  ✅ non-queued job → skipped (never touched)
  ✅ lost claim → skipped, no extraction
  ✅ ProcessingError → failed with error.to_dict(), webhook carries error
  ✅ SoftTimeLimitExceeded → timeout
  ✅ Lost terminal CAS → conflict, no webhook
  ✅ S3 failure retries while queued, fails the job once retries run out
  ✅ Files over the in-request PDF limit still complete in the worker
  ✅ Chunks carry the caller-supplied document_id when one was stored
  ✅ hybrid_options_from() flag mapping
  ✅ Webhook payload shape; delivery failures return False
  ✅ requeue_stale_jobs / expire_stuck_jobs sweeps
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from celery.exceptions import Retry, SoftTimeLimitExceeded

from app.core.config import settings
from app.processing.hybrid import HybridProcessor
from app.workers import tasks
from app.workers.tasks import (
    _execute_processing_job_async,
    _expire_stuck_jobs_async,
    _requeue_stale_jobs_async,
    build_webhook_payload,
    deliver_webhook,
    hybrid_options_from,
)

CALLBACK_URL = "https://lms.example.edu/hooks/ingest"


def _admin_db(db):
    @asynccontextmanager
    async def _session():
        yield db
    return _session


def _server_error(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500)


def _refused(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def _task(retries: int = 0, max_retries: int = 3) -> MagicMock:
    task = MagicMock()
    task.request.retries = retries
    task.max_retries     = max_retries
    task.retry.return_value = Retry("retrying")
    return task


@pytest.fixture
def worker_env(mock_db):
    """Patch the worker's infrastructure; yields (storage, webhook) mocks."""
    storage = MagicMock()
    storage.get_object = AsyncMock(return_value=b"")
    webhook = AsyncMock(return_value=True)
    with patch("app.db.session.get_admin_db", _admin_db(mock_db)), \
         patch("app.storage.s3.S3StorageService", return_value=storage), \
         patch("app.workers.tasks.deliver_webhook", webhook):
        yield storage, webhook


@pytest.mark.unit
@pytest.mark.tasks
class TestExecuteProcessingJob:

    async def test_completes_and_notifies(self, worker_env, mock_db, db_result, make_job, sample_pdf_bytes):
        storage, webhook = worker_env
        storage.get_object.return_value = sample_pdf_bytes
        job = make_job("queued", callback_url=CALLBACK_URL)
        mock_db.execute.side_effect = [
            db_result(first=job),     # load
            db_result(rowcount=1),    # queued → processing
            db_result(rowcount=1),    # processing → completed
        ]

        outcome = await _execute_processing_job_async(_task(), job.id)

        assert outcome == {"status": "completed", "job_id": job.id}
        storage.get_object.assert_awaited_once_with(job.storage_key)
        url, payload = webhook.await_args.args
        assert url == CALLBACK_URL
        assert payload["jobId"] == job.id
        assert payload["status"] == "completed"
        assert payload["result"]["chunks"]
        assert payload["result"]["chunks"][0]["document_id"] == job.id
        metadata = payload["result"]["extraction"]["metadata"]
        assert metadata["processing_mode"] == "async"
        assert metadata["user_id"] == job.user_id
        assert metadata["course_id"] == job.course_id

    async def test_missing_job_retried_until_visible(self, worker_env, mock_db, db_result):
        storage, _ = worker_env
        mock_db.execute.return_value = db_result(first=None)
        task = _task(retries=0)

        with pytest.raises(Retry):
            await _execute_processing_job_async(task, "job_missing")

        assert task.retry.call_args.kwargs["countdown"] == 1.0
        storage.get_object.assert_not_called()

    async def test_missing_job_after_retries(self, worker_env, mock_db, db_result):
        mock_db.execute.return_value = db_result(first=None)
        outcome = await _execute_processing_job_async(_task(retries=3), "job_missing")
        assert outcome["status"] == "not_found"

    @pytest.mark.parametrize("status", ["processing", "completed", "cancelled"])
    async def test_non_queued_job_skipped(self, worker_env, mock_db, db_result, make_job, status):
        storage, _ = worker_env
        mock_db.execute.return_value = db_result(first=make_job(status))

        outcome = await _execute_processing_job_async(_task(), "job_1")

        assert outcome["status"] == "skipped"
        assert outcome["current_status"] == status
        storage.get_object.assert_not_called()
        assert mock_db.execute.await_count == 1

    async def test_lost_claim_skips(self, worker_env, mock_db, db_result, make_job, sample_pdf_bytes):
        storage, webhook = worker_env
        storage.get_object.return_value = sample_pdf_bytes
        mock_db.execute.side_effect = [db_result(first=make_job("queued")), db_result(rowcount=0)]

        with patch.object(HybridProcessor, "process", AsyncMock()) as process:
            outcome = await _execute_processing_job_async(_task(), "job_1")

        assert outcome["status"] == "skipped"
        process.assert_not_called()
        webhook.assert_not_called()

    async def test_processing_error_fails_job(self, worker_env, mock_db, db_result, make_job):
        storage, webhook = worker_env
        storage.get_object.return_value = b"this is not a pdf"
        job = make_job("queued", callback_url=CALLBACK_URL)
        mock_db.execute.side_effect = [db_result(first=job), db_result(rowcount=1), db_result(rowcount=1)]

        outcome = await _execute_processing_job_async(_task(), job.id)

        assert outcome["status"] == "failed"
        payload = webhook.await_args.args[1]
        assert payload["status"] == "failed"
        assert payload["error"]["kind"] == "CORRUPTED_FILE"
        assert "result" not in payload

    async def test_soft_time_limit_times_out(self, worker_env, mock_db, db_result, make_job, sample_pdf_bytes):
        storage, _ = worker_env
        storage.get_object.return_value = sample_pdf_bytes
        mock_db.execute.side_effect = [db_result(first=make_job("queued")), db_result(rowcount=1), db_result(rowcount=1)]

        with patch.object(HybridProcessor, "process", AsyncMock(side_effect=SoftTimeLimitExceeded())):
            outcome = await _execute_processing_job_async(_task(), "job_1")

        assert outcome["status"] == "timeout"

    async def test_terminal_conflict(self, worker_env, mock_db, db_result, make_job, sample_pdf_bytes):
        storage, webhook = worker_env
        storage.get_object.return_value = sample_pdf_bytes
        job = make_job("queued", callback_url=CALLBACK_URL)
        mock_db.execute.side_effect = [db_result(first=job), db_result(rowcount=1), db_result(rowcount=0)]

        outcome = await _execute_processing_job_async(_task(), job.id)

        assert outcome["status"] == "conflict"
        webhook.assert_not_called()

    async def test_download_failure_retries_while_queued(self, worker_env, mock_db, db_result, make_job):
        storage, _ = worker_env
        storage.get_object.side_effect = RuntimeError("S3 throttled")
        mock_db.execute.return_value = db_result(first=make_job("queued"))
        task = _task(retries=1)

        with pytest.raises(Retry):
            await _execute_processing_job_async(task, "job_1")

        assert task.retry.call_args.kwargs["countdown"] == 2.0
        assert mock_db.execute.await_count == 1   # never claimed

    async def test_download_failure_exhausted_fails_job(self, worker_env, mock_db, db_result, make_job):
        storage, webhook = worker_env
        storage.get_object.side_effect = RuntimeError("S3 gone")
        job = make_job("queued", callback_url=CALLBACK_URL)
        mock_db.execute.side_effect = [db_result(first=job), db_result(rowcount=1), db_result(rowcount=1)]

        outcome = await _execute_processing_job_async(_task(retries=3), job.id)

        assert outcome["status"] == "failed"
        assert webhook.await_args.args[1]["error"]["kind"] == "EXTERNAL_SERVICE_ERROR"


    async def test_file_over_in_request_limit_completes(
        self, worker_env, mock_db, db_result, make_job, sample_pdf_bytes,
    ):
        storage, webhook = worker_env
        storage.get_object.return_value = sample_pdf_bytes
        job = make_job("queued", file_size=len(sample_pdf_bytes), callback_url=CALLBACK_URL)
        mock_db.execute.side_effect = [db_result(first=job), db_result(rowcount=1), db_result(rowcount=1)]

        with patch.object(settings, "pdf_max_file_size_bytes", 100):
            outcome = await _execute_processing_job_async(_task(), job.id)

        assert outcome["status"] == "completed"
        assert webhook.await_args.args[1]["result"]["chunks"]

    async def test_chunks_use_stored_document_id(
        self, worker_env, mock_db, db_result, make_job, sample_pdf_bytes,
    ):
        storage, webhook = worker_env
        storage.get_object.return_value = sample_pdf_bytes
        job = make_job(
            "queued", callback_url=CALLBACK_URL, processing_options={"document_id": "doc_bio101_week3"},
        )
        mock_db.execute.side_effect = [db_result(first=job), db_result(rowcount=1), db_result(rowcount=1)]

        await _execute_processing_job_async(_task(), job.id)

        chunks = webhook.await_args.args[1]["result"]["chunks"]
        assert {c["document_id"] for c in chunks} == {"doc_bio101_week3"}
        assert all(c["id"].startswith("doc_bio101_week3_") for c in chunks)

@pytest.mark.unit
@pytest.mark.tasks
class TestTaskHelpers:

    def test_hybrid_options_from(self):
        opts = hybrid_options_from({
            "preserve_formatting": False,
            "require_advanced_features": True,
            "max_wait_seconds": 90,
            "max_cost_per_document": 0.5,
            "chunking_config": {"max_chunk_size": 1000},
        })
        assert opts.preserve_formatting is False
        assert opts.require_advanced_features is True
        assert opts.enable_fallback is True
        assert opts.max_wait_seconds == 90.0
        assert opts.max_cost_per_document == 0.5
        assert opts.max_file_size_bytes == settings.max_async_file_size_bytes

    def test_webhook_payload(self):
        assert build_webhook_payload("job_1", "completed", result={"chunks": []}) == {
            "jobId": "job_1", "status": "completed", "result": {"chunks": []},
        }
        assert build_webhook_payload("job_1", "failed", error={"kind": "X"}) == {
            "jobId": "job_1", "status": "failed", "error": {"kind": "X"},
        }

    async def test_deliver_webhook_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        ok = await deliver_webhook(CALLBACK_URL, {"jobId": "job_1"}, transport=httpx.MockTransport(handler))
        assert ok is True
        assert seen[0].method == "POST"
        assert seen[0].headers["content-type"] == "application/json"

    @pytest.mark.parametrize("handler", [_server_error, _refused])
    async def test_deliver_webhook_failure(self, handler):
        ok = await deliver_webhook(CALLBACK_URL, {"jobId": "job_1"}, transport=httpx.MockTransport(handler))
        assert ok is False

    def test_health_check(self):
        assert tasks.health_check() == {"status": "ok", "worker": "healthy"}


@pytest.mark.unit
@pytest.mark.tasks
class TestSweeps:

    async def test_requeue_stale_jobs(self, worker_env, mock_db, db_result, make_job):
        stale = [make_job("queued", job_id="job_a", priority="high"), make_job("queued", job_id="job_b")]
        mock_db.execute.return_value = db_result(all_=stale)

        with patch.object(tasks.execute_processing_job, "apply_async") as apply_async:
            outcome = await _requeue_stale_jobs_async()

        assert outcome == {"requeued": 2}
        first = apply_async.call_args_list[0].kwargs
        assert first["kwargs"] == {"job_id": "job_a"}
        assert first["priority"] == 9
        assert apply_async.call_args_list[1].kwargs["priority"] == 5

    async def test_expire_stuck_jobs(self, worker_env, mock_db, db_result, make_job):
        _, webhook = worker_env
        stuck = [
            make_job("processing", job_id="job_a", callback_url=CALLBACK_URL),
            make_job("processing", job_id="job_b"),
        ]
        mock_db.execute.side_effect = [
            db_result(all_=stuck),
            db_result(rowcount=1),
            db_result(rowcount=0),   # job_b finished in the meantime
        ]

        outcome = await _expire_stuck_jobs_async()

        assert outcome == {"expired": 1}
        payload = webhook.await_args.args[1]
        assert payload["jobId"] == "job_a"
        assert payload["status"] == "timeout"
        assert payload["error"]["kind"] == "PROCESSING_TIMEOUT"
