"""
Unit Tests — Processing Error Taxonomy
═══════════════════════════════════════
Pure tests: no I/O, no extractor libraries.

Coverage targets:
  ✅ Default user messages differ from internal messages
  ✅ to_dict() / from_dict() preserve kind, stage, recoverable
  ✅ Library mappers: corruption → CORRUPTED_FILE, MemoryError → MEMORY_LIMIT_EXCEEDED
  ✅ Memory / timeout failures are recoverable; content failures are not
  ✅ Already-mapped errors pass through unchanged
  ✅ Generic heuristics: timeout / permission / unknown
  ✅ Retry policy and exponential delay cap
  ✅ Logging policy for user-caused kinds
  ✅ create_error_response() envelope
  ✅ FileValidator: size, type, dangerous names
  ✅ Job errors: not found / invalid state
"""

from __future__ import annotations

import zipfile

import pytest

from app.processing.errors import (
    DOCX_MIME,
    PDF_MIME,
    ErrorKind,
    FileValidator,
    InvalidJobStateError,
    JobNotFoundError,
    ProcessingError,
    ProcessingStage,
    create_error_response,
    get_retry_delay,
    map_docx_error,
    map_generic_error,
    map_pdf_error,
    should_log_error,
    should_retry,
)


class FileDataError(RuntimeError):
    """Same class name PyMuPDF raises for unreadable streams."""


@pytest.mark.unit
@pytest.mark.errors
class TestProcessingError:

    def test_defaults(self):
        err = ProcessingError(ErrorKind.PARSING_FAILED, "fitz blew up at offset 42")
        assert err.stage is ProcessingStage.PARSING
        assert err.recoverable is False
        assert err.user_message != err.message
        assert "offset 42" not in err.user_message
        assert err.timestamp

    def test_explicit_user_message_wins(self):
        err = ProcessingError(ErrorKind.FILE_TOO_LARGE, "too big", user_message="Max 50MB.")
        assert err.user_message == "Max 50MB."

    def test_to_dict_round_trip(self):
        cause = ValueError("bad xref")
        err = ProcessingError(
            ErrorKind.NO_CONTENT_EXTRACTED,
            "Only 3 characters extracted",
            stage=ProcessingStage.EXTRACTION,
            recoverable=True,
            original_cause=cause,
            file_name="scan.pdf",
            file_type=PDF_MIME,
        )
        data = err.to_dict()
        assert data["kind"] == "NO_CONTENT_EXTRACTED"
        assert data["stage"] == "extraction"
        assert data["originalError"] == {"name": "ValueError", "message": "bad xref"}

        restored = ProcessingError.from_dict(data)
        assert restored.kind is ErrorKind.NO_CONTENT_EXTRACTED
        assert restored.stage is ProcessingStage.EXTRACTION
        assert restored.recoverable is True
        assert restored.file_name == "scan.pdf"
        assert restored.timestamp == err.timestamp

    def test_from_dict_tolerates_unknown_kind(self):
        restored = ProcessingError.from_dict({"kind": "SOMETHING_NEW", "stage": "??", "message": "x"})
        assert restored.kind is ErrorKind.PARSING_FAILED
        assert restored.stage is ProcessingStage.PARSING


@pytest.mark.unit
@pytest.mark.errors
class TestErrorMappers:

    def test_pdf_corruption(self):
        err = map_pdf_error(FileDataError("cannot open broken document"), "broken.pdf")
        assert err.kind is ErrorKind.CORRUPTED_FILE
        assert err.file_type == PDF_MIME
        assert isinstance(err.original_cause, FileDataError)

    def test_pdf_memory(self):
        err = map_pdf_error(MemoryError())
        assert err.kind is ErrorKind.MEMORY_LIMIT_EXCEEDED
        assert err.recoverable is True

    def test_pdf_other_is_parsing_failed(self):
        assert map_pdf_error(RuntimeError("weird")).kind is ErrorKind.PARSING_FAILED

    def test_docx_bad_zip_is_corrupted(self):
        err = map_docx_error(zipfile.BadZipFile("File is not a zip file"), "notes.docx")
        assert err.kind is ErrorKind.CORRUPTED_FILE
        assert err.file_type == DOCX_MIME

    def test_docx_missing_part_is_corrupted(self):
        assert map_docx_error(KeyError("word/document.xml")).kind is ErrorKind.CORRUPTED_FILE

    def test_already_mapped_passes_through(self):
        original = ProcessingError(ErrorKind.PASSWORD_PROTECTED, "encrypted")
        assert map_pdf_error(original) is original
        assert map_docx_error(original) is original
        assert map_generic_error(original) is original

    @pytest.mark.parametrize("exc, kind", [
        (TimeoutError("read"),                   ErrorKind.PROCESSING_TIMEOUT),
        (RuntimeError("operation timed out"),    ErrorKind.PROCESSING_TIMEOUT),
        (RuntimeError("heap exhausted"),        ErrorKind.MEMORY_LIMIT_EXCEEDED),
        (PermissionError("nope"),                ErrorKind.PASSWORD_PROTECTED),
        (RuntimeError("Access denied by owner"), ErrorKind.PASSWORD_PROTECTED),
        (RuntimeError("something else"),         ErrorKind.PARSING_FAILED),
    ])
    def test_generic_heuristics(self, exc, kind):
        assert map_generic_error(exc, "f.bin", "application/x").kind is kind

    @pytest.mark.parametrize("exc", [
        MemoryError(),
        RuntimeError("out of memory while rendering page"),
        TimeoutError("read"),
        RuntimeError("operation timed out"),
    ])
    def test_resource_failures_are_recoverable(self, exc):
        assert map_generic_error(exc).recoverable is True

    @pytest.mark.parametrize("exc", [
        PermissionError("nope"),
        RuntimeError("something else"),
    ])
    def test_content_failures_are_not_recoverable(self, exc):
        assert map_generic_error(exc).recoverable is False


@pytest.mark.unit
@pytest.mark.errors
class TestErrorPolicy:

    @pytest.mark.parametrize("kind", [
        ErrorKind.PROCESSING_TIMEOUT,
        ErrorKind.WORKER_OVERLOADED,
        ErrorKind.EXTERNAL_SERVICE_ERROR,
    ])
    def test_retryable_kinds(self, kind):
        assert should_retry(ProcessingError(kind, "x"))

    def test_corruption_not_retryable(self):
        assert not should_retry(ProcessingError(ErrorKind.CORRUPTED_FILE, "x"))

    def test_retry_delay_doubles_and_caps(self):
        assert [get_retry_delay(n) for n in (1, 2, 3, 4, 5, 6, 10)] == [
            1000, 2000, 4000, 8000, 16000, 16000, 16000,
        ]

    def test_user_caused_errors_not_logged_as_errors(self):
        assert not should_log_error(ProcessingError(ErrorKind.FILE_TOO_LARGE, "x"))
        assert not should_log_error(ProcessingError(ErrorKind.UNSUPPORTED_FORMAT, "x"))
        assert should_log_error(ProcessingError(ErrorKind.PARSING_FAILED, "x"))

    def test_error_response_envelope(self):
        err = ProcessingError(
            ErrorKind.CORRUPTED_FILE, "xref table broken",
            stage=ProcessingStage.PARSING, file_name="a.pdf",
        )
        body = create_error_response(err)
        assert body["success"] is False
        assert body["error"]["type"] == "CORRUPTED_FILE"
        assert body["error"]["message"] == err.user_message
        assert body["error"]["details"] == "xref table broken"
        assert body["error"]["fileName"] == "a.pdf"
        assert body["error"]["stage"] == "parsing"
        assert body["error"]["recoverable"] is False


@pytest.mark.unit
@pytest.mark.errors
class TestFileValidator:

    def test_size_within_limit(self):
        FileValidator.validate_file_size(10, 10)

    def test_size_over_limit_is_recoverable(self):
        with pytest.raises(ProcessingError) as exc_info:
            FileValidator.validate_file_size(11 * 1024 * 1024, 10 * 1024 * 1024)
        assert exc_info.value.kind is ErrorKind.FILE_TOO_LARGE
        assert exc_info.value.recoverable is True
        assert "10MB" in exc_info.value.user_message

    def test_type(self):
        FileValidator.validate_file_type(PDF_MIME, [PDF_MIME, DOCX_MIME])
        with pytest.raises(ProcessingError) as exc_info:
            FileValidator.validate_file_type("text/plain", [PDF_MIME])
        assert exc_info.value.kind is ErrorKind.UNSUPPORTED_FORMAT

    @pytest.mark.parametrize("name", ["", "   ", None, "../etc/passwd", "a<b>.pdf", "what?.docx", 'q"uote.pdf'])
    def test_rejects_bad_names(self, name):
        with pytest.raises(ProcessingError) as exc_info:
            FileValidator.validate_file_name(name)
        assert exc_info.value.kind is ErrorKind.INVALID_FILE_FORMAT
        assert exc_info.value.stage is ProcessingStage.VALIDATION

    def test_accepts_normal_name(self):
        FileValidator.validate_file_name("Lecture 3 - Enzymes (v2).pdf")


@pytest.mark.unit
@pytest.mark.errors
class TestJobErrors:

    def test_not_found(self):
        err = JobNotFoundError("job_1")
        assert err.kind is ErrorKind.JOB_NOT_FOUND
        assert err.job_id == "job_1"
        assert err.recoverable is False

    def test_invalid_state(self):
        err = InvalidJobStateError("job_1", "processing", "Cannot cancel job that is already processing")
        assert err.kind is ErrorKind.INVALID_JOB_STATE
        assert err.status == "processing"
        assert err.user_message == "Cannot cancel job that is already processing"
        assert isinstance(err, ProcessingError)
