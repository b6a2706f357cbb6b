"""
Processing Error Taxonomy
═════════════════════════

One exception type for every failure in the ingestion core.

  ProcessingError(kind, message, user_message, stage, recoverable, …)

Every extractor, the chunker, the external client and the job manager raise
ProcessingError (or a subclass). Library exceptions never escape a module
boundary: they are translated by the per-library mappers below.

Kinds by family
───────────────
  validation   FILE_TOO_LARGE · INVALID_FILE_FORMAT · CORRUPTED_FILE
               UNSUPPORTED_FORMAT · PASSWORD_PROTECTED
  processing   PARSING_FAILED · EXTRACTION_FAILED · CONVERSION_FAILED
               CHUNKING_FAILED
  resource     MEMORY_LIMIT_EXCEEDED · PROCESSING_TIMEOUT · WORKER_OVERLOADED
  content      NO_CONTENT_EXTRACTED · INSUFFICIENT_CONTENT
  external     EXTERNAL_SERVICE_ERROR · DEPENDENCY_ERROR
  jobs         JOB_NOT_FOUND · INVALID_JOB_STATE

message vs user_message
───────────────────────
  message       internal detail, logged, stored in the job row
  user_message  safe description the API surfaces to end users
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

PDF_MIME  = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    # File validation
    FILE_TOO_LARGE         = "FILE_TOO_LARGE"
    INVALID_FILE_FORMAT    = "INVALID_FILE_FORMAT"
    CORRUPTED_FILE         = "CORRUPTED_FILE"
    UNSUPPORTED_FORMAT     = "UNSUPPORTED_FORMAT"
    PASSWORD_PROTECTED     = "PASSWORD_PROTECTED"

    # Processing
    PARSING_FAILED         = "PARSING_FAILED"
    EXTRACTION_FAILED      = "EXTRACTION_FAILED"
    CONVERSION_FAILED      = "CONVERSION_FAILED"
    CHUNKING_FAILED        = "CHUNKING_FAILED"

    # Resource
    MEMORY_LIMIT_EXCEEDED  = "MEMORY_LIMIT_EXCEEDED"
    PROCESSING_TIMEOUT     = "PROCESSING_TIMEOUT"
    WORKER_OVERLOADED      = "WORKER_OVERLOADED"

    # Content
    NO_CONTENT_EXTRACTED   = "NO_CONTENT_EXTRACTED"
    INSUFFICIENT_CONTENT   = "INSUFFICIENT_CONTENT"

    # Network / external
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    DEPENDENCY_ERROR       = "DEPENDENCY_ERROR"

    # Async job lookups and transitions
    JOB_NOT_FOUND          = "JOB_NOT_FOUND"
    INVALID_JOB_STATE      = "INVALID_JOB_STATE"


class ProcessingStage(str, Enum):
    VALIDATION   = "validation"
    PARSING      = "parsing"
    EXTRACTION   = "extraction"
    CHUNKING     = "chunking"
    FINALIZATION = "finalization"


_DEFAULT_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.FILE_TOO_LARGE:         "The file is too large to process. Please try a smaller file.",
    ErrorKind.INVALID_FILE_FORMAT:    "The file format is not supported or invalid.",
    ErrorKind.CORRUPTED_FILE:         "The file appears to be corrupted and cannot be processed.",
    ErrorKind.UNSUPPORTED_FORMAT:     "This file format is not currently supported.",
    ErrorKind.PASSWORD_PROTECTED:     "This document is password protected and cannot be processed.",
    ErrorKind.PARSING_FAILED:         "Failed to parse the document. Please check the file format.",
    ErrorKind.EXTRACTION_FAILED:      "Failed to extract content from the document.",
    ErrorKind.CONVERSION_FAILED:      "Failed to convert the document to the required format.",
    ErrorKind.CHUNKING_FAILED:        "Failed to process the document content.",
    ErrorKind.MEMORY_LIMIT_EXCEEDED:  "The document is too complex to process with available resources.",
    ErrorKind.PROCESSING_TIMEOUT:     "Processing took too long and was cancelled.",
    ErrorKind.WORKER_OVERLOADED:      "The system is currently busy. Please try again later.",
    ErrorKind.NO_CONTENT_EXTRACTED:   "No readable content could be extracted from the document.",
    ErrorKind.INSUFFICIENT_CONTENT:   "The document does not contain enough readable content.",
    ErrorKind.EXTERNAL_SERVICE_ERROR: "An external service required for processing is unavailable.",
    ErrorKind.DEPENDENCY_ERROR:       "A required component for processing is not available.",
    ErrorKind.JOB_NOT_FOUND:          "Job not found or access denied",
    ErrorKind.INVALID_JOB_STATE:      "The job cannot be changed in its current state.",
}

FALLBACK_USER_MESSAGE = "An unexpected error occurred while processing the document."


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ProcessingError(Exception):
    """
    Unified processing failure.

    Created at the point of failure and either raised to the caller (direct
    path) or serialised with to_dict() into ProcessingJob.error (async path).
    """

    def __init__(
        self,
        kind:           ErrorKind,
        message:        str,
        *,
        user_message:   str | None = None,
        stage:          ProcessingStage = ProcessingStage.PARSING,
        recoverable:    bool = False,
        original_cause: BaseException | None = None,
        file_name:      str | None = None,
        file_type:      str | None = None,
        timestamp:      str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind           = kind
        self.message        = message
        self.user_message   = user_message or _DEFAULT_USER_MESSAGES.get(kind, FALLBACK_USER_MESSAGE)
        self.stage          = stage
        self.recoverable    = recoverable
        self.original_cause = original_cause
        self.file_name      = file_name
        self.file_type      = file_type
        self.timestamp      = timestamp or datetime.now(timezone.utc).isoformat()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, stage={self.stage.value}, message={self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form stored in the job row and sent in webhook payloads."""
        data: dict[str, Any] = {
            "name":        type(self).__name__,
            "kind":        self.kind.value,
            "message":     self.message,
            "userMessage": self.user_message,
            "fileName":    self.file_name,
            "fileType":    self.file_type,
            "stage":       self.stage.value,
            "recoverable": self.recoverable,
            "timestamp":   self.timestamp,
        }
        if self.original_cause is not None:
            data["originalError"] = {
                "name":    type(self.original_cause).__name__,
                "message": str(self.original_cause),
            }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProcessingError":
        """Rehydrate an error previously stored with to_dict()."""
        try:
            kind = ErrorKind(data.get("kind", ErrorKind.PARSING_FAILED.value))
        except ValueError:
            kind = ErrorKind.PARSING_FAILED
        try:
            stage = ProcessingStage(data.get("stage", ProcessingStage.PARSING.value))
        except ValueError:
            stage = ProcessingStage.PARSING
        return cls(
            kind,
            data.get("message", ""),
            user_message=data.get("userMessage"),
            stage=stage,
            recoverable=bool(data.get("recoverable", False)),
            file_name=data.get("fileName"),
            file_type=data.get("fileType"),
            timestamp=data.get("timestamp"),
        )


class JobNotFoundError(ProcessingError):
    """Job does not exist or belongs to another user (never distinguished)."""

    def __init__(self, job_id: str) -> None:
        super().__init__(
            ErrorKind.JOB_NOT_FOUND,
            f"Job {job_id} not found or access denied",
            stage=ProcessingStage.FINALIZATION,
        )
        self.job_id = job_id


class InvalidJobStateError(ProcessingError):
    """Requested transition is not legal from the job's current status."""

    def __init__(self, job_id: str, status: str, user_message: str) -> None:
        super().__init__(
            ErrorKind.INVALID_JOB_STATE,
            f"Job {job_id} is in status '{status}'",
            user_message=user_message,
            stage=ProcessingStage.FINALIZATION,
        )
        self.job_id = job_id
        self.status = status


# ---------------------------------------------------------------------------
# Library error mapping
# Library exceptions are matched by class name so the mappers never need to
# import PyMuPDF / python-docx / lxml themselves.
# ---------------------------------------------------------------------------

_CORRUPTION_EXCEPTION_TYPES = (
    # PyMuPDF
    "FileDataError",
    "EmptyFileError",
    # zipfile / python-docx
    "BadZipFile",
    "PackageNotFoundError",
    # lxml
    "XMLSyntaxError",
)


def _is_corruption(exc: BaseException) -> bool:
    name = type(exc).__name__
    return any(name.endswith(c) for c in _CORRUPTION_EXCEPTION_TYPES)


def map_pdf_error(exc: BaseException, file_name: str | None = None) -> ProcessingError:
    """Translate a PyMuPDF / PDF extractor failure into a ProcessingError."""
    if isinstance(exc, ProcessingError):
        return exc
    if isinstance(exc, MemoryError):
        return ProcessingError(
            ErrorKind.MEMORY_LIMIT_EXCEEDED, "PDF processing exceeded memory limits",
            file_name=file_name, file_type=PDF_MIME, original_cause=exc,
            recoverable=True,
        )
    if _is_corruption(exc):
        return ProcessingError(
            ErrorKind.CORRUPTED_FILE, f"PDF could not be opened: {exc}",
            file_name=file_name, file_type=PDF_MIME, original_cause=exc,
        )
    return ProcessingError(
        ErrorKind.PARSING_FAILED, "PDF processing failed",
        file_name=file_name, file_type=PDF_MIME, original_cause=exc,
    )


def map_docx_error(exc: BaseException, file_name: str | None = None) -> ProcessingError:
    """Translate a mammoth / python-docx failure into a ProcessingError."""
    if isinstance(exc, ProcessingError):
        return exc
    if _is_corruption(exc) or isinstance(exc, KeyError):
        # KeyError: archive opened but word/document.xml is missing
        return ProcessingError(
            ErrorKind.CORRUPTED_FILE, f"DOCX container could not be read: {exc}",
            file_name=file_name, file_type=DOCX_MIME, original_cause=exc,
        )
    return ProcessingError(
        ErrorKind.PARSING_FAILED, "DOCX processing failed",
        file_name=file_name, file_type=DOCX_MIME, original_cause=exc,
    )


def map_generic_error(
    exc:       BaseException,
    file_name: str | None = None,
    file_type: str | None = None,
) -> ProcessingError:
    """Message heuristics for anything that is not library-specific."""
    if isinstance(exc, ProcessingError):
        return exc

    text = str(exc).lower()
    if isinstance(exc, MemoryError) or "out of memory" in text or "heap" in text:
        return ProcessingError(
            ErrorKind.MEMORY_LIMIT_EXCEEDED, "Processing exceeded memory limits",
            file_name=file_name, file_type=file_type, original_cause=exc,
            recoverable=True,
        )
    if isinstance(exc, TimeoutError) or any(t in text for t in ("timeout", "time out", "timed out")):
        return ProcessingError(
            ErrorKind.PROCESSING_TIMEOUT, "Processing timed out",
            file_name=file_name, file_type=file_type, original_cause=exc,
            recoverable=True,
        )
    if isinstance(exc, PermissionError) or "permission" in text or "access denied" in text:
        return ProcessingError(
            ErrorKind.PASSWORD_PROTECTED, "File access denied or password protected",
            file_name=file_name, file_type=file_type, original_cause=exc,
            stage=ProcessingStage.VALIDATION,
        )
    return ProcessingError(
        ErrorKind.PARSING_FAILED, "Unknown processing error",
        file_name=file_name, file_type=file_type, original_cause=exc,
    )


# ---------------------------------------------------------------------------
# Retry / logging policy
# ---------------------------------------------------------------------------

_RETRYABLE_KINDS = frozenset({
    ErrorKind.PROCESSING_TIMEOUT,
    ErrorKind.WORKER_OVERLOADED,
    ErrorKind.EXTERNAL_SERVICE_ERROR,
})

_USER_CAUSED_KINDS = frozenset({
    ErrorKind.FILE_TOO_LARGE,
    ErrorKind.INVALID_FILE_FORMAT,
    ErrorKind.PASSWORD_PROTECTED,
    ErrorKind.UNSUPPORTED_FORMAT,
})


def should_retry(err: ProcessingError) -> bool:
    return err.kind in _RETRYABLE_KINDS


def get_retry_delay(attempt: int) -> int:
    """Exponential backoff in milliseconds: 1s, 2s, 4s, 8s, capped at 16s."""
    return min(1000 * 2 ** (max(attempt, 1) - 1), 16000)


def should_log_error(err: ProcessingError) -> bool:
    """User-caused validation failures are expected and not logged as errors."""
    return err.kind not in _USER_CAUSED_KINDS


def log_processing_error(err: ProcessingError, context: str) -> None:
    if should_log_error(err):
        logger.error(
            "%s | kind=%s stage=%s file=%s message=%s",
            context, err.kind.value, err.stage.value, err.file_name, err.message,
            exc_info=err.original_cause,
        )
    else:
        logger.info(
            "%s | rejected kind=%s file=%s", context, err.kind.value, err.file_name,
        )


def create_error_response(err: ProcessingError) -> dict[str, Any]:
    return {
        "success": False,
        "error": {
            "type":        err.kind.value,
            "message":     err.user_message,
            "details":     err.message,
            "recoverable": err.recoverable,
            "fileName":    err.file_name,
            "stage":       err.stage.value,
            "timestamp":   err.timestamp,
        },
    }


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

_DANGEROUS_NAME_RE = re.compile(r'\.\.|[<>:"|?*]')


class FileValidator:
    """Stateless checks run before any extractor touches the buffer."""

    @staticmethod
    def validate_file_size(file_size: int, max_size: int) -> None:
        if file_size > max_size:
            raise ProcessingError(
                ErrorKind.FILE_TOO_LARGE,
                f"File size {file_size} exceeds maximum allowed size {max_size}",
                stage=ProcessingStage.VALIDATION,
                recoverable=True,
                user_message=(
                    f"File is too large. Maximum size allowed is "
                    f"{round(max_size / 1024 / 1024)}MB."
                ),
            )

    @staticmethod
    def validate_file_type(mime_type: str, supported_types: list[str] | tuple[str, ...]) -> None:
        if mime_type not in supported_types:
            raise ProcessingError(
                ErrorKind.UNSUPPORTED_FORMAT,
                f"File type {mime_type} is not supported",
                stage=ProcessingStage.VALIDATION,
                user_message=f"File type not supported. Supported formats: {', '.join(supported_types)}",
            )

    @staticmethod
    def validate_file_name(file_name: str | None) -> None:
        if not file_name or not file_name.strip():
            raise ProcessingError(
                ErrorKind.INVALID_FILE_FORMAT,
                "Invalid or missing file name",
                stage=ProcessingStage.VALIDATION,
                user_message="Please provide a valid file name.",
            )
        if _DANGEROUS_NAME_RE.search(file_name):
            raise ProcessingError(
                ErrorKind.INVALID_FILE_FORMAT,
                "File name contains invalid characters",
                stage=ProcessingStage.VALIDATION,
                user_message="File name contains invalid characters.",
                file_name=file_name,
            )
