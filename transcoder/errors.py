"""Audio HLS Transcoder - Error taxonomy.

Every error carries a short machine-readable error_code (persisted on failed
status records and returned by the API) and a human-readable message.
Diagnostics such as subprocess stderr stay on the exception for logging and
are never copied into status records.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Error codes for all stages."""

    # Admission validation
    UNSUPPORTED_CONTENT_TYPE = "UNSUPPORTED_CONTENT_TYPE"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    EMPTY_FILE = "EMPTY_FILE"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"

    # Encoder
    ENCODER_FAILED = "ENCODER_FAILED"
    ENCODER_TIMEOUT = "ENCODER_TIMEOUT"
    ENCODER_CANCELLED = "ENCODER_CANCELLED"
    ENCODER_NOT_FOUND = "ENCODER_NOT_FOUND"
    PROBE_UNPARSEABLE = "PROBE_UNPARSEABLE"
    OUTPUT_MISSING = "OUTPUT_MISSING"
    DURATION_EXCEEDED = "DURATION_EXCEEDED"

    # Publisher
    PUBLISH_FAILED = "PUBLISH_FAILED"
    PIN_FAILED = "PIN_FAILED"

    # Status store
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"

    # Admission queue
    QUEUE_CLOSED = "QUEUE_CLOSED"
    ADMISSION_TIMEOUT = "ADMISSION_TIMEOUT"

    # Pipeline
    CANCELLED = "CANCELLED"
    SCRATCH_IO_FAILED = "SCRATCH_IO_FAILED"
    INTERRUPTED = "INTERRUPTED"
    WORKER_ERROR = "WORKER_ERROR"


class TranscoderError(Exception):
    """Base exception for transcoder errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class ValidationError(TranscoderError):
    """Upload rejected before any job exists (content type, missing file)."""


class EncoderError(TranscoderError):
    """ffmpeg/ffprobe failed, timed out, was cancelled, or produced no output.

    Attributes:
        returncode: Subprocess exit code, or None if it never ran to completion.
        stderr: Tail of the captured stderr, for logs only.
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        returncode: int | None = None,
        stderr: str = "",
    ):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(error_code, message)


class PublishError(TranscoderError):
    """Content-addressed store call failed (transport, HTTP status, bad body)."""

    def __init__(self, message: str, error_code: str = ErrorCode.PUBLISH_FAILED):
        super().__init__(error_code, message)


class StoreError(TranscoderError):
    """Status store unavailable. Retryable; never fatal to the worker."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.STORE_UNAVAILABLE, message)


class JobCancelledError(TranscoderError):
    """Job stopped between stages because shutdown was requested."""

    def __init__(self, job_id: str):
        super().__init__(ErrorCode.CANCELLED, f"job {job_id} cancelled")


class QueueClosedError(TranscoderError):
    """Admission queue was closed before the job could be placed."""

    def __init__(self, message: str = "admission queue is closed"):
        super().__init__(ErrorCode.QUEUE_CLOSED, message)


class AdmissionTimeoutError(TranscoderError):
    """Admission slot did not free up before the caller's deadline."""

    def __init__(self, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(
            ErrorCode.ADMISSION_TIMEOUT,
            f"admission slot not available within {timeout_s:g}s",
        )
