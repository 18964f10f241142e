"""Audio HLS Transcoder - Admission service logic.

Producer side of the pipeline:
1. Validate the submission (content type / extension, non-empty file)
2. Store the original atomically in the job's scratch directory
3. Write the initial (0, queued) status record
4. Enqueue the job (blocks while another job is in flight)

Validation failures happen before a job id exists, so nothing is persisted.
If the job cannot be admitted after step 3, its record is marked failed
and its scratch directory removed.

Also builds and owns the process-wide components (TranscodeServices).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import Engine

from transcoder.admission import AdmissionQueue, TranscodeWorker
from transcoder.config import (
    ADMISSION_TIMEOUT_SECONDS,
    ALLOWED_CONTENT_TYPES,
    ALLOWED_EXTENSIONS,
    SCRATCH_DIR,
)
from transcoder.db import init_db
from transcoder.encoder import EncoderGateway
from transcoder.errors import (
    AdmissionTimeoutError,
    ErrorCode,
    QueueClosedError,
    StoreError,
    ValidationError,
)
from transcoder.pipeline import TranscodeJob, TranscodePipeline, fail_interrupted_jobs
from transcoder.publisher import ContentPublisher, create_publisher
from transcoder.schemas import Stage, StatusRecord
from transcoder.scratch import JobPaths, job_paths, remove_job_dir
from transcoder.status_store import StatusStore
from transcoder.utils.atomic_io import atomic_copy_file, atomic_stream_to_file

if TYPE_CHECKING:
    from typing import BinaryIO

logger = logging.getLogger(__name__)

# Seconds to wait for the worker thread on shutdown
WORKER_JOIN_TIMEOUT_SECONDS = 30.0


# --- Process-wide Components ---


@dataclass
class TranscodeServices:
    """Everything the API needs, built once per process."""

    store: StatusStore
    queue: AdmissionQueue
    pipeline: TranscodePipeline
    worker: TranscodeWorker
    publisher: ContentPublisher
    scratch_root: Path
    admission_timeout_s: float | None = ADMISSION_TIMEOUT_SECONDS
    engine: Engine | None = None

    def start(self) -> None:
        """Recover interrupted jobs, then start the worker."""
        try:
            fail_interrupted_jobs(
                self.store, self.scratch_root, retain_original=self.pipeline.retain_original
            )
        except StoreError:
            # Non-fatal: records stay non-terminal until the next restart
            logger.warning("Startup recovery failed (non-fatal)", exc_info=True)
        self.worker.start()

    def shutdown(self) -> None:
        """Release waiting producers, cancel the running job, close clients."""
        self.worker.stop(cancel=True, timeout=WORKER_JOIN_TIMEOUT_SECONDS)
        self.publisher.close()
        if self.engine is not None:
            self.engine.dispose()


def build_services(
    db_path: str | Path | None = None,
    scratch_root: str | Path = SCRATCH_DIR,
    encoder: EncoderGateway | None = None,
    publisher: ContentPublisher | None = None,
    admission_timeout_s: float | None = ADMISSION_TIMEOUT_SECONDS,
    **pipeline_options,
) -> TranscodeServices:
    """Wire store, encoder, publisher, pipeline, queue and worker together.

    Args:
        db_path: Status database path (defaults to config.DB_PATH).
        scratch_root: Parent of per-job scratch directories.
        encoder: Encoder gateway (defaults to one using the configured binaries).
        publisher: Content publisher (defaults to one for config.IPFS_API_URL).
        admission_timeout_s: How long a submission may wait for the slot.
        **pipeline_options: Forwarded to TranscodePipeline.
    """
    engine, SessionFactory = init_db(db_path)
    store = StatusStore(SessionFactory)
    encoder = encoder if encoder is not None else EncoderGateway()
    publisher = publisher if publisher is not None else create_publisher()
    scratch_root = Path(scratch_root)
    scratch_root.mkdir(parents=True, exist_ok=True)

    pipeline = TranscodePipeline(
        store, encoder, publisher, scratch_root=scratch_root, **pipeline_options
    )
    queue = AdmissionQueue()
    worker = TranscodeWorker(queue, pipeline)
    return TranscodeServices(
        store=store,
        queue=queue,
        pipeline=pipeline,
        worker=worker,
        publisher=publisher,
        scratch_root=scratch_root,
        admission_timeout_s=admission_timeout_s,
        engine=engine,
    )


# --- Validation ---


def generate_job_id() -> str:
    """Generate a unique job ID (uuid4 hex, 32 chars)."""
    return uuid.uuid4().hex


def validate_content_type(content_type: str | None) -> None:
    """Reject uploads whose declared content type is not an accepted audio type.

    Parameters after ';' (e.g. charset) are ignored.

    Raises:
        ValidationError: UNSUPPORTED_CONTENT_TYPE.
    """
    base = (content_type or "").split(";", 1)[0].strip().lower()
    if base not in ALLOWED_CONTENT_TYPES:
        raise ValidationError(
            ErrorCode.UNSUPPORTED_CONTENT_TYPE,
            f"Unsupported content type: {content_type or '(none)'}",
        )


def validate_local_source(source_path: Path) -> None:
    """Check that a local submission is a non-empty file with an audio extension.

    Raises:
        ValidationError: FILE_NOT_FOUND, EMPTY_FILE or UNSUPPORTED_CONTENT_TYPE.
    """
    if not source_path.is_file():
        raise ValidationError(ErrorCode.FILE_NOT_FOUND, f"Source file not found: {source_path}")
    ext = source_path.suffix.lstrip(".").lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError(
            ErrorCode.UNSUPPORTED_CONTENT_TYPE, f"Unsupported file extension: .{ext}"
        )
    if source_path.stat().st_size == 0:
        raise ValidationError(ErrorCode.EMPTY_FILE, f"Source file is empty: {source_path}")


# --- Submission ---


def submit_upload(
    services: TranscodeServices,
    stream: BinaryIO,
    filename: str,
    content_type: str | None,
) -> StatusRecord:
    """Admit an uploaded file.

    Returns:
        The initial status record of the admitted job.

    Raises:
        ValidationError: Bad content type or empty upload (nothing persisted).
        StoreError: Initial record could not be written.
        QueueClosedError / AdmissionTimeoutError: Job was not admitted.
    """
    validate_content_type(content_type)

    job_id = generate_job_id()
    paths = job_paths(services.scratch_root, job_id)
    dest_path = paths.original_file(filename)
    try:
        written = atomic_stream_to_file(stream, dest_path)
    except OSError:
        remove_job_dir(paths)
        raise
    if written == 0:
        remove_job_dir(paths)
        raise ValidationError(ErrorCode.EMPTY_FILE, "Uploaded file is empty")

    job = TranscodeJob(id=job_id, source_path=dest_path, original_filename=filename)
    return _admit(services, job, paths)


def submit_local(
    services: TranscodeServices,
    source_path: str | Path,
    original_filename: str | None = None,
) -> StatusRecord:
    """Admit a file that already exists on the server's filesystem.

    The file is copied into the job's scratch directory; the source is never
    modified or removed.
    """
    source_path = Path(source_path)
    validate_local_source(source_path)

    job_id = generate_job_id()
    paths = job_paths(services.scratch_root, job_id)
    effective_filename = original_filename or source_path.name
    dest_path = paths.original_file(effective_filename)
    try:
        atomic_copy_file(source_path, dest_path)
    except OSError:
        remove_job_dir(paths)
        raise

    job = TranscodeJob(id=job_id, source_path=dest_path, original_filename=effective_filename)
    return _admit(services, job, paths)


def _admit(services: TranscodeServices, job: TranscodeJob, paths: JobPaths) -> StatusRecord:
    try:
        record = services.store.create(job.id)
    except StoreError:
        remove_job_dir(paths)
        raise

    try:
        services.queue.enqueue(job, timeout=services.admission_timeout_s)
    except (QueueClosedError, AdmissionTimeoutError) as e:
        logger.warning("Job not admitted job_id=%s: %s", job.id, e.message)
        _mark_not_admitted(services.store, job.id, e.error_code)
        remove_job_dir(paths)
        raise

    logger.info("Queued job_id=%s name=%s", job.id, job.display_name)
    return record


def _mark_not_admitted(store: StatusStore, job_id: str, error_code: str) -> None:
    """Mark a never-admitted job failed at 0 (best-effort)."""
    try:
        store.set(
            StatusRecord(id=job_id, percentage=0, stage=Stage.FAILED, error_code=error_code)
        )
    except StoreError:
        logger.error("failed-to-report job_id=%s error_code=%s", job_id, error_code)
