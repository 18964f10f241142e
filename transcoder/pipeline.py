"""Audio HLS Transcoder - Transcode pipeline.

Drives one job through its stages, persisting a (percentage, stage)
checkpoint around every blocking step:

    queued      0    written by the producer; probe runs here
    converting  5    before convert
    converting  30   after convert output verified
    segmenting  40   before segment
    publishing  80   after segment output verified
    completed   100  after add_directory + pin, with content_address
    failed      --   last persisted percentage, error_code set

Rules:
- Percentages never decrease for a job.
- No external call is retried.
- If add_directory succeeded but pin (or the completed write) fails, the
  address is unpinned before the job is marked failed.
- ffprobe runs at most once per job (JobContext memoizes it).
- The job's scratch directory is removed on every exit path.
- A StoreError aborts the job but never escapes run().

Failpoints:
- PIPELINE_AFTER_CONVERTING_CHECKPOINT: After (5, converting) is persisted
- PIPELINE_AFTER_SEGMENTING_CHECKPOINT: After (40, segmenting) is persisted
- PIPELINE_BEFORE_PIN: After add_directory, before pin
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from transcoder.config import (
    CONVERT_TIMEOUT_SECONDS,
    HLS_BASE_URL,
    MAX_AUDIO_DURATION_SECONDS,
    PROBE_TIMEOUT_SECONDS,
    PUBLISH_ORIGINAL,
    RETAIN_ORIGINAL,
    SCRATCH_DIR,
    SEGMENT_TIMEOUT_SECONDS,
)
from transcoder.encoder import ProbeResult
from transcoder.errors import (
    EncoderError,
    ErrorCode,
    JobCancelledError,
    PublishError,
    StoreError,
    TranscoderError,
)
from transcoder.schemas import Stage, StatusRecord
from transcoder.scratch import JobPaths, job_paths, job_scratch, list_job_dirs, remove_job_dir
from transcoder.utils.atomic_io import atomic_copy_file, cleanup_orphan_temp_files
from transcoder.utils.failpoints import maybe_fail

if TYPE_CHECKING:
    from transcoder.encoder import EncoderGateway
    from transcoder.publisher import ContentPublisher
    from transcoder.status_store import StatusStore

logger = logging.getLogger(__name__)

# Checkpoints (percentage, stage)
CHECKPOINT_CONVERT_START = (5, Stage.CONVERTING)
CHECKPOINT_CONVERT_DONE = (30, Stage.CONVERTING)
CHECKPOINT_SEGMENT_START = (40, Stage.SEGMENTING)
CHECKPOINT_SEGMENT_DONE = (80, Stage.PUBLISHING)

PUBLISHED_ORIGINAL_STEM = "original"


# --- Job Types ---


@dataclass(frozen=True)
class TranscodeJob:
    """An admitted unit of work. Immutable once enqueued."""

    id: str
    source_path: Path
    original_filename: str | None = None

    @property
    def display_name(self) -> str:
        return self.original_filename or self.source_path.name


@dataclass
class PipelineResult:
    """Outcome of one pipeline run."""

    job_id: str
    ok: bool
    stage: Stage
    percentage: int
    content_address: str | None = None
    error_code: str | None = None
    message: str | None = None
    # False if the terminal status could not be persisted
    reported: bool = True
    duration_sec: float | None = None
    elapsed_ms: int = 0


class JobContext:
    """Per-run state for one job: scratch paths, cancellation, memoized probe."""

    def __init__(
        self,
        job: TranscodeJob,
        paths: JobPaths,
        encoder: EncoderGateway,
        cancel_event: threading.Event | None = None,
        probe_timeout_s: float | None = None,
    ):
        self.job = job
        self.paths = paths
        self.cancel_event = cancel_event
        self._encoder = encoder
        self._probe_timeout_s = probe_timeout_s
        self._probe: ProbeResult | None = None

    def probe(self) -> ProbeResult:
        """Probe the source once; later calls return the cached result."""
        if self._probe is None:
            self._probe = self._encoder.probe(
                self.job.source_path,
                timeout_s=self._probe_timeout_s,
                cancel_event=self.cancel_event,
            )
        return self._probe

    def get_duration(self) -> float:
        return self.probe().duration

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise JobCancelledError(self.job.id)


class _StatusTracker:
    """Writes checkpoints for one job and remembers the last persisted record.

    Once duration_sec is known it is carried on every later record.
    """

    def __init__(self, store: StatusStore, job_id: str):
        self._store = store
        self.current = StatusRecord.queued(job_id)
        self.duration_sec: float | None = None

    def checkpoint(
        self, percentage: int, stage: Stage, content_address: str | None = None
    ) -> None:
        if percentage < self.current.percentage:
            raise ValueError(
                f"percentage would decrease for {self.current.id}: "
                f"{self.current.percentage} -> {percentage}"
            )
        record = StatusRecord(
            id=self.current.id,
            percentage=percentage,
            stage=stage,
            content_address=content_address,
            duration_sec=self.duration_sec,
        )
        self._store.set(record)
        self.current = record

    def fail(self, error_code: str) -> None:
        record = StatusRecord(
            id=self.current.id,
            percentage=self.current.percentage,
            stage=Stage.FAILED,
            error_code=error_code,
            duration_sec=self.duration_sec,
        )
        self._store.set(record)
        self.current = record


# --- Pipeline ---


class TranscodePipeline:
    """Single-job state machine over injected store, encoder and publisher.

    Args:
        store: Status store receiving every checkpoint.
        encoder: ffprobe/ffmpeg gateway.
        publisher: Content-addressed store adapter.
        scratch_root: Parent of per-job scratch directories.
        hls_base_url: Segment URI prefix written into playlists ("" for none).
        publish_original: Include the original upload in the published directory.
        retain_original: Keep the scratch original/ directory after the job.
        max_duration_sec: Longest accepted source duration.
    """

    def __init__(
        self,
        store: StatusStore,
        encoder: EncoderGateway,
        publisher: ContentPublisher,
        *,
        scratch_root: str | Path = SCRATCH_DIR,
        hls_base_url: str = HLS_BASE_URL,
        publish_original: bool = PUBLISH_ORIGINAL,
        retain_original: bool = RETAIN_ORIGINAL,
        max_duration_sec: float = MAX_AUDIO_DURATION_SECONDS,
        probe_timeout_s: float = PROBE_TIMEOUT_SECONDS,
        convert_timeout_s: float = CONVERT_TIMEOUT_SECONDS,
        segment_timeout_s: float = SEGMENT_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.encoder = encoder
        self.publisher = publisher
        self.scratch_root = Path(scratch_root)
        self.hls_base_url = hls_base_url
        self.publish_original = publish_original
        self.retain_original = retain_original
        self.max_duration_sec = max_duration_sec
        self.probe_timeout_s = probe_timeout_s
        self.convert_timeout_s = convert_timeout_s
        self.segment_timeout_s = segment_timeout_s

    def run(
        self, job: TranscodeJob, cancel_event: threading.Event | None = None
    ) -> PipelineResult:
        """Run job to a terminal state.

        Never raises for job-level failures: encoder, publisher, store and
        filesystem errors all end in a failed result (and, when the store is
        reachable, a failed status record).
        """
        start_time = time.monotonic()
        tracker = _StatusTracker(self.store, job.id)
        logger.info("Transcode start job_id=%s source=%s", job.id, job.display_name)

        try:
            with job_scratch(self.scratch_root, job.id, self.retain_original) as paths:
                ctx = JobContext(job, paths, self.encoder, cancel_event, self.probe_timeout_s)
                address = self._execute(ctx, tracker)
        except StoreError as e:
            logger.error("failed-to-report job_id=%s: %s", job.id, e.message)
            reported = self._record_failure(tracker, e.error_code)
            return self._result(tracker, start_time, e, reported=reported)
        except TranscoderError as e:
            logger.warning(
                "Transcode failed job_id=%s stage=%s percentage=%d: %s",
                job.id,
                tracker.current.stage,
                tracker.current.percentage,
                e.message,
            )
            if isinstance(e, EncoderError) and e.stderr:
                logger.debug("encoder stderr job_id=%s:\n%s", job.id, e.stderr)
            reported = self._record_failure(tracker, e.error_code)
            return self._result(tracker, start_time, e, reported=reported)
        except OSError as e:
            logger.error("Scratch I/O failed job_id=%s: %s", job.id, e)
            reported = self._record_failure(tracker, ErrorCode.SCRATCH_IO_FAILED)
            error = TranscoderError(ErrorCode.SCRATCH_IO_FAILED, str(e))
            return self._result(tracker, start_time, error, reported=reported)
        except Exception as e:
            logger.exception("Unexpected error job_id=%s", job.id)
            reported = self._record_failure(tracker, ErrorCode.WORKER_ERROR)
            error = TranscoderError(ErrorCode.WORKER_ERROR, str(e))
            return self._result(tracker, start_time, error, reported=reported)

        result = self._result(tracker, start_time)
        result.content_address = address
        logger.info(
            "Transcode completed job_id=%s address=%s in %dms",
            job.id,
            address,
            result.elapsed_ms,
        )
        return result

    # --- Stages ---

    def _execute(self, ctx: JobContext, tracker: _StatusTracker) -> str:
        job = ctx.job

        # queued: probe once, reject unusable sources at 0%
        probe = ctx.probe()
        tracker.duration_sec = ctx.get_duration()
        if probe.duration > self.max_duration_sec:
            raise EncoderError(
                ErrorCode.DURATION_EXCEEDED,
                f"duration {probe.duration:.1f}s exceeds limit {self.max_duration_sec:g}s",
            )
        logger.info(
            "Probed job_id=%s format=%s streams=%d duration=%.2fs",
            job.id,
            probe.container_format,
            probe.stream_count,
            probe.duration,
        )

        # converting
        tracker.checkpoint(*CHECKPOINT_CONVERT_START)
        maybe_fail("PIPELINE_AFTER_CONVERTING_CHECKPOINT")
        self.encoder.convert(
            job.source_path,
            ctx.paths.converted_file,
            timeout_s=self.convert_timeout_s,
            cancel_event=ctx.cancel_event,
        )
        tracker.checkpoint(*CHECKPOINT_CONVERT_DONE)

        # segmenting
        ctx.check_cancelled()
        tracker.checkpoint(*CHECKPOINT_SEGMENT_START)
        maybe_fail("PIPELINE_AFTER_SEGMENTING_CHECKPOINT")
        segments = self.encoder.segment(
            ctx.paths.converted_file,
            ctx.paths.hls_dir,
            base_url=self.hls_base_url,
            timeout_s=self.segment_timeout_s,
            cancel_event=ctx.cancel_event,
        )
        tracker.checkpoint(*CHECKPOINT_SEGMENT_DONE)
        logger.info(
            "Segmented job_id=%s into %d segments", job.id, len(segments.segment_paths)
        )

        # publishing
        ctx.check_cancelled()
        if self.publish_original:
            suffix = Path(job.display_name).suffix or job.source_path.suffix
            atomic_copy_file(
                job.source_path, ctx.paths.hls_dir / f"{PUBLISHED_ORIGINAL_STEM}{suffix}"
            )
        return self._publish(ctx, tracker)

    def _publish(self, ctx: JobContext, tracker: _StatusTracker) -> str:
        job_id = ctx.job.id
        address = self.publisher.add_directory(ctx.paths.hls_dir)
        maybe_fail("PIPELINE_BEFORE_PIN")

        try:
            self.publisher.pin(address)
        except PublishError:
            self._rollback(job_id, address)
            raise

        try:
            tracker.checkpoint(100, Stage.COMPLETED, content_address=address)
        except StoreError:
            # Completed state never became visible; do not leave content pinned
            self._rollback(job_id, address)
            raise
        return address

    def _rollback(self, job_id: str, address: str) -> None:
        """Unpin address. Errors are logged; the original failure wins."""
        try:
            self.publisher.unpin(address)
            logger.info("Rolled back pin job_id=%s address=%s", job_id, address)
        except PublishError as e:
            logger.error(
                "Rollback unpin failed job_id=%s address=%s: %s", job_id, address, e.message
            )

    # --- Results ---

    def _record_failure(self, tracker: _StatusTracker, error_code: str) -> bool:
        """Persist the failed state (best-effort). Returns True if written."""
        try:
            tracker.fail(error_code)
            return True
        except StoreError as e:
            logger.error(
                "failed-to-report job_id=%s error_code=%s: %s",
                tracker.current.id,
                error_code,
                e.message,
            )
            return False

    @staticmethod
    def _result(
        tracker: _StatusTracker,
        start_time: float,
        error: TranscoderError | None = None,
        reported: bool = True,
    ) -> PipelineResult:
        record = tracker.current
        return PipelineResult(
            job_id=record.id,
            ok=error is None,
            stage=record.stage,
            percentage=record.percentage,
            content_address=record.content_address,
            error_code=error.error_code if error is not None else None,
            message=error.message if error is not None else None,
            reported=reported,
            duration_sec=tracker.duration_sec,
            elapsed_ms=int((time.monotonic() - start_time) * 1000),
        )


# --- Startup Recovery ---


def fail_interrupted_jobs(
    store: StatusStore,
    scratch_root: str | Path = SCRATCH_DIR,
    retain_original: bool = RETAIN_ORIGINAL,
) -> int:
    """Mark jobs left non-terminal by a previous process as failed.

    At process start no job is running, so every queued/converting/
    segmenting/publishing record belongs to a job that will never finish.
    Each is marked failed (INTERRUPTED) at its last percentage and its
    scratch directory is removed (original/ survives when retain_original is
    set, as it would after a normal run). Directories with no record at all
    are removed entirely.

    Returns:
        Number of jobs marked failed.

    Raises:
        StoreError: If the store cannot be scanned or written.
    """
    scratch_root = Path(scratch_root)
    interrupted = store.list_unfinished()
    for record in interrupted:
        store.set(
            StatusRecord(
                id=record.id,
                percentage=record.percentage,
                stage=Stage.FAILED,
                error_code=ErrorCode.INTERRUPTED,
                duration_sec=record.duration_sec,
            )
        )
        try:
            remove_job_dir(job_paths(scratch_root, record.id), keep_original=retain_original)
        except ValueError:
            logger.warning("Skipping scratch cleanup for unusable job id %r", record.id)
        logger.warning(
            "Marked interrupted job failed job_id=%s stage=%s percentage=%d",
            record.id,
            record.stage,
            record.percentage,
        )

    # Directories with no status record: crash between storing the upload
    # and writing the initial record
    orphans = 0
    for job_id in list_job_dirs(scratch_root):
        if store.get(job_id) is None:
            remove_job_dir(job_paths(scratch_root, job_id))
            orphans += 1

    cleaned = cleanup_orphan_temp_files(scratch_root)
    if interrupted or orphans or cleaned:
        logger.info(
            "Startup recovery: %d interrupted jobs, %d orphan directories, %d orphan temp files",
            len(interrupted),
            orphans,
            cleaned,
        )
    return len(interrupted)
