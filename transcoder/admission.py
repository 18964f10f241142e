"""Audio HLS Transcoder - Admission queue and transcode worker.

The admission queue is a single slot. It is occupied from the moment a job
is placed until the worker reports the job's terminal checkpoint through
task_done(), so at most one job is ever pending or in flight.

Producers calling enqueue() while the slot is occupied block, and are
admitted in arrival order. close() releases every waiting producer with
QueueClosedError.

TranscodeWorker is the one consumer: a thread that takes a job, runs the
pipeline, frees the slot and loops until the queue is closed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING

from transcoder.errors import AdmissionTimeoutError, QueueClosedError

if TYPE_CHECKING:
    from transcoder.pipeline import PipelineResult, TranscodeJob, TranscodePipeline

logger = logging.getLogger(__name__)


class AdmissionQueue:
    """Bounded FIFO gate with capacity exactly one."""

    def __init__(self):
        self._cond = threading.Condition()
        self._waiters: deque[object] = deque()
        self._job: TranscodeJob | None = None
        self._busy = False
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def in_flight(self) -> bool:
        """True while a job is placed or being processed."""
        with self._cond:
            return self._busy

    @property
    def waiting(self) -> int:
        """Number of producers blocked in enqueue()."""
        with self._cond:
            return len(self._waiters)

    def enqueue(self, job: TranscodeJob, timeout: float | None = None) -> None:
        """Place job in the slot, blocking until it is free and it is our turn.

        Args:
            job: The job to admit.
            timeout: Seconds to wait before giving up (None waits forever).

        Raises:
            QueueClosedError: The queue was closed before the job was placed.
            AdmissionTimeoutError: timeout expired first. Nothing was placed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        token = object()
        with self._cond:
            if self._closed:
                raise QueueClosedError()
            self._waiters.append(token)
            try:
                while True:
                    if self._closed:
                        raise QueueClosedError()
                    if not self._busy and self._waiters[0] is token:
                        break
                    if deadline is None:
                        self._cond.wait()
                    else:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            raise AdmissionTimeoutError(timeout)
                        self._cond.wait(remaining)
                self._busy = True
                self._job = job
            finally:
                self._waiters.remove(token)
                self._cond.notify_all()
        logger.info("Admitted job_id=%s", job.id)

    def get(self, timeout: float | None = None) -> TranscodeJob | None:
        """Take the placed job (worker side).

        A job placed before close() is still handed out.

        Returns:
            The job, or None if the queue is closed and empty, or on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._job is None:
                if self._closed:
                    return None
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._cond.wait(remaining)
            job, self._job = self._job, None
            return job

    def task_done(self) -> None:
        """Free the slot after the taken job reached a terminal state."""
        with self._cond:
            if not self._busy:
                raise RuntimeError("task_done() called with no job in flight")
            self._busy = False
            self._cond.notify_all()

    def close(self) -> None:
        """Reject waiting and future producers. Idempotent."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            pending = len(self._waiters)
            self._cond.notify_all()
        logger.info("Admission queue closed (%d waiting producers released)", pending)


class TranscodeWorker:
    """Single consumer thread draining an AdmissionQueue into a pipeline.

    Args:
        queue: The admission queue to drain.
        pipeline: Pipeline used for every job.
        on_result: Optional callback invoked with each PipelineResult.
    """

    def __init__(
        self,
        queue: AdmissionQueue,
        pipeline: TranscodePipeline,
        on_result: Callable[[PipelineResult], None] | None = None,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.on_result = on_result
        self.cancel_event = threading.Event()
        self.processed = 0
        self._thread = threading.Thread(target=self._loop, name="transcode-worker", daemon=True)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()
        logger.info("Transcode worker started")

    def _loop(self) -> None:
        while True:
            job = self.queue.get()
            if job is None:
                break
            try:
                result = self.pipeline.run(job, cancel_event=self.cancel_event)
                if self.on_result is not None:
                    self.on_result(result)
            except Exception:
                # Keep draining: one bad job must not stop the worker
                logger.exception("Worker error job_id=%s", job.id)
            finally:
                self.processed += 1
                self.queue.task_done()
        logger.info("Transcode worker stopped after %d jobs", self.processed)

    def stop(self, cancel: bool = False, timeout: float | None = None) -> None:
        """Close the queue and wait for the worker thread to exit.

        Args:
            cancel: Also kill the running job's subprocess (job ends failed).
            timeout: Seconds to wait for the thread.
        """
        self.queue.close()
        if cancel:
            self.cancel_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout)
