"""Audio HLS Transcoder - Durable job status store.

Key/value mapping job_id -> StatusRecord on top of the transcode_status table.

Concurrency model:
- One session per operation; sessions are never shared across threads.
- set() is a single-row upsert committed in its own transaction, so a
  concurrent get() sees either the previous or the new record.
- No cross-key transactions.

Any SQLAlchemy failure surfaces as StoreError, which callers treat as a
retryable infrastructure error.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from transcoder.errors import StoreError
from transcoder.models import TranscodeStatus, utc_now
from transcoder.schemas import TERMINAL_STAGES, Stage, StatusRecord

logger = logging.getLogger(__name__)


def _to_record(row: TranscodeStatus) -> StatusRecord:
    return StatusRecord(
        id=row.job_id,
        percentage=row.percentage,
        stage=Stage(row.stage),
        content_address=row.content_address,
        error_code=row.error_code,
        duration_sec=row.duration_sec,
    )


class StatusStore:
    """Durable, per-key atomic status store.

    Args:
        session_factory: sessionmaker from transcoder.db.init_db().
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, job_id: str) -> StatusRecord | None:
        """Return the current record for job_id, or None if unknown.

        Raises:
            StoreError: If the database cannot be read.
        """
        try:
            with self._session_factory() as session:
                row = session.get(TranscodeStatus, job_id)
                if row is None:
                    return None
                return _to_record(row)
        except SQLAlchemyError as e:
            raise StoreError(f"status read failed for {job_id}: {e}") from e

    def set(self, record: StatusRecord) -> None:
        """Atomically replace the record for record.id.

        Creates the row if absent. completed_at is stamped the first time the
        record reaches a terminal stage.

        Raises:
            StoreError: If the write cannot be committed.
        """
        try:
            with self._session_factory() as session, session.begin():
                row = session.get(TranscodeStatus, record.id)
                if row is None:
                    row = TranscodeStatus(job_id=record.id)
                    session.add(row)
                row.percentage = record.percentage
                row.stage = str(record.stage)
                row.content_address = record.content_address
                row.error_code = str(record.error_code) if record.error_code else None
                row.duration_sec = record.duration_sec
                if record.stage in TERMINAL_STAGES and row.completed_at is None:
                    row.completed_at = utc_now()
        except SQLAlchemyError as e:
            raise StoreError(f"status write failed for {record.id}: {e}") from e

        logger.debug(
            "status job_id=%s stage=%s percentage=%d",
            record.id,
            record.stage,
            record.percentage,
        )

    def create(self, job_id: str) -> StatusRecord:
        """Write and return the initial (0, queued) record for a new job."""
        record = StatusRecord.queued(job_id)
        self.set(record)
        return record

    def list_unfinished(self) -> list[StatusRecord]:
        """Return all records whose stage is not terminal, oldest first.

        Raises:
            StoreError: If the database cannot be read.
        """
        terminal = [str(s) for s in TERMINAL_STAGES]
        stmt = (
            select(TranscodeStatus)
            .where(TranscodeStatus.stage.not_in(terminal))
            .order_by(TranscodeStatus.created_at)
        )
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).scalars().all()
                return [_to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"status scan failed: {e}") from e
