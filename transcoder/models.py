"""Audio HLS Transcoder - SQLAlchemy ORM models.

Database tables:
1. transcode_status (one row per job, keyed by job_id)
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, Float, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class TranscodeStatus(Base):
    """Persisted progress of one transcode job.

    Written only by the producer (initial row) and the worker driving the job.
    Never deleted by the application.
    """

    __tablename__ = "transcode_status"

    # Job identifier is the key
    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Progress checkpoint (0..100, non-decreasing per job)
    percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="queued")

    # Source duration, set once the source has been probed
    duration_sec: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Set only on the completed transition
    content_address: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Set only on the failed transition
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_status_stage", "stage"),)
