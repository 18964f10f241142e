"""Audio HLS Transcoder - Pydantic models.

StatusRecord is the in-memory form of a transcode_status row and the body of
status query responses. Request/response models for the API live here too.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Stage(StrEnum):
    """Transcode job stages, in pipeline order."""

    QUEUED = "queued"
    CONVERTING = "converting"
    SEGMENTING = "segmenting"
    PUBLISHING = "publishing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.FAILED)


TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.FAILED})


# --- Status ---


class StatusRecord(BaseModel):
    """Progress record for one job.

    Invariants enforced on construction:
    - percentage in [0, 100]
    - content_address is set iff stage is completed
    - completed implies percentage == 100
    - error_code only on failed records
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1, description="Job identifier")
    percentage: int = Field(..., ge=0, le=100, description="Progress checkpoint")
    stage: Stage = Field(..., description="Current pipeline stage")
    content_address: str | None = Field(
        default=None,
        description="Content address of the published HLS directory (completed only)",
    )
    error_code: str | None = Field(default=None, description="Error code (failed only)")
    duration_sec: float | None = Field(
        default=None, ge=0, description="Source duration in seconds, once probed"
    )

    @model_validator(mode="after")
    def _check_stage_consistency(self) -> StatusRecord:
        if self.stage == Stage.COMPLETED:
            if not self.content_address:
                raise ValueError("completed record requires content_address")
            if self.percentage != 100:
                raise ValueError("completed record must be at 100 percent")
        elif self.content_address is not None:
            raise ValueError(f"content_address not allowed in stage {self.stage}")
        if self.error_code is not None and self.stage != Stage.FAILED:
            raise ValueError(f"error_code not allowed in stage {self.stage}")
        return self

    @classmethod
    def queued(cls, job_id: str) -> StatusRecord:
        """Initial record written before a job is enqueued."""
        return cls(id=job_id, percentage=0, stage=Stage.QUEUED)


# --- Request Models ---


class TranscodeLocalRequest(BaseModel):
    """Request payload for submitting a file already on the server's filesystem."""

    model_config = ConfigDict(extra="forbid")

    source_path: str = Field(
        ...,
        min_length=1,
        description="Absolute path to the local audio file to transcode",
    )
    original_filename: str | None = Field(
        default=None,
        min_length=1,
        description="Override filename (defaults to basename of source_path)",
    )


# --- Response Models ---


class TranscodeAcceptedResponse(BaseModel):
    """Response for an admitted job."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., description="Job identifier")
    stage: Stage = Field(default=Stage.QUEUED, description="Stage at admission time")
    percentage: int = Field(default=0, description="Progress at admission time")
    status_url: str = Field(..., description="Relative URL to poll for status")


class TranscodeErrorResponse(BaseModel):
    """Response for rejected or failed requests."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="Error taxonomy code")
    error_message: str = Field(..., description="Human-readable error description")


__all__ = [
    "Stage",
    "TERMINAL_STAGES",
    "StatusRecord",
    "TranscodeLocalRequest",
    "TranscodeAcceptedResponse",
    "TranscodeErrorResponse",
]
