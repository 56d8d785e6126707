"""Pydantic models for render jobs.

Jobs serialize with camelCase keys (``jobId``, ``outputUrl``) because the
same records are persisted to ``jobs.json`` and returned verbatim by the API.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..composition import BgmMode

CANCELLED_MESSAGE = "Render cancelled by user."
RESTARTED_MESSAGE = "Render server restarted before completion."


class JobStatus(str, Enum):
    """Render job states.

    State transitions:
        queued → normalizing      (render slot claimed)
        normalizing → rendering   (all inputs resolved)
        rendering → completed     (output written)
        queued → cancelled        (cancelled before start)
        normalizing|rendering → cancelling → cancelled
        * → failed                (toolchain/engine error, or server restart)
    """

    QUEUED = "queued"
    NORMALIZING = "normalizing"
    RENDERING = "rendering"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(
    {JobStatus.QUEUED, JobStatus.NORMALIZING, JobStatus.RENDERING, JobStatus.CANCELLING}
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MediaRef(_CamelModel):
    """An uploaded clip referenced by a job."""

    path: str = Field(..., description="Path of the upload on disk")
    duration: float = Field(default=0.0, ge=0.0, description="Declared duration in seconds")
    asset_id: Optional[str] = Field(default=None, description="Owning asset in the UI library")


class BgmSpec(_CamelModel):
    """Background music placement as submitted; gain is resolved when the job runs."""

    path: str
    asset_id: Optional[str] = None
    start_time: float = Field(default=0.0, ge=0.0, description="Offset into the target span (s)")
    play_length: float = Field(default=0.0, ge=0.0, description="Requested play length (s)")
    volume_db: Optional[float] = Field(default=None, description="Gain in dB (preferred)")
    volume: Optional[float] = Field(default=None, ge=0.0, description="Linear gain fallback")
    mode: BgmMode = Field(default=BgmMode.FULL)
    loop: bool = False


class Job(_CamelModel):
    """Canonical job record owned by the job store."""

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    name: str = Field(..., description="Sanitized display/output name")
    output_path: str = Field(..., description="Where the MP4 is written")
    export_quality: str = Field(default="1080p")
    video1: Optional[MediaRef] = None
    video2: Optional[MediaRef] = None
    bgm: Optional[BgmSpec] = None
    status: JobStatus = Field(default=JobStatus.QUEUED)
    progress: int = Field(default=0, ge=0, le=100)
    error: Optional[str] = None
    output_url: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def to_record(self) -> dict:
        """JSON-safe camelCase dict, as persisted and served."""
        return self.model_dump(mode="json", by_alias=True)
