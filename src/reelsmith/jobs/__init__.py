"""Render job records, persistence and scheduling."""

from .backends import JobStore
from .json_store import JsonJobStore
from .models import (
    ACTIVE_STATUSES,
    CANCELLED_MESSAGE,
    RESTARTED_MESSAGE,
    TERMINAL_STATUSES,
    BgmSpec,
    Job,
    JobStatus,
    MediaRef,
)
from .scheduler import CancelRejectedError, JobNotFoundError, RenderController, RenderScheduler

__all__ = [
    "JobStore",
    "JsonJobStore",
    "ACTIVE_STATUSES",
    "CANCELLED_MESSAGE",
    "RESTARTED_MESSAGE",
    "TERMINAL_STATUSES",
    "BgmSpec",
    "Job",
    "JobStatus",
    "MediaRef",
    "CancelRejectedError",
    "JobNotFoundError",
    "RenderController",
    "RenderScheduler",
]
