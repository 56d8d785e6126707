from __future__ import annotations

"""Abstract job store interface.

The store is the single source of truth for job records. The scheduler and
the API never hold their own copies: every externally visible mutation goes
through ``update``.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, List, Optional

if TYPE_CHECKING:
    from .models import Job


class JobStore(ABC):
    """Durable job table.

    Implementations must provide:
    - Field-level merge on update (never wholesale replacement)
    - Coalesced persistence so progress ticks don't each hit the disk
    - Crash recovery on load: no in-flight job survives a restart
    """

    @abstractmethod
    def load(self) -> int:
        """Load persisted jobs and fail any that were in flight.

        Returns:
            Count of jobs rewritten to ``failed``
        """

    @abstractmethod
    def create(self, job: "Job") -> None:
        """Insert a new job record."""

    @abstractmethod
    def update(self, job_id: str, **fields: Any) -> Optional["Job"]:
        """Merge ``fields`` into the job and schedule a persist.

        Returns:
            The updated job, or None if the id is unknown (updates never
            resurrect a cleared job)
        """

    @abstractmethod
    def get(self, job_id: str) -> Optional["Job"]:
        """Return the job, or None if not found."""

    @abstractmethod
    def list(self) -> List["Job"]:
        """All jobs in creation order."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every in-memory record and any pending persist."""

    @abstractmethod
    def flush(self) -> None:
        """Write pending changes immediately."""
