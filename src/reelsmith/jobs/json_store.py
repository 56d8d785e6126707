"""JSON-file implementation of JobStore.

The whole table is an array of camelCase job records rewritten atomically
(temp file + rename) after a short debounce. Writes run on the event loop;
the file is small and a write per debounce window is cheap.
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .backends import JobStore
from .models import RESTARTED_MESSAGE, Job, JobStatus

logger = logging.getLogger(__name__)


class JsonJobStore(JobStore):
    """In-memory job table persisted to a single JSON file."""

    def __init__(self, jobs_file: Path, debounce_s: float = 0.3):
        self.jobs_file = Path(jobs_file)
        self.debounce_s = debounce_s
        self._jobs: Dict[str, Job] = {}
        self._persist_handle: Optional[asyncio.TimerHandle] = None

    def read_jobs(self) -> List[Job]:
        """Parse ``jobs.json`` as-is, without touching in-memory state.

        A missing file is an empty table. An unreadable file is logged and
        treated as empty; the next persist overwrites it.
        """
        try:
            with open(self.jobs_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load jobs file %s: %s", self.jobs_file, e)
            return []

        if not isinstance(data, list):
            logger.warning("Jobs file %s is not a list; ignoring", self.jobs_file)
            return []

        jobs = []
        for record in data:
            if not isinstance(record, dict) or not record.get("jobId"):
                continue
            try:
                job = Job.model_validate(record)
            except ValidationError as e:
                logger.warning("Skipping unreadable job record %s: %s", record.get("jobId"), e)
                continue
            jobs.append(job)
        return jobs

    def load(self) -> int:
        """Load ``jobs.json`` and fail whatever was mid-flight.

        Returns:
            Number of jobs rewritten to failed
        """
        for job in self.read_jobs():
            self._jobs[job.job_id] = job

        orphaned = [job.job_id for job in self._jobs.values() if job.status.is_active]
        for job_id in orphaned:
            logger.warning("[%s] Marking failed: server restarted mid-render", job_id)
            self.update(job_id, status=JobStatus.FAILED, error=RESTARTED_MESSAGE)
        return len(orphaned)

    def create(self, job: Job) -> None:
        self._jobs[job.job_id] = job
        self.schedule_persist()

    def update(self, job_id: str, **fields: Any) -> Optional[Job]:
        current = self._jobs.get(job_id)
        if current is None:
            logger.debug("[%s] Ignoring update for unknown job: %s", job_id, sorted(fields))
            return None

        if "progress" in fields:
            fields["progress"] = max(0, min(100, int(fields["progress"])))
        fields["updated_at"] = datetime.now()

        job = current.model_copy(update=fields)
        self._jobs[job_id] = job
        self.schedule_persist()
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list(self) -> List[Job]:
        return list(self._jobs.values())

    def clear(self) -> None:
        self._cancel_pending()
        self._jobs.clear()

    def flush(self) -> None:
        self._cancel_pending()
        self._persist_now()

    def schedule_persist(self) -> None:
        """Coalesce writes: each call restarts the debounce window."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (CLI/offline use): write through.
            self._persist_now()
            return

        self._cancel_pending()
        self._persist_handle = loop.call_later(self.debounce_s, self._persist_now)

    def persist(self) -> None:
        """Write the full table atomically.

        Raises:
            OSError: If the file cannot be written
        """
        payload = [job.to_record() for job in self._jobs.values()]
        self.jobs_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.jobs_file.with_name(self.jobs_file.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, self.jobs_file)

    def _persist_now(self) -> None:
        self._persist_handle = None
        try:
            self.persist()
        except OSError as e:
            # In-memory state stays authoritative; the next update retries.
            logger.warning("Failed to persist jobs to %s: %s", self.jobs_file, e)

    def _cancel_pending(self) -> None:
        if self._persist_handle is not None:
            self._persist_handle.cancel()
            self._persist_handle = None
