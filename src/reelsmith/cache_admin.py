"""Disk usage reporting and cleanup for derived render artifacts."""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Dict

from .hashing import asset_prefix
from .jobs import JobStore, RenderScheduler
from .models import PathsConfig

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "Cannot clear cache while a render is active. Cancel renders first."


class CacheBusyError(RuntimeError):
    """Refused to clear: work is queued or running and force was not set."""


def empty_stats() -> Dict[str, int]:
    return {"fileCount": 0, "totalBytes": 0}


def dir_stats(path: Path) -> Dict[str, int]:
    """Recursive file count and byte total. A missing directory counts as empty."""
    stats = empty_stats()
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                size = os.stat(os.path.join(root, name)).st_size
            except FileNotFoundError:
                # Removed between listing and stat
                continue
            stats["fileCount"] += 1
            stats["totalBytes"] += size
    return stats


def file_stats(path: Path) -> Dict[str, int]:
    try:
        return {"fileCount": 1, "totalBytes": os.stat(path).st_size}
    except FileNotFoundError:
        return empty_stats()


class CacheAdmin:
    """Stats, full clear, and per-asset purge over the render directory tree."""

    def __init__(self, paths: PathsConfig, store: JobStore, scheduler: RenderScheduler):
        self.paths = paths
        self.store = store
        self.scheduler = scheduler

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        """Per-bucket ``{fileCount, totalBytes}`` plus a grand total."""
        buckets = {
            "uploads": dir_stats(self.paths.uploads_dir),
            "cache": dir_stats(self.paths.cache_dir),
            "output": dir_stats(self.paths.output_dir),
            "bundle": dir_stats(self.paths.bundle_dir),
            "jobsFile": file_stats(self.paths.jobs_file),
        }
        buckets["total"] = {
            "fileCount": sum(b["fileCount"] for b in buckets.values()),
            "totalBytes": sum(b["totalBytes"] for b in buckets.values()),
        }
        return buckets

    def has_active_work(self) -> bool:
        return self.scheduler.has_active_work()

    async def clear_cache(self, force: bool = False) -> Dict[str, Dict]:
        """Wipe uploads, cache, outputs, bundle and the job table; rebuild the bundle.

        Raises:
            CacheBusyError: If work is active and ``force`` is False
        """
        if self.has_active_work():
            if not force:
                raise CacheBusyError(BUSY_MESSAGE)
            logger.warning("Force-clearing cache: cancelling active renders")
            self.scheduler.cancel_all()

        # Detach the slot and drop the queue before yielding, so a cancelled
        # job finishing in the meantime cannot start the next one.
        self.scheduler.reset()
        self.store.clear()
        before = await asyncio.to_thread(self.get_stats)

        await asyncio.to_thread(self._wipe)
        await self.scheduler.prepare(self.paths.bundle_dir)

        after = await asyncio.to_thread(self.get_stats)
        logger.info(
            "Cache cleared: %d bytes -> %d bytes",
            before["total"]["totalBytes"],
            after["total"]["totalBytes"],
        )
        return {"before": before, "after": after}

    def _wipe(self) -> None:
        for directory in (
            self.paths.cache_dir,
            self.paths.output_dir,
            self.paths.uploads_dir,
            self.paths.bundle_dir,
        ):
            shutil.rmtree(directory, ignore_errors=True)
        self.paths.jobs_file.unlink(missing_ok=True)
        ensure_skeleton(self.paths)

    def purge_asset(self, asset_id: str) -> int:
        """Delete every upload and cache artifact owned by ``asset_id``.

        Matches on the sanitized ``{asset_id}-`` filename prefix, so other
        assets are untouched. Missing directories are skipped.

        Returns:
            Number of files removed
        """
        prefix = asset_prefix(asset_id)
        removed = 0
        for directory in (
            self.paths.uploads_dir,
            self.paths.cache_video_dir,
            self.paths.cache_audio_dir,
        ):
            try:
                entries = list(os.scandir(directory))
            except FileNotFoundError:
                continue
            for entry in entries:
                if entry.is_file() and entry.name.startswith(prefix):
                    Path(entry.path).unlink(missing_ok=True)
                    removed += 1
        logger.info("Purged %d file(s) for asset %s", removed, asset_id)
        return removed


def ensure_skeleton(paths: PathsConfig) -> None:
    for directory in paths.skeleton():
        directory.mkdir(parents=True, exist_ok=True)
