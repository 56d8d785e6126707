"""Single-slot render scheduler.

Owns the FIFO queue, the busy flag and the per-job controllers. Exactly one
job is normalizing or rendering at any instant. Everything here runs on one
event loop; ``_pump`` checks and claims the slot with no ``await`` in
between, which makes check-and-claim atomic with respect to other
submissions.
"""

import asyncio
import logging
import math
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Optional, Set

from ..composition import BgmProps, CompositionProps, resolve_volume_gain
from ..engine import CancelSignal, RenderEngine, RenderProgress
from ..ffmpeg_runner import kill_process_tree
from ..models import VolumeConfig
from ..normalization import NormalizationCache
from ..toolchain import MediaToolchain
from .backends import JobStore
from .models import CANCELLED_MESSAGE, Job, JobStatus, MediaRef

logger = logging.getLogger(__name__)

MIN_DURATION_S = 0.01
NORMALIZING_PROGRESS = 1
RENDERING_PROGRESS = 5


class JobNotFoundError(KeyError):
    """No job with the given id."""


class CancelRejectedError(ValueError):
    """The job can no longer be cancelled (it already completed)."""


class RenderController:
    """Per-job cancellation handles, alive only while the job holds the slot.

    Two independent mechanisms:
    - ``cancelled``: soft flag checked between pipeline steps
    - ``active_process`` / ``cancel_signal``: hard kill of whatever external
      process or engine render is running right now
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.cancelled = False
        self.cancel_signal = CancelSignal()
        self.active_process = None  # set/cleared by FfmpegRunner

    def cancel(self) -> None:
        self.cancelled = True
        self.cancel_signal.cancel()
        process = self.active_process
        if process is not None and process.returncode is None:
            logger.info("[%s] Killing running process %s", self.job_id, process.pid)
            kill_process_tree(process.pid)
        self.active_process = None


def render_progress_percent(fraction: float) -> int:
    """Map engine progress [0, 1] into the job's 5-100 rendering band."""
    return min(100, max(RENDERING_PROGRESS, int(math.floor(5 + fraction * 95 + 0.5))))


class RenderScheduler:
    """Strict single-concurrency render queue.

    Example:
        >>> scheduler = RenderScheduler(store, normalizer, toolchain, engine)
        >>> await scheduler.prepare(bundle_dir)
        >>> scheduler.submit(job)
        >>> scheduler.cancel(job.job_id)
    """

    def __init__(
        self,
        store: JobStore,
        normalizer: NormalizationCache,
        toolchain: MediaToolchain,
        engine: RenderEngine,
        volume: Optional[VolumeConfig] = None,
    ):
        self.store = store
        self.normalizer = normalizer
        self.toolchain = toolchain
        self.engine = engine
        self.volume = volume or VolumeConfig()
        self.serve_url: Optional[str] = None

        self._queue: Deque[str] = deque()
        self._controllers: Dict[str, RenderController] = {}
        self._busy = False
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()

    async def prepare(self, bundle_dir: Path) -> str:
        """(Re)build the engine bundle; required before the first render."""
        self.serve_url = await self.engine.prepare_bundle(bundle_dir)
        return self.serve_url

    @property
    def queued_job_ids(self):
        return list(self._queue)

    @property
    def is_busy(self) -> bool:
        return self._busy

    def submit(self, job: Job) -> Job:
        """Record ``job`` as queued and start it if the slot is free."""
        job = job.model_copy(
            update={"status": JobStatus.QUEUED, "progress": 0, "error": None, "output_url": None}
        )
        self.store.create(job)
        self._queue.append(job.job_id)
        logger.info("[%s] Queued (%d waiting)", job.job_id, len(self._queue))
        self._pump()
        return job

    def cancel(self, job_id: str) -> str:
        """Cancel a queued or running job.

        Returns:
            Human-readable outcome

        Raises:
            JobNotFoundError: Unknown job id
            CancelRejectedError: Job already completed
        """
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status == JobStatus.COMPLETED:
            raise CancelRejectedError("Job already completed.")
        if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            return "Job already stopped."

        if job_id in self._queue:
            self._queue.remove(job_id)
            self.store.update(job_id, status=JobStatus.CANCELLED, error=CANCELLED_MESSAGE)
            logger.info("[%s] Cancelled before start", job_id)
            return "Job cancelled."

        controller = self._controllers.get(job_id)
        if controller is not None:
            controller.cancel()
            self.store.update(job_id, status=JobStatus.CANCELLING, error=None)
            logger.info("[%s] Cancelling", job_id)
        return "Job cancelled."

    def has_active_work(self) -> bool:
        if self._busy or self._controllers or self._queue:
            return True
        return any(job.status.is_active for job in self.store.list())

    def cancel_all(self) -> None:
        """Hard-cancel every running job (used by forced cache clears)."""
        for controller in list(self._controllers.values()):
            controller.cancel()

    def reset(self) -> None:
        """Forget all queue/slot state. In-flight tasks finish detached."""
        self._generation += 1
        self._queue.clear()
        self._controllers.clear()
        self._busy = False

    async def wait_idle(self) -> None:
        """Wait until no render task is running and the queue is drained."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self._queue.clear()
        self.cancel_all()
        await self.wait_idle()

    def _pump(self) -> None:
        if self._busy or not self._queue:
            return
        job_id = self._queue.popleft()
        self._busy = True

        controller = RenderController(job_id)
        self._controllers[job_id] = controller
        task = asyncio.get_running_loop().create_task(
            self._run(job_id, controller, self._generation)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job_id: str, controller: RenderController, generation: int) -> None:
        try:
            await self._process(job_id, controller)
        except Exception as e:
            if controller.cancelled:
                self._finalize_cancelled(job_id)
            else:
                message = str(e) or "Render failed."
                logger.error("[%s] Render failed: %s", job_id, message)
                self.store.update(job_id, status=JobStatus.FAILED, error=message)
        finally:
            if generation == self._generation:
                self._controllers.pop(job_id, None)
                self._busy = False
                self._pump()

    async def _process(self, job_id: str, controller: RenderController) -> None:
        job = self.store.get(job_id)
        if job is None:
            return

        self.store.update(
            job_id, status=JobStatus.NORMALIZING, progress=NORMALIZING_PROGRESS, error=None
        )
        if controller.cancelled:
            self._finalize_cancelled(job_id)
            return

        video1_path, video1_duration, video1_audio = await self._normalize_clip(
            job.video1, controller
        )
        if controller.cancelled:
            self._finalize_cancelled(job_id)
            return

        video2_path, video2_duration, video2_audio = "", 0.0, False
        if job.video2 is not None:
            video2_path, video2_duration, video2_audio = await self._normalize_clip(
                job.video2, controller
            )
            if controller.cancelled:
                self._finalize_cancelled(job_id)
                return

        bgm = None
        if job.bgm is not None:
            audio_path = await self.normalizer.normalize_audio(
                job.bgm.path, job.bgm.asset_id, controller=controller
            )
            audio_meta = await self.toolchain.probe(audio_path, controller=controller)
            if controller.cancelled:
                self._finalize_cancelled(job_id)
                return
            bgm = BgmProps(
                path=audio_path,
                duration=max(MIN_DURATION_S, audio_meta.duration),
                play_length=job.bgm.play_length,
                volume=resolve_volume_gain(
                    job.bgm.volume_db, job.bgm.volume, self.volume.min_db, self.volume.max_db
                ),
                mode=job.bgm.mode,
                start_time=job.bgm.start_time,
                loop=job.bgm.loop,
            )

        props = CompositionProps(
            video1_path=video1_path,
            video1_duration=video1_duration,
            video2_path=video2_path,
            video2_duration=video2_duration,
            video1_has_audio=video1_audio,
            video2_has_audio=video2_audio,
            export_quality=job.export_quality,
            bgm=bgm,
        )

        self.store.update(
            job_id, status=JobStatus.RENDERING, progress=RENDERING_PROGRESS, error=None
        )
        logger.info("[%s] Rendering %s", job_id, job.output_path)

        def on_progress(event: RenderProgress) -> None:
            if controller.cancelled:
                return
            current = self.store.get(job_id)
            if current is None or current.status != JobStatus.RENDERING:
                return
            percent = render_progress_percent(event.fraction)
            if percent > current.progress:
                self.store.update(job_id, progress=percent)

        composition = await self.engine.select_composition(self.serve_url, props)
        await self.engine.render(
            self.serve_url,
            composition,
            props,
            Path(job.output_path),
            on_progress,
            controller.cancel_signal,
        )
        if controller.cancelled:
            self._finalize_cancelled(job_id)
            return

        self.store.update(
            job_id,
            status=JobStatus.COMPLETED,
            progress=100,
            error=None,
            output_url=f"/api/download/{job_id}",
        )
        logger.info("[%s] Completed", job_id)

    async def _normalize_clip(self, ref: Optional[MediaRef], controller: RenderController):
        """Normalize one clip; returns (path, duration, has_audio) for the template."""
        if ref is None:
            raise ValueError("Missing video asset.")
        path = await self.normalizer.normalize_video(ref.path, ref.asset_id, controller=controller)
        meta = await self.toolchain.probe(path, controller=controller)
        duration = meta.duration if meta.duration > 0 else ref.duration
        return path, max(MIN_DURATION_S, duration), meta.audio is not None

    def _finalize_cancelled(self, job_id: str) -> None:
        self.store.update(job_id, status=JobStatus.CANCELLED, error=CANCELLED_MESSAGE)
        logger.info("[%s] Cancelled", job_id)
