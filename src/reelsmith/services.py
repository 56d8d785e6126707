"""Wiring: builds the object graph shared by the HTTP server and the CLI."""

import logging
from dataclasses import dataclass
from typing import Optional

from .cache_admin import CacheAdmin, ensure_skeleton
from .engine import FfmpegRenderEngine, RenderEngine
from .ffmpeg_runner import FfmpegRunner
from .jobs import JsonJobStore, RenderScheduler
from .models import RenderServerConfig
from .normalization import NormalizationCache
from .toolchain import MediaToolchain

logger = logging.getLogger(__name__)


@dataclass
class RenderServices:
    config: RenderServerConfig
    toolchain: MediaToolchain
    normalizer: NormalizationCache
    store: JsonJobStore
    engine: RenderEngine
    scheduler: RenderScheduler
    cache_admin: CacheAdmin

    async def start(self) -> None:
        """Create the directory skeleton, recover the job table, build the bundle."""
        paths = self.config.paths
        ensure_skeleton(paths)
        recovered = self.store.load()
        if recovered:
            logger.warning("Marked %d interrupted job(s) as failed", recovered)
        await self.scheduler.prepare(paths.bundle_dir)

    async def stop(self) -> None:
        await self.scheduler.shutdown()
        self.store.flush()


def build_services(
    config: RenderServerConfig,
    engine: Optional[RenderEngine] = None,
    toolchain: Optional[MediaToolchain] = None,
) -> RenderServices:
    """Assemble services from config; ``engine``/``toolchain`` may be swapped in."""
    paths = config.paths
    runner = None
    if toolchain is None or engine is None:
        runner = FfmpegRunner(
            ffmpeg_exe=config.toolchain.ffmpeg_path,
            ffprobe_exe=config.toolchain.ffprobe_path,
            loglevel=config.toolchain.loglevel,
        )
    if toolchain is None:
        toolchain = MediaToolchain(
            runner,
            video_profile=config.normalization.video,
            audio_profile=config.normalization.audio,
        )
    if engine is None:
        engine = FfmpegRenderEngine(runner, config.engine)

    normalizer = NormalizationCache(
        toolchain,
        video_dir=paths.cache_video_dir,
        audio_dir=paths.cache_audio_dir,
        video_profile=config.normalization.video,
        audio_profile=config.normalization.audio,
    )
    store = JsonJobStore(paths.jobs_file, debounce_s=config.store.persist_debounce_s)
    scheduler = RenderScheduler(store, normalizer, toolchain, engine, volume=config.volume)
    cache_admin = CacheAdmin(paths, store, scheduler)

    return RenderServices(
        config=config,
        toolchain=toolchain,
        normalizer=normalizer,
        store=store,
        engine=engine,
        scheduler=scheduler,
        cache_admin=cache_admin,
    )
