"""Content-addressed normalization cache.

Every clip handed to the rendering engine must be constant-frame-rate at the
target rate with a standard codec and pixel format; every music track must be
fixed-rate PCM. Sources that already satisfy the video profile pass through
untouched. Everything else is re-encoded once and cached under a name derived
from the SHA-256 of the source bytes, so identical uploads share an artifact
regardless of which asset they arrived under.

Cache-hit files are trusted as-is: only this module writes into the cache
directories, and it renames into the final name only after ffmpeg exits 0.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .hashing import artifact_name, artifact_suffix, compute_content_hash
from .models import AudioProfileConfig, VideoProfileConfig
from .toolchain import MediaProbe, MediaToolchain

logger = logging.getLogger(__name__)

DEFAULT_ASSET_ID = "asset"


def is_nearly(a: float, b: float, epsilon: float = 0.05) -> bool:
    return abs(a - b) <= epsilon


def matches_video_profile(meta: MediaProbe, profile: VideoProfileConfig) -> bool:
    """True when a probed source can be fed to the renderer without re-encoding.

    Besides codec/pixel format/average rate, the declared rate must agree with
    the average rate: VFR sources often declare a clean rate they don't keep.
    """
    video = meta.video
    if video is None:
        return False
    if video.codec != profile.codec_name or video.pixel_format != profile.pixel_format:
        return False
    tolerance = profile.fps_tolerance
    if not is_nearly(video.avg_frame_rate, profile.target_fps, tolerance):
        return False
    declared = video.declared_frame_rate or video.avg_frame_rate
    return is_nearly(declared, video.avg_frame_rate, tolerance)


def partial_path(final_path: Path) -> Path:
    """Sibling path ffmpeg writes to before the rename; keeps the extension for muxer detection."""
    return final_path.with_name(f"{final_path.stem}.partial{final_path.suffix}")


class NormalizationCache:
    """Resolves source media to renderer-ready files, caching by content hash."""

    def __init__(
        self,
        toolchain: MediaToolchain,
        video_dir: Path,
        audio_dir: Path,
        video_profile: Optional[VideoProfileConfig] = None,
        audio_profile: Optional[AudioProfileConfig] = None,
    ):
        self.toolchain = toolchain
        self.video_dir = Path(video_dir)
        self.audio_dir = Path(audio_dir)
        self.video_profile = video_profile or toolchain.video_profile
        self.audio_profile = audio_profile or toolchain.audio_profile

    async def normalize_video(
        self, source_path: str, asset_id: Optional[str] = None, controller=None
    ) -> str:
        """Return a CFR, profile-conformant path for ``source_path``.

        Args:
            source_path: Uploaded clip
            asset_id: Owning asset; only affects the name of a newly written artifact
            controller: Cancellation handle forwarded to every spawned process

        Raises:
            FfmpegError: If probing or transcoding fails
        """
        meta = await self.toolchain.probe(source_path, controller=controller)
        if matches_video_profile(meta, self.video_profile):
            logger.debug("Source already conforms, skipping normalize: %s", source_path)
            return str(source_path)

        async def transcode(tmp_path: Path) -> None:
            await self.toolchain.transcode_video(
                source_path,
                str(tmp_path),
                has_audio=meta.audio is not None,
                controller=controller,
                duration=meta.duration,
            )

        return await self._resolve_cached(
            source_path, asset_id, self.video_dir, self.video_profile.tag, ".mp4", transcode
        )

    async def normalize_audio(
        self, source_path: str, asset_id: Optional[str] = None, controller=None
    ) -> str:
        """Return a fixed-rate PCM WAV for ``source_path``.

        There is no pass-through: the renderer mixes audio frame-accurately only
        from this exact format.
        """

        async def transcode(tmp_path: Path) -> None:
            await self.toolchain.transcode_audio(source_path, str(tmp_path), controller=controller)

        return await self._resolve_cached(
            source_path, asset_id, self.audio_dir, self.audio_profile.tag, ".wav", transcode
        )

    async def _resolve_cached(
        self,
        source_path: str,
        asset_id: Optional[str],
        cache_dir: Path,
        tag: str,
        ext: str,
        transcode: Callable[[Path], Awaitable[None]],
    ) -> str:
        content_hash = await asyncio.to_thread(compute_content_hash, str(source_path))
        cache_dir.mkdir(parents=True, exist_ok=True)

        owner = asset_id or DEFAULT_ASSET_ID
        output_path = cache_dir / artifact_name(owner, content_hash, tag, ext)
        existing = self.find_artifact(cache_dir, content_hash, tag, ext, preferred=output_path)
        if existing is not None:
            logger.info("Cache hit for %s -> %s", source_path, existing.name)
            return str(existing)

        tmp_path = partial_path(output_path)
        logger.info("Normalizing %s -> %s", source_path, output_path.name)
        try:
            await transcode(tmp_path)
            os.replace(tmp_path, output_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return str(output_path)

    @staticmethod
    def find_artifact(
        cache_dir: Path, content_hash: str, tag: str, ext: str, preferred: Optional[Path] = None
    ) -> Optional[Path]:
        """Locate an artifact for ``content_hash`` written under any asset id."""
        if preferred is not None and preferred.is_file():
            return preferred
        suffix = artifact_suffix(content_hash, tag, ext)
        try:
            with os.scandir(cache_dir) as entries:
                for entry in entries:
                    if entry.is_file() and entry.name.endswith(suffix):
                        return Path(entry.path)
        except FileNotFoundError:
            return None
        return None
