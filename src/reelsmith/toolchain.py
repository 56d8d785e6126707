"""Media toolchain adapter: probe and transcode via ffprobe/ffmpeg.

Each call spawns one external process through ``FfmpegRunner``. Failures are
raised to the caller unchanged; nothing here retries.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from .ffmpeg_runner import FfmpegRunner
from .models import AudioProfileConfig, VideoProfileConfig

logger = logging.getLogger(__name__)


class ProbeError(RuntimeError):
    """ffprobe ran but its output could not be interpreted."""


@dataclass
class VideoStreamInfo:
    codec: Optional[str]
    pixel_format: Optional[str]
    width: int
    height: int
    avg_frame_rate: float       # measured average over the stream
    declared_frame_rate: float  # r_frame_rate, what the container claims


@dataclass
class AudioStreamInfo:
    codec: Optional[str]
    sample_rate: int
    channels: int


@dataclass
class MediaProbe:
    """Parsed ffprobe output for the first video and audio streams."""
    duration: float
    video: Optional[VideoStreamInfo] = None
    audio: Optional[AudioStreamInfo] = None


def parse_ratio(value) -> Optional[float]:
    """Convert an ffprobe rational like ``'30000/1001'`` to float.

    Returns None for missing, malformed or zero-denominator values.
    """
    if not value or not isinstance(value, str):
        return None
    num, sep, den = value.partition("/")
    try:
        numerator = float(num)
        denominator = float(den) if sep else 1.0
    except ValueError:
        return None
    if denominator == 0:
        return None
    return numerator / denominator


def _as_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_probe_output(raw: str) -> MediaProbe:
    """Build a MediaProbe from ``ffprobe -print_format json`` output.

    Raises:
        ProbeError: If the output is not a JSON object
    """
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise ProbeError(f"ffprobe output parsing failed: {e}") from e
    if not isinstance(data, dict):
        raise ProbeError("ffprobe output was not a JSON object")

    streams = data.get("streams") if isinstance(data.get("streams"), list) else []
    fmt = data.get("format") or {}

    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    # Stream duration is more precise than container duration when present
    duration = _as_float(video_stream.get("duration")) if video_stream else 0.0
    if duration <= 0:
        duration = _as_float(fmt.get("duration"))

    video = None
    if video_stream:
        video = VideoStreamInfo(
            codec=video_stream.get("codec_name"),
            pixel_format=video_stream.get("pix_fmt"),
            width=_as_int(video_stream.get("width")),
            height=_as_int(video_stream.get("height")),
            avg_frame_rate=parse_ratio(video_stream.get("avg_frame_rate")) or 0.0,
            declared_frame_rate=parse_ratio(video_stream.get("r_frame_rate")) or 0.0,
        )

    audio = None
    if audio_stream:
        audio = AudioStreamInfo(
            codec=audio_stream.get("codec_name"),
            sample_rate=_as_int(audio_stream.get("sample_rate")),
            channels=_as_int(audio_stream.get("channels")),
        )

    return MediaProbe(duration=max(0.0, duration), video=video, audio=audio)


class MediaToolchain:
    """probe / transcode_video / transcode_audio over one FfmpegRunner."""

    def __init__(
        self,
        runner: FfmpegRunner,
        video_profile: Optional[VideoProfileConfig] = None,
        audio_profile: Optional[AudioProfileConfig] = None,
    ):
        self.runner = runner
        self.video_profile = video_profile or VideoProfileConfig()
        self.audio_profile = audio_profile or AudioProfileConfig()

    async def probe(self, path: str, controller=None) -> MediaProbe:
        result = await self.runner.run_ffprobe(
            ["-print_format", "json", "-show_streams", "-show_format", str(path)],
            controller=controller,
        )
        return parse_probe_output(result.stdout)

    def video_transcode_args(self, path: str, out_path: str, has_audio: bool) -> list:
        """ffmpeg arguments for a forced-CFR re-encode to the video profile."""
        profile = self.video_profile
        args = [
            "-y",
            "-i", str(path),
            "-vf", f"fps={profile.target_fps},format={profile.pixel_format}",
            "-r", str(profile.target_fps),
            "-fps_mode", "cfr",
            "-c:v", profile.encoder,
            "-preset", profile.preset,
            "-crf", str(profile.crf),
            "-movflags", "+faststart",
        ]
        if has_audio:
            args.extend([
                "-c:a", profile.audio_codec,
                "-b:a", profile.audio_bitrate,
                "-ar", str(profile.audio_sample_rate),
                "-ac", str(profile.audio_channels),
            ])
        else:
            args.append("-an")
        args.append(str(out_path))
        return args

    def audio_transcode_args(self, path: str, out_path: str) -> list:
        profile = self.audio_profile
        return [
            "-y",
            "-i", str(path),
            "-vn",
            "-acodec", profile.codec,
            "-ar", str(profile.sample_rate),
            str(out_path),
        ]

    async def transcode_video(
        self, path: str, out_path: str, has_audio: bool, controller=None, duration: float = 0.0
    ) -> None:
        await self.runner.run_ffmpeg(
            self.video_transcode_args(path, out_path, has_audio),
            controller=controller,
            expected_duration=duration,
        )

    async def transcode_audio(self, path: str, out_path: str, controller=None) -> None:
        await self.runner.run_ffmpeg(
            self.audio_transcode_args(path, out_path), controller=controller
        )
