"""Pydantic models for render server configuration."""

from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

ExportQuality = Literal["720p", "1080p", "4k"]


class PathsConfig(BaseModel):
    """On-disk layout. Every derived directory hangs off ``render_dir``."""

    render_dir: Path = Field(default=Path("renders"), description="Root for all render state")

    @property
    def uploads_dir(self) -> Path:
        return self.render_dir / "uploads"

    @property
    def cache_dir(self) -> Path:
        return self.render_dir / "cache"

    @property
    def cache_video_dir(self) -> Path:
        return self.cache_dir / "video"

    @property
    def cache_audio_dir(self) -> Path:
        return self.cache_dir / "audio"

    @property
    def output_dir(self) -> Path:
        return self.render_dir / "output"

    @property
    def bundle_dir(self) -> Path:
        return self.render_dir / "bundle"

    @property
    def jobs_file(self) -> Path:
        return self.render_dir / "jobs.json"

    def skeleton(self) -> List[Path]:
        """Directories that must exist before the server accepts work."""
        return [self.uploads_dir, self.output_dir, self.cache_video_dir, self.cache_audio_dir]


class ToolchainConfig(BaseModel):
    """External media tool settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = PATH, then imageio-ffmpeg)"
    )
    ffprobe_path: Optional[str] = Field(
        default=None, description="ffprobe executable (None = PATH lookup)"
    )
    loglevel: str = Field(default="error", description="ffmpeg -loglevel for transcodes")


class VideoProfileConfig(BaseModel):
    """Target profile every clip is normalized to before rendering."""

    codec_name: str = Field(default="h264", description="Codec name as reported by ffprobe")
    encoder: str = Field(default="libx264", description="Encoder used when re-encoding")
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="veryfast", description="Encoding speed preset")
    crf: int = Field(default=18, ge=0, le=51, description="Constant Rate Factor")
    pixel_format: str = Field(default="yuv420p", description="Required pixel format")
    target_fps: int = Field(default=24, gt=0, description="Constant frame rate")
    fps_tolerance: float = Field(
        default=0.05, ge=0.0, description="Absolute fps slack for probed rational rates"
    )
    audio_codec: str = Field(default="aac", description="Codec for preserved clip audio")
    audio_bitrate: str = Field(default="192k", description="Bitrate for preserved clip audio")
    audio_sample_rate: int = Field(default=48000, gt=0)
    audio_channels: int = Field(default=2, ge=1, le=8)

    @property
    def tag(self) -> str:
        return f"cfr{self.target_fps}"


class AudioProfileConfig(BaseModel):
    """Target profile for background music tracks."""

    codec: str = Field(default="pcm_s16le", description="Uncompressed WAV sample format")
    sample_rate: int = Field(default=48000, gt=0, description="Sample rate in Hz")

    @property
    def tag(self) -> str:
        return f"{self.sample_rate // 1000}k"


class NormalizationConfig(BaseModel):
    video: VideoProfileConfig = Field(default_factory=VideoProfileConfig)
    audio: AudioProfileConfig = Field(default_factory=AudioProfileConfig)


class VolumeConfig(BaseModel):
    """Decibel range accepted for background music gain."""

    min_db: float = Field(default=-20.0)
    max_db: float = Field(default=20.0)

    @field_validator("max_db")
    @classmethod
    def max_above_min(cls, v: float, info) -> float:
        if "min_db" in info.data and v < info.data["min_db"]:
            raise ValueError(f"max_db ({v}) must be >= min_db ({info.data['min_db']})")
        return v


class StoreConfig(BaseModel):
    persist_debounce_s: float = Field(
        default=0.3, ge=0.0, description="Coalescing window for job table writes"
    )


class EngineConfig(BaseModel):
    """Rendering engine and composition template settings."""

    composition_id: str = Field(default="two-clip-bgm")
    fps: int = Field(default=24, gt=0)
    default_quality: ExportQuality = Field(default="1080p")
    resolutions: Dict[str, Tuple[int, int]] = Field(
        default_factory=lambda: {
            "720p": (1280, 720),
            "1080p": (1920, 1080),
            "4k": (3840, 2160),
        }
    )
    encoder: str = Field(default="libx264")
    preset: str = Field(default="veryfast")
    crf: int = Field(default=18, ge=0, le=51)
    pixel_format: str = Field(default="yuv420p")
    audio_codec: str = Field(default="aac")
    audio_bitrate: str = Field(default="192k")
    audio_sample_rate: int = Field(default=48000, gt=0)

    def dimensions(self, quality: Optional[str]) -> Tuple[int, int]:
        """Resolve an export quality to (width, height); unknown values use the default."""
        if quality in self.resolutions:
            return self.resolutions[quality]
        return self.resolutions[self.default_quality]


class ServerConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5050, gt=0, lt=65536)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class RenderServerConfig(BaseModel):
    """Complete application configuration with validation."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    volume: VolumeConfig = Field(default_factory=VolumeConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "RenderServerConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)
