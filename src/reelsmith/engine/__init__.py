"""Rendering engines for the two-clip + BGM composition."""

from .base import (
    CancelSignal,
    Composition,
    ProgressCallback,
    RenderCancelledError,
    RenderEngine,
    RenderEngineError,
    RenderProgress,
)
from .ffmpeg_engine import FfmpegRenderEngine

__all__ = [
    "CancelSignal",
    "Composition",
    "ProgressCallback",
    "RenderCancelledError",
    "RenderEngine",
    "RenderEngineError",
    "RenderProgress",
    "FfmpegRenderEngine",
]
