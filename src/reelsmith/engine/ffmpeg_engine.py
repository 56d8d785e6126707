"""FFmpeg-backed rendering engine.

Realises the two-clip + BGM template as a single ffmpeg filter graph:

    clip 1 ─┐
            ├─ concat (cover-fit, CFR) ─┬─ video out
    clip 2 ─┘                           │
    clip audio / silence ── concat ─────┴─ amix ── audio out
    bgm ── trim ── gain ── delay ── pad ──┘

The "bundle" is a composition manifest written into the bundle directory;
``select_composition`` reads it back so a cache clear that removes the bundle
is detected instead of rendering with stale settings.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from ..composition import CompositionProps, Timeline, composition_duration_frames, resolve_timeline
from ..ffmpeg_runner import FfmpegError, FfmpegProgress, FfmpegRunner, kill_process_tree
from ..models import EngineConfig
from .base import (
    CancelSignal,
    Composition,
    ProgressCallback,
    RenderCancelledError,
    RenderEngine,
    RenderEngineError,
    RenderProgress,
)

logger = logging.getLogger(__name__)

MANIFEST_NAME = "composition.json"
MANIFEST_VERSION = 1


class _ProcessSlot:
    """Holds the engine's running ffmpeg so the cancel signal can reach it."""

    def __init__(self):
        self.active_process = None
        self.cancelled = False

    def kill(self) -> None:
        self.cancelled = True
        process = self.active_process
        if process is not None and process.returncode is None:
            kill_process_tree(process.pid)


def build_render_args(
    props: CompositionProps,
    timeline: Timeline,
    composition: Composition,
    config: EngineConfig,
    output_path: str,
) -> List[str]:
    """ffmpeg arguments (no executable) that render ``props`` to ``output_path``."""
    width, height, fps = composition.width, composition.height, composition.fps
    sample_rate = config.audio_sample_rate
    audio_format = f"aresample={sample_rate},aformat=sample_fmts=fltp:channel_layouts=stereo"

    args: List[str] = ["-y", "-i", props.video1_path]
    clips = [(0, timeline.video1_frames, props.video1_has_audio)]
    if timeline.video2_frames > 0:
        args.extend(["-i", props.video2_path])
        clips.append((1, timeline.video2_frames, props.video2_has_audio))

    bgm_input: Optional[int] = None
    if timeline.has_bgm:
        if timeline.bgm_loop:
            args.extend(["-stream_loop", "-1"])
        args.extend(["-i", props.bgm.path])
        bgm_input = len(clips)

    filters: List[str] = []
    concat_inputs = ""
    for index, frames, has_audio in clips:
        seconds = frames / fps
        filters.append(
            f"[{index}:v]scale={width}:{height}:force_original_aspect_ratio=increase,"
            f"crop={width}:{height},setsar=1,fps={fps},format={config.pixel_format},"
            f"tpad=stop_mode=clone:stop_duration=1,trim=end_frame={frames},"
            f"setpts=PTS-STARTPTS[v{index}]"
        )
        if has_audio:
            filters.append(
                f"[{index}:a]{audio_format},apad,atrim=end={seconds:.6f},"
                f"asetpts=PTS-STARTPTS[a{index}]"
            )
        else:
            filters.append(
                f"anullsrc=channel_layout=stereo:sample_rate={sample_rate},"
                f"atrim=end={seconds:.6f},asetpts=PTS-STARTPTS[a{index}]"
            )
        concat_inputs += f"[v{index}][a{index}]"
    filters.append(f"{concat_inputs}concat=n={len(clips)}:v=1:a=1[vout][aclips]")

    audio_out = "[aclips]"
    if bgm_input is not None:
        delay_ms = int(round(timeline.seconds(timeline.bgm_start_frame) * 1000))
        play_s = timeline.seconds(timeline.bgm_play_frames)
        filters.append(
            f"[{bgm_input}:a]{audio_format},atrim=end={play_s:.6f},asetpts=PTS-STARTPTS,"
            f"volume={props.bgm.volume:.6f},adelay={delay_ms}:all=1,apad[bgm]"
        )
        filters.append(
            "[aclips][bgm]amix=inputs=2:duration=first:dropout_transition=0:normalize=0[aout]"
        )
        audio_out = "[aout]"

    total_s = composition.duration_in_frames / fps
    args.extend([
        "-filter_complex", ";".join(filters),
        "-map", "[vout]",
        "-map", audio_out,
        "-c:v", config.encoder,
        "-preset", config.preset,
        "-crf", str(config.crf),
        "-pix_fmt", config.pixel_format,
        "-r", str(fps),
        "-fps_mode", "cfr",
        "-c:a", config.audio_codec,
        "-b:a", config.audio_bitrate,
        "-ar", str(sample_rate),
        "-t", f"{total_s:.6f}",
        "-movflags", "+faststart",
        output_path,
    ])
    return args


class FfmpegRenderEngine(RenderEngine):
    """Renders compositions with a single ffmpeg invocation per job."""

    def __init__(self, runner: FfmpegRunner, config: Optional[EngineConfig] = None):
        self.runner = runner
        self.config = config or EngineConfig()

    def manifest(self) -> dict:
        return {
            "version": MANIFEST_VERSION,
            "id": self.config.composition_id,
            "fps": self.config.fps,
            "defaultQuality": self.config.default_quality,
            "resolutions": {k: list(v) for k, v in self.config.resolutions.items()},
        }

    async def prepare_bundle(self, bundle_dir: Path) -> str:
        bundle_dir = Path(bundle_dir)
        manifest_path = bundle_dir / MANIFEST_NAME

        def write() -> None:
            bundle_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = manifest_path.with_suffix(".json.tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self.manifest(), f, indent=2)
            os.replace(tmp_path, manifest_path)

        await asyncio.to_thread(write)
        logger.info("Composition bundle ready at %s", manifest_path)
        return str(manifest_path)

    async def select_composition(self, serve_url: str, props: CompositionProps) -> Composition:
        def read() -> dict:
            with open(serve_url, "r", encoding="utf-8") as f:
                return json.load(f)

        try:
            manifest = await asyncio.to_thread(read)
        except (OSError, json.JSONDecodeError) as e:
            raise RenderEngineError(f"Composition bundle unavailable: {e}") from e

        if manifest.get("id") != self.config.composition_id:
            raise RenderEngineError(
                f"Could not find composition with ID {self.config.composition_id}"
            )

        fps = int(manifest.get("fps") or self.config.fps)
        resolutions = manifest.get("resolutions") or {}
        quality = props.export_quality
        if quality not in resolutions:
            quality = manifest.get("defaultQuality", self.config.default_quality)
        try:
            width, height = resolutions[quality]
        except (KeyError, TypeError, ValueError) as e:
            raise RenderEngineError(f"No dimensions for export quality {quality!r}") from e

        return Composition(
            id=manifest["id"],
            fps=fps,
            width=int(width),
            height=int(height),
            duration_in_frames=composition_duration_frames(props, fps),
        )

    async def render(
        self,
        serve_url: str,
        composition: Composition,
        props: CompositionProps,
        output_path: Path,
        on_progress: ProgressCallback,
        cancel_signal: CancelSignal,
    ) -> None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = output_path.with_name(f"{output_path.stem}.partial{output_path.suffix}")

        timeline = resolve_timeline(props, composition.fps)
        args = build_render_args(props, timeline, composition, self.config, str(tmp_path))

        slot = _ProcessSlot()
        unregister = cancel_signal.add_callback(slot.kill)

        def forward(progress: FfmpegProgress) -> None:
            if not cancel_signal.cancelled:
                on_progress(RenderProgress(fraction=progress.fraction))

        try:
            await self.runner.run_ffmpeg(
                args,
                controller=slot,
                expected_duration=composition.duration_s,
                progress_callback=forward,
            )
            if cancel_signal.cancelled:
                raise RenderCancelledError("Render cancelled.")
            os.replace(tmp_path, output_path)
        except FfmpegError as e:
            if cancel_signal.cancelled:
                raise RenderCancelledError("Render cancelled.") from e
            raise RenderEngineError(str(e)) from e
        finally:
            unregister()
            if tmp_path.exists():
                tmp_path.unlink()

        on_progress(RenderProgress(fraction=1.0))
