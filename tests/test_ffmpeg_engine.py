import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from reelsmith.composition import BgmMode, BgmProps, CompositionProps, resolve_timeline
from reelsmith.engine import (
    CancelSignal,
    Composition,
    FfmpegRenderEngine,
    RenderCancelledError,
    RenderEngineError,
)
from reelsmith.engine.ffmpeg_engine import MANIFEST_NAME, build_render_args
from reelsmith.ffmpeg_runner import FfmpegError, FfmpegProgress
from reelsmith.models import EngineConfig

COMPOSITION = Composition(id="two-clip-bgm", fps=24, width=1280, height=720, duration_in_frames=144)


def two_clip_props(bgm=None, video2_has_audio=False) -> CompositionProps:
    return CompositionProps(
        video1_path="v1.mp4",
        video1_duration=3.0,
        video2_path="v2.mp4",
        video2_duration=3.0,
        video1_has_audio=True,
        video2_has_audio=video2_has_audio,
        export_quality="720p",
        bgm=bgm,
    )


def filter_graph(args):
    return args[args.index("-filter_complex") + 1]


class TestBuildRenderArgs:
    def test_two_clips_without_bgm(self):
        props = two_clip_props()
        timeline = resolve_timeline(props, 24)

        args = build_render_args(props, timeline, COMPOSITION, EngineConfig(), "out.mp4")
        graph = filter_graph(args)

        assert args[args.index("-i") + 1] == "v1.mp4"
        assert args.count("-i") == 2
        assert "scale=1280:720:force_original_aspect_ratio=increase" in graph
        assert "trim=end_frame=72" in graph
        assert "anullsrc" in graph  # second clip has no audio
        assert "concat=n=2:v=1:a=1" in graph
        assert "amix" not in graph
        assert args[args.index("-map") + 1] == "[vout]"
        assert "[aclips]" in args
        assert args[args.index("-r") + 1] == "24"
        assert args[args.index("-fps_mode") + 1] == "cfr"
        assert args[args.index("-t") + 1] == "6.000000"
        assert args[-1] == "out.mp4"

    def test_bgm_is_delayed_gained_and_mixed(self):
        bgm = BgmProps(
            path="bgm.wav",
            duration=10.0,
            play_length=1.0,
            volume=0.5,
            mode=BgmMode.VIDEO2_ONLY,
            start_time=0.5,
        )
        props = two_clip_props(bgm=bgm, video2_has_audio=True)
        timeline = resolve_timeline(props, 24)

        args = build_render_args(props, timeline, COMPOSITION, EngineConfig(), "out.mp4")
        graph = filter_graph(args)

        assert "-stream_loop" not in args
        assert "[2:a]" in graph
        assert "atrim=end=1.000000" in graph
        assert "volume=0.500000" in graph
        assert "adelay=3500:all=1" in graph
        assert "amix=inputs=2:duration=first:dropout_transition=0:normalize=0" in graph
        assert "[aout]" in args

    def test_looping_bgm_uses_stream_loop(self):
        bgm = BgmProps(path="bgm.wav", duration=2.0, play_length=6.0, volume=1.0)
        props = two_clip_props(bgm=bgm)
        timeline = resolve_timeline(props, 24)

        args = build_render_args(props, timeline, COMPOSITION, EngineConfig(), "out.mp4")

        loop_at = args.index("-stream_loop")
        assert args[loop_at + 1] == "-1"
        assert args[loop_at + 3] == "bgm.wav"

    def test_single_clip(self):
        props = CompositionProps(video1_path="v1.mp4", video1_duration=2.0)
        timeline = resolve_timeline(props, 24)

        args = build_render_args(props, timeline, COMPOSITION, EngineConfig(), "out.mp4")

        assert args.count("-i") == 1
        assert "concat=n=1:v=1:a=1" in filter_graph(args)


@pytest.mark.asyncio(loop_scope="function")
async def test_prepare_bundle_writes_manifest(tmp_path):
    engine = FfmpegRenderEngine(MagicMock())

    serve_url = await engine.prepare_bundle(tmp_path / "bundle")

    assert serve_url == str(tmp_path / "bundle" / MANIFEST_NAME)
    manifest = json.loads(Path(serve_url).read_text())
    assert manifest["id"] == "two-clip-bgm"
    assert manifest["resolutions"]["4k"] == [3840, 2160]


@pytest.mark.asyncio(loop_scope="function")
async def test_select_composition_resolves_dimensions(tmp_path):
    engine = FfmpegRenderEngine(MagicMock())
    serve_url = await engine.prepare_bundle(tmp_path / "bundle")

    composition = await engine.select_composition(serve_url, two_clip_props())
    assert (composition.width, composition.height) == (1280, 720)
    assert composition.fps == 24
    assert composition.duration_in_frames == 144
    assert composition.duration_s == 6.0

    odd = two_clip_props()
    odd.export_quality = "8k"
    fallback = await engine.select_composition(serve_url, odd)
    assert (fallback.width, fallback.height) == (1920, 1080)


@pytest.mark.asyncio(loop_scope="function")
async def test_select_composition_requires_bundle(tmp_path):
    engine = FfmpegRenderEngine(MagicMock())

    with pytest.raises(RenderEngineError, match="bundle unavailable"):
        await engine.select_composition(str(tmp_path / "missing.json"), two_clip_props())

    other = FfmpegRenderEngine(MagicMock(), EngineConfig(composition_id="other"))
    serve_url = await other.prepare_bundle(tmp_path / "bundle")
    with pytest.raises(RenderEngineError, match="Could not find composition"):
        await engine.select_composition(serve_url, two_clip_props())


def fake_runner(fail: Exception = None):
    async def run_ffmpeg(args, controller=None, expected_duration=None, progress_callback=None):
        Path(args[-1]).write_bytes(b"partial")
        progress_callback(FfmpegProgress(current_time_s=3.0, total_duration_s=expected_duration))
        if fail is not None:
            raise fail
        Path(args[-1]).write_bytes(b"mp4")

    runner = MagicMock()
    runner.run_ffmpeg = AsyncMock(side_effect=run_ffmpeg)
    return runner


@pytest.mark.asyncio(loop_scope="function")
async def test_render_writes_output_atomically(tmp_path):
    engine = FfmpegRenderEngine(fake_runner())
    output = tmp_path / "output" / "final.mp4"
    seen = []

    await engine.render("bundle", COMPOSITION, two_clip_props(), output, seen.append, CancelSignal())

    assert output.read_bytes() == b"mp4"
    assert not (tmp_path / "output" / "final.partial.mp4").exists()
    assert [p.fraction for p in seen] == [0.5, 1.0]


@pytest.mark.asyncio(loop_scope="function")
async def test_render_failure_raises_engine_error(tmp_path):
    engine = FfmpegRenderEngine(fake_runner(fail=FfmpegError("ffmpeg exited with code 1")))
    output = tmp_path / "final.mp4"

    with pytest.raises(RenderEngineError, match="code 1") as exc_info:
        await engine.render("bundle", COMPOSITION, two_clip_props(), output, lambda p: None, CancelSignal())

    assert not isinstance(exc_info.value, RenderCancelledError)
    assert not output.exists()
    assert not (tmp_path / "final.partial.mp4").exists()


@pytest.mark.asyncio(loop_scope="function")
async def test_render_after_cancel_raises_cancelled(tmp_path):
    engine = FfmpegRenderEngine(fake_runner(fail=FfmpegError("killed", returncode=-9)))
    signal = CancelSignal()
    signal.cancel()
    seen = []

    with pytest.raises(RenderCancelledError):
        await engine.render("bundle", COMPOSITION, two_clip_props(), tmp_path / "x.mp4", seen.append, signal)

    assert seen == []


def test_cancel_signal_callbacks():
    signal = CancelSignal()
    calls = []
    remove = signal.add_callback(lambda: calls.append("a"))
    signal.add_callback(lambda: calls.append("b"))
    remove()

    signal.cancel()
    signal.cancel()
    signal.add_callback(lambda: calls.append("late"))

    assert signal.cancelled
    assert calls == ["b", "late"]
