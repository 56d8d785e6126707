import asyncio
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from reelsmith.api import create_app
from reelsmith.engine import Composition, RenderCancelledError, RenderEngine, RenderProgress
from reelsmith.jobs import JsonJobStore, RenderScheduler
from reelsmith.models import (
    AudioProfileConfig,
    PathsConfig,
    RenderServerConfig,
    StoreConfig,
    VideoProfileConfig,
)
from reelsmith.normalization import NormalizationCache
from reelsmith.services import build_services
from reelsmith.toolchain import AudioStreamInfo, MediaProbe, VideoStreamInfo


def conforming_probe(duration: float = 3.0, has_audio: bool = True) -> MediaProbe:
    return MediaProbe(
        duration=duration,
        video=VideoStreamInfo(
            codec="h264",
            pixel_format="yuv420p",
            width=1920,
            height=1080,
            avg_frame_rate=24.0,
            declared_frame_rate=24.0,
        ),
        audio=AudioStreamInfo(codec="aac", sample_rate=48000, channels=2) if has_audio else None,
    )


class FakeToolchain:
    """Stands in for MediaToolchain; records transcodes and writes tiny files."""

    def __init__(self, default_probe: MediaProbe = None):
        self.video_profile = VideoProfileConfig()
        self.audio_profile = AudioProfileConfig()
        self.default_probe = default_probe or conforming_probe()
        self.probes = {}
        self.transcodes = []
        self.fail_with = None
        self.gate = None  # asyncio.Event transcodes wait on, if set

    async def probe(self, path, controller=None):
        return self.probes.get(str(path), self.default_probe)

    async def _transcode(self, kind, path, out_path):
        self.transcodes.append((kind, str(path), str(out_path)))
        Path(out_path).write_bytes(b"partial")
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        Path(out_path).write_bytes(b"normalized " + kind.encode())

    async def transcode_video(self, path, out_path, has_audio, controller=None, duration=0.0):
        await self._transcode("video", path, out_path)

    async def transcode_audio(self, path, out_path, controller=None):
        await self._transcode("audio", path, out_path)


class FakeEngine(RenderEngine):
    """In-process engine: emits scripted progress, optionally holds until released."""

    def __init__(self, steps=(0.25, 0.5, 0.75), hold=False):
        self.steps = steps
        self.hold = hold
        self.release = asyncio.Event()
        self.rendered = []
        self.props = []
        self.active = 0
        self.max_active = 0
        self.fail_paths = {}

    async def prepare_bundle(self, bundle_dir):
        Path(bundle_dir).mkdir(parents=True, exist_ok=True)
        return str(bundle_dir)

    async def select_composition(self, serve_url, props):
        return Composition(id="two-clip-bgm", fps=24, width=1280, height=720, duration_in_frames=72)

    async def render(self, serve_url, composition, props, output_path, on_progress, cancel_signal):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.rendered.append(props.video1_path)
        self.props.append(props)
        try:
            for fraction in self.steps:
                on_progress(RenderProgress(fraction=fraction))
                await asyncio.sleep(0)

            if self.hold:
                waiter = asyncio.ensure_future(self.release.wait())
                remove = cancel_signal.add_callback(waiter.cancel)
                try:
                    await waiter
                except asyncio.CancelledError:
                    raise RenderCancelledError("Render cancelled.")
                finally:
                    remove()

            if props.video1_path in self.fail_paths:
                raise self.fail_paths[props.video1_path]
            if cancel_signal.cancelled:
                raise RenderCancelledError("Render cancelled.")

            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            Path(output_path).write_bytes(b"mp4")
            on_progress(RenderProgress(fraction=1.0))
        finally:
            self.active -= 1


async def wait_for(predicate, timeout: float = 3.0):
    """Poll ``predicate`` on the running loop until true or timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


STALLING_TOOL = """#!/bin/sh
# Stand-in media tool: blocks on outputs named hang*, otherwise creates the output.
for last; do :; done
case "${last##*/}" in
  hang*) exec sleep 30 ;;
esac
: > "$last"
"""


def make_stalling_tool(directory: Path) -> str:
    """Write an executable that stands in for ffmpeg in process-level tests."""
    path = directory / "fake-ffmpeg"
    path.write_text(STALLING_TOOL)
    path.chmod(0o755)
    return str(path)


def make_media(directory: Path, name: str, payload: bytes = b"media") -> str:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_bytes(payload)
    return str(path)


@pytest.fixture
def toolchain():
    return FakeToolchain()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def store(tmp_path):
    return JsonJobStore(tmp_path / "jobs.json", debounce_s=0.01)


@pytest.fixture
def normalizer(tmp_path, toolchain):
    return NormalizationCache(
        toolchain, video_dir=tmp_path / "cache" / "video", audio_dir=tmp_path / "cache" / "audio"
    )


@pytest_asyncio.fixture
async def scheduler(tmp_path, store, normalizer, toolchain, engine):
    scheduler = RenderScheduler(store, normalizer, toolchain, engine)
    await scheduler.prepare(tmp_path / "bundle")
    yield scheduler
    engine.release.set()
    await scheduler.shutdown()


@pytest.fixture
def server_config(tmp_path):
    return RenderServerConfig(
        paths=PathsConfig(render_dir=tmp_path / "renders"),
        store=StoreConfig(persist_debounce_s=0.01),
    )


@pytest.fixture
def services(server_config, engine, toolchain):
    return build_services(server_config, engine=engine, toolchain=toolchain)


@pytest_asyncio.fixture
async def client(services):
    # ASGITransport does not run lifespan events; start services by hand
    await services.start()

    app = create_app(services=services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    services.engine.release.set()
    await services.stop()
