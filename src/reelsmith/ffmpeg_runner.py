"""Async FFmpeg/FFprobe runner with process supervision and progress parsing.

Every invocation spawns exactly one child process, captures its output and
resolves or raises based on the exit status. A controller object may be
passed so a caller can kill the running process from elsewhere (used for
render cancellation).

Key Features:
- One child process per call, registered on the caller's controller
- Hard kill of the process tree via psutil (immediate, not cooperative)
- Real-time progress parsing from ``-progress pipe:2`` output
- Bounded diagnostic tail kept for error messages
- No retries and no timeouts: a failure is final for the caller
"""

import asyncio
import logging
import shutil
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)

# Keys ffmpeg writes with -progress; everything else on stderr is diagnostics.
PROGRESS_KEYS = frozenset(
    {
        "frame",
        "fps",
        "bitrate",
        "total_size",
        "out_time_us",
        "out_time_ms",
        "out_time",
        "dup_frames",
        "drop_frames",
        "speed",
        "progress",
    }
)
DIAGNOSTIC_TAIL_LINES = 40


class FfmpegError(RuntimeError):
    """A media tool exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
        cmd: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        self.cmd = cmd or []


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    total_duration_s: float = 0.0    # Expected output duration (if known)
    fps: float = 0.0
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0
    finished: bool = False           # progress=end seen
    last_update: float = 0.0

    @property
    def fraction(self) -> float:
        """Completed share of the expected duration, clamped to [0, 1]."""
        if self.finished:
            return 1.0
        if self.total_duration_s <= 0:
            return 0.0
        return max(0.0, min(1.0, self.current_time_s / self.total_duration_s))


@dataclass
class FfmpegResult:
    """Result of a successful tool execution."""
    returncode: int
    stdout: str
    stderr: str
    duration_s: float
    final_progress: Optional[FfmpegProgress] = None


def resolve_ffmpeg_exe(configured: Optional[str] = None) -> str:
    """Configured path, then PATH, then the binary bundled with imageio-ffmpeg."""
    if configured:
        return configured
    found = shutil.which("ffmpeg")
    if found:
        return found
    return imageio_ffmpeg.get_ffmpeg_exe()


def resolve_ffprobe_exe(configured: Optional[str] = None) -> str:
    """imageio-ffmpeg ships no ffprobe, so this is configured path or PATH only."""
    if configured:
        return configured
    return shutil.which("ffprobe") or "ffprobe"


def kill_process_tree(pid: int) -> None:
    """SIGKILL a process and all of its descendants.

    Does not reap: the asyncio child watcher owns the wait on our direct child.
    """
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return

    for proc in children + [parent]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


class FfmpegRunner:
    """Spawns ffmpeg/ffprobe and turns exit status into results or errors.

    Example:
        >>> runner = FfmpegRunner()
        >>> result = await runner.run_ffprobe(["-show_streams", "-of", "json", "in.mp4"])
        >>> await runner.run_ffmpeg(["-i", "in.mp4", "out.mp4"], controller=ctrl)
    """

    def __init__(
        self,
        ffmpeg_exe: Optional[str] = None,
        ffprobe_exe: Optional[str] = None,
        loglevel: str = "error",
    ):
        self.ffmpeg_exe = resolve_ffmpeg_exe(ffmpeg_exe)
        self.ffprobe_exe = resolve_ffprobe_exe(ffprobe_exe)
        self.loglevel = loglevel

    async def run_ffmpeg(
        self,
        args: List[str],
        controller=None,
        expected_duration: Optional[float] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> FfmpegResult:
        """Run ffmpeg with ``args`` (no executable), reporting progress.

        Args:
            args: ffmpeg arguments, output path last
            controller: Optional object with ``active_process`` / ``cancelled``
            expected_duration: Output duration used for ``FfmpegProgress.fraction``
            progress_callback: Invoked once per ``-progress`` block

        Raises:
            FfmpegError: On spawn failure or non-zero exit
        """
        cmd = [
            self.ffmpeg_exe,
            "-hide_banner",
            "-nostdin",
            "-loglevel", self.loglevel,
            "-progress", "pipe:2",
            *args,
        ]
        progress = FfmpegProgress(total_duration_s=expected_duration or 0.0)
        return await self._run(cmd, controller, progress, progress_callback)

    async def run_ffprobe(self, args: List[str], controller=None) -> FfmpegResult:
        """Run ffprobe with ``args`` and return its captured stdout."""
        cmd = [self.ffprobe_exe, "-v", "error", *args]
        return await self._run(cmd, controller, None, None)

    async def _run(
        self,
        cmd: List[str],
        controller,
        progress: Optional[FfmpegProgress],
        progress_callback: Optional[Callable[[FfmpegProgress], None]],
    ) -> FfmpegResult:
        if controller is not None and getattr(controller, "cancelled", False):
            raise FfmpegError("Process not started: job was cancelled.", cmd=cmd)

        start_time = time.time()
        logger.debug("Spawning: %s", " ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise FfmpegError(f"Unable to start {cmd[0]}: {e}", cmd=cmd) from e

        if controller is not None:
            controller.active_process = process

        diagnostics: deque = deque(maxlen=DIAGNOSTIC_TAIL_LINES)
        try:
            stdout_task = asyncio.ensure_future(process.stdout.read())
            async for raw in process.stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                if progress is not None and self._consume_progress_line(line, progress):
                    if line.startswith("progress=") and progress_callback is not None:
                        try:
                            progress_callback(progress)
                        except Exception:
                            logger.exception("Progress callback failed")
                    continue
                diagnostics.append(line)

            stdout = (await stdout_task).decode("utf-8", errors="replace")
            returncode = await process.wait()
        except asyncio.CancelledError:
            kill_process_tree(process.pid)
            raise
        finally:
            if controller is not None and getattr(controller, "active_process", None) is process:
                controller.active_process = None

        stderr = "\n".join(diagnostics)
        if returncode != 0:
            tool = "ffprobe" if cmd[0] == self.ffprobe_exe else "ffmpeg"
            message = f"{tool} exited with code {returncode}"
            if stderr:
                message = f"{message}: {stderr}"
            raise FfmpegError(message, returncode=returncode, stderr=stderr, cmd=cmd)

        return FfmpegResult(
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_s=time.time() - start_time,
            final_progress=progress,
        )

    @staticmethod
    def _consume_progress_line(line: str, progress: FfmpegProgress) -> bool:
        """Parse one ``key=value`` line of ffmpeg ``-progress`` output.

        FFmpeg progress format:
            frame=123
            fps=24.00
            out_time_us=5123456
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue

        Returns:
            True if the line belonged to the progress stream
        """
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or key not in PROGRESS_KEYS:
            return False
        value = value.strip()

        try:
            if key == "out_time_us" or key == "out_time_ms":
                # ffmpeg reports microseconds under both names
                if value not in ("", "N/A"):
                    progress.current_time_s = max(0.0, int(value) / 1_000_000)
                    progress.last_update = time.time()
            elif key == "frame":
                progress.frame = int(value)
            elif key == "fps":
                progress.fps = float(value)
            elif key == "speed" and value.endswith("x"):
                progress.speed = float(value[:-1])
            elif key == "progress" and value == "end":
                progress.finished = True
        except ValueError:
            # N/A and partial values appear early in a run
            pass
        return True
