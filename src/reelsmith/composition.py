"""Composition props and timeline resolution for the two-clip + BGM template.

The scheduler resolves every input (normalized paths, probed durations, gain)
into ``CompositionProps``; engines turn those props into frames with
``resolve_timeline`` so placement rules live in one place.
"""

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

MIN_DB = -20.0
MAX_DB = 20.0


class BgmMode(str, Enum):
    """Which part of the timeline background music is anchored to."""

    FULL = "FULL"
    VIDEO1_ONLY = "VIDEO1_ONLY"
    VIDEO2_ONLY = "VIDEO2_ONLY"


def clamp_db(value: float, min_db: float = MIN_DB, max_db: float = MAX_DB) -> float:
    return min(max_db, max(min_db, value))


def db_to_gain(db: float, min_db: float = MIN_DB, max_db: float = MAX_DB) -> float:
    return math.pow(10, clamp_db(db, min_db, max_db) / 20)


def gain_to_db(gain: float, min_db: float = MIN_DB, max_db: float = MAX_DB) -> float:
    if not isinstance(gain, (int, float)) or not math.isfinite(gain) or gain <= 0:
        return min_db
    return clamp_db(20 * math.log10(gain), min_db, max_db)


def _finite_or_none(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def resolve_volume_gain(
    volume_db=None, volume=None, min_db: float = MIN_DB, max_db: float = MAX_DB
) -> float:
    """Linear gain for a BGM track.

    A decibel value wins and is clamped to [min_db, max_db]; otherwise a raw
    linear ``volume`` is used as-is; otherwise unity gain.
    """
    db = _finite_or_none(volume_db)
    if db is not None:
        return db_to_gain(db, min_db, max_db)
    linear = _finite_or_none(volume)
    if linear is not None:
        return linear
    return 1.0


@dataclass
class BgmProps:
    path: str
    duration: float       # of the normalized track itself
    play_length: float    # seconds requested
    volume: float         # linear gain
    mode: BgmMode = BgmMode.FULL
    start_time: float = 0.0
    loop: bool = False

    @property
    def should_loop(self) -> bool:
        """Looping is explicit, or implied when asked to play longer than the track."""
        return self.loop or self.play_length > self.duration


@dataclass
class CompositionProps:
    """Everything the template needs, with inputs already normalized."""

    video1_path: str
    video1_duration: float
    video2_path: str = ""
    video2_duration: float = 0.0
    video1_has_audio: bool = False
    video2_has_audio: bool = False
    export_quality: str = "1080p"
    bgm: Optional[BgmProps] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.bgm is not None:
            data["bgm"]["mode"] = self.bgm.mode.value
        return data


@dataclass
class Timeline:
    """Frame-level placement of every element on the output timeline."""

    fps: int
    video1_frames: int
    video2_frames: int
    bgm_start_frame: int = 0
    bgm_play_frames: int = 0
    bgm_loop: bool = False
    total_frames: int = field(init=False)

    def __post_init__(self):
        self.total_frames = self.video1_frames + self.video2_frames

    @property
    def has_bgm(self) -> bool:
        return self.bgm_play_frames > 0

    def seconds(self, frames: int) -> float:
        return frames / self.fps


def to_frames(seconds: float, fps: int, min_frames: int = 0) -> int:
    # round-half-up to match the template's Math.round behaviour
    return max(min_frames, int(math.floor(seconds * fps + 0.5)))


def composition_duration_frames(props: CompositionProps, fps: int) -> int:
    total_seconds = max(1.0, (props.video1_duration or 0) + (props.video2_duration or 0))
    return max(1, to_frames(total_seconds, fps))


def resolve_timeline(props: CompositionProps, fps: int) -> Timeline:
    """Place clips and BGM in frames.

    Start offset and play length are clamped against the target span selected
    by the BGM mode (clip 1, clip 2, or both); a BGM that resolves to zero
    frames is dropped.
    """
    video1_frames = to_frames(props.video1_duration, fps, 1)
    video2_frames = to_frames(props.video2_duration, fps, 0) if props.video2_path else 0
    timeline = Timeline(fps=fps, video1_frames=video1_frames, video2_frames=video2_frames)

    bgm = props.bgm
    if bgm is None or not bgm.path:
        return timeline

    bgm_frames = to_frames(bgm.play_length, fps, 0)
    offset_frames = to_frames(bgm.start_time, fps, 0)

    if bgm.mode == BgmMode.VIDEO1_ONLY:
        target = video1_frames
    elif bgm.mode == BgmMode.VIDEO2_ONLY:
        target = video2_frames
    else:
        target = video1_frames + video2_frames

    offset = min(offset_frames, max(0, target - bgm_frames))
    anchor = video1_frames if bgm.mode == BgmMode.VIDEO2_ONLY else 0
    play_frames = min(bgm_frames, max(0, target - offset))

    timeline.bgm_start_frame = anchor + offset
    timeline.bgm_play_frames = play_frames
    timeline.bgm_loop = bgm.should_loop
    return timeline
