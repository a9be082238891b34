#!/usr/bin/env python3
"""
HDC Timecode Engine
Version: 1.0.0

Frame-rate aware timecode arithmetic for the deck's display timecode:
- Fixed video format -> frame rate table (drop-frame 29.97/59.94 included)
- SMPTE drop-frame conversion between timecode strings and frame counts
- One explicit parse_timecode() with a separate regex fallback branch
- Count-up / count-down computation for the active clip
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Any, Union

logger = logging.getLogger(__name__)

PLACEHOLDER = '--'

TIMECODE_PATTERN = re.compile(
    r'^(?P<HMS>(?P<H>\d{2}):(?P<M>\d{2}):(?P<S>\d{2}))(?P<sep>[:;])(?P<F>\d{2})$'
)


class TimecodeParseError(ValueError):
    """Malformed or unsupported timecode, or no frame rate to convert it with."""


@dataclass(frozen=True)
class FrameRate:
    """Frames-per-second for a video format plus its timecode convention."""
    fps: float
    nominal: int
    drop_frame: bool = False

    @property
    def dropped_per_minute(self) -> int:
        # 29.97 drops 2 frame numbers per minute, 59.94 drops 4
        if not self.drop_frame:
            return 0
        return 2 * (self.nominal // 30)


FRAME_RATES: Dict[str, FrameRate] = {
    'NTSC': FrameRate(29.97, 30, True),
    'PAL': FrameRate(25, 25),
    'NTSCp': FrameRate(29.97, 30, True),
    'PALp': FrameRate(25, 25),
    '720p50': FrameRate(50, 50),
    '720p5994': FrameRate(59.94, 60, True),
    '720p60': FrameRate(60, 60),
    '1080p23976': FrameRate(23.976, 24),
    '1080p24': FrameRate(24, 24),
    '1080p25': FrameRate(25, 25),
    '1080p2997': FrameRate(29.97, 30, True),
    '1080p30': FrameRate(30, 30),
    '1080i50': FrameRate(25, 25),
    '1080i5994': FrameRate(29.97, 30, True),
    '1080i60': FrameRate(30, 30),
    '1080p50': FrameRate(50, 50),
    '1080p5994': FrameRate(59.94, 60, True),
    '1080p60': FrameRate(60, 60),
    '4Kp23976': FrameRate(23.976, 24),
    '4Kp24': FrameRate(24, 24),
    '4Kp25': FrameRate(25, 25),
    '4Kp2997': FrameRate(29.97, 30, True),
    '4Kp30': FrameRate(30, 30),
    '4Kp50': FrameRate(50, 50),
    '4Kp5994': FrameRate(59.94, 60, True),
    '4Kp60': FrameRate(60, 60),
}


def resolve_frame_rate(video_format: Optional[str]) -> Optional[FrameRate]:
    """Look up the frame rate for a device video format id ('1080p30' or '_1080p30')."""
    if not video_format:
        return None
    return FRAME_RATES.get(str(video_format).lstrip('_'))


@dataclass
class TimecodeValue:
    """Structured timecode; every field is None while the value is a placeholder."""
    hours: Optional[int] = None
    minutes: Optional[int] = None
    seconds: Optional[int] = None
    frames: Optional[int] = None
    frame_count: Optional[int] = None
    separator: str = ':'

    @property
    def valid(self) -> bool:
        return self.hours is not None

    @property
    def hms(self) -> str:
        if not self.valid:
            return f"{PLACEHOLDER}:{PLACEHOLDER}:{PLACEHOLDER}"
        return f"{self.hours:02d}:{self.minutes:02d}:{self.seconds:02d}"

    @property
    def hmsf(self) -> str:
        if not self.valid:
            return f"{PLACEHOLDER}:{PLACEHOLDER}:{PLACEHOLDER}:{PLACEHOLDER}"
        return f"{self.hms}{self.separator}{self.frames:02d}"

    def components(self) -> Dict[str, str]:
        """Zero-padded H/M/S/F display strings."""
        if not self.valid:
            return {'H': PLACEHOLDER, 'M': PLACEHOLDER, 'S': PLACEHOLDER, 'F': PLACEHOLDER}
        return {
            'H': f"{self.hours:02d}",
            'M': f"{self.minutes:02d}",
            'S': f"{self.seconds:02d}",
            'F': f"{self.frames:02d}",
        }

    @classmethod
    def from_frames(cls, frame_count: int, rate: FrameRate,
                    separator: Optional[str] = None) -> 'TimecodeValue':
        """Build a timecode from an absolute frame count at the given rate."""
        hours, minutes, seconds, frames = frames_to_components(frame_count, rate)
        if separator is None:
            separator = ';' if rate.drop_frame else ':'
        return cls(hours, minutes, seconds, frames, frame_count, separator)

    def __str__(self) -> str:
        return self.hmsf


def split_timecode(raw: Optional[str]) -> Optional[Tuple[int, int, int, int, str]]:
    """Split 'HH:MM:SS:FF' / 'HH:MM:SS;FF' into integers and the frame separator."""
    if not raw:
        return None
    match = TIMECODE_PATTERN.match(str(raw).strip())
    if not match:
        return None
    return (int(match.group('H')), int(match.group('M')), int(match.group('S')),
            int(match.group('F')), match.group('sep'))


def _component_error(hours: int, minutes: int, seconds: int, frames: int,
                     rate: FrameRate) -> Optional[str]:
    if minutes > 59 or seconds > 59:
        return "minutes/seconds out of range"
    if frames >= rate.nominal:
        return f"frame {frames} out of range for {rate.fps} fps"
    drop = rate.dropped_per_minute
    if drop and seconds == 0 and minutes % 10 != 0 and frames < drop:
        return f"frame {frames} is skipped in drop-frame minute {minutes}"
    return None


def _components_to_frames(hours: int, minutes: int, seconds: int, frames: int,
                          rate: FrameRate) -> int:
    total_minutes = hours * 60 + minutes
    count = (hours * 3600 + minutes * 60 + seconds) * rate.nominal + frames
    return count - rate.dropped_per_minute * (total_minutes - total_minutes // 10)


def timecode_to_frames(raw: str, rate: Optional[FrameRate]) -> int:
    """Strict conversion of a timecode string to an absolute frame count."""
    if rate is None:
        raise TimecodeParseError(f"No frame rate available to convert '{raw}'")
    parts = split_timecode(raw)
    if parts is None:
        raise TimecodeParseError(f"Malformed timecode '{raw}'")
    hours, minutes, seconds, frames, _ = parts
    error = _component_error(hours, minutes, seconds, frames, rate)
    if error:
        raise TimecodeParseError(f"Invalid timecode '{raw}': {error}")
    return _components_to_frames(hours, minutes, seconds, frames, rate)


def frames_to_components(frame_count: int, rate: FrameRate) -> Tuple[int, int, int, int]:
    """Convert an absolute frame count to (hours, minutes, seconds, frames)."""
    if frame_count < 0:
        raise TimecodeParseError(f"Negative frame count {frame_count}")

    drop = rate.dropped_per_minute
    if drop:
        frames_per_minute = rate.nominal * 60 - drop
        frames_per_ten_minutes = frames_per_minute * 10 + drop
        tens, remainder = divmod(frame_count, frames_per_ten_minutes)
        frame_count += 9 * drop * tens
        if remainder > drop:
            frame_count += drop * ((remainder - drop) // frames_per_minute)

    total_seconds, frames = divmod(frame_count, rate.nominal)
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return hours, minutes, seconds, frames


def frames_to_timecode(frame_count: int, rate: FrameRate) -> str:
    """Render an absolute frame count as a timecode string."""
    return TimecodeValue.from_frames(frame_count, rate).hmsf


def parse_timecode(raw: Optional[str], rate: Optional[FrameRate]) -> TimecodeValue:
    """
    Parse a device timecode string. Never raises.

    With a resolved rate the result carries an absolute frame count. Without
    one only the display fields are filled from the regex match.
    """
    parts = split_timecode(raw)
    if parts is None:
        if raw:
            logger.debug(f"Unparseable timecode '{raw}'")
        return TimecodeValue()

    hours, minutes, seconds, frames, separator = parts

    if rate is None:
        # Fallback branch: no frame arithmetic possible
        return TimecodeValue(hours, minutes, seconds, frames, None, separator)

    error = _component_error(hours, minutes, seconds, frames, rate)
    if error:
        logger.debug(f"Timecode '{raw}' rejected at {rate.fps} fps: {error}")
        return TimecodeValue()

    frame_count = _components_to_frames(hours, minutes, seconds, frames, rate)
    return TimecodeValue(hours, minutes, seconds, frames, frame_count, separator)


def to_frames(value: Union[int, str, None], rate: Optional[FrameRate]) -> Optional[int]:
    """Frame count for a clip field that may already be a frame count."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return parse_timecode(value, rate).frame_count


def remaining_frames(clip_total: int, clip_start: int, current_frame: int) -> int:
    """Frames left in a clip; clamped so clock drift never yields a negative count."""
    return max(0, clip_total - (current_frame - clip_start) - 1)


@dataclass
class ComputedTimecode:
    """Result of one recomputation pass."""
    count_up: TimecodeValue = field(default_factory=TimecodeValue)
    count_down: TimecodeValue = field(default_factory=TimecodeValue)
    rate: Optional[FrameRate] = None
    current_frame: Optional[int] = None


class TimecodeEngine:
    """Recomputes count-up and count-down displays from transport and clip state."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.last = ComputedTimecode()

    def compute(self, transport: Any, clip_directory: Any) -> ComputedTimecode:
        """Compute timecodes for the current transport state."""
        rate = resolve_frame_rate(transport.video_format)
        result = ComputedTimecode(rate=rate)

        if transport.display_timecode:
            result.count_up = parse_timecode(transport.display_timecode, rate)
            result.current_frame = result.count_up.frame_count

            if result.current_frame is not None:
                result.count_down = self._count_down(transport, clip_directory, rate,
                                                     result.current_frame)

        self.last = result
        return result

    def _count_down(self, transport: Any, clip_directory: Any, rate: FrameRate,
                    current_frame: int) -> TimecodeValue:
        if transport.slot_id is None or transport.clip_id is None:
            return TimecodeValue()

        clip = clip_directory.find_by_id(transport.slot_id, transport.clip_id)
        if clip is None or not clip.duration:
            return TimecodeValue()

        total = to_frames(clip.duration, rate)
        start = to_frames(clip.start_time, rate)
        if total is None or start is None:
            self.logger.debug(f"Clip {clip.clip_id} has no usable duration/start at {rate.fps} fps")
            return TimecodeValue()

        left = remaining_frames(total, start, current_frame)
        return TimecodeValue.from_frames(left, rate)
