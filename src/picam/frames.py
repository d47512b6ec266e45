"""Archive and buffer filename encoding for captured frames."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

FRAME_EXTENSION = ".jpg"
LEGACY_MOTION = 20
"""Motion score reported for archive entries written before scores were recorded."""

_COUNTER_WIDTH = 9
_MOTION_WIDTH = 5
# Character that separates the motion score from the counter in the current
# naming scheme. Legacy names have a counter digit at this offset instead.
_MOTION_SEPARATOR_OFFSET = 18


class FrameNameFormat(str, Enum):
    """Naming schemes found in the archive."""

    CURRENT = "current"
    LEGACY = "legacy"


@dataclass(frozen=True, slots=True)
class Frame:
    """Time-of-day, buffer counter and motion score of one archived frame."""

    hour: int
    minute: int
    second: int
    ms: int
    counter: int
    motion: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Frame":
        try:
            return cls(
                hour=int(payload["hour"]),
                minute=int(payload["minute"]),
                second=int(payload["second"]),
                ms=int(payload["ms"]),
                counter=int(payload.get("counter", payload.get("frame", 0))),
                motion=int(payload.get("motion", LEGACY_MOTION)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError("Frame payload requires numeric hour, minute, second and ms") from exc


@dataclass(frozen=True, slots=True)
class DecodedFrameName:
    """Result of decoding an archive filename, tagged with its naming scheme."""

    format: FrameNameFormat
    frame: Frame


def pad(value: int | str, width: int) -> str:
    """Left-pad ``value`` with zeros to ``width`` characters."""

    return str(value).zfill(width)


def buffer_name(counter: int) -> str:
    return f"{counter:0{_COUNTER_WIDTH}d}{FRAME_EXTENSION}"


def buffer_pattern() -> str:
    """Output pattern handed to the capture process for buffer files."""

    return f"%0{_COUNTER_WIDTH}d{FRAME_EXTENSION}"


def _time_prefix(frame: Frame) -> str:
    return f"{frame.hour:02d}-{frame.minute:02d}-{frame.second:02d}-{frame.ms:03d}"


def encode_archive_name(frame: Frame) -> str:
    """Return the current-format archive filename for ``frame``."""

    return (
        f"{_time_prefix(frame)}-{frame.motion:0{_MOTION_WIDTH}d}-"
        f"{buffer_name(frame.counter)}"
    )


def encode_legacy_archive_name(frame: Frame) -> str:
    """Return the pre-motion-score filename ``frame`` would have been stored under."""

    return f"{_time_prefix(frame)}-{buffer_name(frame.counter)}"


def _field(name: str, start: int, length: int) -> int | None:
    segment = name[start : start + length]
    if len(segment) != length or not segment.isdigit():
        return None
    return int(segment)


def decode_archive_name(name: str) -> DecodedFrameName | None:
    """Decode an archive filename, returning ``None`` when it is not a frame."""

    if not name or name[0] == ".":
        return None
    hour = _field(name, 0, 2)
    minute = _field(name, 3, 2)
    second = _field(name, 6, 2)
    ms = _field(name, 9, 3)
    if hour is None or minute is None or second is None or ms is None:
        return None

    if name[_MOTION_SEPARATOR_OFFSET : _MOTION_SEPARATOR_OFFSET + 1] == "-":
        name_format = FrameNameFormat.CURRENT
        motion = _field(name, 13, _MOTION_WIDTH)
        counter = _field(name, 19, _COUNTER_WIDTH)
    else:
        name_format = FrameNameFormat.LEGACY
        motion = LEGACY_MOTION
        counter = _field(name, 13, _COUNTER_WIDTH)
    if motion is None or counter is None:
        return None
    frame = Frame(hour=hour, minute=minute, second=second, ms=ms, counter=counter, motion=motion)
    return DecodedFrameName(format=name_format, frame=frame)


def parse_frame_name(name: str) -> Frame | None:
    decoded = decode_archive_name(name)
    return decoded.frame if decoded is not None else None


def frame_from_timestamp(timestamp: datetime, *, counter: int, motion: int) -> Frame:
    """Build the descriptor for a frame captured at ``timestamp``."""

    return Frame(
        hour=timestamp.hour,
        minute=timestamp.minute,
        second=timestamp.second,
        ms=timestamp.microsecond // 1000,
        counter=counter,
        motion=motion,
    )


def ms_from_frame(frame: Frame) -> int:
    """Return the frame's time-of-day in milliseconds."""

    return (((frame.hour * 60) + frame.minute) * 60 + frame.second) * 1000 + frame.ms


def archive_day_path(archive_dir: Path, year: int, month: int, day: int) -> Path:
    return Path(archive_dir) / pad(year, 4) / pad(month, 2) / pad(day, 2)


def device_dir_name(device: str) -> str:
    """Return the data directory name used for a device identifier."""

    return device.replace("/", "_")


def counter_from_buffer_name(name: str) -> int | None:
    """Return the counter encoded in a buffer filename."""

    stem, extension = name[: -len(FRAME_EXTENSION)], name[-len(FRAME_EXTENSION) :]
    if extension != FRAME_EXTENSION or not stem.isdigit():
        return None
    return int(stem)


__all__ = [
    "DecodedFrameName",
    "FRAME_EXTENSION",
    "Frame",
    "FrameNameFormat",
    "LEGACY_MOTION",
    "archive_day_path",
    "buffer_name",
    "buffer_pattern",
    "counter_from_buffer_name",
    "decode_archive_name",
    "device_dir_name",
    "encode_archive_name",
    "encode_legacy_archive_name",
    "frame_from_timestamp",
    "ms_from_frame",
    "pad",
    "parse_frame_name",
]
