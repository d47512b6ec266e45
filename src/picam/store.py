"""Read access to the per-device motion archive."""
from __future__ import annotations

from pathlib import Path

from .frames import (
    Frame,
    archive_day_path,
    decode_archive_name,
    device_dir_name,
    encode_archive_name,
    encode_legacy_archive_name,
    ms_from_frame,
)


class FrameNotFoundError(LookupError):
    """Raised when no archived image exists for a frame descriptor."""


class FrameStore:
    """Look up archived frames by device, day, motion score and time of day."""

    def __init__(self, data_dir: Path | str) -> None:
        self._data_dir = Path(data_dir)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def list_devices(self) -> list[str]:
        if not self._data_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self._data_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def day_dir(self, device: str, year: int, month: int, day: int) -> Path:
        return archive_day_path(
            self._data_dir / device_dir_name(device) / "archive", year, month, day
        )

    def list_frames(
        self,
        device: str,
        year: int,
        month: int,
        day: int,
        *,
        threshold: int = 1,
        after: Frame | None = None,
    ) -> list[Frame]:
        """Return the day's frames in capture order.

        Frames scoring below ``threshold`` are dropped, as is everything at or
        before the time of day of ``after``. Files that do not decode as frame
        names are skipped.
        """

        folder = self.day_dir(device, year, month, day)
        if not folder.is_dir():
            return []
        cursor = ms_from_frame(after) if after is not None else -1
        frames: list[Frame] = []
        for name in sorted(entry.name for entry in folder.iterdir()):
            decoded = decode_archive_name(name)
            if decoded is None:
                continue
            frame = decoded.frame
            if frame.motion >= threshold and ms_from_frame(frame) > cursor:
                frames.append(frame)
        return frames

    def frame_path(self, device: str, year: int, month: int, day: int, frame: Frame) -> Path:
        folder = self.day_dir(device, year, month, day)
        for name in (encode_archive_name(frame), encode_legacy_archive_name(frame)):
            candidate = folder / name
            if candidate.is_file():
                return candidate
        raise FrameNotFoundError(
            f"No archived frame {frame.counter} for {device} on {year:04d}-{month:02d}-{day:02d}"
        )

    def read_frame(self, device: str, year: int, month: int, day: int, frame: Frame) -> bytes:
        return self.frame_path(device, year, month, day, frame).read_bytes()


__all__ = ["FrameNotFoundError", "FrameStore"]
