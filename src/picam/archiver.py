"""Drain the capture buffer into the dated motion archive."""
from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Awaitable, Protocol

from .fingerprint import ExtractionError, distance
from .frames import (
    FRAME_EXTENSION,
    archive_day_path,
    buffer_name,
    counter_from_buffer_name,
    encode_archive_name,
    frame_from_timestamp,
)

logger = logging.getLogger(__name__)

FIRST_FRAME_DISTANCE = 100
"""Distance assumed for the first frame of a session, which has nothing to compare against."""

DEFAULT_MOTION_THRESHOLD = 20
DEFAULT_POLL_INTERVAL = 0.5


class Extractor(Protocol):
    def extract(self, path: Path) -> Awaitable[bytes]:  # pragma: no cover - interface only
        ...


@dataclass(slots=True)
class DeviceSession:
    """Directories and fingerprint baseline of one device's capture cycle."""

    device: str
    device_dir: Path
    baseline: bytes | None = None

    @property
    def buffer_dir(self) -> Path:
        return self.device_dir / "buffer"

    @property
    def archive_dir(self) -> Path:
        return self.device_dir / "archive"

    def buffer_path(self, counter: int) -> Path:
        return self.buffer_dir / buffer_name(counter)

    def prepare(self) -> None:
        self.buffer_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def next_cycle(self) -> "DeviceSession":
        """Return a fresh session for the same device with no baseline."""

        return DeviceSession(device=self.device, device_dir=self.device_dir)


class FrameAction(str, Enum):
    ARCHIVED = "archived"
    DISCARDED = "discarded"
    FAILED = "failed"


@dataclass(slots=True)
class ArchiveOutcome:
    """What happened to one buffer file."""

    source: Path
    action: FrameAction
    distance: int | None = None
    destination: Path | None = None


def _creation_time(path: Path) -> datetime:
    stat = path.stat()
    timestamp = getattr(stat, "st_birthtime", None) or stat.st_ctime
    return datetime.fromtimestamp(timestamp)


def _relocate(source: Path, archive_dir: Path, counter: int, motion: int) -> Path:
    created = _creation_time(source)
    day_dir = archive_day_path(archive_dir, created.year, created.month, created.day)
    day_dir.mkdir(parents=True, exist_ok=True)
    frame = frame_from_timestamp(created, counter=counter, motion=motion)
    destination = day_dir / encode_archive_name(frame)
    shutil.move(str(source), str(destination))
    return destination


async def classify_frame(
    session: DeviceSession,
    path: Path,
    counter: int,
    extractor: Extractor,
    *,
    threshold: int = DEFAULT_MOTION_THRESHOLD,
) -> ArchiveOutcome:
    """Archive or discard one complete buffer file and advance the session baseline.

    A frame whose fingerprint cannot be extracted is discarded without touching
    the baseline, so the next frame is compared with the last readable one.
    """

    try:
        fingerprint = await extractor.extract(path)
    except ExtractionError as exc:
        logger.error("Discarding unreadable frame %s: %s", path, exc)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        return ArchiveOutcome(source=path, action=FrameAction.FAILED)

    if session.baseline is None:
        score = FIRST_FRAME_DISTANCE
    else:
        score = distance(fingerprint, session.baseline)

    if score > threshold:
        destination = await asyncio.to_thread(
            _relocate, path, session.archive_dir, counter, score
        )
        outcome = ArchiveOutcome(
            source=path, action=FrameAction.ARCHIVED, distance=score, destination=destination
        )
        logger.debug("Archived %s as %s (distance %d)", path.name, destination.name, score)
    else:
        await asyncio.to_thread(path.unlink)
        outcome = ArchiveOutcome(source=path, action=FrameAction.DISCARDED, distance=score)

    session.baseline = fingerprint
    return outcome


class Archiver:
    """Poll the buffer directory and classify frames in capture order.

    A buffer file is only treated as complete once the capture process has
    started writing its successor.
    """

    def __init__(
        self,
        session: DeviceSession,
        extractor: Extractor,
        *,
        threshold: int = DEFAULT_MOTION_THRESHOLD,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        start_counter: int = 1,
    ) -> None:
        self._session = session
        self._extractor = extractor
        self._threshold = threshold
        self._poll_interval = max(0.0, float(poll_interval))
        self._counter = int(start_counter)
        self.archived = 0
        self.discarded = 0
        self.failed = 0

    @property
    def counter(self) -> int:
        return self._counter

    @property
    def session(self) -> DeviceSession:
        return self._session

    async def run(self, cancelled: asyncio.Event) -> None:
        """Classify frames until ``cancelled`` is set."""

        while not cancelled.is_set():
            current = self._session.buffer_path(self._counter)
            successor = self._session.buffer_path(self._counter + 1)
            if not successor.exists():
                await self._idle(cancelled)
                continue

            outcome = await classify_frame(
                self._session,
                current,
                self._counter,
                self._extractor,
                threshold=self._threshold,
            )
            self._tally(outcome)
            self._counter += 1

        logger.info(
            "Archiving stopped for %s at frame %d (%d archived, %d discarded, %d failed)",
            self._session.device,
            self._counter,
            self.archived,
            self.discarded,
            self.failed,
        )

    async def _idle(self, cancelled: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(cancelled.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            pass

    def _tally(self, outcome: ArchiveOutcome) -> None:
        if outcome.action is FrameAction.ARCHIVED:
            self.archived += 1
        elif outcome.action is FrameAction.DISCARDED:
            self.discarded += 1
        else:
            self.failed += 1


@dataclass(slots=True)
class RecoveryReport:
    """Summary of a recovery sweep."""

    processed: int = 0
    archived: int = 0
    discarded: int = 0
    failed: list[Path] = field(default_factory=list)


def _backlog(buffer_dir: Path) -> list[Path]:
    if not buffer_dir.is_dir():
        return []
    names = sorted(
        entry.name
        for entry in buffer_dir.iterdir()
        if entry.is_file() and not entry.name.startswith(".") and entry.name.endswith(FRAME_EXTENSION)
    )
    return [buffer_dir / name for name in names]


async def recover(
    session: DeviceSession,
    extractor: Extractor,
    *,
    threshold: int = DEFAULT_MOTION_THRESHOLD,
) -> RecoveryReport:
    """Classify every frame left in the buffer by an interrupted run.

    Frames are processed in counter order and the session baseline is carried
    forward, so the first live frame is compared with the last recovered one.
    A failure on one file is logged and the sweep moves on.
    """

    files = _backlog(session.buffer_dir)
    report = RecoveryReport()
    if not files:
        return report

    logger.info("Performing recovery of %d frame(s) in %s", len(files), session.buffer_dir)
    last_percent = ""
    for index, path in enumerate(files, start=1):
        percent = f"{100 * index / len(files):.0f}"
        if percent != last_percent:
            logger.info("Recovering %s... %s%%", session.device, percent)
            last_percent = percent
        counter = counter_from_buffer_name(path.name) or 0
        try:
            outcome = await classify_frame(
                session, path, counter, extractor, threshold=threshold
            )
        except OSError as exc:
            logger.error("Recovery of %s failed: %s", path, exc)
            report.failed.append(path)
            continue
        report.processed += 1
        if outcome.action is FrameAction.ARCHIVED:
            report.archived += 1
        elif outcome.action is FrameAction.DISCARDED:
            report.discarded += 1
        else:
            report.failed.append(path)

    logger.info(
        "Recovery complete for %s: %d archived, %d discarded, %d failed",
        session.device,
        report.archived,
        report.discarded,
        len(report.failed),
    )
    return report


__all__ = [
    "ArchiveOutcome",
    "Archiver",
    "DEFAULT_MOTION_THRESHOLD",
    "DEFAULT_POLL_INTERVAL",
    "DeviceSession",
    "FIRST_FRAME_DISTANCE",
    "FrameAction",
    "RecoveryReport",
    "classify_frame",
    "recover",
]
