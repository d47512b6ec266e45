from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from picam.archiver import (
    Archiver,
    DeviceSession,
    FIRST_FRAME_DISTANCE,
    FrameAction,
    classify_frame,
    recover,
)
from picam.fingerprint import ExtractionError
from picam.frames import Frame, decode_archive_name


def archived_frames(session: DeviceSession) -> list[Frame]:
    frames = []
    for path in sorted(session.archive_dir.rglob("*.jpg")):
        decoded = decode_archive_name(path.name)
        assert decoded is not None
        year, month, day = path.parent.relative_to(session.archive_dir).parts
        assert (len(year), len(month), len(day)) == (4, 2, 2)
        frames.append(decoded.frame)
    return sorted(frames, key=lambda frame: frame.counter)


async def run_until(archiver: Archiver, counter: int, wait_until) -> None:
    cancelled = asyncio.Event()
    task = asyncio.create_task(archiver.run(cancelled))
    try:
        await wait_until(lambda: archiver.counter >= counter)
    finally:
        cancelled.set()
        await task


@pytest.mark.anyio
async def test_archiver_keeps_frames_with_motion(
    session, make_extractor, write_buffer, wait_until
) -> None:
    # Distances to the previous frame: sentinel, 5, 30, 5, 40.
    extractor = make_extractor({1: 0, 2: 5, 3: 35, 4: 40, 5: 80})
    for counter in range(1, 7):
        write_buffer(session, counter)
    archiver = Archiver(session, extractor, threshold=20, poll_interval=0.01)

    await run_until(archiver, 6, wait_until)

    frames = archived_frames(session)
    assert [frame.counter for frame in frames] == [1, 3, 5]
    assert [frame.motion for frame in frames] == [FIRST_FRAME_DISTANCE, 30, 40]
    assert sorted(path.name for path in session.buffer_dir.iterdir()) == ["000000006.jpg"]
    assert (archiver.archived, archiver.discarded, archiver.failed) == (3, 2, 0)
    assert extractor.calls == [f"00000000{index}.jpg" for index in range(1, 6)]


@pytest.mark.anyio
async def test_archiver_waits_for_successor(session, make_extractor, write_buffer, wait_until) -> None:
    extractor = make_extractor({1: 0})
    first = write_buffer(session, 1)
    archiver = Archiver(session, extractor, poll_interval=0.01)
    cancelled = asyncio.Event()
    task = asyncio.create_task(archiver.run(cancelled))

    await asyncio.sleep(0.1)
    assert first.exists()
    assert extractor.calls == []
    assert archived_frames(session) == []

    write_buffer(session, 2)
    await wait_until(lambda: archiver.counter == 2)
    cancelled.set()
    await task

    assert not first.exists()
    assert [frame.counter for frame in archived_frames(session)] == [1]
    assert session.buffer_path(2).exists()


@pytest.mark.anyio
async def test_cancellation_lets_current_frame_finish(
    session, make_fingerprint, write_buffer, wait_until
) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    class SlowExtractor:
        calls = 0

        async def extract(self, path: Path) -> bytes:
            SlowExtractor.calls += 1
            started.set()
            await release.wait()
            return make_fingerprint(0)

    for counter in (1, 2, 3):
        write_buffer(session, counter)
    archiver = Archiver(session, SlowExtractor(), poll_interval=0.01)
    cancelled = asyncio.Event()
    task = asyncio.create_task(archiver.run(cancelled))

    await asyncio.wait_for(started.wait(), timeout=2)
    cancelled.set()
    release.set()
    await asyncio.wait_for(task, timeout=2)

    assert SlowExtractor.calls == 1
    assert archiver.counter == 2
    assert not session.buffer_path(1).exists()
    assert [frame.counter for frame in archived_frames(session)] == [1]
    assert session.buffer_path(2).exists()


@pytest.mark.anyio
async def test_unreadable_frame_is_discarded_and_baseline_kept(
    session, make_extractor, write_buffer, wait_until
) -> None:
    extractor = make_extractor({1: 0, 2: ExtractionError("corrupt"), 3: 10})
    for counter in range(1, 5):
        write_buffer(session, counter)
    archiver = Archiver(session, extractor, poll_interval=0.01)

    await run_until(archiver, 4, wait_until)

    # Frame 3 is compared with frame 1 (distance 10), not archived as a first frame.
    assert [frame.counter for frame in archived_frames(session)] == [1]
    assert not session.buffer_path(2).exists()
    assert not session.buffer_path(3).exists()
    assert archiver.failed == 1
    assert session.baseline == extractor.fingerprints["000000003.jpg"]


@pytest.mark.anyio
async def test_classify_frame_records_distance(session, make_fingerprint, write_buffer) -> None:
    class Extractor:
        async def extract(self, path: Path) -> bytes:
            return make_fingerprint(90)

    session.baseline = make_fingerprint(10)
    source = write_buffer(session, 12)

    outcome = await classify_frame(session, source, 12, Extractor(), threshold=20)

    assert outcome.action is FrameAction.ARCHIVED
    assert outcome.distance == 80
    assert outcome.destination is not None and outcome.destination.exists()
    decoded = decode_archive_name(outcome.destination.name)
    assert decoded is not None
    assert (decoded.frame.counter, decoded.frame.motion) == (12, 80)
    assert session.baseline == make_fingerprint(90)


@pytest.mark.anyio
async def test_threshold_is_strict(session, make_fingerprint, write_buffer) -> None:
    class Extractor:
        async def extract(self, path: Path) -> bytes:
            return make_fingerprint(20)

    session.baseline = make_fingerprint(0)
    source = write_buffer(session, 1)

    outcome = await classify_frame(session, source, 1, Extractor(), threshold=20)

    assert outcome.action is FrameAction.DISCARDED
    assert outcome.distance == 20
    assert not source.exists()
    assert archived_frames(session) == []


@pytest.mark.anyio
async def test_recovery_baseline_carries_into_live_archiver(
    session, make_fingerprint, write_buffer, wait_until
) -> None:
    backlog = {1: 0, 2: 50, 3: 52}
    for counter in backlog:
        write_buffer(session, counter)

    class Extractor:
        def __init__(self) -> None:
            self.values = {f"00000000{c}.jpg": make_fingerprint(v) for c, v in backlog.items()}

        async def extract(self, path: Path) -> bytes:
            return self.values[path.name]

    extractor = Extractor()
    report = await recover(session, extractor, threshold=20)

    assert (report.processed, report.archived, report.discarded, report.failed) == (3, 2, 1, [])
    assert session.baseline == make_fingerprint(52)
    assert list(session.buffer_dir.iterdir()) == []

    # The capture process starts numbering from 1 again once the buffer is empty.
    extractor.values = {
        "000000001.jpg": make_fingerprint(73),
        "000000002.jpg": make_fingerprint(75),
    }
    for counter in (1, 2, 3):
        write_buffer(session, counter)
    archiver = Archiver(session, extractor, threshold=20, poll_interval=0.01)

    await run_until(archiver, 3, wait_until)

    live = [frame for frame in archived_frames(session) if frame.motion == 21]
    assert [frame.counter for frame in live] == [1]
    assert archiver.discarded == 1


@pytest.mark.anyio
async def test_recovery_continues_past_failures(session, make_extractor, write_buffer) -> None:
    extractor = make_extractor(
        {1: 0, 2: PermissionError("denied"), 3: ExtractionError("truncated"), 4: 90}
    )
    for counter in range(1, 5):
        write_buffer(session, counter)
    (session.buffer_dir / ".partial").write_bytes(b"")
    (session.buffer_dir / "notes.txt").write_text("ignored", encoding="utf-8")

    report = await recover(session, extractor)

    assert extractor.calls == ["000000001.jpg", "000000002.jpg", "000000003.jpg", "000000004.jpg"]
    assert report.failed == [session.buffer_path(2), session.buffer_path(3)]
    assert report.archived == 2
    assert [frame.counter for frame in archived_frames(session)] == [1, 4]
    assert session.buffer_path(2).exists()
    assert not session.buffer_path(3).exists()
    assert (session.buffer_dir / "notes.txt").exists()


@pytest.mark.anyio
async def test_recovery_of_missing_buffer_is_a_no_op(tmp_path, make_extractor) -> None:
    session = DeviceSession(device="cam", device_dir=tmp_path / "cam")

    report = await recover(session, make_extractor({}))

    assert report.processed == 0
    assert session.baseline is None
