from __future__ import annotations

import asyncio
import logging

import pytest

from picam.capture import CaptureAdapter, CaptureResult


def test_capture_command_writes_numbered_frames(tmp_path) -> None:
    adapter = CaptureAdapter("/dev/video1", tmp_path, ffmpeg_path="ffmpeg", fps=5, quality=3)
    command = adapter.command()

    assert command[0] == "ffmpeg"
    assert command[command.index("-i") + 1] == "/dev/video1"
    assert command[command.index("-qscale:v") + 1] == "3"
    assert command[command.index("-vf") + 1] == "fps=5"
    assert command[-1] == str(tmp_path / "%09d.jpg")


@pytest.mark.anyio
async def test_capture_streams_output_and_reports_exit_code(
    fake_ffmpeg, tmp_path, caplog: pytest.LogCaptureFixture
) -> None:
    script = fake_ffmpeg(
        "print('Input #0, video4linux2')\n"
        "sys.stderr.write('frame=1\\nframe=2\\n')\n"
        "sys.exit(3)"
    )
    adapter = CaptureAdapter("/dev/video0", tmp_path, ffmpeg_path=script)

    with caplog.at_level(logging.DEBUG, logger="picam.ffmpeg"):
        result = await adapter.run()

    assert result == CaptureResult(device="/dev/video0", returncode=3)
    assert result.ok is False
    lines = [record.getMessage() for record in caplog.records if record.name == "picam.ffmpeg"]
    assert "[/dev/video0 stdout] Input #0, video4linux2" in lines
    assert "[/dev/video0 stderr] frame=1" in lines
    assert "[/dev/video0 stderr] frame=2" in lines


@pytest.mark.anyio
async def test_capture_clean_exit_is_ok(fake_ffmpeg, tmp_path) -> None:
    adapter = CaptureAdapter("/dev/video0", tmp_path, ffmpeg_path=fake_ffmpeg("sys.exit(0)"))

    result = await adapter.run()

    assert result.ok is True
    assert result.returncode == 0


@pytest.mark.anyio
async def test_capture_launch_failure_is_reported(tmp_path) -> None:
    adapter = CaptureAdapter("/dev/video0", tmp_path, ffmpeg_path=str(tmp_path / "missing"))

    result = await adapter.run()

    assert result.returncode is None
    assert result.error
    assert result.ok is False


@pytest.mark.anyio
async def test_stop_terminates_running_capture(fake_ffmpeg, tmp_path, wait_until) -> None:
    script = fake_ffmpeg("import time\ntime.sleep(30)")
    adapter = CaptureAdapter("/dev/video0", tmp_path, ffmpeg_path=script)
    task = asyncio.create_task(adapter.run())

    await wait_until(lambda: adapter._process is not None)
    await adapter.stop()
    result = await asyncio.wait_for(task, timeout=5)

    assert result.returncode is not None and result.returncode != 0
    assert result.ok is False
