from __future__ import annotations

import logging
import os
import stat
import sys
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Mapping

import anyio
import pytest

from picam.archiver import DeviceSession
from picam.frames import buffer_name


def fingerprint(value: int, size: int = 48) -> bytes:
    """Fingerprint whose distance to ``fingerprint(other)`` is ``abs(value - other)``."""

    return bytes([value]) + bytes(size - 1)


class FakeExtractor:
    """Serve canned fingerprints keyed by buffer filename."""

    def __init__(self, fingerprints: Mapping[str, bytes | BaseException]) -> None:
        self.fingerprints = dict(fingerprints)
        self.calls: list[str] = []

    async def extract(self, path: Path) -> bytes:
        self.calls.append(Path(path).name)
        value = self.fingerprints[Path(path).name]
        if isinstance(value, BaseException):
            raise value
        return value


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_fingerprint() -> Callable[[int], bytes]:
    return fingerprint


@pytest.fixture
def session(tmp_path: Path) -> DeviceSession:
    session = DeviceSession(device="/dev/video0", device_dir=tmp_path / "_dev_video0")
    session.prepare()
    return session


@pytest.fixture
def make_extractor() -> Callable[..., FakeExtractor]:
    def _make(values: Mapping[int, int | BaseException]) -> FakeExtractor:
        return FakeExtractor(
            {
                buffer_name(counter): value if isinstance(value, BaseException) else fingerprint(value)
                for counter, value in values.items()
            }
        )

    return _make


@pytest.fixture
def write_buffer() -> Callable[[DeviceSession, int], Path]:
    def _write(session: DeviceSession, counter: int) -> Path:
        path = session.buffer_path(counter)
        path.write_bytes(b"\xff\xd8frame-%d\xff\xd9" % counter)
        return path

    return _write


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        with anyio.fail_after(timeout):
            while not predicate():
                await anyio.sleep(0.005)

    return _wait


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> Callable[[str], str]:
    """Write an executable Python script standing in for ffmpeg."""

    if os.name == "nt":  # pragma: no cover - shebang scripts are POSIX only
        pytest.skip("fake ffmpeg scripts require a POSIX shell")

    def _write(body: str, name: str = "ffmpeg") -> str:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"#!{sys.executable}\nimport sys\n{body}\n", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _write


@pytest.fixture
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    ffmpeg = logging.getLogger("picam.ffmpeg")
    saved_root = (list(root.handlers), root.level)
    saved_ffmpeg = (list(ffmpeg.handlers), ffmpeg.level, ffmpeg.propagate)
    yield
    for logger, handlers in ((root, saved_root[0]), (ffmpeg, saved_ffmpeg[0])):
        for handler in list(logger.handlers):
            if handler not in handlers:
                logger.removeHandler(handler)
                handler.close()
        for handler in handlers:
            if handler not in logger.handlers:
                logger.addHandler(handler)
    root.setLevel(saved_root[1])
    ffmpeg.setLevel(saved_ffmpeg[1])
    ffmpeg.propagate = saved_ffmpeg[2]
