"""Supervision of the external frame capture process."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path

from .frames import buffer_pattern
from .logging_config import FFMPEG_LOGGER

logger = logging.getLogger(__name__)
ffmpeg_logger = logging.getLogger(FFMPEG_LOGGER)

_TERMINATE_GRACE_S = 5.0


@dataclass(slots=True)
class CaptureResult:
    """How a capture process ended."""

    device: str
    returncode: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0


class CaptureAdapter:
    """Run ffmpeg to write numbered frames for one device into its buffer directory."""

    def __init__(
        self,
        device: str,
        buffer_dir: Path | str,
        *,
        ffmpeg_path: str = "ffmpeg",
        fps: int = 5,
        quality: int = 3,
    ) -> None:
        self._device = device
        self._buffer_dir = Path(buffer_dir)
        self._ffmpeg_path = ffmpeg_path
        self._fps = int(fps)
        self._quality = int(quality)
        self._process: asyncio.subprocess.Process | None = None

    @property
    def device(self) -> str:
        return self._device

    def command(self) -> list[str]:
        return [
            self._ffmpeg_path,
            "-nostdin",
            "-nostats",
            "-i",
            self._device,
            "-qscale:v",
            str(self._quality),
            "-vf",
            f"fps={self._fps}",
            str(self._buffer_dir / buffer_pattern()),
        ]

    async def run(self) -> CaptureResult:
        """Run the capture process until it exits and report how it ended."""

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Unable to launch capture for %s: %s", self._device, exc)
            return CaptureResult(device=self._device, error=str(exc))

        self._process = process
        try:
            await asyncio.gather(
                self._pump(process.stdout, "stdout"),
                self._pump(process.stderr, "stderr"),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        finally:
            self._process = None

        if returncode == 0:
            logger.info("Capture for %s exited cleanly", self._device)
        else:
            logger.warning("Capture for %s exited with code %s", self._device, returncode)
        return CaptureResult(device=self._device, returncode=returncode)

    async def stop(self) -> None:
        """Terminate a running capture process, killing it if it does not exit."""

        if self._process is not None:
            await self._terminate(self._process)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_S)
        except asyncio.TimeoutError:
            logger.warning("Capture for %s ignored terminate; killing", self._device)
            with contextlib.suppress(ProcessLookupError):
                process.kill()

    async def _pump(self, stream: asyncio.StreamReader | None, label: str) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                ffmpeg_logger.debug("[%s %s] %s", self._device, label, text)


__all__ = ["CaptureAdapter", "CaptureResult"]
