"""Coarse grayscale fingerprints used to detect changes between frames."""
from __future__ import annotations

import asyncio
import logging
import math
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)


class ExtractionError(RuntimeError):
    """Raised when a frame cannot be reduced to a complete fingerprint."""


class FingerprintExtractor:
    """Downsample frames to a tiny raw grayscale grid using ffmpeg."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", *, width: int = 8, height: int = 6) -> None:
        if width < 1 or height < 1:
            raise ValueError("Fingerprint grid dimensions must be positive")
        self._ffmpeg_path = ffmpeg_path
        self._width = int(width)
        self._height = int(height)

    @property
    def size(self) -> int:
        return self._width * self._height

    def command(self, path: Path | str) -> list[str]:
        return [
            self._ffmpeg_path,
            "-v",
            "error",
            "-nostdin",
            "-i",
            str(path),
            "-s",
            f"{self._width}x{self._height}",
            "-pix_fmt",
            "gray",
            "-f",
            "rawvideo",
            "pipe:1",
        ]

    async def extract(self, path: Path | str) -> bytes:
        """Return the fingerprint of the image at ``path``."""

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExtractionError(f"Unable to launch {self._ffmpeg_path}: {exc}") from exc

        stdout, stderr = await process.communicate()
        if len(stdout) < self.size:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise ExtractionError(
                f"Fingerprint of {path} incomplete ({len(stdout)}/{self.size} bytes, "
                f"exit code {process.returncode})" + (f": {detail}" if detail else "")
            )
        if process.returncode:
            logger.warning(
                "ffmpeg exited with code %s after fingerprinting %s", process.returncode, path
            )
        return bytes(stdout[: self.size])


def distance(first: bytes, second: bytes) -> int:
    """Return the rounded Euclidean distance between two fingerprints.

    Fingerprints of different lengths come from mismatched grids and cannot be
    compared; they are reported as identical (distance 0) with a warning.
    """

    if len(first) != len(second):
        logger.warning(
            "Fingerprint lengths differ (%d != %d); treating frames as identical",
            len(first),
            len(second),
        )
        return 0
    a = np.frombuffer(first, dtype=np.uint8).astype(np.int64)
    b = np.frombuffer(second, dtype=np.uint8).astype(np.int64)
    diff = a - b
    return int(math.floor(math.sqrt(float(np.dot(diff, diff))) + 0.5))


__all__ = ["ExtractionError", "FingerprintExtractor", "distance"]
