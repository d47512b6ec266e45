"""Logging setup for the capture service."""

from __future__ import annotations

import contextlib
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
FFMPEG_LOGGER = "picam.ffmpeg"
_BACKUP_COUNT = 2


def _coerce_level(level: int | str) -> int:
    if isinstance(level, str):
        name = level.upper()
        value = logging.getLevelName(name)
        if not isinstance(value, int):
            raise ValueError(f"Unknown log level '{level}'")
        return value
    return int(level)


def configure_logging(
    level: int | str = logging.INFO,
    *,
    ffmpeg_log_file: str | Path | None = None,
    ffmpeg_max_bytes: int = 10_000_000,
) -> None:
    """Send application logs to stdout and ffmpeg chatter to its own rotating file.

    Without ``ffmpeg_log_file`` the ffmpeg output is dropped rather than mixed
    into the console.
    """

    numeric_level = _coerce_level(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        with contextlib.suppress(Exception):
            handler.close()
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)
    root.setLevel(numeric_level)

    ffmpeg_logger = logging.getLogger(FFMPEG_LOGGER)
    for handler in list(ffmpeg_logger.handlers):
        ffmpeg_logger.removeHandler(handler)
        with contextlib.suppress(Exception):
            handler.close()
    ffmpeg_logger.propagate = False
    ffmpeg_logger.setLevel(logging.DEBUG)
    if ffmpeg_log_file:
        path = Path(ffmpeg_log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=ffmpeg_max_bytes,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        ffmpeg_logger.addHandler(file_handler)
    else:
        ffmpeg_logger.addHandler(logging.NullHandler())


__all__ = ["FFMPEG_LOGGER", "LOG_DATEFMT", "LOG_FORMAT", "configure_logging"]
