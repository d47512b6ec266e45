"""Configuration structures for capture and archiving."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

import json
import math
import os

DATA_DIR_ENV = "PICAM_DATA_DIR"


def _default_data_dir() -> str:
    return os.environ.get(DATA_DIR_ENV, "data")


@dataclass(slots=True)
class ArchiverSettings:
    """Options shared by the capture, archiving and retrieval services."""

    data_dir: str = field(default_factory=_default_data_dir)
    devices: list[str] = field(default_factory=lambda: ["/dev/video0"])
    ffmpeg_path: str = "ffmpeg"
    capture_fps: int = 5
    capture_quality: int = 3
    fingerprint_width: int = 8
    fingerprint_height: int = 6
    motion_threshold: int = 20
    poll_interval_s: float = 0.5
    restart_delay_s: float = 1.0
    max_restarts: int | None = None
    ffmpeg_log_path: str | None = "logs/ffmpeg.log"
    ffmpeg_log_max_bytes: int = 10_000_000
    api_host: str = "0.0.0.0"
    api_port: int = 3030

    def __post_init__(self) -> None:
        if isinstance(self.devices, str):
            self.devices = [self.devices]
        self.devices = [str(device) for device in self.devices if str(device).strip()]
        if not self.ffmpeg_path:
            raise ValueError("ffmpeg path must not be empty")
        if self.capture_fps < 1 or self.capture_fps > 60:
            raise ValueError("Capture rate must be between 1 and 60 fps")
        if self.capture_quality < 1 or self.capture_quality > 31:
            raise ValueError("Capture quality must be between 1 and 31")
        if self.fingerprint_width < 1 or self.fingerprint_height < 1:
            raise ValueError("Fingerprint grid dimensions must be positive")
        if self.motion_threshold < 0:
            raise ValueError("Motion threshold must not be negative")
        for name in ("poll_interval_s", "restart_delay_s"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be a non-negative number of seconds")
            setattr(self, name, value)
        if self.max_restarts is not None and self.max_restarts < 0:
            raise ValueError("max_restarts must not be negative")
        if self.ffmpeg_log_max_bytes <= 0:
            raise ValueError("ffmpeg log size limit must be positive")
        if self.api_port < 1 or self.api_port > 65535:
            raise ValueError("API port must be between 1 and 65535")

    @property
    def fingerprint_size(self) -> int:
        return self.fingerprint_width * self.fingerprint_height

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["devices"] = list(self.devices)
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ArchiverSettings":
        data: dict[str, Any] = dict(payload)
        devices = data.get("devices")
        if devices is not None and not isinstance(devices, (list, tuple, str)):
            raise ValueError("devices must be a list of device identifiers")
        return cls(**data)


class SettingsStore:
    """Simple JSON backed persistence for :class:`ArchiverSettings`."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> ArchiverSettings:
        if not self._path.exists():
            return ArchiverSettings()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid settings JSON in {self._path}") from exc
        if not isinstance(raw, dict):
            raise ValueError("Settings file must contain a JSON object")
        return ArchiverSettings.from_dict(raw)

    def save(self, settings: ArchiverSettings) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = settings.to_dict()
        self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


__all__ = ["ArchiverSettings", "DATA_DIR_ENV", "SettingsStore"]
