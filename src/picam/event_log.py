"""Persistent record of device monitor lifecycle events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MonitorEvent:
    """A capture session transition worth keeping for troubleshooting."""

    timestamp: float
    device: str
    event: str
    message: str
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "device": self.device,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "MonitorEvent | None":
        if not isinstance(payload, dict):
            return None
        device = payload.get("device")
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(device, str) or not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            timestamp = float(payload.get("timestamp", 0.0))
        except (TypeError, ValueError):
            timestamp = 0.0
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            device=device,
            event=event,
            message=message,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class MonitorEventLog:
    """Append-only JSONL event log with a bounded in-memory tail."""

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[MonitorEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        device: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> MonitorEvent:
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = MonitorEvent(
            timestamp=time.time(),
            device=device,
            event=event,
            message=message,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._append(entry)
        return entry

    def tail(self, limit: int | None = None, *, device: str | None = None) -> list[MonitorEvent]:
        """Return the most recent events, optionally for one device only."""

        with self._lock:
            entries = list(self._entries)
        if device:
            entries = [entry for entry in entries if entry.device == device]
        if limit is not None:
            entries = entries[-max(1, int(limit)) :]
        return entries

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = MonitorEvent.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)

    def _append(self, entry: MonitorEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)


__all__ = ["MonitorEvent", "MonitorEventLog"]
