"""Per-device supervision of the capture and archiving tasks."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable, Protocol

from .archiver import Archiver, DeviceSession, Extractor, RecoveryReport, recover
from .capture import CaptureAdapter, CaptureResult
from .event_log import MonitorEventLog
from .fingerprint import FingerprintExtractor
from .frames import device_dir_name
from .settings import ArchiverSettings

logger = logging.getLogger(__name__)


class Capture(Protocol):
    async def run(self) -> CaptureResult:  # pragma: no cover - interface only
        ...

    async def stop(self) -> None:  # pragma: no cover - interface only
        ...


CaptureFactory = Callable[[DeviceSession], Capture]
SleepFn = Callable[[float], Awaitable[None]]


class MonitorState(str, Enum):
    IDLE = "idle"
    RECOVERING = "recovering"
    RUNNING = "running"
    STOPPING = "stopping"


class DeviceMonitor:
    """Keep one device capturing and archiving, restarting capture whenever it exits.

    The buffer backlog is recovered once on startup. Each capture cycle then
    runs the capture process and the archiver side by side; when capture ends
    the archiver is asked to stop, allowed to finish its current frame, and a
    new cycle starts after ``restart_delay_s``.
    """

    def __init__(
        self,
        device: str,
        settings: ArchiverSettings,
        *,
        extractor: Extractor | None = None,
        capture_factory: CaptureFactory | None = None,
        event_log: MonitorEventLog | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._device = device
        self._settings = settings
        self._session = DeviceSession(
            device=device, device_dir=settings.data_path / device_dir_name(device)
        )
        self._extractor = extractor or FingerprintExtractor(
            settings.ffmpeg_path,
            width=settings.fingerprint_width,
            height=settings.fingerprint_height,
        )
        self._capture_factory = capture_factory or self._default_capture
        self._event_log = event_log
        self._sleep = sleep
        self._state = MonitorState.IDLE
        self._capture: Capture | None = None
        self._stop_requested = False
        self.launches = 0
        self.recovery: RecoveryReport | None = None

    @property
    def device(self) -> str:
        return self._device

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def session(self) -> DeviceSession:
        return self._session

    async def run(self) -> None:
        """Recover the backlog, then capture and archive until stopped."""

        self._session.prepare()

        self._set_state(MonitorState.RECOVERING)
        self.recovery = await recover(
            self._session, self._extractor, threshold=self._settings.motion_threshold
        )
        self._record(
            "recovered",
            f"Recovered {self.recovery.processed} buffered frame(s)",
            archived=self.recovery.archived,
            discarded=self.recovery.discarded,
            failed=len(self.recovery.failed) or None,
        )

        restarts = 0
        while not self._stop_requested:
            await self._run_cycle()
            self._session = self._session.next_cycle()
            if self._stop_requested:
                break
            limit = self._settings.max_restarts
            if limit is not None and restarts >= limit:
                logger.error("Capture for %s exited %d time(s); giving up", self._device, restarts + 1)
                self._record("abandoned", "Restart limit reached", restarts=restarts)
                break
            restarts += 1
            logger.info(
                "Restarting capture for %s in %.1fs", self._device, self._settings.restart_delay_s
            )
            await self._sleep(self._settings.restart_delay_s)
            if self._stop_requested:
                break
        self._set_state(MonitorState.IDLE)

    async def stop(self) -> None:
        """Stop capturing; the archiver finishes its current frame before exiting."""

        self._stop_requested = True
        capture = self._capture
        if capture is not None:
            await capture.stop()

    async def _run_cycle(self) -> CaptureResult:
        session = self._session
        cancelled = asyncio.Event()
        archiver = Archiver(
            session,
            self._extractor,
            threshold=self._settings.motion_threshold,
            poll_interval=self._settings.poll_interval_s,
        )

        self._set_state(MonitorState.RUNNING)
        self.launches += 1
        logger.info("Starting capture for %s", self._device)
        capture = self._capture_factory(session)
        self._capture = capture
        self._record("capture-started", "Capture launched", launch=self.launches)
        label = device_dir_name(self._device)
        capture_task = asyncio.create_task(capture.run(), name=f"picam-capture-{label}")
        archive_task = asyncio.create_task(archiver.run(cancelled), name=f"picam-archiver-{label}")
        try:
            done, _ = await asyncio.wait(
                {capture_task, archive_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if capture_task not in done:
                logger.error("Archiving for %s ended early; stopping capture", self._device)
                await capture.stop()
            result = await self._capture_result(capture_task)
        except asyncio.CancelledError:
            capture_task.cancel()
            cancelled.set()
            await asyncio.gather(capture_task, archive_task, return_exceptions=True)
            raise
        finally:
            self._capture = None

        if result.ok:
            logger.info("Capture stopped for %s; stopping archiving", self._device)
        else:
            logger.error(
                "Capture stopped for %s (code=%s, error=%s); stopping archiving",
                self._device,
                result.returncode,
                result.error,
            )
        self._record(
            "capture-exited",
            "Capture process exited",
            returncode=result.returncode,
            error=result.error,
        )

        self._set_state(MonitorState.STOPPING)
        cancelled.set()
        try:
            await archive_task
        except Exception:
            logger.exception("Archiving for %s failed", self._device)
            self._record("archiver-failed", "Archiver stopped with an error")

        # Capture has exited, so every file left in the buffer is complete.
        drained: RecoveryReport | None = None
        try:
            drained = await recover(
                session, self._extractor, threshold=self._settings.motion_threshold
            )
        except Exception:
            logger.exception("Draining the buffer for %s failed", self._device)
            self._record("archiver-failed", "Buffer drain stopped with an error")
        self._record(
            "archiver-stopped",
            "Archiver drained",
            archived=archiver.archived,
            discarded=archiver.discarded,
            failed=archiver.failed or None,
            drained=drained.processed if drained is not None else None,
        )
        self._set_state(MonitorState.IDLE)
        return result

    async def _capture_result(self, capture_task: asyncio.Task[CaptureResult]) -> CaptureResult:
        try:
            return await capture_task
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Capture for %s raised", self._device)
            return CaptureResult(device=self._device, error=str(exc))

    def _default_capture(self, session: DeviceSession) -> CaptureAdapter:
        return CaptureAdapter(
            session.device,
            session.buffer_dir,
            ffmpeg_path=self._settings.ffmpeg_path,
            fps=self._settings.capture_fps,
            quality=self._settings.capture_quality,
        )

    def _set_state(self, state: MonitorState) -> None:
        if state is not self._state:
            logger.debug("Monitor for %s: %s -> %s", self._device, self._state.value, state.value)
            self._state = state

    def _record(self, event: str, message: str, **metadata: object) -> None:
        if self._event_log is not None:
            self._event_log.record(self._device, event, message, metadata=metadata)


def build_monitors(
    settings: ArchiverSettings,
    *,
    devices: Iterable[str] | None = None,
    event_log: MonitorEventLog | None = None,
) -> list[DeviceMonitor]:
    return [
        DeviceMonitor(device, settings, event_log=event_log)
        for device in (devices if devices is not None else settings.devices)
    ]


async def run_monitors(monitors: Iterable[DeviceMonitor]) -> None:
    """Run independent monitors side by side until all of them finish."""

    async def _supervise(monitor: DeviceMonitor) -> None:
        try:
            await monitor.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Monitor for %s stopped with error", monitor.device)
            return
        logger.info("Monitor for %s stopped cleanly", monitor.device)

    await asyncio.gather(*(_supervise(monitor) for monitor in monitors))


__all__ = [
    "Capture",
    "CaptureFactory",
    "DeviceMonitor",
    "MonitorState",
    "build_monitors",
    "run_monitors",
]
