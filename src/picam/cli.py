"""Command-line entry point for the capture and archive service."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from typing import Sequence

from .api import create_app
from .archiver import DeviceSession, recover
from .event_log import MonitorEventLog
from .fingerprint import FingerprintExtractor
from .frames import device_dir_name
from .logging_config import configure_logging
from .monitor import build_monitors, run_monitors
from .settings import ArchiverSettings, SettingsStore
from .store import FrameStore
from .version import APP_VERSION

logger = logging.getLogger(__name__)

EVENT_LOG_NAME = "monitor_log.jsonl"


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the ``picam`` command."""

    parser = argparse.ArgumentParser(
        prog="python -m picam",
        description="Capture frames, keep the ones with motion, and serve the archive.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--config", help="Path to a JSON settings file.")
    parser.add_argument("--data-dir", help="Root directory for buffers and archives.")
    parser.add_argument(
        "--device",
        action="append",
        dest="devices",
        help="Capture device (repeat for several). Defaults to the configured devices.",
    )
    parser.add_argument("--log-level", default="INFO", help="Console log level.")

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Capture and archive until interrupted.")
    run.add_argument("--no-api", action="store_true", help="Do not serve the HTTP API.")

    commands.add_parser("recover", help="Classify frames left in the buffers, then exit.")

    frames = commands.add_parser("frames", help="Print one day's archived frames as JSON.")
    frames.add_argument("camera", help="Device identifier or archive directory name.")
    frames.add_argument("date", help="Day to list, as YYYY-MM-DD.")
    frames.add_argument("--threshold", type=int, default=1)
    return parser


def load_settings(args: argparse.Namespace) -> ArchiverSettings:
    settings = SettingsStore(args.config).load() if args.config else ArchiverSettings()
    overrides: dict[str, object] = {}
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.devices:
        overrides["devices"] = list(args.devices)
    if not overrides:
        return settings
    return ArchiverSettings.from_dict({**settings.to_dict(), **overrides})


async def _run(settings: ArchiverSettings, *, serve_api: bool) -> None:
    event_log = MonitorEventLog(settings.data_path / EVENT_LOG_NAME)
    monitors = build_monitors(settings, event_log=event_log)
    monitor_task = asyncio.create_task(run_monitors(monitors), name="picam-monitors")
    if not serve_api:
        await monitor_task
        return

    import uvicorn

    config = uvicorn.Config(
        create_app(settings, event_log=event_log),
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )
    server = uvicorn.Server(config)
    try:
        await server.serve()
    finally:
        for monitor in monitors:
            await monitor.stop()
        await monitor_task


async def _recover(settings: ArchiverSettings) -> list[dict[str, object]]:
    extractor = FingerprintExtractor(
        settings.ffmpeg_path,
        width=settings.fingerprint_width,
        height=settings.fingerprint_height,
    )
    results: list[dict[str, object]] = []
    for device in settings.devices:
        session = DeviceSession(device=device, device_dir=settings.data_path / device_dir_name(device))
        session.prepare()
        report = await recover(session, extractor, threshold=settings.motion_threshold)
        results.append(
            {
                "device": device,
                "processed": report.processed,
                "archived": report.archived,
                "discarded": report.discarded,
                "failed": [str(path) for path in report.failed],
            }
        )
    return results


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_settings(args)
    except (TypeError, ValueError) as exc:
        parser.error(f"invalid settings: {exc}")

    configure_logging(
        args.log_level,
        ffmpeg_log_file=settings.ffmpeg_log_path,
        ffmpeg_max_bytes=settings.ffmpeg_log_max_bytes,
    )

    if args.command == "run":
        logger.info("Starting PiCam %s for %s", APP_VERSION, ", ".join(settings.devices))
        try:
            asyncio.run(_run(settings, serve_api=not args.no_api))
        except KeyboardInterrupt:
            logger.info("Interrupted")
        return 0

    if args.command == "recover":
        results = asyncio.run(_recover(settings))
        json.dump(results, sys.stdout, indent=2)
        sys.stdout.write("\n")
        failed = any(result["failed"] for result in results)
        return 1 if failed else 0

    try:
        day = datetime.strptime(args.date, "%Y-%m-%d")
    except ValueError:
        parser.error("date must be formatted as YYYY-MM-DD")
    store = FrameStore(settings.data_path)
    frames = store.list_frames(
        args.camera, day.year, day.month, day.day, threshold=args.threshold
    )
    json.dump([frame.to_dict() for frame in frames], sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":  # pragma: no cover - module behaviour
    raise SystemExit(main())
