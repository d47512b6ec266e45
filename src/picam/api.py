"""FastAPI application serving archived frames to the playback client."""
from __future__ import annotations

import json
import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .event_log import MonitorEventLog
from .frames import Frame
from .settings import ArchiverSettings
from .store import FrameNotFoundError, FrameStore
from .version import APP_VERSION


class FramePayload(BaseModel):
    hour: int
    minute: int
    second: int
    ms: int
    frame: int
    motion: int

    @classmethod
    def from_frame(cls, frame: Frame) -> "FramePayload":
        return cls(
            hour=frame.hour,
            minute=frame.minute,
            second=frame.second,
            ms=frame.ms,
            frame=frame.counter,
            motion=frame.motion,
        )


class EventPayload(BaseModel):
    timestamp: float
    device: str
    event: str
    message: str
    metadata: dict[str, object] | None = None


def _safe_device(device: str) -> str:
    if Path(device).name != device or device in {".", ".."} or device.startswith("."):
        raise HTTPException(status_code=404, detail="Camera not found")
    return device


def _parse_after(after: str | None) -> Frame | None:
    if not after:
        return None
    try:
        payload = json.loads(after)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="after must be a JSON frame") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="after must be a JSON frame")
    try:
        return Frame.from_dict(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def create_app(
    settings: ArchiverSettings | None = None,
    *,
    store: FrameStore | None = None,
    event_log: MonitorEventLog | None = None,
) -> FastAPI:
    settings = settings or ArchiverSettings()
    store = store or FrameStore(settings.data_path)
    logger = logging.getLogger(__name__)

    app = FastAPI(title="PiCam archive", version=APP_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/version")
    async def get_version() -> dict[str, str]:
        return {"version": APP_VERSION, "data_dir": str(store.data_dir.resolve())}

    @app.get("/cameras")
    async def list_cameras() -> list[str]:
        return await run_in_threadpool(store.list_devices)

    @app.get("/camera/{device}/{year}/{month}/{date}")
    async def list_frames(
        device: str,
        year: int,
        month: int,
        date: int,
        threshold: int = Query(1),
        after: str | None = Query(None),
    ) -> list[FramePayload]:
        cursor = _parse_after(after)
        frames = await run_in_threadpool(
            store.list_frames,
            _safe_device(device),
            year,
            month,
            date,
            threshold=threshold,
            after=cursor,
        )
        return [FramePayload.from_frame(frame) for frame in frames]

    @app.get(
        "/frame/{device}/{year}/{month}/{date}/{hour}/{minute}/{second}/{ms}/{motion}/{counter}"
    )
    async def get_frame(
        device: str,
        year: int,
        month: int,
        date: int,
        hour: int,
        minute: int,
        second: int,
        ms: int,
        motion: int,
        counter: int,
    ) -> Response:
        frame = Frame(
            hour=hour, minute=minute, second=second, ms=ms, counter=counter, motion=motion
        )
        try:
            payload = await run_in_threadpool(
                store.read_frame, _safe_device(device), year, month, date, frame
            )
        except FrameNotFoundError as exc:
            logger.debug("Frame lookup failed: %s", exc)
            raise HTTPException(status_code=404, detail="Frame not found") from exc
        return Response(content=payload, media_type="image/jpeg")

    @app.get("/events")
    async def list_events(
        device: str | None = Query(None),
        limit: int = Query(100, ge=1, le=1000),
    ) -> list[EventPayload]:
        if event_log is None:
            return []
        return [EventPayload(**entry.to_dict()) for entry in event_log.tail(limit, device=device)]

    return app


__all__ = ["EventPayload", "FramePayload", "create_app"]
